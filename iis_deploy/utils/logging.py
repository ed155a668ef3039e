"""Logging configuration using structlog.

Every event passes through ``redact_credentials`` before rendering, so
repository URLs with embedded git credentials never reach a log sink.
"""

import logging
import re
import sys
from pathlib import Path
from typing import Any

import structlog

from iis_deploy.config import Settings, settings

_URL_USERINFO = re.compile(r"(https?://)[^/@\s]+@")


def mask_credentials(text: str) -> str:
    """Hide the userinfo part of any URL embedded in text."""
    return _URL_USERINFO.sub(r"\1***@", text)


def redact_credentials(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking URL credentials in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = mask_credentials(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [mask_credentials(v) if isinstance(v, str) else v for v in value]
    return event_dict


def log_file_path(app_settings: Settings) -> Path | None:
    """Where the log file goes, or None when file logging is disabled."""
    if not app_settings.log_directory:
        return None
    log_dir = Path(app_settings.log_directory)
    if not log_dir.is_absolute():
        log_dir = Path(__file__).resolve().parents[2] / log_dir
    return log_dir / app_settings.log_file_name


def configure_logging(app_settings: Settings | None = None) -> None:
    """Configure structured logging to stdout and the deploy log file."""
    app_settings = app_settings or settings

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = log_file_path(app_settings)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, app_settings.log_level),
        handlers=handlers,
        force=True,
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        redact_credentials,
    ]

    # Colors only make sense on a terminal; the file handler shares the output
    if app_settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=log_file is None and sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
