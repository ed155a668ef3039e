"""Utility functions for IIS Deploy."""

from iis_deploy.utils.logging import configure_logging, get_logger, mask_credentials

__all__ = [
    "configure_logging",
    "get_logger",
    "mask_credentials",
]
