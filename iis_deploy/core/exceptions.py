"""Custom exceptions for IIS Deploy."""

from typing import Any


class DeployError(Exception):
    """Base exception for IIS Deploy."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ToolFailureError(DeployError):
    """An external tool (git, shell) exited with a non-zero code."""

    def __init__(self, tool: str, message: str, exit_code: int | None = None):
        details: dict[str, Any] = {"tool": tool}
        if exit_code is not None:
            details["exit_code"] = exit_code
        super().__init__(f"{tool} failed: {message}", details)
        self.tool = tool
        self.exit_code = exit_code


class CommandTimeoutError(DeployError):
    """A command exceeded its completion ceiling."""

    def __init__(self, command: str, timeout: float):
        super().__init__(
            f"Command timed out after {timeout:g} seconds: {command}",
            {"command": command, "timeout": timeout},
        )
        self.command = command
        self.timeout = timeout


class ResourceMissingError(DeployError):
    """A directory the deploy depends on does not exist."""

    def __init__(self, message: str, path: str):
        super().__init__(message, {"path": path})
        self.path = path


class SiteNotFoundError(DeployError):
    """The IIS site could not be found."""

    def __init__(self, site_name: str, reason: str | None = None):
        message = f"IIS site not found: {site_name}"
        if reason:
            message = f"{message}. {reason}"
        super().__init__(message, {"site_name": site_name})
        self.site_name = site_name


class DeployNotFoundError(DeployError):
    """Deploy record not found."""

    def __init__(self, deploy_id: int):
        super().__init__(
            f"Deploy not found: {deploy_id}",
            {"deploy_id": deploy_id},
        )
