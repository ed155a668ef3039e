"""Core functionality for IIS Deploy."""

from iis_deploy.core.exceptions import (
    CommandTimeoutError,
    DeployError,
    DeployNotFoundError,
    ResourceMissingError,
    SiteNotFoundError,
    ToolFailureError,
)
from iis_deploy.core.repository import DeployRepository, get_deploy_repository
from iis_deploy.core.orchestrator import DeployOrchestrator, get_orchestrator

__all__ = [
    "CommandTimeoutError",
    "DeployError",
    "DeployNotFoundError",
    "ResourceMissingError",
    "SiteNotFoundError",
    "ToolFailureError",
    "DeployRepository",
    "get_deploy_repository",
    "DeployOrchestrator",
    "get_orchestrator",
]
