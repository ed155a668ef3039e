"""Data models for IIS Deploy."""

from iis_deploy.models.deploy import (
    BuildCommand,
    Command,
    CommandOutcome,
    CommandStatus,
    Deploy,
    DeployRequest,
    DeployResult,
    DeployStatus,
    DeploySummary,
    HistoryEntry,
)
from iis_deploy.models.iis import ApplicationInfo, SiteInfo, TargetResolution
from iis_deploy.models.steps import (
    ArtifactResult,
    CommandRunResult,
    GitOutput,
    SourceResult,
)

__all__ = [
    # Deploy models
    "BuildCommand",
    "Command",
    "CommandOutcome",
    "CommandStatus",
    "Deploy",
    "DeployRequest",
    "DeployResult",
    "DeployStatus",
    "DeploySummary",
    "HistoryEntry",
    # IIS models
    "ApplicationInfo",
    "SiteInfo",
    "TargetResolution",
    # Step results
    "ArtifactResult",
    "CommandRunResult",
    "GitOutput",
    "SourceResult",
]
