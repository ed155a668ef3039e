"""Deploy-related data models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DeployStatus(str, Enum):
    """Overall deploy status."""

    STARTED = "started"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeployStatus.SUCCESS, DeployStatus.FAILED)


class CommandStatus(str, Enum):
    """Individual build command status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (CommandStatus.SUCCESS, CommandStatus.FAILED, CommandStatus.ERROR)


# Allowed deploy status transitions
DEPLOY_TRANSITIONS: dict[DeployStatus, set[DeployStatus]] = {
    DeployStatus.STARTED: {DeployStatus.RUNNING, DeployStatus.FAILED},
    DeployStatus.RUNNING: {DeployStatus.SUCCESS, DeployStatus.FAILED},
    DeployStatus.SUCCESS: set(),
    DeployStatus.FAILED: set(),
}


class BuildCommand(BaseModel):
    """A build/setup step as submitted by the caller."""

    text: str = Field(..., min_length=1, max_length=1000)
    order: int = Field(..., ge=1)
    terminal_id: str = "1"
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("text")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Command text must not be blank")
        return value

    @field_validator("terminal_id", mode="before")
    @classmethod
    def coerce_terminal_id(cls, value: object) -> str:
        return str(value).strip() or "1"


class DeployRequest(BaseModel):
    """Request model for starting a deploy."""

    repo_url: str = Field(..., min_length=1, max_length=200)
    branch: str = Field(..., min_length=1, max_length=100)
    build_commands: list[BuildCommand] = Field(default_factory=list)
    build_output: str = Field(..., min_length=1, max_length=100)
    iis_site_name: str = Field(..., min_length=1, max_length=200)
    application_path: str | None = None
    target_path: str | None = None
    platform: str | None = Field(default=None, max_length=100)
    user_id: int = 0

    @model_validator(mode="after")
    def check_unique_orders(self) -> "DeployRequest":
        seen: set[tuple[str, int]] = set()
        for command in self.build_commands:
            key = (command.terminal_id, command.order)
            if key in seen:
                raise ValueError(
                    f"Duplicate order {command.order} in terminal {command.terminal_id}"
                )
            seen.add(key)
        return self


class Command(BaseModel):
    """A persisted build command."""

    id: int | None = None
    deploy_id: int | None = None
    text: str
    order: int
    terminal_id: str = "1"
    status: CommandStatus = CommandStatus.PENDING
    message: str | None = "Waiting for execution"
    executed_at: datetime | None = None
    timeout_seconds: float | None = None  # Falls back to command_timeout_seconds

    def mark_running(self) -> None:
        self._transition(CommandStatus.RUNNING, "Running...")
        self.executed_at = datetime.utcnow()

    def mark_success(self, message: str = "executed successfully") -> None:
        self._transition(CommandStatus.SUCCESS, message)

    def mark_failed(self, message: str) -> None:
        self._transition(CommandStatus.FAILED, message)

    def mark_error(self, message: str) -> None:
        self._transition(CommandStatus.ERROR, message)

    def _transition(self, status: CommandStatus, message: str) -> None:
        if status == CommandStatus.RUNNING:
            allowed = self.status == CommandStatus.PENDING
        else:
            allowed = self.status == CommandStatus.RUNNING
        if not allowed:
            raise ValueError(
                f"Invalid command transition {self.status.value} -> {status.value}"
            )
        self.status = status
        self.message = message


class HistoryEntry(BaseModel):
    """An immutable deploy status transition."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    deploy_id: int
    status: DeployStatus
    message: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Deploy(BaseModel):
    """A single deployment attempt."""

    id: int | None = None
    repo_url: str
    branch: str
    build_output: str
    site_name: str
    application_name: str | None = None
    user_id: int = 0
    status: DeployStatus = DeployStatus.STARTED
    message: str | None = None
    platform: str | None = None
    target_path: str | None = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    commands: list[Command] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)


class CommandOutcome(BaseModel):
    """Per-command summary in a deploy result."""

    model_config = ConfigDict(frozen=True)

    order: int
    terminal_id: str
    text: str
    status: CommandStatus
    message: str | None = None


class DeployResult(BaseModel):
    """Final outcome of a deploy, composed by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    deploy_id: int
    final_status: DeployStatus
    target_path: str | None = None
    source_strategy: str | None = None
    warnings: list[str] = Field(default_factory=list)
    commands: list[CommandOutcome] = Field(default_factory=list)


class DeploySummary(BaseModel):
    """API summary of a deploy without children."""

    id: int
    site_name: str
    application_name: str | None = None
    repo_url: str
    branch: str
    status: DeployStatus
    message: str | None = None
    platform: str | None = None
    user_id: int
    created_at: datetime

    @classmethod
    def from_deploy(cls, deploy: Deploy) -> "DeploySummary":
        """Create summary from a deploy model."""
        return cls(
            id=deploy.id or 0,
            site_name=deploy.site_name,
            application_name=deploy.application_name,
            repo_url=deploy.repo_url,
            branch=deploy.branch,
            status=deploy.status,
            message=deploy.message,
            platform=deploy.platform,
            user_id=deploy.user_id,
            created_at=deploy.created_at,
        )
