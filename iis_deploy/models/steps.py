"""Immutable results of the individual deploy steps."""

from typing import Literal

from pydantic import BaseModel, ConfigDict

SourceStrategy = Literal["update", "system", "explicit"]


class SourceResult(BaseModel):
    """Result of cloning or updating a working tree."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    working_dir: str
    strategy: SourceStrategy | None = None
    clone_attempts: int = 0


class GitOutput(BaseModel):
    """Captured output of a single git invocation."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def error_text(self) -> str:
        """stderr when present, stdout otherwise."""
        return (self.stderr.strip() or self.stdout.strip())


class CommandRunResult(BaseModel):
    """Outcome of one command inside a terminal session."""

    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def failure_message(self) -> str:
        text = self.stderr.strip() or self.stdout.strip()
        return text or f"Command exited with code {self.exit_code}"


class ArtifactResult(BaseModel):
    """Result of copying build output into the target directory."""

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    source_path: str
    target_path: str
    files_copied: int = 0
