"""Deploy Orchestrator.

Runs one deploy from request to final status:

1. resolve the IIS target path
2. acquire source into the repository's working directory
3. execute the build commands, grouped by terminal
4. copy the build output into the target
5. record the final status
"""

import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path

from iis_deploy.config import Settings, get_settings
from iis_deploy.core.artifacts import ArtifactDeployer
from iis_deploy.core.events import EventBus, get_event_bus
from iis_deploy.core.exceptions import DeployError, DeployNotFoundError
from iis_deploy.core.iis import SiteResolver, get_site_resolver, parse_site_and_application, resolve_target
from iis_deploy.core.repository import DeployRepository, get_deploy_repository
from iis_deploy.core.shell import CommandExecutor
from iis_deploy.core.source import SourceAcquirer, repo_name_from_url
from iis_deploy.models.deploy import (
    Command,
    CommandOutcome,
    CommandStatus,
    Deploy,
    DeployRequest,
    DeployResult,
    DeployStatus,
)
from iis_deploy.utils.logging import get_logger, mask_credentials

# One lock per working directory in use, shared by every orchestrator instance.
# Entries hold the lock and the number of deploys holding or awaiting it.
_working_dir_locks: dict[str, tuple[asyncio.Lock, int]] = {}


@asynccontextmanager
async def _working_dir_lock(working_dir: Path):
    """Serialize deploys of one working directory, dropping the lock once unused."""
    key = os.path.normcase(str(working_dir))
    lock, users = _working_dir_locks.get(key, (asyncio.Lock(), 0))
    _working_dir_locks[key] = (lock, users + 1)
    try:
        async with lock:
            yield lock
    finally:
        lock, users = _working_dir_locks[key]
        if users == 1:
            del _working_dir_locks[key]
        else:
            _working_dir_locks[key] = (lock, users - 1)


class DeployOrchestrator:
    """Coordinates source, commands and artifacts for a deploy."""

    def __init__(
        self,
        repository: DeployRepository | None = None,
        events: EventBus | None = None,
        resolver: SiteResolver | None = None,
        source: SourceAcquirer | None = None,
        executor: CommandExecutor | None = None,
        artifacts: ArtifactDeployer | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository or get_deploy_repository()
        self.events = events or get_event_bus()
        self.resolver = resolver or get_site_resolver(self.settings)
        self.source = source or SourceAcquirer(self.settings)
        self.executor = executor or CommandExecutor(self.repository, self.events, self.settings)
        self.artifacts = artifacts or ArtifactDeployer(self.settings)
        self.logger = get_logger("orchestrator")

    def working_dir_for(self, repo_url: str) -> Path:
        """The reusable working tree of a repository."""
        return Path(self.settings.working_directory).resolve() / repo_name_from_url(repo_url)

    async def create(self, request: DeployRequest, user_id: int | None = None) -> Deploy:
        """Persist a new deploy with its pending commands."""
        site_name, application = parse_site_and_application(
            request.iis_site_name, request.application_path
        )
        deploy = Deploy(
            repo_url=request.repo_url,
            branch=request.branch,
            build_output=request.build_output,
            site_name=site_name,
            application_name=application,
            user_id=request.user_id if user_id is None else user_id,
            platform=request.platform or request.branch,
            message="Deploy started",
        )
        commands = [
            Command(
                text=c.text,
                order=c.order,
                terminal_id=c.terminal_id,
                timeout_seconds=c.timeout_seconds,
            )
            for c in request.build_commands
        ]
        deploy = await self.repository.create_deploy(deploy, commands)
        await self.events.publish_status(deploy.id, deploy.status, deploy.message)

        self.logger.info(
            "orchestrator.deploy.created",
            deploy_id=deploy.id,
            repo_url=mask_credentials(request.repo_url),
            site_name=site_name,
        )
        return deploy

    async def run(self, request: DeployRequest, user_id: int | None = None) -> DeployResult:
        """Create and execute a deploy."""
        deploy = await self.create(request, user_id)
        return await self.execute(deploy.id, request)

    async def execute(self, deploy_id: int, request: DeployRequest) -> DeployResult:
        """Execute a created deploy.

        Expected failures end as a ``failed`` result. Any other exception is
        recorded as ``failed`` and re-raised.

        Raises:
            DeployNotFoundError: If the deploy does not exist
        """
        if await self.repository.get_deploy(deploy_id) is None:
            raise DeployNotFoundError(deploy_id)

        commands = await self.repository.list_commands(deploy_id)
        self.logger.info("orchestrator.deploy.started", deploy_id=deploy_id)

        try:
            try:
                return await self._execute(deploy_id, request, commands)
            except DeployError as e:
                deploy = await self.repository.get_deploy(deploy_id)
                return await self._finish(
                    deploy_id,
                    False,
                    e.message,
                    commands,
                    target_path=deploy.target_path if deploy else None,
                )
        except Exception as e:
            self.logger.error(
                "orchestrator.deploy.failed",
                deploy_id=deploy_id,
                error=str(e),
            )
            deploy = await self.repository.get_deploy(deploy_id)
            if deploy is not None and not deploy.status.is_terminal:
                await self.repository.record_status(deploy_id, DeployStatus.FAILED, str(e))
            await self.events.publish_error(deploy_id, str(e))
            raise

    async def _execute(
        self, deploy_id: int, request: DeployRequest, commands: list[Command]
    ) -> DeployResult:
        target = await resolve_target(
            self.resolver,
            request.iis_site_name,
            request.application_path,
            request.target_path,
        )
        await self.repository.set_target_path(deploy_id, target.final_path)

        working_dir = self.working_dir_for(request.repo_url)
        if os.path.normcase(str(working_dir)) in _working_dir_locks:
            self.logger.info(
                "orchestrator.waiting_for_working_dir",
                deploy_id=deploy_id,
                working_dir=str(working_dir),
            )

        async with _working_dir_lock(working_dir):
            source = await self.source.acquire(request.repo_url, request.branch, working_dir)
            if not source.success:
                return await self._finish(
                    deploy_id,
                    False,
                    f"Git operation failed: {source.message}",
                    commands,
                    target_path=target.final_path,
                    warnings=target.warnings,
                    source_strategy=source.strategy,
                )

            await self._record(deploy_id, DeployStatus.RUNNING, "Executing build commands")

            if not await self.executor.execute_all(deploy_id, commands, working_dir):
                return await self._finish(
                    deploy_id,
                    False,
                    self._command_failure_message(commands),
                    commands,
                    target_path=target.final_path,
                    warnings=target.warnings,
                    source_strategy=source.strategy,
                )

            artifact = await self.artifacts.deploy(
                working_dir, request.build_output, target.final_path
            )

        return await self._finish(
            deploy_id,
            True,
            f"Deploy completed successfully. {artifact.message}",
            commands,
            target_path=target.final_path,
            warnings=target.warnings,
            source_strategy=source.strategy,
        )

    def _command_failure_message(self, commands: list[Command]) -> str:
        for command in commands:
            if command.status in (CommandStatus.FAILED, CommandStatus.ERROR):
                return f"Build command '{command.text}' {command.status.value}: {command.message}"
        return "Build commands did not complete"

    async def _record(self, deploy_id: int, status: DeployStatus, message: str) -> None:
        await self.repository.record_status(deploy_id, status, message)
        await self.events.publish_status(deploy_id, status, message)

    async def _finish(
        self,
        deploy_id: int,
        success: bool,
        message: str,
        commands: list[Command],
        target_path: str | None,
        warnings: list[str] | None = None,
        source_strategy: str | None = None,
    ) -> DeployResult:
        status = DeployStatus.SUCCESS if success else DeployStatus.FAILED
        await self._record(deploy_id, status, message)

        result = DeployResult(
            success=success,
            message=message,
            deploy_id=deploy_id,
            final_status=status,
            target_path=target_path,
            source_strategy=source_strategy,
            warnings=list(warnings or []),
            commands=[
                CommandOutcome(
                    order=c.order,
                    terminal_id=c.terminal_id,
                    text=c.text,
                    status=c.status,
                    message=c.message,
                )
                for c in commands
            ],
        )
        await self.events.publish_deploy_completed(deploy_id, result)

        log = self.logger.info if success else self.logger.warning
        log(
            "orchestrator.deploy.finished",
            deploy_id=deploy_id,
            status=status.value,
            message=message,
        )
        return result


def get_orchestrator() -> DeployOrchestrator:
    """Get a deploy orchestrator instance."""
    return DeployOrchestrator()
