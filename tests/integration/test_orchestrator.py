"""Integration tests for the deploy orchestrator."""

import asyncio
import os
from pathlib import Path

import pytest

from iis_deploy.core.events import EventBus
from iis_deploy.core.orchestrator import DeployOrchestrator, _working_dir_locks
from iis_deploy.core.repository import DeployRepository
from iis_deploy.models.deploy import BuildCommand, CommandStatus, DeployRequest, DeployStatus
from iis_deploy.models.steps import SourceResult

pytestmark = pytest.mark.skipif(os.name == "nt", reason="requires /bin/sh")


def statuses(history) -> list[DeployStatus]:
    return [entry.status for entry in history]


class FailingExecutor:
    """Executor that raises an unexpected error."""

    async def execute_all(self, deploy_id, commands, working_dir) -> bool:
        raise RuntimeError("disk on fire")


class TestDeployRun:
    """End-to-end deploys against a static IIS site."""

    @pytest.mark.asyncio
    async def test_successful_deploy(
        self,
        orchestrator: DeployOrchestrator,
        repository: DeployRepository,
        deploy_request: DeployRequest,
        site_root: Path,
    ):
        result = await orchestrator.run(deploy_request, user_id=4)

        assert result.success, result.message
        assert result.final_status == DeployStatus.SUCCESS
        assert result.target_path == str(site_root / "store")
        assert (site_root / "store" / "index.html").read_text().strip() == "<h1>shop</h1>"
        assert (site_root / "store" / "assets" / "site.css").exists()

        deploy = await repository.get_deploy_complete(result.deploy_id)
        assert deploy.status == DeployStatus.SUCCESS
        assert deploy.user_id == 4
        assert deploy.platform == "main"
        assert deploy.target_path == str(site_root / "store")
        assert statuses(deploy.history) == [
            DeployStatus.STARTED,
            DeployStatus.RUNNING,
            DeployStatus.SUCCESS,
        ]
        assert all(c.status == CommandStatus.SUCCESS for c in deploy.commands)

    @pytest.mark.asyncio
    async def test_working_dir_is_named_after_repository(
        self,
        orchestrator: DeployOrchestrator,
        source_acquirer,
        deploy_request: DeployRequest,
        tmp_path: Path,
    ):
        await orchestrator.run(deploy_request)

        _, branch, working_dir = source_acquirer.calls[0]
        assert branch == "main"
        assert working_dir == (tmp_path / "work" / "shop").resolve()

    @pytest.mark.asyncio
    async def test_failed_command_stops_deploy(
        self,
        orchestrator: DeployOrchestrator,
        repository: DeployRepository,
        deploy_request: DeployRequest,
        site_root: Path,
    ):
        request = deploy_request.model_copy(
            update={
                "build_commands": [
                    BuildCommand(text="echo 'npm ERR! missing script: build' >&2; false", order=1),
                    BuildCommand(text="mkdir -p dist", order=2),
                ]
            }
        )

        result = await orchestrator.run(request)

        assert not result.success
        assert result.final_status == DeployStatus.FAILED
        assert "missing script" in result.message
        assert [c.status for c in result.commands] == [CommandStatus.FAILED, CommandStatus.PENDING]
        assert not (site_root / "store").exists()

        history = await repository.list_history(result.deploy_id)
        assert statuses(history) == [DeployStatus.STARTED, DeployStatus.RUNNING, DeployStatus.FAILED]

    @pytest.mark.asyncio
    async def test_unknown_site_fails_before_running(
        self,
        orchestrator: DeployOrchestrator,
        repository: DeployRepository,
        source_acquirer,
        deploy_request: DeployRequest,
    ):
        request = deploy_request.model_copy(update={"iis_site_name": "Intranet"})

        result = await orchestrator.run(request)

        assert not result.success
        assert "IIS site not found: Intranet" in result.message
        assert source_acquirer.calls == []

        deploy = await repository.get_deploy_complete(result.deploy_id)
        assert statuses(deploy.history) == [DeployStatus.STARTED, DeployStatus.FAILED]
        assert len(deploy.commands) == 3
        assert all(c.status == CommandStatus.PENDING for c in deploy.commands)

    @pytest.mark.asyncio
    async def test_source_failure(
        self,
        orchestrator: DeployOrchestrator,
        repository: DeployRepository,
        source_acquirer,
        deploy_request: DeployRequest,
    ):
        source_acquirer.result = SourceResult(
            success=False,
            message="Repository not found",
            working_dir="/tmp/shop",
            strategy="system",
            clone_attempts=1,
        )

        result = await orchestrator.run(deploy_request)

        assert not result.success
        assert result.message == "Git operation failed: Repository not found"
        assert result.source_strategy == "system"
        history = await repository.list_history(result.deploy_id)
        assert statuses(history) == [DeployStatus.STARTED, DeployStatus.FAILED]

    @pytest.mark.asyncio
    async def test_missing_build_output(
        self,
        orchestrator: DeployOrchestrator,
        repository: DeployRepository,
        deploy_request: DeployRequest,
    ):
        request = deploy_request.model_copy(update={"build_output": "build"})

        result = await orchestrator.run(request)

        assert not result.success
        assert "Build output not found" in result.message
        assert all(c.status == CommandStatus.SUCCESS for c in result.commands)
        deploy = await repository.get_deploy(result.deploy_id)
        assert deploy.status == DeployStatus.FAILED
        assert deploy.target_path is not None

    @pytest.mark.asyncio
    async def test_application_warning_reported(
        self,
        orchestrator: DeployOrchestrator,
        deploy_request: DeployRequest,
        site_root: Path,
    ):
        request = deploy_request.model_copy(update={"iis_site_name": "Shop/blog", "target_path": None})

        result = await orchestrator.run(request)

        assert result.success, result.message
        assert result.target_path == str(site_root / "blog")
        assert len(result.warnings) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_and_raised(
        self,
        orchestrator: DeployOrchestrator,
        repository: DeployRepository,
        event_bus: EventBus,
        deploy_request: DeployRequest,
    ):
        orchestrator.executor = FailingExecutor()
        deploy = await orchestrator.create(deploy_request)
        queue = event_bus.subscribe(deploy.id)

        with pytest.raises(RuntimeError, match="disk on fire"):
            await orchestrator.execute(deploy.id, deploy_request)

        stored = await repository.get_deploy_complete(deploy.id)
        assert stored.status == DeployStatus.FAILED
        assert stored.message == "disk on fire"
        assert stored.history[-1].status == DeployStatus.FAILED

        events = [queue.get_nowait().event_type for _ in range(queue.qsize())]
        assert events[-1] == "error"


class TestDeployEvents:
    """Tests for progress events emitted during a deploy."""

    @pytest.mark.asyncio
    async def test_event_sequence(
        self,
        orchestrator: DeployOrchestrator,
        event_bus: EventBus,
        deploy_request: DeployRequest,
    ):
        deploy = await orchestrator.create(deploy_request)
        queue = event_bus.subscribe(deploy.id)

        await orchestrator.execute(deploy.id, deploy_request)

        events = [queue.get_nowait().event_type for _ in range(queue.qsize())]
        assert events[0] == "status_changed"
        assert events.count("command_started") == 3
        assert events.count("command_completed") == 3
        assert events[-1] == "deploy_completed"


class TestConcurrency:
    """Tests for concurrent deploys and terminal groups."""

    @pytest.mark.asyncio
    async def test_same_repository_is_serialized(
        self,
        orchestrator: DeployOrchestrator,
        source_acquirer,
        deploy_request: DeployRequest,
    ):
        source_acquirer.delay = 0.1

        results = await asyncio.gather(
            orchestrator.run(deploy_request),
            orchestrator.run(deploy_request),
        )

        assert all(r.success for r in results)
        assert len(source_acquirer.calls) == 2
        assert source_acquirer.max_active == 1

    @pytest.mark.asyncio
    async def test_terminal_groups_overlap(
        self,
        orchestrator: DeployOrchestrator,
        deploy_request: DeployRequest,
        site_root: Path,
    ):
        request = deploy_request.model_copy(
            update={
                "build_commands": [
                    BuildCommand(text="while [ ! -f api.ready ]; do sleep 0.05; done", order=1, terminal_id="1"),
                    BuildCommand(text="mkdir -p dist && echo ok > dist/index.html", order=2, terminal_id="1"),
                    BuildCommand(text="touch api.ready", order=1, terminal_id="2"),
                ]
            }
        )

        result = await orchestrator.run(request)

        assert result.success, result.message
        assert (site_root / "store" / "index.html").exists()

    @pytest.mark.asyncio
    async def test_working_dir_locks_released(
        self,
        orchestrator: DeployOrchestrator,
        source_acquirer,
        deploy_request: DeployRequest,
    ):
        source_acquirer.delay = 0.05
        other = deploy_request.model_copy(update={"repo_url": "https://github.com/acme/blog.git"})

        await asyncio.gather(
            orchestrator.run(deploy_request),
            orchestrator.run(deploy_request),
            orchestrator.run(other),
        )

        assert _working_dir_locks == {}

    @pytest.mark.asyncio
    async def test_lock_released_after_unexpected_error(
        self,
        orchestrator: DeployOrchestrator,
        deploy_request: DeployRequest,
    ):
        orchestrator.executor = FailingExecutor()

        with pytest.raises(RuntimeError):
            await orchestrator.run(deploy_request)

        assert _working_dir_locks == {}


class TestCommandTimeouts:
    """Tests for per-command timeouts."""

    @pytest.mark.asyncio
    async def test_command_timeout_overrides_setting(
        self,
        orchestrator: DeployOrchestrator,
        repository: DeployRepository,
        deploy_request: DeployRequest,
    ):
        request = deploy_request.model_copy(
            update={
                "build_commands": [
                    BuildCommand(text="sleep 5", order=1, timeout_seconds=0.3),
                ]
            }
        )

        result = await orchestrator.run(request)

        assert not result.success
        stored = await repository.list_commands(result.deploy_id)
        assert stored[0].timeout_seconds == 0.3
        assert stored[0].status == CommandStatus.ERROR
        assert "timed out" in stored[0].message
