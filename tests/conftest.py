"""Pytest configuration and fixtures."""

import asyncio
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from iis_deploy.api.deps import get_events, get_orchestrator, get_repository
from iis_deploy.config import Settings
from iis_deploy.core.events import EventBus
from iis_deploy.core.iis import StaticSiteResolver
from iis_deploy.core.orchestrator import DeployOrchestrator
from iis_deploy.core.repository import DeployRepository
from iis_deploy.main import app
from iis_deploy.models.deploy import BuildCommand, DeployRequest
from iis_deploy.models.steps import SourceResult


class StubSourceAcquirer:
    """Source acquirer that only creates the working directory."""

    def __init__(self, result: SourceResult | None = None, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.calls: list[tuple[str, str, Path]] = []
        self.active = 0
        self.max_active = 0

    async def acquire(self, repo_url: str, branch: str, working_dir) -> SourceResult:
        self.calls.append((repo_url, branch, Path(working_dir)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.result is not None:
                return self.result
            Path(working_dir).mkdir(parents=True, exist_ok=True)
            return SourceResult(
                success=True,
                message=f"Cloned {branch}",
                working_dir=str(working_dir),
                strategy="system",
                clone_attempts=1,
            )
        finally:
            self.active -= 1


@pytest.fixture
def site_root(tmp_path: Path) -> Path:
    """Physical root of the test IIS site."""
    root = tmp_path / "sites" / "shop"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def test_settings(tmp_path: Path, site_root: Path) -> Settings:
    """Settings pointing every path into the test's temporary directory."""
    return Settings(
        database_path=str(tmp_path / "deploys.db"),
        working_directory=str(tmp_path / "work"),
        git_username="",
        git_token="",
        command_timeout_seconds=10,
        sentinel_poll_interval=0.02,
        shell_exit_grace_seconds=2,
        shell_executable=None,
        extra_path_entries=[],
        copy_settle_delay_seconds=0,
        iis_resolver="static",
        iis_sites={"Shop": str(site_root)},
    )


@pytest.fixture
def repository(test_settings: Settings) -> DeployRepository:
    """Create a fresh repository backed by a temporary database."""
    return DeployRepository(test_settings.database_path)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def source_acquirer() -> StubSourceAcquirer:
    return StubSourceAcquirer()


@pytest.fixture
def orchestrator(
    repository: DeployRepository,
    event_bus: EventBus,
    source_acquirer: StubSourceAcquirer,
    test_settings: Settings,
) -> DeployOrchestrator:
    """Orchestrator wired to the temporary repository and a static IIS resolver."""
    return DeployOrchestrator(
        repository=repository,
        events=event_bus,
        resolver=StaticSiteResolver(test_settings.iis_sites),
        source=source_acquirer,
        settings=test_settings,
    )


@pytest.fixture
def deploy_request() -> DeployRequest:
    """A deploy that builds a small static site into ``dist``."""
    return DeployRequest(
        repo_url="https://github.com/acme/shop.git",
        branch="main",
        build_commands=[
            BuildCommand(text="mkdir -p dist/assets", order=1),
            BuildCommand(text="echo '<h1>shop</h1>' > dist/index.html", order=2),
            BuildCommand(text="echo 'body {}' > dist/assets/site.css", order=3),
        ],
        build_output="dist",
        iis_site_name="Shop",
        target_path="store",
    )


@pytest.fixture
async def client(
    repository: DeployRepository,
    event_bus: EventBus,
    orchestrator: DeployOrchestrator,
) -> AsyncClient:
    """Create an async test client bound to the test repository."""
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_events] = lambda: event_bus
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
