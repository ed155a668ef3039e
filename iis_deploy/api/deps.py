"""Dependency injection for API endpoints."""

from typing import Annotated

from fastapi import Depends, HTTPException, status

from iis_deploy.core.events import EventBus, get_event_bus
from iis_deploy.core.orchestrator import DeployOrchestrator
from iis_deploy.core.orchestrator import get_orchestrator as build_orchestrator
from iis_deploy.core.repository import DeployRepository, get_deploy_repository
from iis_deploy.models.deploy import Deploy


async def get_repository() -> DeployRepository:
    """Get the deploy repository."""
    return get_deploy_repository()


async def get_events() -> EventBus:
    """Get the event bus."""
    return get_event_bus()


async def get_orchestrator() -> DeployOrchestrator:
    """Get a deploy orchestrator."""
    return build_orchestrator()


async def get_deploy_by_id(
    deploy_id: int,
    repository: Annotated[DeployRepository, Depends(get_repository)],
) -> Deploy:
    """Get a deploy with its commands and history or raise 404."""
    deploy = await repository.get_deploy_complete(deploy_id)
    if not deploy:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deploy not found: {deploy_id}",
        )
    return deploy


# Type aliases for cleaner signatures
RepositoryDep = Annotated[DeployRepository, Depends(get_repository)]
EventsDep = Annotated[EventBus, Depends(get_events)]
OrchestratorDep = Annotated[DeployOrchestrator, Depends(get_orchestrator)]
DeployDep = Annotated[Deploy, Depends(get_deploy_by_id)]
