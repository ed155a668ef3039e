"""Deploy endpoints."""

import asyncio
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Query, status
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from iis_deploy.api.deps import DeployDep, EventsDep, OrchestratorDep, RepositoryDep
from iis_deploy.core.events import TERMINAL_EVENTS, Event
from iis_deploy.core.orchestrator import DeployOrchestrator
from iis_deploy.models.deploy import (
    Command,
    Deploy,
    DeployRequest,
    DeployStatus,
    DeploySummary,
    HistoryEntry,
)
from iis_deploy.utils.logging import get_logger

router = APIRouter()
logger = get_logger("api.deploys")

# Seconds between keepalive events on an idle stream
KEEPALIVE_INTERVAL = 30.0


class DeployListResponse(BaseModel):
    """Response for listing deploys."""

    deploys: list[DeploySummary]
    total: int
    limit: int
    offset: int


async def run_deploy_background(
    orchestrator: DeployOrchestrator, deploy_id: int, request: DeployRequest
) -> None:
    """Background task executing a created deploy."""
    try:
        await orchestrator.execute(deploy_id, request)
    except Exception:
        # The orchestrator has already recorded the deploy as failed
        logger.exception("deploys.background_failed", deploy_id=deploy_id)


@router.post(
    "",
    response_model=Deploy,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a deploy",
    description="Record a deploy and run it in the background. Follow progress on the stream endpoint.",
)
async def create_deploy(
    request: DeployRequest,
    orchestrator: OrchestratorDep,
    background_tasks: BackgroundTasks,
) -> Deploy:
    """Create a deploy and schedule its execution."""
    deploy = await orchestrator.create(request)
    background_tasks.add_task(run_deploy_background, orchestrator, deploy.id, request)
    return deploy


@router.get(
    "",
    response_model=DeployListResponse,
    summary="List deploys",
)
async def list_deploys(
    repository: RepositoryDep,
    status_filter: Annotated[DeployStatus | None, Query(alias="status")] = None,
    site: Annotated[str | None, Query(max_length=200)] = None,
    user_id: Annotated[int | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> DeployListResponse:
    """List deploys, newest first."""
    deploys, total = await repository.list_deploys(
        status=status_filter,
        site_name=site,
        user_id=user_id,
        limit=limit,
        offset=offset,
    )
    return DeployListResponse(
        deploys=[DeploySummary.from_deploy(d) for d in deploys],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/recent",
    response_model=list[DeploySummary],
    summary="Most recent deploys",
)
async def recent_deploys(
    repository: RepositoryDep,
    limit: Annotated[int, Query(ge=1, le=50)] = 10,
) -> list[DeploySummary]:
    deploys = await repository.recent_deploys(limit)
    return [DeploySummary.from_deploy(d) for d in deploys]


@router.get(
    "/{deploy_id}",
    response_model=Deploy,
    summary="Get deploy details",
)
async def get_deploy(deploy: DeployDep) -> Deploy:
    """Get a deploy with its commands and history."""
    return deploy


@router.get(
    "/{deploy_id}/commands",
    response_model=list[Command],
    summary="Get deploy commands",
)
async def get_deploy_commands(deploy: DeployDep) -> list[Command]:
    return deploy.commands


@router.get(
    "/{deploy_id}/history",
    response_model=list[HistoryEntry],
    summary="Get deploy status history",
)
async def get_deploy_history(deploy: DeployDep) -> list[HistoryEntry]:
    return deploy.history


@router.get(
    "/{deploy_id}/stream",
    summary="Stream deploy events (SSE)",
)
async def stream_deploy_events(
    deploy: DeployDep,
    events: EventsDep,
) -> EventSourceResponse:
    """Stream real-time progress of a deploy using Server-Sent Events."""

    async def event_generator():
        queue = events.subscribe(deploy.id)

        try:
            yield {
                "event": "connected",
                "data": Event(
                    event_type="connected",
                    data={"deploy_id": deploy.id, "status": deploy.status.value},
                ).payload(),
            }

            # A finished deploy has no further events
            if deploy.status.is_terminal:
                return

            while True:
                try:
                    event: Event = await asyncio.wait_for(
                        queue.get(), timeout=KEEPALIVE_INTERVAL
                    )
                    yield {"event": event.event_type, "data": event.payload()}

                    if event.event_type in TERMINAL_EVENTS:
                        break

                except asyncio.TimeoutError:
                    yield {"event": "keepalive", "data": "{}"}

        finally:
            events.unsubscribe(deploy.id, queue)

    return EventSourceResponse(event_generator())
