"""Event system for deploy progress streamed over Server-Sent Events (SSE)."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from iis_deploy.models.deploy import Command, DeployResult, DeployStatus

# Events after which a deploy stream has nothing more to say
TERMINAL_EVENTS = ("deploy_completed", "error")


@dataclass
class Event:
    """An SSE event."""

    event_type: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_sse(self) -> str:
        """Convert to SSE format."""
        return f"event: {self.event_type}\ndata: {self.payload()}\n\n"

    def payload(self) -> str:
        return json.dumps({**self.data, "timestamp": self.timestamp.isoformat()})


class EventBus:
    """Fan-out of deploy events to stream subscribers."""

    def __init__(self):
        self._subscribers: dict[int, list[asyncio.Queue[Event]]] = {}

    def subscribe(self, deploy_id: int) -> asyncio.Queue[Event]:
        """Subscribe to events for a deploy."""
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._subscribers.setdefault(deploy_id, []).append(queue)
        return queue

    def unsubscribe(self, deploy_id: int, queue: asyncio.Queue[Event] | None = None) -> None:
        """Unsubscribe one queue, or every queue of a deploy."""
        if queue is None:
            self._subscribers.pop(deploy_id, None)
            return

        queues = self._subscribers.get(deploy_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(deploy_id, None)

    def subscriber_count(self, deploy_id: int) -> int:
        return len(self._subscribers.get(deploy_id, []))

    async def publish(self, deploy_id: int, event: Event) -> None:
        """Publish an event for a deploy."""
        for queue in list(self._subscribers.get(deploy_id, [])):
            await queue.put(event)

    async def publish_status(
        self, deploy_id: int, status: DeployStatus, message: str | None = None
    ) -> None:
        """Publish a deploy status change."""
        await self.publish(
            deploy_id,
            Event(
                event_type="status_changed",
                data={"status": status.value, "message": message},
            ),
        )

    async def publish_command_started(self, deploy_id: int, command: Command) -> None:
        await self.publish(
            deploy_id,
            Event(
                event_type="command_started",
                data={
                    "command_id": command.id,
                    "terminal_id": command.terminal_id,
                    "order": command.order,
                    "text": command.text,
                },
            ),
        )

    async def publish_command_completed(self, deploy_id: int, command: Command) -> None:
        await self.publish(
            deploy_id,
            Event(
                event_type="command_completed",
                data={
                    "command_id": command.id,
                    "terminal_id": command.terminal_id,
                    "order": command.order,
                    "status": command.status.value,
                    "message": command.message,
                },
            ),
        )

    async def publish_deploy_completed(self, deploy_id: int, result: DeployResult) -> None:
        """Publish the final outcome of a deploy."""
        await self.publish(
            deploy_id,
            Event(
                event_type="deploy_completed",
                data={
                    "success": result.success,
                    "status": result.final_status.value,
                    "message": result.message,
                    "target_path": result.target_path,
                },
            ),
        )

    async def publish_error(self, deploy_id: int, error: str, step: str | None = None) -> None:
        """Publish an unexpected error."""
        await self.publish(
            deploy_id,
            Event(
                event_type="error",
                data={"error": error, "step": step},
            ),
        )


# Singleton instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the event bus singleton."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
