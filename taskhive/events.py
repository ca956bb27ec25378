"""
Fire-and-forget notification events keyed by workspace, worker and task.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TASK_CLAIMED = "task.claimed"
    TASK_UNBLOCKED = "task.unblocked"
    SCHEDULE_TRIGGERED = "schedule.triggered"
    WORKER_UPDATE = "worker.update"
    WORKER_MILESTONE = "worker.milestone"


def workspace_channel(workspace_id: str) -> str:
    return f"channel:workspace:{workspace_id}"


def worker_channel(worker_id: str) -> str:
    return f"channel:worker:{worker_id}"


@dataclass
class HiveEvent:
    """Standardized notification payload."""

    type: EventType
    workspace_id: str | None = None
    worker_id: str | None = None
    task_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def channels(self) -> list[str]:
        channels: list[str] = []
        if self.workspace_id:
            channels.append(workspace_channel(self.workspace_id))
        if self.worker_id:
            channels.append(worker_channel(self.worker_id))
        return channels

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "workspace_id": self.workspace_id,
            "worker_id": self.worker_id,
            "task_id": self.task_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[HiveEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers; a failing handler never propagates."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: HiveEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Event handler failed for %s", event.type.value, exc_info=True)


event_bus = EventEmitter()


async def emit_task_claimed(task: Any, worker: Any, account_name: str) -> HiveEvent:
    event = HiveEvent(
        type=EventType.TASK_CLAIMED,
        workspace_id=task.workspace_id,
        worker_id=worker.id,
        task_id=task.id,
        data={
            "task": {"id": task.id, "title": task.title, "status": "assigned"},
            "worker": {"id": worker.id, "name": account_name, "status": "idle"},
        },
    )
    await event_bus.emit(event)
    return event


async def emit_task_unblocked(task: Any) -> HiveEvent:
    event = HiveEvent(
        type=EventType.TASK_UNBLOCKED,
        workspace_id=task.workspace_id,
        task_id=task.id,
        data={"task": {"id": task.id, "title": task.title, "status": "pending"}},
    )
    await event_bus.emit(event)
    return event


async def emit_schedule_triggered(schedule: Any, task: Any) -> HiveEvent:
    event = HiveEvent(
        type=EventType.SCHEDULE_TRIGGERED,
        workspace_id=schedule.workspace_id,
        task_id=task.id,
        data={
            "schedule": {"id": schedule.id, "name": schedule.name},
            "task": task.to_dict(),
        },
    )
    await event_bus.emit(event)
    return event


async def emit_worker_update(worker: Any, **extra: Any) -> HiveEvent:
    event = HiveEvent(
        type=EventType.WORKER_UPDATE,
        workspace_id=worker.workspace_id,
        worker_id=worker.id,
        task_id=worker.task_id,
        data={
            "status": worker.status,
            "current_action": worker.current_action,
            "error": worker.error,
            **extra,
        },
    )
    await event_bus.emit(event)
    return event


async def emit_worker_milestone(worker: Any, milestone: dict[str, Any]) -> HiveEvent:
    event = HiveEvent(
        type=EventType.WORKER_MILESTONE,
        workspace_id=worker.workspace_id,
        worker_id=worker.id,
        task_id=worker.task_id,
        data={"milestone": milestone},
    )
    await event_bus.emit(event)
    return event


async def publish_event_handler(event: HiveEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not settings.redis_events_enabled or not event.channels:
        return

    try:
        from .redis_client import get_redis_client

        redis = get_redis_client()
        payload = json.dumps(event.to_dict())
        for channel in event.channels:
            await redis.publish(channel, payload)
    except Exception as exc:
        logger.warning("Redis publish failed: %s", exc)


event_bus.on_event(publish_event_handler)
