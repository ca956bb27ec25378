"""Hand freshly materialized tasks to the execution fleet via Redis Streams."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, cast

from .config import settings
from .models import Task, Workspace
from .redis_client import get_redis_client

STREAM_DISPATCH = "stream:tasks:dispatch"

logger = logging.getLogger(__name__)


class QueueFullError(RuntimeError):
    """Raised when the dispatch stream reaches capacity."""


class TaskDispatcher(Protocol):
    async def __call__(self, task: Task, workspace: Workspace) -> Any: ...


@dataclass(frozen=True)
class DispatchPayload:
    task_id: str
    workspace_id: str
    title: str
    priority: int
    runner_preference: str
    schema_version: str = "1.0"

    def to_dict(self) -> dict[str, str]:
        return {
            "schema_version": self.schema_version,
            "task_id": self.task_id,
            "workspace_id": self.workspace_id,
            "title": self.title,
            "priority": str(self.priority),
            "runner_preference": self.runner_preference,
        }


async def _ensure_capacity(stream: str) -> None:
    redis = get_redis_client()
    length = await redis.xlen(stream)
    if length >= settings.redis_dispatch_max_depth:
        raise QueueFullError(f"Stream {stream} at capacity ({length})")


async def dispatch_new_task(task: Task, workspace: Workspace) -> str | None:
    """Announce a new pending task to runners listening on the dispatch stream."""
    if not settings.redis_dispatch_enabled:
        logger.debug("Dispatch disabled; task %s waits for a claim", task.id)
        return None

    await _ensure_capacity(STREAM_DISPATCH)
    payload = DispatchPayload(
        task_id=task.id,
        workspace_id=workspace.id,
        title=task.title,
        priority=task.priority,
        runner_preference=task.runner_preference,
    )
    redis = get_redis_client()
    msg_id = await redis.xadd(STREAM_DISPATCH, cast(dict[Any, Any], payload.to_dict()))
    logger.info("Dispatched task %s to %s (%s)", task.id, STREAM_DISPATCH, msg_id)
    return msg_id
