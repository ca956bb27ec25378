"""Announce tasks released by a finished blocker."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from . import db
from .dispatch import QueueFullError, TaskDispatcher, dispatch_new_task
from .events import emit_task_unblocked
from .models import Task

logger = logging.getLogger(__name__)


async def announce_unblocked(tasks: Sequence[Task], *, dispatcher: TaskDispatcher | None = None) -> None:
    """Dispatch and broadcast tasks that just became pending.

    Runs after the transaction that released them has committed. A full
    dispatch stream leaves the task pending for the next claim.
    """
    if not tasks:
        return

    async with db.get_session() as session:
        workspaces = await db.get_workspaces_by_ids(session, {t.workspace_id for t in tasks})

    send = dispatcher or dispatch_new_task
    for task in tasks:
        workspace = workspaces.get(task.workspace_id)
        if workspace is not None:
            try:
                await send(task, workspace)
            except QueueFullError as exc:
                logger.warning("Unblocked task %s not dispatched: %s", task.id, exc)
        await emit_task_unblocked(task)
        logger.info("Task %s unblocked", task.id)
