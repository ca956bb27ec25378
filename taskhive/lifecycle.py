"""Worker state machine and the capped history lists kept on each worker."""

from __future__ import annotations

from typing import Any

from .config import settings
from .errors import InvalidTransitionError
from .models import Worker, WorkerStatus, utc_now

S = WorkerStatus

TRANSITIONS: dict[WorkerStatus, frozenset[WorkerStatus]] = {
    S.IDLE: frozenset({S.STARTING}),
    S.STARTING: frozenset({S.RUNNING, S.ERROR}),
    S.RUNNING: frozenset({S.WAITING_INPUT, S.AWAITING_PLAN_APPROVAL, S.PAUSED, S.DONE, S.ERROR}),
    S.WAITING_INPUT: frozenset({S.RUNNING, S.ERROR}),
    S.AWAITING_PLAN_APPROVAL: frozenset({S.RUNNING, S.ERROR}),
    S.PAUSED: frozenset({S.RUNNING, S.ERROR}),
    # Finished workers accept follow-ups.
    S.DONE: frozenset({S.RUNNING}),
    S.ERROR: frozenset({S.RUNNING}),
}

FINISHED_STATUSES = frozenset({S.DONE, S.ERROR})
AWAITING_STATUSES = frozenset({S.WAITING_INPUT, S.AWAITING_PLAN_APPROVAL})


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return WorkerStatus(target) in TRANSITIONS.get(WorkerStatus(current), frozenset())


def transition(worker: Worker, status: WorkerStatus | str, *, force: bool = False) -> Worker:
    """Move ``worker`` to ``status``.

    ``force`` bypasses the table; stale reaping uses it to push starting or
    waiting workers straight to error.
    """
    target = WorkerStatus(status)
    if not force and not can_transition(worker.status, target):
        raise InvalidTransitionError(
            f"Cannot move worker from {worker.status} to {target.value}",
            worker_id=worker.id,
            current=worker.status,
            target=target.value,
        )
    worker.status = target.value
    if target in FINISHED_STATUSES:
        worker.completed_at = utc_now()
    worker.updated_at = utc_now()
    return worker


def _capped(items: list[dict[str, Any]] | None, entry: dict[str, Any], limit: int) -> list[dict[str, Any]]:
    # JSON columns only see reassignment, never in-place mutation.
    updated = [*(items or []), entry]
    return updated[-limit:]


def add_milestone(worker: Worker, label: str, *, type: str = "status", **extra: Any) -> dict[str, Any]:
    milestone = {"type": type, "label": label, "timestamp": utc_now().isoformat(), **extra}
    worker.milestones = _capped(worker.milestones, milestone, settings.milestone_limit)
    return milestone


def add_message(worker: Worker, role: str, content: str) -> dict[str, Any]:
    message = {"role": role, "content": content, "timestamp": utc_now().isoformat()}
    worker.messages = _capped(worker.messages, message, settings.transcript_limit)
    return message


def add_tool_call(worker: Worker, name: str, input: dict[str, Any] | None = None) -> dict[str, Any]:
    call = {"name": name, "input": dict(input or {}), "timestamp": utc_now().isoformat()}
    worker.tool_calls = _capped(worker.tool_calls, call, settings.transcript_limit)
    return call


FOLLOW_UP_LABEL_CHARS = 30


def follow_up_label(text: str) -> str:
    """Milestone label recorded when a user message arrives."""
    return f"User: {text[:FOLLOW_UP_LABEL_CHARS]}..."
