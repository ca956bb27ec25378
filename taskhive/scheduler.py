"""
Schedule tick: turn due cron schedules into pending tasks.

A tick may overlap with another tick. Every schedule run is claimed with a
conditional update on ``next_run_at``; the loser counts the schedule as
skipped and creates nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from . import db
from .config import settings
from .cron import compute_next_run_at
from .dispatch import TaskDispatcher, dispatch_new_task
from .events import emit_schedule_triggered
from .models import RunnerPreference, TaskSchedule, utc_now
from .triggers import TriggerResult, TriggerSpec, evaluate_trigger

logger = logging.getLogger(__name__)

TRIGGER_PLACEHOLDER = "{{triggerValue}}"


class TaskTemplate(BaseModel):
    """Blueprint stored on a schedule for the tasks it materializes."""

    title: str
    description: str | None = None
    priority: int = 0
    mode: str = "execution"
    runner_preference: str = RunnerPreference.ANY.value
    required_capabilities: list[str] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    trigger: TriggerSpec | None = None


@dataclass
class TickResult:
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    trigger_checks: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "trigger_checks": self.trigger_checks,
        }


class ScheduleOutcome(StrEnum):
    CREATED = "created"
    SKIPPED = "skipped"


def trigger_external_id(schedule_id: str, trigger_value: str) -> str:
    return f"schedule-{schedule_id}-{trigger_value}"


def build_task_context(
    schedule: TaskSchedule, template: TaskTemplate, trigger_result: TriggerResult | None
) -> dict[str, Any]:
    context: dict[str, Any] = {
        **template.context,
        "scheduleId": schedule.id,
        "scheduleName": schedule.name,
    }
    if trigger_result is not None:
        context["triggerValue"] = trigger_result.current_value
        context["previousTriggerValue"] = schedule.last_trigger_value
        if trigger_result.metadata:
            context["triggerMetadata"] = dict(trigger_result.metadata)
    return context


def _interpolate(text: str | None, trigger_result: TriggerResult | None) -> str | None:
    if text is None or trigger_result is None:
        return text
    return text.replace(TRIGGER_PLACEHOLDER, trigger_result.current_value)


async def run_schedule_tick(
    now: datetime | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    dispatcher: TaskDispatcher | None = None,
) -> TickResult:
    """Process every due schedule once. Never raises for a single schedule's failure."""
    now = now or utc_now()
    result = TickResult()

    async with db.get_session() as session:
        due = await db.get_due_schedules(session, now, settings.max_schedules_per_tick)

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient()
    try:
        for schedule in due:
            result.processed += 1
            try:
                outcome = await process_schedule(
                    schedule, now, result=result, http_client=client, dispatcher=dispatcher
                )
            except Exception as exc:
                result.errors += 1
                logger.exception("Schedule %s failed", schedule.id)
                await _record_failure(schedule, exc, now)
                continue

            if outcome == ScheduleOutcome.CREATED:
                result.created += 1
            else:
                result.skipped += 1
    finally:
        if owns_client:
            await client.aclose()

    if result.processed:
        logger.info(
            "Schedule tick: %d processed, %d created, %d skipped, %d errors",
            result.processed,
            result.created,
            result.skipped,
            result.errors,
        )
    return result


async def process_schedule(
    schedule: TaskSchedule,
    now: datetime,
    *,
    result: TickResult | None = None,
    http_client: httpx.AsyncClient | None = None,
    dispatcher: TaskDispatcher | None = None,
) -> ScheduleOutcome:
    """Run one due schedule from the snapshot read at the top of the tick."""
    template = TaskTemplate.model_validate(schedule.task_template or {})
    observed_next_run_at = schedule.next_run_at
    next_run_at = _next_run(schedule, now)
    if next_run_at is None:
        raise ValueError(f"Cannot compute next run for cron {schedule.cron_expression!r} ({schedule.timezone})")

    trigger_result: TriggerResult | None = None
    if template.trigger is not None:
        if result is not None:
            result.trigger_checks += 1
        evaluated = await evaluate_trigger(template.trigger, schedule.last_trigger_value, client=http_client)
        fired = evaluated is not None and evaluated.changed
        async with db.get_session() as session:
            await db.record_trigger_check(
                session,
                schedule.id,
                now=now,
                trigger_value=evaluated.current_value if evaluated else None,
                next_run_at=None if fired else next_run_at,
            )
        if not fired:
            logger.debug("Schedule %s trigger unchanged", schedule.id)
            return ScheduleOutcome.SKIPPED
        trigger_result = evaluated

    if schedule.max_concurrent_from_schedule > 0:
        async with db.get_session() as session:
            active = await db.count_active_schedule_tasks(session, schedule.workspace_id, schedule.id)
            if active >= schedule.max_concurrent_from_schedule:
                await db.advance_schedule(session, schedule.id, next_run_at=next_run_at, now=now)
                logger.debug("Schedule %s at concurrency limit (%d active)", schedule.id, active)
                return ScheduleOutcome.SKIPPED

    async with db.get_session() as session:
        won = await db.claim_schedule_run(
            session,
            schedule.id,
            observed_next_run_at=observed_next_run_at,
            next_run_at=next_run_at,
            now=now,
        )
    if not won:
        logger.debug("Schedule %s already claimed by a concurrent tick", schedule.id)
        return ScheduleOutcome.SKIPPED

    external_id = trigger_external_id(schedule.id, trigger_result.current_value) if trigger_result else None

    async with db.get_session() as session:
        if external_id:
            existing = await db.get_active_task_by_external_id(session, schedule.workspace_id, external_id)
            if existing is not None:
                logger.debug("Schedule %s: task %s already active for this trigger value", schedule.id, existing.id)
                return ScheduleOutcome.SKIPPED

        task = await db.create_task(
            session,
            schedule.workspace_id,
            _interpolate(template.title, trigger_result) or template.title,
            description=_interpolate(template.description, trigger_result),
            priority=template.priority,
            mode=template.mode,
            runner_preference=template.runner_preference,
            required_capabilities=template.required_capabilities,
            context=build_task_context(schedule, template, trigger_result),
            external_id=external_id,
            creation_source="schedule",
        )
        await db.set_schedule_last_task(session, schedule.id, task.id)
        workspace = await db.get_workspace_by_id(session, schedule.workspace_id)

    if workspace is not None:
        await (dispatcher or dispatch_new_task)(task, workspace)
    await emit_schedule_triggered(schedule, task)
    logger.info("Schedule %s created task %s", schedule.id, task.id)
    return ScheduleOutcome.CREATED


def _next_run(schedule: TaskSchedule, now: datetime) -> datetime | None:
    return compute_next_run_at(schedule.cron_expression, schedule.timezone, now=now)


async def _record_failure(schedule: TaskSchedule, exc: Exception, now: datetime) -> None:
    async with db.get_session() as session:
        paused = await db.record_schedule_failure(
            session,
            schedule,
            error_message=str(exc) or type(exc).__name__,
            next_run_at=_next_run(schedule, now),
            now=now,
        )
    if paused:
        logger.warning(
            "Schedule %s disabled after %d consecutive failures",
            schedule.id,
            schedule.consecutive_failures + 1,
        )
