"""Async database connection and operations for taskhive.

Every transition that must not double-apply (task claim, schedule tick claim)
is a conditional ``UPDATE ... WHERE column = observed`` whose rowcount tells
the caller whether it won. Counters shared between concurrent callers are
incremented in SQL, never read-modify-written in Python.
"""

from __future__ import annotations

import hashlib
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import (
    NotFoundError,
    SchemaNotInitializedError,
    ValidationFailedError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    ACTIVE_TASK_STATUSES,
    LIVE_WORKER_STATUSES,
    TERMINAL_TASK_STATUSES,
    AccessMode,
    Account,
    AccountType,
    AccountWorkspace,
    Base,
    RunnerPreference,
    Task,
    TaskSchedule,
    TaskStatus,
    Worker,
    WorkerStatus,
    Workspace,
    utc_now,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def configure_engine(url: str | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """(Re)create the async engine and session factory."""
    global _engine, _session_factory
    database_url = url or settings.async_database_url
    if not database_url.startswith("sqlite"):
        engine_kwargs.setdefault("pool_pre_ping", True)
    _engine = create_async_engine(database_url, echo=False, **engine_kwargs)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return configure_engine()
    return _engine


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    if _session_factory is None:
        configure_engine()
    assert _session_factory is not None
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise


# =============================================================================
# Account Operations
# =============================================================================


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


async def create_account(
    session: AsyncSession,
    name: str,
    *,
    type: str = AccountType.USER.value,
    auth_type: str = "api",
    api_key: str | None = None,
    max_concurrent_workers: int = 3,
    max_cost_per_day: Any = None,
    max_concurrent_sessions: int | None = None,
) -> Account:
    account = Account(
        name=name,
        type=type,
        auth_type=auth_type,
        api_key_hash=hash_api_key(api_key) if api_key else None,
        max_concurrent_workers=max_concurrent_workers,
        max_cost_per_day=max_cost_per_day,
        max_concurrent_sessions=max_concurrent_sessions,
    )
    session.add(account)
    await session.flush()
    return account


async def authenticate_api_key(session: AsyncSession, api_key: str | None) -> Account | None:
    """Resolve an API key to its account, or None."""
    if not api_key:
        return None
    result = await session.execute(select(Account).where(Account.api_key_hash == hash_api_key(api_key)))
    return result.scalar_one_or_none()


async def get_account_by_id(session: AsyncSession, account_id: str) -> Account | None:
    result = await session.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def increment_active_sessions(session: AsyncSession, account_id: str, count: int) -> None:
    """Atomically add ``count`` to the account's active session counter."""
    await session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(active_sessions=Account.active_sessions + count)
    )


async def release_active_session(session: AsyncSession, account_id: str) -> bool:
    """Atomically give back one session slot, never going below zero."""
    result = await session.execute(
        update(Account)
        .where(Account.id == account_id, Account.active_sessions > 0)
        .values(active_sessions=Account.active_sessions - 1)
    )
    return result.rowcount == 1


# =============================================================================
# Workspace Operations
# =============================================================================


async def create_workspace(
    session: AsyncSession,
    name: str,
    *,
    access_mode: str = AccessMode.OPEN.value,
    git_config: dict[str, Any] | None = None,
) -> Workspace:
    workspace = Workspace(name=name, access_mode=access_mode, git_config=git_config)
    session.add(workspace)
    await session.flush()
    return workspace


async def get_workspace_by_id(session: AsyncSession, workspace_id: str) -> Workspace | None:
    result = await session.execute(select(Workspace).where(Workspace.id == workspace_id))
    return result.scalar_one_or_none()


async def get_workspaces_by_ids(session: AsyncSession, workspace_ids: Sequence[str]) -> dict[str, Workspace]:
    if not workspace_ids:
        return {}
    result = await session.execute(select(Workspace).where(Workspace.id.in_(list(workspace_ids))))
    return {ws.id: ws for ws in result.scalars().all()}


async def grant_workspace_access(
    session: AsyncSession, account_id: str, workspace_id: str, *, can_claim: bool = True
) -> AccountWorkspace:
    grant = AccountWorkspace(account_id=account_id, workspace_id=workspace_id, can_claim=can_claim)
    session.add(grant)
    await session.flush()
    return grant


async def get_claimable_workspace_ids(
    session: AsyncSession, account_id: str, workspace_id: str | None = None
) -> list[str]:
    """Open workspaces plus restricted workspaces this account may claim from."""
    open_query = select(Workspace.id).where(Workspace.access_mode == AccessMode.OPEN.value)
    if workspace_id:
        open_query = open_query.where(Workspace.id == workspace_id)
    open_ids = list((await session.execute(open_query)).scalars().all())

    restricted_query = (
        select(AccountWorkspace.workspace_id)
        .join(Workspace, Workspace.id == AccountWorkspace.workspace_id)
        .where(
            AccountWorkspace.account_id == account_id,
            AccountWorkspace.can_claim.is_(True),
            Workspace.access_mode == AccessMode.RESTRICTED.value,
        )
    )
    if workspace_id:
        restricted_query = restricted_query.where(AccountWorkspace.workspace_id == workspace_id)
    restricted_ids = list((await session.execute(restricted_query)).scalars().all())

    return list(dict.fromkeys([*open_ids, *restricted_ids]))


# =============================================================================
# Task Operations
# =============================================================================


async def get_task_by_id(session: AsyncSession, task_id: str) -> Task | None:
    """Get a task by its ID."""
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def get_active_task_by_external_id(
    session: AsyncSession, workspace_id: str, external_id: str
) -> Task | None:
    result = await session.execute(
        select(Task).where(
            Task.workspace_id == workspace_id,
            Task.external_id == external_id,
            Task.status.in_([s.value for s in ACTIVE_TASK_STATUSES]),
        )
    )
    return result.scalars().first()


async def create_task(
    session: AsyncSession,
    workspace_id: str,
    title: str,
    *,
    description: str | None = None,
    priority: int = 0,
    mode: str = "execution",
    runner_preference: str = RunnerPreference.ANY.value,
    required_capabilities: list[str] | None = None,
    context: dict[str, Any] | None = None,
    external_id: str | None = None,
    creation_source: str = "api",
    status: str = TaskStatus.PENDING.value,
    blocked_by_task_ids: Sequence[str] | None = None,
) -> Task:
    """Create a new task. An active task with the same external id is returned as-is.

    Blockers that have already finished are dropped; if any remain the task
    starts out ``blocked`` and cannot be claimed until they finish.
    """
    if not title:
        raise ValidationFailedError("title is required")
    if runner_preference not in {p.value for p in RunnerPreference}:
        raise ValidationFailedError(f"Unknown runner preference: {runner_preference}")

    if external_id:
        existing = await get_active_task_by_external_id(session, workspace_id, external_id)
        if existing is not None:
            return existing

    blockers = await _open_blockers(session, workspace_id, blocked_by_task_ids or [])
    if blockers:
        status = TaskStatus.BLOCKED.value

    task = Task(
        workspace_id=workspace_id,
        title=title,
        description=description,
        priority=priority,
        mode=mode,
        runner_preference=runner_preference,
        required_capabilities=list(required_capabilities or []),
        context=dict(context or {}),
        external_id=external_id,
        blocked_by_task_ids=blockers,
        creation_source=creation_source,
        status=status,
    )
    session.add(task)
    await session.flush()
    return task


async def _open_blockers(session: AsyncSession, workspace_id: str, task_ids: Sequence[str]) -> list[str]:
    wanted = list(dict.fromkeys(task_ids))
    if not wanted:
        return []
    result = await session.execute(
        select(Task.id, Task.status).where(Task.workspace_id == workspace_id, Task.id.in_(wanted))
    )
    statuses = dict(result.tuples().all())
    missing = [task_id for task_id in wanted if task_id not in statuses]
    if missing:
        raise ValidationFailedError(f"Unknown blocker task(s): {', '.join(missing)}", task_ids=missing)
    finished = {s.value for s in TERMINAL_TASK_STATUSES}
    return [task_id for task_id in wanted if statuses[task_id] not in finished]


async def resolve_completed_task(session: AsyncSession, task_id: str, workspace_id: str) -> list[Task]:
    """Remove a finished task from its dependents' blocker lists.

    Each dependent is rewritten by an UPDATE guarded on the blocker list it
    was read with, so two blockers finishing at once cannot drop each other's
    removal; the loser re-reads and tries again. Dependents left without
    blockers move to ``pending``. Returns those newly pending tasks.
    """
    result = await session.execute(
        select(Task).where(Task.workspace_id == workspace_id, Task.status == TaskStatus.BLOCKED.value)
    )
    dependents = [t for t in result.scalars().all() if task_id in (t.blocked_by_task_ids or [])]

    unblocked: list[Task] = []
    for dependent in dependents:
        observed = list(dependent.blocked_by_task_ids or [])
        while task_id in observed:
            remaining = [blocker for blocker in observed if blocker != task_id]
            status = TaskStatus.BLOCKED.value if remaining else TaskStatus.PENDING.value
            update_result = await session.execute(
                update(Task)
                .where(
                    Task.id == dependent.id,
                    Task.status == TaskStatus.BLOCKED.value,
                    Task.blocked_by_task_ids == observed,
                )
                .values(blocked_by_task_ids=remaining, status=status, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            await session.refresh(dependent)
            if update_result.rowcount == 1:
                if status == TaskStatus.PENDING.value:
                    unblocked.append(dependent)
                break
            if dependent.status != TaskStatus.BLOCKED.value:
                break
            observed = list(dependent.blocked_by_task_ids or [])
    return unblocked


async def find_claimable_tasks(
    session: AsyncSession,
    workspace_ids: Sequence[str],
    *,
    now: datetime,
    limit: int,
    account_type: str,
    task_id: str | None = None,
) -> list[Task]:
    """Pending tasks that are unclaimed or whose claim lease has lapsed.

    Ordered by priority (high first) then age (oldest first).
    """
    conditions = [
        Task.workspace_id.in_(list(workspace_ids)),
        Task.status == TaskStatus.PENDING.value,
        or_(Task.claimed_by.is_(None), Task.expires_at < now),
    ]
    if task_id:
        conditions.append(Task.id == task_id)
    if account_type != AccountType.USER.value:
        conditions.append(
            or_(
                Task.runner_preference == RunnerPreference.ANY.value,
                Task.runner_preference == account_type,
            )
        )

    result = await session.execute(
        select(Task)
        .where(and_(*conditions))
        .order_by(Task.priority.desc(), Task.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def claim_task(
    session: AsyncSession,
    task_id: str,
    *,
    account_id: str,
    now: datetime,
    expires_at: datetime,
) -> bool:
    """Conditionally assign a task. False means another caller got there first."""
    result = await session.execute(
        update(Task)
        .where(Task.id == task_id, Task.status == TaskStatus.PENDING.value)
        .values(
            claimed_by=account_id,
            claimed_at=now,
            expires_at=expires_at,
            status=TaskStatus.ASSIGNED.value,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def set_task_status(
    session: AsyncSession,
    task_id: str,
    status: str,
    *,
    result: dict[str, Any] | None = None,
) -> None:
    values: dict[str, Any] = {"status": status, "updated_at": utc_now()}
    if result is not None:
        values["result"] = result
    await session.execute(update(Task).where(Task.id == task_id).values(**values))


async def fail_tasks(session: AsyncSession, task_ids: Sequence[str], now: datetime) -> None:
    if not task_ids:
        return
    await session.execute(
        update(Task)
        .where(Task.id.in_(list(task_ids)))
        .values(status=TaskStatus.FAILED.value, updated_at=now)
    )


async def count_active_schedule_tasks(session: AsyncSession, workspace_id: str, schedule_id: str) -> int:
    """Count active tasks in a workspace that were materialized by a schedule."""
    result = await session.execute(
        select(func.count(Task.id)).where(
            Task.workspace_id == workspace_id,
            Task.status.in_([s.value for s in ACTIVE_TASK_STATUSES]),
            Task.context["scheduleId"].as_string() == schedule_id,
        )
    )
    return int(result.scalar_one() or 0)


# =============================================================================
# Worker Operations
# =============================================================================


async def create_worker(
    session: AsyncSession,
    *,
    task: Task,
    account: Account,
    runner: str,
    branch: str,
) -> Worker:
    worker = Worker(
        task_id=task.id,
        workspace_id=task.workspace_id,
        account_id=account.id,
        name=f"{account.name}-{task.id[:8]}",
        runner=runner,
        branch=branch,
        status=WorkerStatus.IDLE.value,
    )
    session.add(worker)
    await session.flush()
    return worker


async def get_worker_by_id(session: AsyncSession, worker_id: str) -> Worker | None:
    result = await session.execute(select(Worker).where(Worker.id == worker_id))
    return result.scalar_one_or_none()


async def require_worker(session: AsyncSession, worker_id: str) -> Worker:
    worker = await get_worker_by_id(session, worker_id)
    if worker is None:
        raise NotFoundError(f"Worker not found: {worker_id}", worker_id=worker_id)
    return worker


async def list_workers(
    session: AsyncSession,
    *,
    account_id: str | None = None,
    statuses: Sequence[str] | None = None,
    limit: int = 50,
) -> list[Worker]:
    query = select(Worker).order_by(Worker.updated_at.desc()).limit(limit)
    if account_id:
        query = query.where(Worker.account_id == account_id)
    if statuses:
        query = query.where(Worker.status.in_(list(statuses)))
    result = await session.execute(query)
    return list(result.scalars().all())


async def count_live_workers(session: AsyncSession, account_id: str) -> int:
    result = await session.execute(
        select(func.count(Worker.id)).where(
            Worker.account_id == account_id,
            Worker.status.in_([s.value for s in LIVE_WORKER_STATUSES]),
        )
    )
    return int(result.scalar_one() or 0)


async def find_stale_workers(session: AsyncSession, account_id: str, cutoff: datetime) -> list[Worker]:
    result = await session.execute(
        select(Worker).where(
            Worker.account_id == account_id,
            Worker.status.in_([s.value for s in LIVE_WORKER_STATUSES]),
            Worker.updated_at < cutoff,
        )
    )
    return list(result.scalars().all())


async def expire_workers(
    session: AsyncSession, worker_ids: Sequence[str], *, error: str, now: datetime
) -> None:
    if not worker_ids:
        return
    await session.execute(
        update(Worker)
        .where(Worker.id.in_(list(worker_ids)))
        .values(status=WorkerStatus.ERROR.value, error=error, completed_at=now, updated_at=now)
    )


# =============================================================================
# Schedule Operations
# =============================================================================


async def create_schedule(
    session: AsyncSession,
    workspace_id: str,
    name: str,
    cron_expression: str,
    task_template: dict[str, Any],
    *,
    timezone: str = "UTC",
    enabled: bool = True,
    pause_after_failures: int = 5,
    max_concurrent_from_schedule: int = 0,
    now: datetime | None = None,
) -> TaskSchedule:
    """Validate and create a schedule, computing its first run time."""
    from .cron import compute_next_run_at, validate_cron_expression

    error = validate_cron_expression(cron_expression, timezone)
    if error:
        raise ValidationFailedError(f"Invalid cron expression: {error}")
    if not task_template.get("title"):
        raise ValidationFailedError("task_template.title is required")

    schedule = TaskSchedule(
        workspace_id=workspace_id,
        name=name,
        cron_expression=cron_expression,
        timezone=timezone,
        enabled=enabled,
        next_run_at=compute_next_run_at(cron_expression, timezone, now=now),
        pause_after_failures=pause_after_failures,
        max_concurrent_from_schedule=max_concurrent_from_schedule,
        task_template=task_template,
    )
    session.add(schedule)
    await session.flush()
    return schedule


async def get_schedule_by_id(session: AsyncSession, schedule_id: str) -> TaskSchedule | None:
    result = await session.execute(select(TaskSchedule).where(TaskSchedule.id == schedule_id))
    return result.scalar_one_or_none()


async def get_due_schedules(session: AsyncSession, now: datetime, limit: int) -> list[TaskSchedule]:
    result = await session.execute(
        select(TaskSchedule)
        .where(TaskSchedule.enabled.is_(True), TaskSchedule.next_run_at <= now)
        .order_by(TaskSchedule.next_run_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def record_trigger_check(
    session: AsyncSession,
    schedule_id: str,
    *,
    now: datetime,
    trigger_value: str | None,
    next_run_at: datetime | None = None,
) -> None:
    """Persist trigger bookkeeping; advances next_run_at when one is given."""
    values: dict[str, Any] = {
        "last_checked_at": now,
        "total_checks": TaskSchedule.total_checks + 1,
        "updated_at": now,
    }
    if trigger_value is not None:
        values["last_trigger_value"] = trigger_value
    if next_run_at is not None:
        values["next_run_at"] = next_run_at
    await session.execute(update(TaskSchedule).where(TaskSchedule.id == schedule_id).values(**values))


async def advance_schedule(session: AsyncSession, schedule_id: str, *, next_run_at: datetime, now: datetime) -> None:
    await session.execute(
        update(TaskSchedule)
        .where(TaskSchedule.id == schedule_id)
        .values(next_run_at=next_run_at, updated_at=now)
    )


async def claim_schedule_run(
    session: AsyncSession,
    schedule_id: str,
    *,
    observed_next_run_at: datetime,
    next_run_at: datetime,
    now: datetime,
) -> bool:
    """Claim this tick's run. False means a concurrent tick already took it."""
    result = await session.execute(
        update(TaskSchedule)
        .where(TaskSchedule.id == schedule_id, TaskSchedule.next_run_at == observed_next_run_at)
        .values(
            next_run_at=next_run_at,
            last_run_at=now,
            total_runs=TaskSchedule.total_runs + 1,
            consecutive_failures=0,
            last_error=None,
            updated_at=now,
        )
    )
    return result.rowcount == 1


async def set_schedule_last_task(session: AsyncSession, schedule_id: str, task_id: str) -> None:
    await session.execute(update(TaskSchedule).where(TaskSchedule.id == schedule_id).values(last_task_id=task_id))


async def record_schedule_failure(
    session: AsyncSession,
    schedule: TaskSchedule,
    *,
    error_message: str,
    next_run_at: datetime | None,
    now: datetime,
) -> bool:
    """Record a processing failure. Returns True if the schedule got paused."""
    failures = schedule.consecutive_failures + 1
    should_pause = schedule.pause_after_failures > 0 and failures >= schedule.pause_after_failures
    values: dict[str, Any] = {
        "consecutive_failures": failures,
        "last_error": error_message,
        "enabled": False if should_pause else schedule.enabled,
        "updated_at": now,
    }
    if next_run_at is not None:
        values["next_run_at"] = next_run_at
    else:
        # No computable next run: stop retrying on every tick.
        values["enabled"] = False
        should_pause = True
    await session.execute(update(TaskSchedule).where(TaskSchedule.id == schedule.id).values(**values))
    return should_pause
