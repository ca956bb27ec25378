"""SQLAlchemy models for the taskhive database."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every dialect.

    SQLite has no timezone support, so values are stored as naive UTC there
    and re-tagged on the way out. Equality guards compare identically bound
    values, which keeps the conditional updates exact on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
        list[str]: JSONType,
        list[dict[str, Any]]: JSONType,
        datetime: UTCDateTime,
    }


class TaskStatus(StrEnum):
    PENDING = "pending"
    BLOCKED = "blocked"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS)
# Reaching one of these releases the task's dependents.
TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


class WorkerStatus(StrEnum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    AWAITING_PLAN_APPROVAL = "awaiting_plan_approval"
    PAUSED = "paused"
    DONE = "done"
    ERROR = "error"


# Statuses that occupy one of the account's concurrency slots.
LIVE_WORKER_STATUSES = (WorkerStatus.RUNNING, WorkerStatus.STARTING, WorkerStatus.WAITING_INPUT)


class AccountType(StrEnum):
    USER = "user"
    SERVICE = "service"
    ACTION = "action"


class AuthType(StrEnum):
    API = "api"
    OAUTH = "oauth"


class RunnerPreference(StrEnum):
    ANY = "any"
    USER = "user"
    SERVICE = "service"
    ACTION = "action"


class AccessMode(StrEnum):
    OPEN = "open"
    RESTRICTED = "restricted"


# =============================================================================
# ACCOUNTS & WORKSPACES
# =============================================================================


class Account(Base):
    """A claiming identity subject to concurrency, cost and session quotas."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, default=AccountType.USER.value)
    auth_type: Mapped[str] = mapped_column(String, default=AuthType.API.value)
    api_key_hash: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    max_concurrent_workers: Mapped[int] = mapped_column(Integer, default=3)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(10, 6), default=Decimal("0"))
    max_cost_per_day: Mapped[Decimal | None] = mapped_column(Numeric(10, 6), nullable=True)
    active_sessions: Mapped[int] = mapped_column(Integer, default=0)
    max_concurrent_sessions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)


class Workspace(Base):
    """Access-control and branching-policy scope containing tasks."""

    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    access_mode: Mapped[str] = mapped_column(String, default=AccessMode.OPEN.value)
    git_config: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)


class AccountWorkspace(Base):
    """Per-account permission grant on a restricted workspace."""

    __tablename__ = "account_workspaces"
    __table_args__ = (UniqueConstraint("account_id", "workspace_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    can_claim: Mapped[bool] = mapped_column(Boolean, default=True)


# =============================================================================
# TASKS & WORKERS
# =============================================================================


class Task(Base):
    """A unit of work owned by a workspace."""

    __tablename__ = "tasks"
    __table_args__ = (Index("idx_tasks_workspace_external_id", "workspace_id", "external_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default=TaskStatus.PENDING.value)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    mode: Mapped[str] = mapped_column(String, default="execution")
    required_capabilities: Mapped[list[str]] = mapped_column(JSONType, default=list)
    runner_preference: Mapped[str] = mapped_column(String, default=RunnerPreference.ANY.value)
    claimed_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    blocked_by_task_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    creation_source: Mapped[str] = mapped_column(String, default="api")
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "mode": self.mode,
            "required_capabilities": list(self.required_capabilities or []),
            "runner_preference": self.runner_preference,
            "external_id": self.external_id,
            "blocked_by_task_ids": list(self.blocked_by_task_ids or []),
            "context": dict(self.context or {}),
        }


class Worker(Base):
    """The execution context bound 1:1 to a claimed task."""

    __tablename__ = "workers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    runner: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=WorkerStatus.IDLE.value)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    branch: Mapped[str] = mapped_column(String, nullable=False)
    milestones: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    tool_calls: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    messages: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    current_action: Mapped[str | None] = mapped_column(String, nullable=True)
    waiting_for: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)


# =============================================================================
# SCHEDULES
# =============================================================================


class TaskSchedule(Base):
    """Cron-driven template that materializes tasks."""

    __tablename__ = "task_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    cron_expression: Mapped[str] = mapped_column(String, nullable=False)
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    next_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    total_runs: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    pause_after_failures: Mapped[int] = mapped_column(Integer, default=5)
    max_concurrent_from_schedule: Mapped[int] = mapped_column(Integer, default=0)
    task_template: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    last_trigger_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_checks: Mapped[int] = mapped_column(Integer, default=0)
    last_checked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)
