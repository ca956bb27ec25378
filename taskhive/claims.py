"""Task claim engine.

Assigns pending tasks to a requesting account. The only guard against
double assignment is the conditional update in ``db.claim_task``: a caller
whose update touches zero rows lost the race and simply moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .attachments import AttachmentResolver, default_resolver, resolve_attachments
from .branching import branch_name_for
from .dependencies import announce_unblocked
from .config import settings
from .errors import (
    AuthenticationError,
    CapacityExceededError,
    QuotaExceededError,
    ValidationFailedError,
)
from .events import emit_task_claimed
from .models import Account, AuthType, Task, TaskStatus, utc_now

logger = logging.getLogger(__name__)

STALE_WORKER_ERROR = "Stale worker expired (no update for 15+ minutes)"


class ToolInfo(BaseModel):
    name: str
    version: str | None = None


class EnvironmentInventory(BaseModel):
    """Tools, env keys and MCP servers a runner reports having."""

    tools: list[ToolInfo] = Field(default_factory=list)
    env_keys: list[str] = Field(default_factory=list)
    mcp: list[str] = Field(default_factory=list)

    def capabilities(self) -> list[str]:
        return [
            *(tool.name for tool in self.tools),
            *self.env_keys,
            *(f"mcp:{name}" for name in self.mcp),
        ]


class ClaimRequest(BaseModel):
    runner: str | None = None
    workspace_id: str | None = None
    task_id: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    environment: EnvironmentInventory | None = None
    max_tasks: int = Field(default_factory=lambda: settings.default_max_tasks, ge=0)

    def offered_capabilities(self) -> set[str]:
        """Explicit capabilities win; the environment is only consulted without them."""
        if self.capabilities:
            return set(self.capabilities)
        if self.environment is not None:
            return set(self.environment.capabilities())
        return set()


@dataclass
class ClaimedWorker:
    id: str
    task_id: str
    branch: str
    task: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "task_id": self.task_id, "branch": self.branch, "task": self.task}


@dataclass
class ClaimResult:
    workers: list[ClaimedWorker] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"workers": [w.to_dict() for w in self.workers]}


def matches_capabilities(task: Task, offered: set[str]) -> bool:
    """A runner that declares nothing is not filtered."""
    if not offered:
        return True
    required = set(task.required_capabilities or [])
    return required.issubset(offered)


@dataclass
class ReapResult:
    worker_ids: list[str] = field(default_factory=list)
    unblocked: list[Task] = field(default_factory=list)


async def reap_stale_workers(session: AsyncSession, account_id: str, *, now: datetime | None = None) -> ReapResult:
    """Fail this account's live workers that have been silent past the threshold.

    Their tasks fail too, which releases any tasks they were blocking.
    """
    now = now or utc_now()
    cutoff = now - timedelta(minutes=settings.stale_worker_minutes)
    stale = await db.find_stale_workers(session, account_id, cutoff)
    if not stale:
        return ReapResult()

    result = ReapResult(worker_ids=[w.id for w in stale])
    await db.expire_workers(session, result.worker_ids, error=STALE_WORKER_ERROR, now=now)
    await db.fail_tasks(session, [w.task_id for w in stale], now)
    for worker in stale:
        result.unblocked.extend(await db.resolve_completed_task(session, worker.task_id, worker.workspace_id))
    logger.info("Reaped %d stale worker(s) for account %s", len(result.worker_ids), account_id)
    return result


async def sweep_stale_workers(account_id: str, *, now: datetime | None = None) -> ReapResult:
    """Reap in its own transaction, then announce whatever it unblocked."""
    async with db.get_session() as session:
        result = await reap_stale_workers(session, account_id, now=now)
    await announce_unblocked(result.unblocked)
    return result


def check_quota(account: Account) -> None:
    if account.auth_type == AuthType.API:
        if account.max_cost_per_day and Decimal(account.total_cost or 0) >= Decimal(account.max_cost_per_day):
            raise QuotaExceededError(
                "Daily cost limit exceeded",
                limit=str(account.max_cost_per_day),
                current=str(account.total_cost),
            )
    elif account.auth_type == AuthType.OAUTH:
        if account.max_concurrent_sessions and account.active_sessions >= account.max_concurrent_sessions:
            raise QuotaExceededError(
                "Max concurrent sessions limit reached",
                limit=account.max_concurrent_sessions,
                current=account.active_sessions,
            )


async def claim_tasks(
    account: Account | None,
    request: ClaimRequest,
    *,
    now: datetime | None = None,
    attachment_resolver: AttachmentResolver | None = None,
) -> ClaimResult:
    """Claim up to ``request.max_tasks`` tasks for ``account``."""
    if account is None:
        raise AuthenticationError("Invalid API key")
    if not request.runner:
        raise ValidationFailedError("runner is required")

    now = now or utc_now()
    offered = request.offered_capabilities()

    await sweep_stale_workers(account.id, now=now)

    async with db.get_session() as session:
        current = await db.get_account_by_id(session, account.id)
        if current is None:
            raise AuthenticationError("Account no longer exists")
        account = current

        active_count = await db.count_live_workers(session, account.id)
        if active_count >= account.max_concurrent_workers:
            raise CapacityExceededError(
                "Max concurrent workers limit reached",
                limit=account.max_concurrent_workers,
                current=active_count,
            )
        check_quota(account)

        available_slots = min(request.max_tasks, account.max_concurrent_workers - active_count)
        if available_slots <= 0:
            return ClaimResult()

        workspace_ids = await db.get_claimable_workspace_ids(session, account.id, request.workspace_id)
        if not workspace_ids:
            return ClaimResult()

        candidates = await db.find_claimable_tasks(
            session,
            workspace_ids,
            now=now,
            limit=available_slots,
            account_type=account.type,
            task_id=request.task_id,
        )
        candidates = [task for task in candidates if matches_capabilities(task, offered)]
        workspaces = await db.get_workspaces_by_ids(session, {t.workspace_id for t in candidates})

    claimed = await _claim_candidates(account, candidates, workspaces, runner=request.runner, now=now)
    if not claimed:
        return ClaimResult()

    result = ClaimResult()
    for task, worker in claimed:
        await emit_task_claimed(task, worker, account.name)
        result.workers.append(ClaimedWorker(id=worker.id, task_id=task.id, branch=worker.branch, task=task.to_dict()))

    if account.auth_type == AuthType.OAUTH:
        async with db.get_session() as session:
            await db.increment_active_sessions(session, account.id, len(claimed))

    resolver = attachment_resolver or default_resolver()
    if resolver is not None:
        for claimed_worker in result.workers:
            await resolve_attachments(claimed_worker.task["context"], resolver)

    logger.info("Account %s claimed %d task(s) via runner %s", account.id, len(claimed), request.runner)
    return result


async def _claim_candidates(
    account: Account,
    candidates: list[Task],
    workspaces: dict[str, Any],
    *,
    runner: str,
    now: datetime,
) -> list[tuple[Task, Any]]:
    expires_at = now + timedelta(minutes=settings.claim_lease_minutes)
    claimed: list[tuple[Task, Any]] = []

    for task in candidates:
        async with db.get_session() as session:
            # Re-check so parallel claim calls cannot push the account past its limit.
            if await db.count_live_workers(session, account.id) >= account.max_concurrent_workers:
                break

            won = await db.claim_task(session, task.id, account_id=account.id, now=now, expires_at=expires_at)
            if not won:
                logger.debug("Task %s already claimed by a concurrent caller", task.id)
                continue

            workspace = workspaces.get(task.workspace_id)
            branch = branch_name_for(task.id, task.title, workspace.git_config if workspace else None)
            worker = await db.create_worker(session, task=task, account=account, runner=runner, branch=branch)

        task.status = TaskStatus.ASSIGNED.value
        claimed.append((task, worker))

    return claimed
