"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from taskhive import db
from taskhive.config import settings
from taskhive.models import Account, Task, Worker, Workspace

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AsyncGenerator[None]:
    """Fresh SQLite store per test, with Redis publishing switched off."""
    monkeypatch.setattr(settings, "redis_events_enabled", False)
    monkeypatch.setattr(settings, "redis_dispatch_enabled", False)
    monkeypatch.setattr(settings, "storage_endpoint", None)

    db.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'taskhive.db'}")
    await db.init_db()
    yield
    await db.dispose_engine()


@pytest.fixture
def make_account(database: None) -> Callable[..., Awaitable[Account]]:
    async def factory(name: str = "runner-account", **kwargs: Any) -> Account:
        async with db.get_session() as session:
            return await db.create_account(session, name, **kwargs)

    return factory


@pytest.fixture
def make_workspace(database: None) -> Callable[..., Awaitable[Workspace]]:
    async def factory(name: str = "main", **kwargs: Any) -> Workspace:
        async with db.get_session() as session:
            return await db.create_workspace(session, name, **kwargs)

    return factory


@pytest.fixture
def make_task(database: None) -> Callable[..., Awaitable[Task]]:
    async def factory(workspace_id: str, title: str = "Fix the build", **kwargs: Any) -> Task:
        created_at = kwargs.pop("created_at", None)
        async with db.get_session() as session:
            task = await db.create_task(session, workspace_id, title, **kwargs)
            if created_at is not None:
                task.created_at = created_at
        return task

    return factory


@pytest.fixture
def make_worker(
    make_task: Callable[..., Awaitable[Task]],
) -> Callable[..., Awaitable[Worker]]:
    """Worker bound to a fresh task, forced into ``status``."""

    async def factory(
        account: Account,
        workspace: Workspace,
        *,
        status: str = "running",
        task_status: str = "in_progress",
        **fields: Any,
    ) -> Worker:
        task = await make_task(workspace.id, fields.pop("title", "Existing work"), status=task_status)
        async with db.get_session() as session:
            worker = await db.create_worker(session, task=task, account=account, runner="cli", branch="hive/x")
            worker.status = status
            for key, value in fields.items():
                setattr(worker, key, value)
        return worker

    return factory
