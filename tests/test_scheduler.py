from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select, update

from taskhive import db
from taskhive.models import Task, TaskSchedule
from taskhive.scheduler import ScheduleOutcome, process_schedule, run_schedule_tick


def json_client(payload: dict, status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def count_tasks(workspace_id: str) -> int:
    async with db.get_session() as session:
        result = await session.execute(select(func.count(Task.id)).where(Task.workspace_id == workspace_id))
        return int(result.scalar_one())


async def load_schedule(schedule_id: str) -> TaskSchedule:
    async with db.get_session() as session:
        return await db.get_schedule_by_id(session, schedule_id)


@pytest.fixture
def make_schedule(make_workspace, now):
    async def factory(workspace_id: str, template: dict | None = None, **kwargs) -> TaskSchedule:
        async with db.get_session() as session:
            return await db.create_schedule(
                session,
                workspace_id,
                kwargs.pop("name", "nightly"),
                kwargs.pop("cron_expression", "*/5 * * * *"),
                template or {"title": "Nightly sweep", "priority": 4},
                now=now,
                **kwargs,
            )

    return factory


class RecordingDispatcher:
    def __init__(self) -> None:
        self.tasks: list[str] = []

    async def __call__(self, task, workspace) -> None:
        self.tasks.append(task.id)


@pytest.mark.asyncio
async def test_tick_creates_task_from_template(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    schedule = await make_schedule(workspace.id, {"title": "Nightly sweep", "priority": 4, "context": {"k": "v"}})
    assert schedule.next_run_at == now + timedelta(minutes=5)
    dispatcher = RecordingDispatcher()

    result = await run_schedule_tick(now + timedelta(minutes=6), dispatcher=dispatcher)

    assert result.to_dict() == {"processed": 1, "created": 1, "skipped": 0, "errors": 0, "trigger_checks": 0}
    stored = await load_schedule(schedule.id)
    assert stored.total_runs == 1
    assert stored.last_run_at == now + timedelta(minutes=6)
    assert stored.next_run_at == now + timedelta(minutes=10)
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, stored.last_task_id)
    assert task.status == "pending"
    assert task.priority == 4
    assert task.creation_source == "schedule"
    assert task.context == {"k": "v", "scheduleId": schedule.id, "scheduleName": "nightly"}
    assert dispatcher.tasks == [task.id]


@pytest.mark.asyncio
async def test_schedule_not_due_is_ignored(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    await make_schedule(workspace.id)

    result = await run_schedule_tick(now + timedelta(minutes=1))

    assert result.processed == 0
    assert await count_tasks(workspace.id) == 0


@pytest.mark.asyncio
async def test_overlapping_ticks_create_one_task(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    await make_schedule(workspace.id)
    tick_time = now + timedelta(minutes=6)

    async with db.get_session() as session:
        first_read = await db.get_due_schedules(session, tick_time, 50)
    async with db.get_session() as session:
        second_read = await db.get_due_schedules(session, tick_time, 50)

    first = await process_schedule(first_read[0], tick_time)
    second = await process_schedule(second_read[0], tick_time)

    assert first == ScheduleOutcome.CREATED
    assert second == ScheduleOutcome.SKIPPED
    assert await count_tasks(workspace.id) == 1
    assert (await load_schedule(first_read[0].id)).total_runs == 1


@pytest.mark.asyncio
async def test_unchanged_trigger_value_creates_nothing(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    template = {
        "title": "Review release {{triggerValue}}",
        "trigger": {"type": "http-json", "url": "https://api.example/releases/latest", "path": ".tag_name"},
    }
    schedule = await make_schedule(workspace.id, template)
    async with db.get_session() as session:
        await session.execute(
            update(TaskSchedule).where(TaskSchedule.id == schedule.id).values(last_trigger_value="v1.0.0")
        )

    async with json_client({"tag_name": "v1.0.0"}) as client:
        first = await run_schedule_tick(now + timedelta(minutes=6), http_client=client)
        second = await run_schedule_tick(now + timedelta(minutes=11), http_client=client)

    assert first.skipped == 1 and first.trigger_checks == 1
    assert second.skipped == 1 and second.trigger_checks == 1
    assert await count_tasks(workspace.id) == 0
    stored = await load_schedule(schedule.id)
    assert stored.total_checks == 2
    assert stored.total_runs == 0
    assert stored.last_checked_at == now + timedelta(minutes=11)
    assert stored.next_run_at == now + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_changed_trigger_value_creates_interpolated_task(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    template = {
        "title": "Review release {{triggerValue}}",
        "description": "New tag {{triggerValue}} is out",
        "trigger": {"type": "http-json", "url": "https://api.example/releases/latest", "path": ".tag_name"},
    }
    schedule = await make_schedule(workspace.id, template)
    async with db.get_session() as session:
        await session.execute(
            update(TaskSchedule).where(TaskSchedule.id == schedule.id).values(last_trigger_value="v1.0.0")
        )

    async with json_client({"tag_name": "v1.1.0"}) as client:
        result = await run_schedule_tick(now + timedelta(minutes=6), http_client=client)

    assert result.created == 1
    stored = await load_schedule(schedule.id)
    assert stored.last_trigger_value == "v1.1.0"
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, stored.last_task_id)
    assert task.title == "Review release v1.1.0"
    assert task.description == "New tag v1.1.0 is out"
    assert task.external_id == f"schedule-{schedule.id}-v1.1.0"
    assert task.context["triggerValue"] == "v1.1.0"
    assert task.context["previousTriggerValue"] == "v1.0.0"


@pytest.mark.asyncio
async def test_failed_trigger_fetch_counts_as_no_change(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    template = {"title": "t", "trigger": {"type": "http-json", "url": "https://api.example/x", "path": ".v"}}
    schedule = await make_schedule(workspace.id, template)

    async with json_client({"error": "boom"}, status_code=503) as client:
        result = await run_schedule_tick(now + timedelta(minutes=6), http_client=client)

    assert result.skipped == 1
    assert result.errors == 0
    stored = await load_schedule(schedule.id)
    assert stored.consecutive_failures == 0
    assert stored.total_checks == 1


@pytest.mark.asyncio
async def test_trigger_dedup_skips_active_task(make_workspace, make_schedule, make_task, now) -> None:
    workspace = await make_workspace()
    template = {"title": "t", "trigger": {"type": "http-json", "url": "https://api.example/x", "path": ".v"}}
    schedule = await make_schedule(workspace.id, template)
    await make_task(workspace.id, "already running", external_id=f"schedule-{schedule.id}-42")

    async with json_client({"v": 42}) as client:
        result = await run_schedule_tick(now + timedelta(minutes=6), http_client=client)

    assert result.skipped == 1
    assert result.created == 0
    assert await count_tasks(workspace.id) == 1


@pytest.mark.asyncio
async def test_max_concurrent_from_schedule(make_workspace, make_schedule, make_task, now) -> None:
    workspace = await make_workspace()
    schedule = await make_schedule(workspace.id, max_concurrent_from_schedule=1)
    await make_task(workspace.id, "earlier run", context={"scheduleId": schedule.id})

    result = await run_schedule_tick(now + timedelta(minutes=6))

    assert result.skipped == 1
    assert await count_tasks(workspace.id) == 1
    stored = await load_schedule(schedule.id)
    assert stored.next_run_at == now + timedelta(minutes=10)
    assert stored.total_runs == 0


@pytest.mark.asyncio
async def test_failure_reaching_threshold_pauses_schedule(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    schedule = await make_schedule(workspace.id, pause_after_failures=3)
    async with db.get_session() as session:
        await session.execute(
            update(TaskSchedule)
            .where(TaskSchedule.id == schedule.id)
            .values(consecutive_failures=2, task_template={"description": "no title"})
        )

    result = await run_schedule_tick(now + timedelta(minutes=6))

    assert result.errors == 1
    stored = await load_schedule(schedule.id)
    assert stored.enabled is False
    assert stored.consecutive_failures == 3
    assert stored.last_error
    assert stored.next_run_at == now + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_zero_threshold_never_pauses(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    schedule = await make_schedule(workspace.id, pause_after_failures=0)
    async with db.get_session() as session:
        await session.execute(
            update(TaskSchedule)
            .where(TaskSchedule.id == schedule.id)
            .values(consecutive_failures=99, task_template={"description": "no title"})
        )

    result = await run_schedule_tick(now + timedelta(minutes=6))

    assert result.errors == 1
    stored = await load_schedule(schedule.id)
    assert stored.enabled is True
    assert stored.consecutive_failures == 100


@pytest.mark.asyncio
async def test_one_failing_schedule_does_not_stop_the_tick(make_workspace, make_schedule, now) -> None:
    workspace = await make_workspace()
    broken = await make_schedule(workspace.id, name="broken")
    await make_schedule(workspace.id, name="healthy")
    async with db.get_session() as session:
        await session.execute(
            update(TaskSchedule).where(TaskSchedule.id == broken.id).values(task_template={})
        )

    result = await run_schedule_tick(now + timedelta(minutes=6))

    assert result.processed == 2
    assert result.errors == 1
    assert result.created == 1


@pytest.mark.asyncio
async def test_create_schedule_rejects_bad_cron(make_workspace) -> None:
    from taskhive.errors import ValidationFailedError

    workspace = await make_workspace()
    async with db.get_session() as session:
        with pytest.raises(ValidationFailedError):
            await db.create_schedule(session, workspace.id, "bad", "not a cron", {"title": "x"})
