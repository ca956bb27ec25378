import asyncio

import pytest

from taskhive import db, dependencies, workers
from taskhive.message_queue import MessageStream
from taskhive.models import AuthType, TaskStatus, WorkerStatus
from taskhive.session_client import SessionEvent, SessionEventType, SessionRequest
from taskhive.workers import WorkerManager

READ_INPUT = "read-input"


def init(session_id: str = "sess-new") -> SessionEvent:
    return SessionEvent(type=SessionEventType.INIT, session_id=session_id)


def text(value: str) -> SessionEvent:
    return SessionEvent(type=SessionEventType.TEXT, text=value)


def success(summary: str = "All done") -> SessionEvent:
    return SessionEvent(type=SessionEventType.RESULT, subtype="success", text=summary)


class FakeTransport:
    """Plays one scripted session per ``open`` call."""

    def __init__(self, *scripts: list) -> None:
        self.scripts = list(scripts)
        self.requests: list[SessionRequest] = []
        self.inputs: list[str] = []

    async def open(self, request: SessionRequest, input_stream: MessageStream[str]):
        self.requests.append(request)
        script = self.scripts.pop(0)
        for step in script:
            if isinstance(step, Exception):
                raise step
            if isinstance(step, asyncio.Event):
                await step.wait()
                continue
            if step == READ_INPUT:
                message = await input_stream.get()
                if message is not None:
                    self.inputs.append(message)
                continue
            yield step


async def load_worker(worker_id: str):
    async with db.get_session() as session:
        return await db.get_worker_by_id(session, worker_id)


async def wait_for_status(worker_id: str, status: str) -> None:
    for _ in range(200):
        if (await load_worker(worker_id)).status == status:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"worker never reached {status}")


@pytest.mark.asyncio
async def test_follow_up_resumes_remembered_session(make_account, make_workspace, make_worker) -> None:
    account, workspace = await make_account(), await make_workspace()
    worker = await make_worker(account, workspace, status=WorkerStatus.DONE, session_id="sess-123")
    gate = asyncio.Event()
    transport = FakeTransport([gate, READ_INPUT, init("sess-123"), text("Added the tests"), success()])
    manager = WorkerManager(transport)

    assert await manager.send_message(worker.id, "please also add tests") is True

    immediate = await load_worker(worker.id)
    assert immediate.status == WorkerStatus.RUNNING
    assert immediate.completed_at is None
    assert immediate.messages[-1]["content"] == "please also add tests"
    assert immediate.milestones[-1]["label"] == "User: please also add tests..."

    gate.set()
    await manager.drain()

    assert [r.resume for r in transport.requests] == ["sess-123"]
    assert transport.inputs == ["please also add tests"]
    finished = await load_worker(worker.id)
    assert finished.status == WorkerStatus.DONE
    assert finished.completed_at is not None
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, worker.task_id)
    assert task.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_resume_ends_in_error_without_fallback(make_account, make_workspace, make_worker) -> None:
    account, workspace = await make_account(), await make_workspace()
    worker = await make_worker(
        account, workspace, status=WorkerStatus.ERROR, session_id="sess-gone", error="earlier failure"
    )
    gate = asyncio.Event()
    transport = FakeTransport([gate, RuntimeError("No conversation found with session ID sess-gone")], [success()])
    manager = WorkerManager(transport)

    assert await manager.send_message(worker.id, "try again") is True
    assert (await load_worker(worker.id)).error is None
    gate.set()
    await manager.drain()

    assert len(transport.requests) == 1
    assert transport.requests[0].resume == "sess-gone"
    failed = await load_worker(worker.id)
    assert failed.status == WorkerStatus.ERROR
    assert failed.error == "No conversation found with session ID sess-gone"
    assert failed.completed_at is not None


@pytest.mark.asyncio
async def test_follow_up_without_session_restarts_from_text(make_account, make_workspace, make_worker) -> None:
    account, workspace = await make_account(), await make_workspace()
    worker = await make_worker(
        account,
        workspace,
        status=WorkerStatus.DONE,
        messages=[{"role": "assistant", "content": "I refactored the parser."}],
        tool_calls=[{"name": "Edit", "input": {"file_path": "src/parser.py"}}],
    )
    transport = FakeTransport([init("sess-fresh"), success()])
    manager = WorkerManager(transport)

    assert await manager.send_message(worker.id, "Now document the parser, verbatim please.") is True
    await manager.drain()

    request = transport.requests[0]
    assert request.resume is None
    assert "resume" not in request.to_dict()
    assert request.prompt.endswith("## Follow-up Request\nNow document the parser, verbatim please.")
    assert "src/parser.py" in request.prompt
    assert "I refactored the parser." in request.prompt
    finished = await load_worker(worker.id)
    assert finished.status == WorkerStatus.DONE
    assert finished.session_id == "sess-fresh"


@pytest.mark.asyncio
async def test_live_session_receives_message_and_leaves_waiting(make_account, make_workspace, make_task) -> None:
    account, workspace = await make_account(), await make_workspace()
    task = await make_task(workspace.id, "Set up the database")
    async with db.get_session() as session:
        worker = await db.create_worker(session, task=task, account=account, runner="cli", branch="hive/db")
    question = SessionEvent(type=SessionEventType.INPUT_REQUEST, text="Which database?")
    gate = asyncio.Event()
    transport = FakeTransport([init("sess-live"), question, READ_INPUT, gate, success()])
    manager = WorkerManager(transport)

    await manager.start_worker(worker.id)
    await wait_for_status(worker.id, WorkerStatus.WAITING_INPUT)
    waiting = await load_worker(worker.id)
    assert waiting.waiting_for == {"type": "question", "prompt": "Which database?"}

    assert await manager.send_message(worker.id, "postgres") is True
    assert (await load_worker(worker.id)).status == WorkerStatus.RUNNING
    gate.set()
    await manager.drain()

    assert len(transport.requests) == 1
    assert transport.requests[0].prompt == "Set up the database"
    assert transport.inputs == ["postgres"]
    assert (await load_worker(worker.id)).status == WorkerStatus.DONE


@pytest.mark.asyncio
async def test_send_message_rejections(make_account, make_workspace, make_worker) -> None:
    account, workspace = await make_account(), await make_workspace()
    running = await make_worker(account, workspace, status=WorkerStatus.RUNNING)
    manager = WorkerManager(FakeTransport())

    assert await manager.send_message("missing-worker", "hello") is False
    assert await manager.send_message(running.id, "hello") is False


@pytest.mark.asyncio
async def test_error_result_fails_worker_and_releases_oauth_slot(make_account, make_workspace, make_task) -> None:
    account = await make_account(auth_type=AuthType.OAUTH.value, max_concurrent_sessions=3)
    workspace = await make_workspace()
    task = await make_task(workspace.id)
    async with db.get_session() as session:
        worker = await db.create_worker(session, task=task, account=account, runner="cli", branch="hive/x")
        await db.increment_active_sessions(session, account.id, 1)
    failure = SessionEvent(type=SessionEventType.RESULT, subtype="error_max_turns", text="Hit the turn limit")
    manager = WorkerManager(FakeTransport([init(), failure]))

    await manager.start_worker(worker.id)
    await manager.drain()

    failed = await load_worker(worker.id)
    assert failed.status == WorkerStatus.ERROR
    assert failed.error == "Hit the turn limit"
    async with db.get_session() as session:
        stored_task = await db.get_task_by_id(session, task.id)
        stored_account = await db.get_account_by_id(session, account.id)
    assert stored_task.status == TaskStatus.FAILED
    assert stored_account.active_sessions == 0


@pytest.mark.asyncio
async def test_abort_closes_live_session(make_account, make_workspace, make_task) -> None:
    account, workspace = await make_account(), await make_workspace()
    task = await make_task(workspace.id)
    async with db.get_session() as session:
        worker = await db.create_worker(session, task=task, account=account, runner="cli", branch="hive/x")
    question = SessionEvent(type=SessionEventType.INPUT_REQUEST, text="Continue?")
    manager = WorkerManager(FakeTransport([init(), question, READ_INPUT, success()]))

    await manager.start_worker(worker.id)
    await wait_for_status(worker.id, WorkerStatus.WAITING_INPUT)

    assert await manager.abort(worker.id) is True
    await manager.drain()

    aborted = await load_worker(worker.id)
    assert aborted.status == WorkerStatus.ERROR
    assert aborted.error == "Aborted by user"
    assert manager.has_live_session(worker.id) is False
    assert await manager.abort(worker.id) is False


@pytest.mark.asyncio
async def test_unusable_session_id_restarts_with_context(make_account, make_workspace, make_worker) -> None:
    account, workspace = await make_account(), await make_workspace()
    worker = await make_worker(
        account,
        workspace,
        status=WorkerStatus.DONE,
        session_id="   ",
        messages=[{"role": "assistant", "content": "Migrated the config loader."}],
    )
    transport = FakeTransport([init("sess-rebuilt"), success()])
    manager = WorkerManager(transport)

    assert await manager.send_message(worker.id, "follow up text") is True
    await manager.drain()

    assert len(transport.requests) == 1
    request = transport.requests[0]
    assert request.resume is None
    assert request.prompt.startswith("## IMPORTANT: Continuing a previous conversation")
    assert request.prompt.endswith("## Follow-up Request\nfollow up text")
    assert request.prompt.count("follow up text") == 1
    assert "Migrated the config loader." in request.prompt
    finished = await load_worker(worker.id)
    assert finished.status == WorkerStatus.DONE
    assert finished.session_id == "sess-rebuilt"


@pytest.mark.asyncio
async def test_follow_up_failing_before_session_ends_in_error(
    make_account, make_workspace, make_worker, monkeypatch: pytest.MonkeyPatch
) -> None:
    account, workspace = await make_account(), await make_workspace()
    worker = await make_worker(account, workspace, status=WorkerStatus.DONE)

    def broken_prompt(*args, **kwargs):
        raise RuntimeError("transcript unreadable")

    monkeypatch.setattr(workers, "build_reconstructed_prompt", broken_prompt)
    transport = FakeTransport([success()])
    manager = WorkerManager(transport)

    assert await manager.send_message(worker.id, "one more thing") is True
    await manager.drain()

    assert transport.requests == []
    failed = await load_worker(worker.id)
    assert failed.status == WorkerStatus.ERROR
    assert failed.error == "transcript unreadable"
    assert failed.completed_at is not None
    async with db.get_session() as session:
        task = await db.get_task_by_id(session, worker.task_id)
    assert task.status == TaskStatus.FAILED


@pytest.mark.asyncio
async def test_finished_worker_unblocks_dependent_task(
    make_account, make_workspace, make_task, monkeypatch: pytest.MonkeyPatch
) -> None:
    account, workspace = await make_account(), await make_workspace()
    task = await make_task(workspace.id, "Ship the migration")
    dependent = await make_task(workspace.id, "Backfill data", blocked_by_task_ids=[task.id])
    async with db.get_session() as session:
        worker = await db.create_worker(session, task=task, account=account, runner="cli", branch="hive/x")
    dispatched: list[str] = []

    async def fake_dispatch(task, workspace):
        dispatched.append(task.id)

    monkeypatch.setattr(dependencies, "dispatch_new_task", fake_dispatch)
    manager = WorkerManager(FakeTransport([init(), success()]))

    await manager.start_worker(worker.id)
    await manager.drain()

    async with db.get_session() as session:
        released = await db.get_task_by_id(session, dependent.id)
    assert released.status == TaskStatus.PENDING
    assert released.blocked_by_task_ids == []
    assert dispatched == [dependent.id]
