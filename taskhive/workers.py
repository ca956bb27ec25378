"""
Worker session lifecycle: start, turn loop, follow-ups and resume.

Worker state lives in the database; every event is applied in its own
session and broadcast afterwards. Live sessions are tracked in-process so
messages for an open session go straight onto its input stream.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from . import db
from .dependencies import announce_unblocked
from .errors import NotFoundError
from .events import emit_worker_milestone, emit_worker_update
from .lifecycle import (
    AWAITING_STATUSES,
    FINISHED_STATUSES,
    add_message,
    add_milestone,
    add_tool_call,
    follow_up_label,
    transition,
)
from .message_queue import MessageStream
from .models import AuthType, Task, TaskStatus, Worker, WorkerStatus, utc_now
from .resume import AttemptOutcome, ResumeStrategy, build_reconstructed_prompt, choose_resume_strategy
from .session_client import SessionEvent, SessionEventType, SessionRequest, SessionTransport

logger = logging.getLogger(__name__)


@dataclass
class LiveSession:
    stream: MessageStream[str]
    task: asyncio.Task[Any] | None = None


class WorkerManager:
    """Drives agent sessions for claimed workers."""

    def __init__(self, transport: SessionTransport) -> None:
        self._transport = transport
        self._sessions: dict[str, LiveSession] = {}
        self._background: set[asyncio.Task[Any]] = set()

    def has_live_session(self, worker_id: str) -> bool:
        live = self._sessions.get(worker_id)
        return live is not None and not live.stream.closed

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background session and continuation to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    async def start_worker(self, worker_id: str) -> asyncio.Task[Any]:
        """Open the first session for a freshly claimed worker."""
        async with db.get_session() as session:
            worker = await db.require_worker(session, worker_id)
            task = await db.get_task_by_id(session, worker.task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {worker.task_id}", task_id=worker.task_id)
            transition(worker, WorkerStatus.STARTING)
            worker.current_action = "Starting session..."
            await db.set_task_status(session, task.id, TaskStatus.IN_PROGRESS.value)
            prompt = task.title if not task.description else f"{task.title}\n\n{task.description}"

        await emit_worker_update(worker)
        return self._spawn(self._run_with_boundary(worker_id, SessionRequest(prompt=prompt)))

    # ------------------------------------------------------------------
    # Follow-up messages
    # ------------------------------------------------------------------

    async def send_message(self, worker_id: str, text: str) -> bool:
        """Deliver a user message. Finished workers are resumed in the background."""
        async with db.get_session() as session:
            worker = await db.get_worker_by_id(session, worker_id)
            if worker is None:
                return False

            if worker.status in FINISHED_STATUSES:
                transition(worker, WorkerStatus.RUNNING)
                worker.error = None
                worker.completed_at = None
                worker.waiting_for = None
                worker.current_action = "Processing follow-up..."
                add_message(worker, "user", text)
                milestone = add_milestone(worker, follow_up_label(text))
                await db.set_task_status(session, worker.task_id, TaskStatus.IN_PROGRESS.value)
                resume = True
            elif self.has_live_session(worker_id):
                self._sessions[worker_id].stream.enqueue(text)
                if worker.status in AWAITING_STATUSES:
                    transition(worker, WorkerStatus.RUNNING)
                    worker.waiting_for = None
                    worker.current_action = "Processing response..."
                add_message(worker, "user", text)
                milestone = add_milestone(worker, follow_up_label(text))
                resume = False
            else:
                return False

        await emit_worker_update(worker)
        await emit_worker_milestone(worker, milestone)
        if resume:
            self._spawn(self._continue_after_follow_up(worker_id, text))
        return True

    async def _continue_after_follow_up(self, worker_id: str, message: str) -> AttemptOutcome:
        """Walk the resume strategies; a failure before any session opens ends the worker in error."""
        try:
            return await self._attempt_resume(worker_id, message)
        except Exception as exc:
            logger.exception("Follow-up for worker %s failed before a session ran", worker_id)
            await self._fail_worker(worker_id, str(exc) or type(exc).__name__)
            return AttemptOutcome.RESUME_FAILED

    async def _attempt_resume(self, worker_id: str, message: str) -> AttemptOutcome:
        async with db.get_session() as session:
            worker = await db.require_worker(session, worker_id)
            task = await db.get_task_by_id(session, worker.task_id)
        task_description = task.description if task else None

        outcome = AttemptOutcome.NOT_ATTEMPTED
        strategy = choose_resume_strategy(bool(worker.session_id), outcome)
        while strategy is not None:
            if strategy == ResumeStrategy.RESUME_BY_SESSION:
                try:
                    request = self._build_resume_request(worker)
                except Exception:
                    logger.exception("Could not build resume request for worker %s", worker_id)
                    outcome = AttemptOutcome.RESUME_SETUP_FAILED
                else:
                    logger.info("Resuming worker %s via session %s", worker_id, worker.session_id)
                    ok = await self._run_with_boundary(worker_id, request, first_input=message)
                    outcome = AttemptOutcome.OPENED if ok else AttemptOutcome.RESUME_FAILED
            else:
                logger.info("Restarting worker %s with reconstructed context (%s)", worker_id, strategy.value)
                prompt = build_reconstructed_prompt(task_description, worker, message)
                await self._run_with_boundary(worker_id, SessionRequest(prompt=prompt))
                outcome = AttemptOutcome.OPENED
            strategy = choose_resume_strategy(bool(worker.session_id), outcome)
        return outcome

    def _build_resume_request(self, worker: Worker) -> SessionRequest:
        if not worker.session_id or not worker.session_id.strip():
            raise ValueError(f"Worker {worker.id} has no usable session id")
        return SessionRequest(resume=worker.session_id)

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def _run_with_boundary(
        self, worker_id: str, request: SessionRequest, *, first_input: str | None = None
    ) -> bool:
        """Run one session; any failure ends the worker in error. Returns True on success."""
        stream: MessageStream[str] = MessageStream()
        if first_input is not None:
            stream.enqueue(first_input)
        live = LiveSession(stream=stream, task=asyncio.current_task())
        self._sessions[worker_id] = live
        try:
            await self.run_session(worker_id, request, stream)
            return True
        except Exception as exc:
            logger.warning("Session for worker %s failed: %s", worker_id, exc)
            await self._fail_worker(worker_id, str(exc) or type(exc).__name__)
            return False
        finally:
            stream.close()
            if self._sessions.get(worker_id) is live:
                del self._sessions[worker_id]

    async def run_session(self, worker_id: str, request: SessionRequest, stream: MessageStream[str]) -> None:
        """Open a session and apply its events until a result arrives."""
        async for event in self._transport.open(request, stream):
            if await self._apply_event(worker_id, event):
                return
        raise RuntimeError("Session ended without a result")

    async def _apply_event(self, worker_id: str, event: SessionEvent) -> bool:
        """Fold one session event into worker state. True once the session is finished."""
        milestone: dict[str, Any] | None = None
        unblocked: list[Task] = []
        finished = False
        async with db.get_session() as session:
            worker = await db.require_worker(session, worker_id)

            if event.type == SessionEventType.INIT:
                if event.session_id:
                    worker.session_id = event.session_id
                if worker.status == WorkerStatus.IDLE:
                    transition(worker, WorkerStatus.STARTING)
                if worker.status == WorkerStatus.STARTING:
                    transition(worker, WorkerStatus.RUNNING)
                worker.current_action = "Session started"

            elif event.type == SessionEventType.TEXT:
                add_message(worker, "assistant", event.text or "")

            elif event.type == SessionEventType.TOOL_USE:
                add_tool_call(worker, event.tool_name or "tool", event.tool_input)
                worker.current_action = f"Using {event.tool_name or 'tool'}"

            elif event.type == SessionEventType.INPUT_REQUEST:
                transition(worker, WorkerStatus.WAITING_INPUT)
                worker.waiting_for = {"type": "question", "prompt": event.text or ""}
                worker.current_action = "Waiting for input"

            elif event.type == SessionEventType.PLAN:
                transition(worker, WorkerStatus.AWAITING_PLAN_APPROVAL)
                worker.waiting_for = {"type": "plan_approval", "plan": event.text or ""}
                worker.current_action = "Awaiting plan approval"

            elif event.type == SessionEventType.RESULT:
                if worker.status in AWAITING_STATUSES:
                    transition(worker, WorkerStatus.RUNNING)
                worker.waiting_for = None
                if event.is_error:
                    transition(worker, WorkerStatus.ERROR)
                    worker.error = event.text or f"Session ended with {event.subtype}"
                    worker.current_action = "Failed"
                    await db.set_task_status(session, worker.task_id, TaskStatus.FAILED.value)
                else:
                    transition(worker, WorkerStatus.DONE)
                    worker.current_action = "Completed"
                    milestone = add_milestone(worker, "Task completed")
                    await db.set_task_status(
                        session, worker.task_id, TaskStatus.COMPLETED.value, result={"summary": event.text or ""}
                    )
                await self._release_session_slot(session, worker)
                unblocked = await db.resolve_completed_task(session, worker.task_id, worker.workspace_id)
                finished = True

            worker.updated_at = utc_now()

        await emit_worker_update(worker)
        if milestone is not None:
            await emit_worker_milestone(worker, milestone)
        await announce_unblocked(unblocked)
        return finished

    async def _fail_worker(self, worker_id: str, message: str) -> None:
        async with db.get_session() as session:
            worker = await db.get_worker_by_id(session, worker_id)
            if worker is None:
                return
            transition(worker, WorkerStatus.ERROR, force=True)
            worker.error = message
            worker.waiting_for = None
            worker.current_action = "Failed"
            await db.set_task_status(session, worker.task_id, TaskStatus.FAILED.value)
            await self._release_session_slot(session, worker)
            unblocked = await db.resolve_completed_task(session, worker.task_id, worker.workspace_id)
        await emit_worker_update(worker)
        await announce_unblocked(unblocked)

    async def _release_session_slot(self, session: Any, worker: Worker) -> None:
        account = await db.get_account_by_id(session, worker.account_id)
        if account is not None and account.auth_type == AuthType.OAUTH:
            await db.release_active_session(session, account.id)

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    async def abort(self, worker_id: str, reason: str = "Aborted by user") -> bool:
        """Close the live input stream and stop the session."""
        live = self._sessions.pop(worker_id, None)
        if live is None:
            return False
        live.stream.close()
        if live.task is not None and not live.task.done():
            live.task.cancel()
        await self._fail_worker(worker_id, reason)
        logger.info("Aborted worker %s", worker_id)
        return True
