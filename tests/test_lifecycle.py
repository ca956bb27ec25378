import pytest

from taskhive.errors import InvalidTransitionError
from taskhive.lifecycle import add_message, add_milestone, add_tool_call, can_transition, transition
from taskhive.models import Worker, WorkerStatus


def make_worker(status: WorkerStatus) -> Worker:
    return Worker(id="w-1", task_id="t-1", name="w", runner="cli", branch="hive/x", status=status.value)


def test_forward_path_and_sub_states() -> None:
    assert can_transition("idle", "starting")
    assert can_transition("starting", "running")
    assert can_transition("running", "waiting_input")
    assert can_transition("waiting_input", "running")
    assert can_transition("running", "awaiting_plan_approval")
    assert can_transition("awaiting_plan_approval", "running")
    assert can_transition("running", "paused")


def test_finished_states_accept_follow_up_only() -> None:
    assert can_transition("done", "running")
    assert can_transition("error", "running")
    assert not can_transition("done", "waiting_input")
    assert not can_transition("idle", "done")


def test_transition_sets_completed_at_on_finish() -> None:
    worker = make_worker(WorkerStatus.RUNNING)
    transition(worker, WorkerStatus.DONE)
    assert worker.status == "done"
    assert worker.completed_at is not None


def test_invalid_transition_raises() -> None:
    worker = make_worker(WorkerStatus.IDLE)
    with pytest.raises(InvalidTransitionError) as exc_info:
        transition(worker, WorkerStatus.DONE)
    assert exc_info.value.status_code == 409
    assert worker.status == "idle"


def test_forced_transition_for_reaping() -> None:
    worker = make_worker(WorkerStatus.IDLE)
    transition(worker, WorkerStatus.ERROR, force=True)
    assert worker.status == "error"


def test_history_lists_are_capped() -> None:
    worker = make_worker(WorkerStatus.RUNNING)
    for i in range(60):
        add_milestone(worker, f"step {i}")
    for i in range(205):
        add_message(worker, "assistant", f"message {i}")
        add_tool_call(worker, "Read", {"file_path": f"f{i}.py"})

    assert len(worker.milestones) == 50
    assert worker.milestones[0]["label"] == "step 10"
    assert len(worker.messages) == 200
    assert worker.messages[-1]["content"] == "message 204"
    assert len(worker.tool_calls) == 200
