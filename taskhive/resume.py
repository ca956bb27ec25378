"""
How a finished worker continues after a follow-up message.

The choice is a pure function of whether a remote session id is known and
how the previous attempt went, so each path is testable on its own:

- RESUME_BY_SESSION: reopen the remote session by id.
- RESTART_WITH_CONTEXT: building the resume request failed; start fresh
  with a reconstructed prompt.
- RESTART_FROM_TEXT: no session id at all; start fresh with a
  reconstructed prompt.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from .lifecycle import follow_up_label
from .models import Worker


class ResumeStrategy(StrEnum):
    RESUME_BY_SESSION = "resume_by_session"
    RESTART_WITH_CONTEXT = "restart_with_context"
    RESTART_FROM_TEXT = "restart_from_text"


class AttemptOutcome(StrEnum):
    NOT_ATTEMPTED = "not_attempted"
    # The resume request could not even be built or handed to the transport.
    RESUME_SETUP_FAILED = "resume_setup_failed"
    # The resumed session failed inside its own error boundary.
    RESUME_FAILED = "resume_failed"
    OPENED = "opened"


def choose_resume_strategy(
    has_session_id: bool, last_outcome: AttemptOutcome = AttemptOutcome.NOT_ATTEMPTED
) -> ResumeStrategy | None:
    """Pick the next strategy, or None when nothing further should be tried."""
    if last_outcome == AttemptOutcome.NOT_ATTEMPTED:
        return ResumeStrategy.RESUME_BY_SESSION if has_session_id else ResumeStrategy.RESTART_FROM_TEXT
    if last_outcome == AttemptOutcome.RESUME_SETUP_FAILED:
        return ResumeStrategy.RESTART_WITH_CONTEXT
    return None


CONTINUATION_PREAMBLE = (
    "## IMPORTANT: Continuing a previous conversation\n"
    "You already analyzed this codebase in a previous session. Do NOT re-read files or "
    "re-explore the codebase unless the user asks about something new. Act directly on "
    "your previous analysis summarized below."
)

_READ_TOOLS = {"Read", "Glob", "Grep"}
_WRITE_TOOLS = {"Edit", "Write", "MultiEdit"}
_SALIENT_INPUT_KEYS = ("file_path", "path", "pattern", "command", "url", "query")
_EXPLORED_LIMIT = 20
_TOOL_DIGEST_LIMIT = 15
_HISTORY_LIMIT = 30
_DIGEST_VALUE_CHARS = 80


def _tool_digest_line(call: dict[str, Any]) -> str:
    tool_input = call.get("input") or {}
    salient = [
        f"{key}={str(tool_input[key])[:_DIGEST_VALUE_CHARS]}" for key in _SALIENT_INPUT_KEYS if tool_input.get(key)
    ]
    name = call.get("name", "tool")
    return f"- {name}({', '.join(salient)})" if salient else f"- {name}"


def _files_context(tool_calls: list[dict[str, Any]]) -> str | None:
    explored: dict[str, None] = {}
    modified: dict[str, None] = {}
    for call in tool_calls:
        file_path = (call.get("input") or {}).get("file_path")
        if not file_path:
            continue
        if call.get("name") in _READ_TOOLS:
            explored[file_path] = None
        elif call.get("name") in _WRITE_TOOLS:
            modified[file_path] = None

    if not explored and not modified:
        return None
    lines = ["## Files Context"]
    if explored:
        lines.append(f"Files explored: {', '.join(list(explored)[-_EXPLORED_LIMIT:])}")
    if modified:
        lines.append(f"Files modified: {', '.join(modified)}")
    return "\n".join(lines)


def build_reconstructed_prompt(task_description: str | None, worker: Worker, message: str) -> str:
    """Summarize prior work into a fresh prompt ending with the follow-up verbatim."""
    parts = [CONTINUATION_PREAMBLE]

    if task_description:
        parts.append(f"## Original Task\n{task_description}")

    tool_calls = list(worker.tool_calls or [])
    files_context = _files_context(tool_calls)
    if files_context:
        parts.append(files_context)
    if tool_calls:
        digest = [_tool_digest_line(call) for call in tool_calls[-_TOOL_DIGEST_LIMIT:]]
        parts.append("## Tool Activity\n" + "\n".join(digest))

    messages = list(worker.messages or [])
    # The follow-up was already recorded on the worker; it is sent once, at the end.
    if messages and messages[-1].get("role") == "user" and messages[-1].get("content") == message:
        messages.pop()
    history = messages[-_HISTORY_LIMIT:]
    last_response_index = next(
        (i for i in range(len(history) - 1, -1, -1) if history[i].get("role") == "assistant"),
        None,
    )
    lines = [
        f"**{'User' if entry.get('role') == 'user' else 'Agent'}:** {entry.get('content', '')}"
        for index, entry in enumerate(history)
        if index != last_response_index
    ]
    if lines:
        parts.append("## Previous Conversation\n" + "\n".join(lines))
    if last_response_index is not None:
        parts.append(f"## Your Last Response\n{history[last_response_index].get('content', '')}")

    milestones = list(worker.milestones or [])
    if milestones and milestones[-1].get("label") == follow_up_label(message):
        milestones.pop()
    labels = [f"- {m['label']}" for m in milestones if m.get("label") and m["label"] != "Task completed"]
    if labels:
        parts.append("## Work Completed\n" + "\n".join(labels))

    parts.append(f"## Follow-up Request\n{message}")
    return "\n\n".join(parts)
