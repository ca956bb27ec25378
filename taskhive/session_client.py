"""Streaming client for the remote agent-session server."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import httpx
from httpx_sse import aconnect_sse

from .message_queue import MessageStream

logger = logging.getLogger(__name__)


class SessionAPIError(RuntimeError):
    """Raised when the agent-session server returns an error."""


class SessionEventType(StrEnum):
    INIT = "init"
    TEXT = "text"
    TOOL_USE = "tool_use"
    INPUT_REQUEST = "input_request"
    PLAN = "plan"
    RESULT = "result"


@dataclass(frozen=True)
class SessionRequest:
    """Opening parameters. ``resume`` reattaches to an existing remote session."""

    prompt: str | None = None
    resume: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if self.prompt is not None:
            body["prompt"] = self.prompt
        if self.resume:
            body["resume"] = self.resume
        return body


@dataclass(frozen=True)
class SessionEvent:
    type: SessionEventType
    session_id: str | None = None
    text: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    # For result events: "success" or an error subtype.
    subtype: str | None = None
    cost: float | None = None

    @property
    def is_error(self) -> bool:
        return self.type == SessionEventType.RESULT and self.subtype not in (None, "success")

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionEvent:
        tool_input = payload.get("input")
        return cls(
            type=SessionEventType(payload["type"]),
            session_id=payload.get("sessionId") or payload.get("session_id"),
            text=payload.get("text"),
            tool_name=payload.get("name"),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            subtype=payload.get("subtype"),
            cost=payload.get("cost"),
        )


class SessionTransport(Protocol):
    def open(self, request: SessionRequest, input_stream: MessageStream[str]) -> AsyncIterator[SessionEvent]:
        """Open (or resume) a session and yield its turn events until a result."""
        ...


class AgentSessionClient:
    """Async client for an HTTP agent-session server with an SSE event feed."""

    def __init__(self, *, base_url: str, timeout_seconds: float = 300.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=httpx.Timeout(timeout_seconds))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, body: Any | None = None) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, json=body)
            resp.raise_for_status()
            return resp
        except httpx.RequestError as e:
            raise SessionAPIError(f"Session request failed ({method} {path}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise SessionAPIError(f"Session API error {status} ({method} {path}): {e.response.text}") from e

    async def create_session(self, request: SessionRequest) -> str:
        resp = await self._request("POST", "/session", body=request.to_dict())
        payload = resp.json()
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise SessionAPIError(f"Unexpected create_session response: {payload}")
        return session_id

    async def send_input(self, session_id: str, text: str) -> None:
        await self._request("POST", f"/session/{session_id}/message", body={"text": text})

    async def _forward_input(self, session_id: str, input_stream: MessageStream[str]) -> None:
        async for text in input_stream:
            await self.send_input(session_id, text)

    async def open(self, request: SessionRequest, input_stream: MessageStream[str]) -> AsyncIterator[SessionEvent]:
        session_id = await self.create_session(request)
        yield SessionEvent(type=SessionEventType.INIT, session_id=session_id)

        forwarder = asyncio.create_task(self._forward_input(session_id, input_stream))
        try:
            async with aconnect_sse(self._client, "GET", f"/session/{session_id}/event") as event_source:
                async for sse in event_source.aiter_sse():
                    if forwarder.done() and forwarder.exception() is not None:
                        raise SessionAPIError(f"Input forwarding failed: {forwarder.exception()}")
                    if not sse.data:
                        continue
                    try:
                        event = SessionEvent.from_dict(json.loads(sse.data))
                    except (json.JSONDecodeError, KeyError, ValueError):
                        logger.debug("Skipping unrecognized session event: %s", sse.data[:200])
                        continue
                    yield event
                    if event.type == SessionEventType.RESULT:
                        return
        except httpx.RequestError as e:
            raise SessionAPIError(f"Error streaming events for session {session_id}: {e}") from e
        finally:
            forwarder.cancel()
