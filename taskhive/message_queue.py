"""Live input stream feeding follow-up messages into an open agent session."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Generic, TypeVar

T = TypeVar("T")


class MessageStream(Generic[T]):
    """FIFO, unbounded, single-writer/multi-reader queue.

    A message enqueued while consumers are suspended goes straight to the
    oldest waiter. After ``close()`` every waiter receives end-of-input
    (``None`` from :meth:`get`) and further enqueues are dropped.
    """

    def __init__(self) -> None:
        self._buffer: deque[T] = deque()
        self._waiters: deque[asyncio.Future[T | None]] = deque()
        self._closed = False

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def enqueue(self, message: T) -> bool:
        """Deliver or buffer ``message``. Returns False if the stream is closed."""
        if self._closed:
            return False
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(message)
                return True
        self._buffer.append(message)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    async def get(self) -> T | None:
        """Next message, or None once the stream is closed and drained."""
        if self._buffer:
            return self._buffer.popleft()
        if self._closed:
            return None
        waiter: asyncio.Future[T | None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def __aiter__(self) -> AsyncIterator[T]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message
