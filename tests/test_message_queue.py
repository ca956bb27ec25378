import asyncio

import pytest

from taskhive.message_queue import MessageStream


@pytest.mark.asyncio
async def test_waiting_consumer_receives_message_in_order() -> None:
    stream: MessageStream[str] = MessageStream()
    consumer = asyncio.create_task(stream.get())
    await asyncio.sleep(0)
    assert stream.waiting == 1

    stream.enqueue("first")
    stream.enqueue("second")

    assert await consumer == "first"
    assert await stream.get() == "second"
    assert len(stream) == 0


@pytest.mark.asyncio
async def test_oldest_waiter_is_served_first() -> None:
    stream: MessageStream[str] = MessageStream()
    early = asyncio.create_task(stream.get())
    await asyncio.sleep(0)
    late = asyncio.create_task(stream.get())
    await asyncio.sleep(0)

    stream.enqueue("a")
    stream.enqueue("b")

    assert await early == "a"
    assert await late == "b"


@pytest.mark.asyncio
async def test_close_drains_buffer_then_signals_end() -> None:
    stream: MessageStream[str] = MessageStream()
    stream.enqueue("buffered")

    assert await stream.get() == "buffered"
    pending = asyncio.create_task(stream.get())
    await asyncio.sleep(0)
    stream.close()

    assert await pending is None
    assert stream.closed


@pytest.mark.asyncio
async def test_buffered_message_delivered_before_end_of_input() -> None:
    stream: MessageStream[str] = MessageStream()
    stream.enqueue("only")
    stream.close()

    received = [message async for message in stream]

    assert received == ["only"]


@pytest.mark.asyncio
async def test_enqueue_after_close_is_dropped() -> None:
    stream: MessageStream[str] = MessageStream()
    stream.close()

    assert stream.enqueue("late") is False
    assert len(stream) == 0
    assert await stream.get() is None


@pytest.mark.asyncio
async def test_cancelled_consumer_does_not_swallow_messages() -> None:
    stream: MessageStream[str] = MessageStream()
    abandoned = asyncio.create_task(stream.get())
    await asyncio.sleep(0)
    abandoned.cancel()
    with pytest.raises(asyncio.CancelledError):
        await abandoned

    stream.enqueue("kept")

    assert len(stream) == 1
    assert await stream.get() == "kept"
