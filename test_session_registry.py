#!/usr/bin/env python3
"""Test session bookkeeping and cancellable request handles."""

from __future__ import annotations

import asyncio

from llm_relay.chat.session_registry import CancellableRequest, SessionRegistry
from llm_relay.chat.transport import KEEPALIVE_FRAME, SSETransport, format_sse


async def test_last_writer_wins_and_stale_disconnect_is_ignored():
    print("🧪 Testing session replacement")
    registry = SessionRegistry()
    first = SSETransport("c1")
    second = SSETransport("c1")

    assert await registry.register_session("c1", "chat", first) is None
    replaced = await registry.register_session("c1", "chat", second)
    assert replaced is not None and replaced.transport is first
    assert registry.transport_for("c1") is second

    # The old connection closing must not unregister the new one.
    assert await registry.remove_session("c1", first) is None
    assert registry.transport_for("c1") is second

    removed = await registry.remove_session("c1", second)
    assert removed is not None
    assert registry.get_session("c1") is None
    assert len(registry) == 0
    print("✅ Stale disconnect left the newer session alone")


async def test_request_replace_and_release():
    registry = SessionRegistry()
    one = CancellableRequest("c1")
    two = CancellableRequest("c1")

    assert await registry.replace_request("c1", one) is None
    assert await registry.replace_request("c1", two) is one
    # A finished old request must not release the newer one.
    assert await registry.release_request("c1", one) is False
    assert registry.active_request("c1") is two
    assert await registry.release_request("c1", two) is True
    assert await registry.take_request("c1") is None


async def test_status():
    registry = SessionRegistry()
    assert registry.status("c1").active is False

    await registry.register_session("c1", "chat", SSETransport("c1"))
    status = registry.status("c1")
    assert status.active is True and status.processing is False
    assert status.last_activity is not None

    await registry.replace_request("c1", CancellableRequest("c1"))
    assert registry.status("c1").processing is True


async def test_cancel_waits_for_task_and_is_idempotent():
    print("🧪 Testing CancellableRequest.cancel")
    request = CancellableRequest("c1")
    cleaned_up = asyncio.Event()

    async def turn() -> None:
        try:
            await asyncio.sleep(10)
        finally:
            cleaned_up.set()

    request.start(turn())
    await asyncio.sleep(0)

    assert await request.cancel() is True
    assert cleaned_up.is_set()
    assert request.done
    assert await request.cancel() is False
    print("✅ cancel() returned only after the task's cleanup ran")


async def test_cancel_before_start_prevents_running():
    request = CancellableRequest("c1")
    ran = False

    async def turn() -> None:
        nonlocal ran
        ran = True

    await request.cancel()
    assert request.start(turn()) is None
    await asyncio.sleep(0)
    assert ran is False


async def test_drain():
    registry = SessionRegistry()
    await registry.register_session("a", "chat", SSETransport("a"))
    await registry.replace_request("a", CancellableRequest("a"))
    sessions, requests = await registry.drain()
    assert len(sessions) == 1 and len(requests) == 1
    assert len(registry) == 0


async def test_sse_transport_frames():
    print("🧪 Testing SSE transport framing")
    transport = SSETransport("c1", keepalive_seconds=0.01)
    frames = transport.frames()

    assert await anext(frames) == KEEPALIVE_FRAME

    transport.send("chunk", {"content": "héllo"})
    assert await anext(frames) == 'event: chunk\ndata: {"content": "héllo"}\n\n'

    transport.close()
    transport.send("chunk", {"content": "dropped"})
    assert [f async for f in frames] == []
    assert transport.closed
    print("✅ keep-alive, event framing and close")


def test_format_sse():
    assert format_sse("done", {"finishReason": "stop"}) == 'event: done\ndata: {"finishReason": "stop"}\n\n'


if __name__ == "__main__":
    asyncio.run(test_last_writer_wins_and_stale_disconnect_is_ignored())
    asyncio.run(test_request_replace_and_release())
    asyncio.run(test_status())
    asyncio.run(test_cancel_waits_for_task_and_is_idempotent())
    asyncio.run(test_cancel_before_start_prevents_running())
    asyncio.run(test_drain())
    asyncio.run(test_sse_transport_frames())
    test_format_sse()
