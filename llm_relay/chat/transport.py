"""
SSE transport for one browser connection.

Events are queued by the relay and drained by the HTTP response generator, so
sending never blocks the turn that produced the event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Any, Protocol

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"


class Transport(Protocol):
    """What the relay needs from a client connection."""

    @property
    def closed(self) -> bool: ...

    def send(self, event: str, data: dict[str, Any]) -> None: ...

    def close(self) -> None: ...


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


class SSETransport:
    def __init__(self, chat_id: str, keepalive_seconds: float | None = 15.0) -> None:
        self.chat_id = chat_id
        self.keepalive_seconds = keepalive_seconds
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: str, data: dict[str, Any]) -> None:
        if self._closed:
            logger.debug(f"Dropping {event} for closed transport {self.chat_id}")
            return
        self._queue.put_nowait(format_sse(event, data))

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def frames(self) -> AsyncGenerator[str]:
        """Yield encoded SSE frames until the transport is closed."""
        while True:
            if self.keepalive_seconds:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=self.keepalive_seconds)
                except TimeoutError:
                    yield KEEPALIVE_FRAME
                    continue
            else:
                item = await self._queue.get()
            if item is None:
                return
            yield item
