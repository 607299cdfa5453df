"""
Session Registry

Owns the two maps the relay shares across concurrent HTTP handlers:
chat id to open transport, and chat id to in-flight request. Every mutation
happens under one ``asyncio.Lock`` so a turn dispatch, a stop and a
disconnect racing on the same chat id always see a consistent view.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from llm_relay.chat.models import SessionStatus, utc_now
from llm_relay.chat.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    chat_id: str
    app_id: str
    transport: Transport
    last_activity: datetime = field(default_factory=utc_now)

    def touch(self) -> None:
        self.last_activity = utc_now()


class CancellableRequest:
    """
    Handle on one in-flight turn.

    ``cancel`` is idempotent and returns only once the underlying task has
    finished, so a caller that cancels and then starts new work knows the old
    turn can no longer emit anything.
    """

    def __init__(self, chat_id: str, model_id: str | None = None) -> None:
        self.chat_id = chat_id
        self.model_id = model_id
        self.request_id = uuid.uuid4().hex[:12]
        self.started_at = time.monotonic()
        self._task: asyncio.Task[None] | None = None
        self._cancel_requested = False

    def __repr__(self) -> str:
        return f"CancellableRequest(chat_id={self.chat_id!r}, request_id={self.request_id!r})"

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None] | None:
        """Run ``coro`` as this request's task. A request cancelled before starting never runs."""
        if self._task is not None:
            coro.close()
            raise RuntimeError(f"{self!r} already started")
        if self._cancel_requested:
            coro.close()
            return None
        self._task = asyncio.create_task(coro, name=f"chat-turn-{self.chat_id}-{self.request_id}")
        return self._task

    async def cancel(self) -> bool:
        """Cancel and wait for the task. Returns False if cancellation was already requested."""
        first = not self._cancel_requested
        self._cancel_requested = True
        task = self._task
        if task is None or task is asyncio.current_task():
            return first
        if not task.done():
            task.cancel()
        # asyncio.wait never raises the task's own CancelledError into the caller.
        await asyncio.wait({task})
        return first

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.wait({self._task})


class SessionRegistry:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sessions: dict[str, ChatSession] = {}
        self._requests: dict[str, CancellableRequest] = {}

    async def register_session(
        self, chat_id: str, app_id: str, transport: Transport
    ) -> ChatSession | None:
        """Register a transport for ``chat_id``. Last writer wins; returns the replaced session."""
        async with self._lock:
            previous = self._sessions.get(chat_id)
            self._sessions[chat_id] = ChatSession(chat_id=chat_id, app_id=app_id, transport=transport)
        if previous is not None:
            logger.info(f"Chat {chat_id}: new connection replaced an existing one")
        return previous

    async def remove_session(
        self, chat_id: str, transport: Transport | None = None
    ) -> ChatSession | None:
        """Remove the session; with ``transport`` given, only if it is still the registered one."""
        async with self._lock:
            session = self._sessions.get(chat_id)
            if session is None or (transport is not None and session.transport is not transport):
                return None
            del self._sessions[chat_id]
            return session

    def get_session(self, chat_id: str) -> ChatSession | None:
        return self._sessions.get(chat_id)

    def transport_for(self, chat_id: str) -> Transport | None:
        session = self._sessions.get(chat_id)
        return session.transport if session is not None else None

    async def replace_request(
        self, chat_id: str, request: CancellableRequest
    ) -> CancellableRequest | None:
        """Make ``request`` the active one for ``chat_id`` and return whatever it displaced."""
        async with self._lock:
            previous = self._requests.get(chat_id)
            self._requests[chat_id] = request
            return previous

    async def release_request(self, chat_id: str, request: CancellableRequest) -> bool:
        """Forget ``request`` if it is still the active one for ``chat_id``."""
        async with self._lock:
            if self._requests.get(chat_id) is request:
                del self._requests[chat_id]
                return True
            return False

    async def take_request(self, chat_id: str) -> CancellableRequest | None:
        async with self._lock:
            return self._requests.pop(chat_id, None)

    def active_request(self, chat_id: str) -> CancellableRequest | None:
        return self._requests.get(chat_id)

    async def drain(self) -> tuple[list[ChatSession], list[CancellableRequest]]:
        """Remove and return everything, for shutdown."""
        async with self._lock:
            sessions = list(self._sessions.values())
            requests = list(self._requests.values())
            self._sessions.clear()
            self._requests.clear()
            return sessions, requests

    def status(self, chat_id: str) -> SessionStatus:
        session = self._sessions.get(chat_id)
        if session is None:
            return SessionStatus(active=False)
        return SessionStatus(
            active=True,
            last_activity=session.last_activity,
            processing=chat_id in self._requests,
        )

    def __len__(self) -> int:
        return len(self._sessions)
