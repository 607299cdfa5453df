"""
Per-model request throttling.

Each model id gets an ``asyncio.Semaphore`` sized by its concurrency limit.
Callers beyond the limit wait in line; once ``max_queue`` callers are already
waiting, further ones are rejected immediately with ThrottleRejectedError.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from llm_relay.chat.models import ModelDescriptor
from llm_relay.errors import ThrottleRejectedError

logger = logging.getLogger(__name__)


@dataclass
class _Gate:
    semaphore: asyncio.Semaphore
    limit: int
    active: int = 0
    waiting: int = 0


class RequestThrottler:
    def __init__(
        self,
        default_concurrency: int = 5,
        max_queue: int = 50,
        limits: dict[str, int] | None = None,
    ) -> None:
        if default_concurrency < 1:
            raise ValueError("default_concurrency must be at least 1")
        if max_queue < 0:
            raise ValueError("max_queue must be non-negative")
        self.default_concurrency = default_concurrency
        self.max_queue = max_queue
        self._limits = dict(limits or {})
        self._gates: dict[str, _Gate] = {}

    @classmethod
    def from_config(
        cls, throttle_config: dict[str, Any], models: list[ModelDescriptor] | None = None
    ) -> RequestThrottler:
        """Build from ``Configuration.get_throttle_config()``; model ``concurrency`` fields fill gaps."""
        limits = {m.id: m.concurrency for m in models or [] if m.concurrency}
        limits.update(throttle_config.get("models", {}))
        return cls(
            default_concurrency=throttle_config["default_concurrency"],
            max_queue=throttle_config["max_queue"],
            limits=limits,
        )

    def limit_for(self, model_id: str) -> int:
        return self._limits.get(model_id, self.default_concurrency)

    def _gate(self, model_id: str) -> _Gate:
        gate = self._gates.get(model_id)
        if gate is None:
            limit = self.limit_for(model_id)
            gate = _Gate(semaphore=asyncio.Semaphore(limit), limit=limit)
            self._gates[model_id] = gate
        return gate

    @asynccontextmanager
    async def slot(self, model_id: str) -> AsyncIterator[None]:
        """Hold one of the model's concurrency slots for the duration of the block."""
        gate = self._gate(model_id)
        if gate.semaphore.locked():
            if gate.waiting >= self.max_queue:
                logger.warning(f"Rejecting request for {model_id}: {gate.waiting} already waiting")
                raise ThrottleRejectedError(model_id, self.max_queue)
            logger.info(f"⏸️  Request for {model_id} queued ({gate.active}/{gate.limit} active)")

        gate.waiting += 1
        try:
            await gate.semaphore.acquire()
        finally:
            gate.waiting -= 1

        gate.active += 1
        try:
            yield
        finally:
            gate.active -= 1
            gate.semaphore.release()

    def stats(self, model_id: str) -> dict[str, int]:
        gate = self._gates.get(model_id)
        if gate is None:
            return {"limit": self.limit_for(model_id), "active": 0, "waiting": 0}
        return {"limit": gate.limit, "active": gate.active, "waiting": gate.waiting}
