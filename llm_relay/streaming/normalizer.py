"""
Streaming Response Normalizer

Turns a provider's raw response bytes into the provider-agnostic event
sequence ``TextDelta* ToolCallDelta* ... (Complete | ProviderError)``.

The normalizer owns the framing (via ``SSEParser``) and tool-call assembly;
the provider's ``StreamDecoder`` only interprets individual payloads. Output
is identical no matter how the bytes were chunked.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterable
from enum import Enum

from llm_relay.chat.models import (
    Complete,
    ProviderError,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
)
from llm_relay.errors import NormalizationError
from llm_relay.providers.base import StreamDecoder
from llm_relay.providers.common import normalize_finish_reason
from llm_relay.streaming.sse_parser import SSEFrame, SSEParser
from llm_relay.streaming.tool_call_assembler import ToolCallAssembler

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATES = frozenset({StreamState.COMPLETE, StreamState.FAILED, StreamState.ABORTED})


class StreamNormalizer:
    """Normalizes one provider response. Not reusable across requests."""

    def __init__(self, decoder: StreamDecoder) -> None:
        self.decoder = decoder
        self.parser = SSEParser()
        self.assembler = ToolCallAssembler(provider=decoder.provider)
        self.state = StreamState.IDLE
        self.frames_seen = 0
        self.incomplete_tool_calls: list[ToolCall] = []

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume raw bytes and return the events they completed."""
        if self.finished:
            return []
        self.state = StreamState.STREAMING
        events: list[StreamEvent] = []
        for frame in self.parser.feed(chunk):
            events.extend(self._process_frame(frame))
            if self.finished:
                break
        return events

    def finish(self) -> list[StreamEvent]:
        """End of input. Always leaves the normalizer in a terminal state."""
        if self.finished:
            return []
        events: list[StreamEvent] = []
        for frame in self.parser.flush():
            events.extend(self._process_frame(frame))
            if self.finished:
                return events
        reason = self.decoder.finish_reason
        if reason is not None:
            events.append(self._complete(reason))
            return events

        # EOF is not a terminal signal: buffered tool calls were cut off.
        self.incomplete_tool_calls = self.assembler.discard()
        logger.warning(
            f"{self.decoder.provider} stream ended without a completion signal "
            f"after {self.frames_seen} frames"
        )
        for call in self.incomplete_tool_calls:
            logger.warning(
                f"Discarding incomplete tool call {call.id} ({call.name or '?'}): "
                f"{len(call.arguments.get('__raw_arguments', ''))} argument chars received"
            )
        self.state = StreamState.COMPLETE
        events.append(Complete(finish_reason="connection_closed"))
        return events

    def abort(self) -> None:
        if not self.finished:
            self.state = StreamState.ABORTED

    async def normalize(self, chunks: AsyncIterable[bytes]) -> AsyncGenerator[StreamEvent]:
        """Yield normalized events for an async stream of byte chunks."""
        try:
            async for chunk in chunks:
                for event in self.feed(chunk):
                    yield event
                if self.finished:
                    return
            for event in self.finish():
                yield event
        except (asyncio.CancelledError, GeneratorExit):
            self.abort()
            raise

    def _process_frame(self, frame: SSEFrame) -> list[StreamEvent]:
        self.frames_seen += 1
        try:
            result = self.decoder.decode(frame)
        except NormalizationError as e:
            logger.error(
                f"Unreadable {self.decoder.provider} stream payload: {e.message} | raw={e.raw_payload[:1000]!r}"
            )
            self.state = StreamState.FAILED
            return [ProviderError(raw_body=e.raw_payload, message=e.message, code=e.code)]

        events: list[StreamEvent] = []
        for delta in result.deltas:
            if isinstance(delta, ToolCallDelta):
                self.assembler.feed(delta.index, delta.partial_call)
                events.append(delta)
            elif isinstance(delta, TextDelta):
                if delta.text:
                    events.append(delta)
            else:
                raise TypeError(f"Unexpected delta from decoder: {delta!r}")

        if result.error is not None:
            logger.error(
                f"{self.decoder.provider} reported an in-stream error: {result.error.message} "
                f"| raw={result.error.raw_body[:1000]!r}"
            )
            self.state = StreamState.FAILED
            events.append(result.error)
        elif result.done:
            events.append(self._complete(self.decoder.finish_reason or "stop"))
        return events

    def _complete(self, raw_reason: str) -> Complete:
        tool_calls = self.assembler.finalize()
        finish_reason = normalize_finish_reason(raw_reason) or "stop"
        if tool_calls and finish_reason == "stop":
            finish_reason = "tool_calls"
        self.state = StreamState.COMPLETE
        return Complete(finish_reason=finish_reason, full_tool_calls=tool_calls)
