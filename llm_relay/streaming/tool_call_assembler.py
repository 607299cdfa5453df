"""
Assembles streamed tool-call fragments into complete ToolCall objects.

Fragments are accumulated per call index and argument text is concatenated
verbatim. Nothing is parsed until ``finalize`` is called, which the
normalizer only does after the provider's terminal signal: a half-received
argument string is not valid JSON and must never be treated as final.
"""

from __future__ import annotations

import logging

from llm_relay.chat.models import ToolCall, ToolCallFragment
from llm_relay.providers.common import parse_tool_arguments

logger = logging.getLogger(__name__)


class ToolCallAssembler:
    """Buffers tool-call fragments and emits finished ``ToolCall`` objects."""

    def __init__(self, provider: str | None = None) -> None:
        self.provider = provider
        self._buf: dict[int, dict[str, str]] = {}
        self.errors: list[str] = []

    def __len__(self) -> int:
        return len(self._buf)

    def feed(self, index: int, fragment: ToolCallFragment) -> None:
        buf = self._buf.setdefault(index, {"id": "", "name": "", "args": ""})
        if fragment.id and not buf["id"]:
            buf["id"] = fragment.id
        if fragment.name:
            buf["name"] += fragment.name
        if fragment.arguments:
            buf["args"] += fragment.arguments

    def pending_arguments(self, index: int) -> str:
        """Raw argument text received so far for a call."""
        return self._buf.get(index, {}).get("args", "")

    def finalize(self) -> list[ToolCall]:
        """Parse every buffered call, in index order, and clear the buffers."""
        calls: list[ToolCall] = []
        for idx in sorted(self._buf):
            buf = self._buf[idx]
            name = buf["name"].strip()
            arguments = parse_tool_arguments(buf["args"], name)
            if "__raw_arguments" in arguments and len(arguments) == 1:
                self.errors.append(f"tool_call_json_parse_failed idx={idx} name={name}")
            calls.append(
                ToolCall(
                    id=buf["id"] or f"call_{idx}",
                    name=name,
                    arguments=arguments,
                    provider=self.provider,
                    status="complete",
                    index=idx,
                )
            )
        self._buf.clear()
        return calls

    def discard(self) -> list[ToolCall]:
        """Drop buffered calls without parsing them. Returned calls are marked pending."""
        calls = [
            ToolCall(
                id=buf["id"] or f"call_{idx}",
                name=buf["name"].strip(),
                arguments={"__raw_arguments": buf["args"]} if buf["args"] else {},
                provider=self.provider,
                status="pending",
                index=idx,
            )
            for idx, buf in sorted(self._buf.items())
        ]
        self._buf.clear()
        return calls
