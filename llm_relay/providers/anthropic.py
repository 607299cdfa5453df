"""Anthropic Messages API."""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.chat.models import (
    ChatMessage,
    CompletionOptions,
    CompletionResult,
    ImagePart,
    ModelDescriptor,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallFragment,
    ToolDefinition,
)
from llm_relay.providers.base import FrameResult, ProviderStrategy, StreamDecoder
from llm_relay.providers.common import (
    normalize_finish_reason,
    normalize_tool_name,
    parse_tool_arguments,
    sanitize_schema_for_provider,
    split_tools,
)
from llm_relay.providers.openai import WEB_SEARCH_TOOL_IDS
from llm_relay.streaming.sse_parser import SSEFrame

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicStreamDecoder(StreamDecoder):
    """
    Decodes the Anthropic event stream.

    Content blocks are indexed across text and tool use; tool calls get their
    own dense index so the assembler sees 0, 1, 2... regardless of how many
    text blocks came in between.
    """

    provider = "anthropic"

    def __init__(self, provider: str | None = None) -> None:
        super().__init__(provider)
        self._block_to_tool: dict[int, int] = {}

    def decode(self, frame: SSEFrame) -> FrameResult:
        data = frame.data.strip()
        if not data:
            return FrameResult()
        payload = self.load_json(data)
        event_type = payload.get("type") or frame.event
        result = FrameResult()

        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            if block.get("type") == "tool_use":
                tool_index = len(self._block_to_tool)
                self._block_to_tool[payload.get("index", tool_index)] = tool_index
                result.deltas.append(
                    ToolCallDelta(
                        index=tool_index,
                        partial_call=ToolCallFragment(id=block.get("id"), name=block.get("name")),
                    )
                )
            elif block.get("type") == "text" and block.get("text"):
                result.deltas.append(TextDelta(text=block["text"]))
        elif event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta":
                result.deltas.append(TextDelta(text=delta.get("text", "")))
            elif delta.get("type") == "input_json_delta":
                block_index = payload.get("index", 0)
                tool_index = self._block_to_tool.get(block_index)
                if tool_index is None:
                    logger.warning(f"input_json_delta for unknown content block {block_index}")
                else:
                    result.deltas.append(
                        ToolCallDelta(
                            index=tool_index,
                            partial_call=ToolCallFragment(arguments=delta.get("partial_json", "")),
                        )
                    )
        elif event_type == "message_delta":
            stop_reason = (payload.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self.finish_reason = stop_reason
        elif event_type == "message_stop":
            result.done = True
        elif event_type == "error":
            result.error = self.error_event(payload, data)
        # message_start, content_block_stop and ping carry nothing to forward.
        return result


class AnthropicStrategy(ProviderStrategy):
    name = "anthropic"

    def create_decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder(self.name)

    def headers(self, api_key: str | None, stream: bool) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        if api_key:
            headers["x-api-key"] = api_key
        return headers

    def build_body(
        self,
        model: ModelDescriptor,
        messages: list[ChatMessage],
        options: CompletionOptions,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model.model_id,
            "messages": self.convert_messages(messages),
            "stream": options.stream,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        system = "\n\n".join(m.text() for m in messages if m.role == "system" and m.text())
        if system:
            body["system"] = system
        tools = self.convert_tools(options.tools)
        if tools:
            body["tools"] = tools
            choice = self.tool_choice(options.tool_choice)
            if choice is not None:
                body["tool_choice"] = choice
        return body

    def tool_choice(self, choice: str | None) -> dict[str, Any] | None:
        if choice is None:
            return None
        mapped = {"auto": "auto", "none": "none", "required": "any"}.get(choice)
        if mapped:
            return {"type": mapped}
        return {"type": "tool", "name": normalize_tool_name(choice)}

    def convert_messages(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                continue
            if message.role == "tool":
                result_block = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.text(),
                    "is_error": message.is_error,
                }
                previous = converted[-1] if converted else None
                # All results for one assistant turn belong in a single user message.
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(b.get("type") == "tool_result" for b in previous["content"])
                ):
                    previous["content"].append(result_block)
                else:
                    converted.append({"role": "user", "content": [result_block]})
            elif message.role == "assistant":
                blocks: list[dict[str, Any]] = []
                if message.text():
                    blocks.append({"type": "text", "text": message.text()})
                if message.tool_calls:
                    blocks.extend(self.tool_calls_to_provider(message.tool_calls))
                converted.append({"role": "assistant", "content": blocks or message.text()})
            else:
                converted.append({"role": "user", "content": self._content(message)})
        return converted

    @staticmethod
    def _content(message: ChatMessage) -> str | list[dict[str, Any]]:
        parts = message.parts()
        if not any(isinstance(p, ImagePart) for p in parts):
            return message.text()
        blocks: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ImagePart):
                blocks.append(
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": part.mime_type, "data": part.data},
                    }
                )
            else:
                blocks.append({"type": "text", "text": part.text})
        return blocks

    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        functions, special = split_tools(tools, self.name)
        converted: list[dict[str, Any]] = [
            {
                "name": normalize_tool_name(tool.function_name),
                "description": tool.description,
                "input_schema": sanitize_schema_for_provider(tool.parameters, self.name),
            }
            for tool in functions
        ]
        for tool in special:
            if tool.id in WEB_SEARCH_TOOL_IDS:
                converted.append({"type": "web_search_20250305", "name": "web_search", "max_uses": 5})
            else:
                logger.warning(f"Special tool {tool.id} has no anthropic equivalent; skipping")
        return converted

    def tool_calls_to_provider(self, calls: list[ToolCall]) -> list[dict[str, Any]]:
        return [
            {"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments}
            for call in calls
        ]

    def tool_calls_from_provider(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for block in raw_calls:
            if block.get("type", "tool_use") != "tool_use":
                continue
            name = block.get("name", "")
            calls.append(
                ToolCall(
                    id=block.get("id") or f"call_{len(calls)}",
                    name=name,
                    arguments=parse_tool_arguments(block.get("input"), name),
                    provider=self.name,
                    index=len(calls),
                )
            )
        return calls

    def parse_response(self, data: dict[str, Any]) -> CompletionResult:
        blocks = data.get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        return CompletionResult(
            content=text,
            tool_calls=self.tool_calls_from_provider(blocks),
            finish_reason=normalize_finish_reason(data.get("stop_reason")),
            model=data.get("model"),
            usage=data.get("usage"),
        )
