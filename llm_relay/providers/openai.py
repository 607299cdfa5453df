"""OpenAI Chat Completions, and the OpenAI-compatible custom endpoint flavour."""

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
    dump_tool_arguments,
    normalize_finish_reason,
    normalize_tool_name,
    parse_tool_arguments,
    sanitize_schema_for_provider,
    split_tools,
)
from llm_relay.streaming.sse_parser import SSEFrame

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL_IDS = frozenset({"webSearch", "web_search"})


def extract_text(content: Any) -> str:
    """Text of a message/delta ``content``, which may be a string or a list of parts."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces: list[str] = []
        for part in content:
            if isinstance(part, str):
                pieces.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                pieces.append(str(part.get("text", "")))
        return "".join(pieces)
    return str(content)


class OpenAIStreamDecoder(StreamDecoder):
    provider = "openai"

    def decode(self, frame: SSEFrame) -> FrameResult:
        data = frame.data.strip()
        if not data:
            return FrameResult()
        if data == "[DONE]":
            return FrameResult(done=True)

        chunk = self.load_json(data)
        if chunk.get("error"):
            return FrameResult(error=self.error_event(chunk, data))

        result = FrameResult()
        choices = chunk.get("choices") or []
        if not choices:
            # Usage-only chunk sent before [DONE].
            return result
        choice = choices[0]
        delta = choice.get("delta") or {}

        text = extract_text(delta.get("content"))
        if text:
            result.deltas.append(TextDelta(text=text))

        for tc in delta.get("tool_calls") or []:
            function = tc.get("function") or {}
            result.deltas.append(
                ToolCallDelta(
                    index=tc.get("index", 0),
                    partial_call=ToolCallFragment(
                        id=tc.get("id"),
                        name=function.get("name"),
                        arguments=function.get("arguments") or "",
                    ),
                )
            )

        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]
        return result


class OpenAIStrategy(ProviderStrategy):
    name = "openai"

    def create_decoder(self) -> StreamDecoder:
        return OpenAIStreamDecoder(self.name)

    def headers(self, api_key: str | None, stream: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
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
        functions, special = split_tools(options.tools, self.name)
        tools = self._function_tools(functions)
        if tools:
            body["tools"] = tools
            choice = self.tool_choice(options.tool_choice)
            if choice is not None:
                body["tool_choice"] = choice
        body.update(self.special_tool_options(special))
        return body

    def special_tool_options(self, special: list[ToolDefinition]) -> dict[str, Any]:
        options: dict[str, Any] = {}
        for tool in special:
            if tool.id in WEB_SEARCH_TOOL_IDS:
                options["web_search_options"] = {}
            else:
                logger.warning(f"Special tool {tool.id} has no {self.name} equivalent; skipping")
        return options

    def tool_choice(self, choice: str | None) -> Any:
        if choice is None:
            return None
        if choice in ("auto", "none", "required"):
            return choice
        return {"type": "function", "function": {"name": normalize_tool_name(choice)}}

    def convert_messages(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        converted: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "tool":
                converted.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.text(),
                    }
                )
            elif message.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": message.text() or None}
                if message.tool_calls:
                    entry["tool_calls"] = self.tool_calls_to_provider(message.tool_calls)
                converted.append(entry)
            else:
                entry = {"role": message.role, "content": self._content(message)}
                if message.name:
                    entry["name"] = message.name
                converted.append(entry)
        return converted

    @staticmethod
    def _content(message: ChatMessage) -> str | list[dict[str, Any]]:
        parts = message.parts()
        if not any(isinstance(p, ImagePart) for p in parts):
            return message.text()
        content: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, ImagePart):
                content.append(
                    {"type": "image_url", "image_url": {"url": f"data:{part.mime_type};base64,{part.data}"}}
                )
            else:
                content.append({"type": "text", "text": part.text})
        return content

    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        functions, _ = split_tools(tools, self.name)
        return self._function_tools(functions)

    def _function_tools(self, functions: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": normalize_tool_name(tool.function_name),
                    "description": tool.description,
                    "parameters": sanitize_schema_for_provider(tool.parameters, self.name),
                },
            }
            for tool in functions
        ]

    def tool_calls_to_provider(self, calls: list[ToolCall]) -> list[dict[str, Any]]:
        return [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": dump_tool_arguments(call.arguments)},
            }
            for call in calls
        ]

    def tool_calls_from_provider(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for position, raw in enumerate(raw_calls):
            function = raw.get("function") or {}
            name = function.get("name", "")
            calls.append(
                ToolCall(
                    id=raw.get("id") or f"call_{position}",
                    name=name,
                    arguments=parse_tool_arguments(function.get("arguments"), name),
                    provider=self.name,
                    index=raw.get("index", position),
                )
            )
        return calls

    def parse_response(self, data: dict[str, Any]) -> CompletionResult:
        choices = data.get("choices") or []
        if not choices:
            return CompletionResult(model=data.get("model"), usage=data.get("usage"))
        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls = self.tool_calls_from_provider(message.get("tool_calls") or [])
        return CompletionResult(
            content=extract_text(message.get("content")),
            tool_calls=tool_calls,
            finish_reason=normalize_finish_reason(choice.get("finish_reason")),
            model=data.get("model"),
            usage=data.get("usage"),
        )


class CustomOpenAIStrategy(OpenAIStrategy):
    """Self-hosted OpenAI-compatible servers (vLLM, llama.cpp, LM Studio, ...)."""

    name = "custom"
    requires_api_key = False

    def special_tool_options(self, special: list[ToolDefinition]) -> dict[str, Any]:
        if special:
            logger.warning("Custom endpoints do not support special tools; skipping %d", len(special))
        return {}
