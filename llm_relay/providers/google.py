"""Google Gemini ``generateContent`` / ``streamGenerateContent``."""

from __future__ import annotations

import json
import logging
import re
import uuid
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
from llm_relay.streaming.sse_parser import SSEFrame

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_TOOL_IDS = frozenset({"googleSearch", "google_search"})

_ACTION_SUFFIX = re.compile(r":(stream)?[Gg]enerateContent$")


def _function_call_id(index: int, seed: str) -> str:
    # Gemini does not always return call ids; generated ones must be unique per turn.
    return f"call_{index}_{seed}"


class GoogleStreamDecoder(StreamDecoder):
    """
    Each SSE frame from Gemini is a complete ``GenerateContentResponse``.

    Function calls arrive whole, so every call becomes a single
    ToolCallDelta carrying the serialized arguments. There is no explicit
    terminator: the stream ends after the chunk carrying ``finishReason``.
    """

    provider = "google"

    def __init__(self, provider: str | None = None, call_id_seed: str | None = None) -> None:
        super().__init__(provider)
        self._call_id_seed = call_id_seed or uuid.uuid4().hex[:8]
        self._tool_index = 0

    def decode(self, frame: SSEFrame) -> FrameResult:
        data = frame.data.strip()
        if not data:
            return FrameResult()
        chunk = self.load_json(data)
        if chunk.get("error"):
            return FrameResult(error=self.error_event(chunk, data))

        result = FrameResult()
        candidates = chunk.get("candidates") or []
        if not candidates:
            block_reason = (chunk.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                logger.warning(f"Gemini blocked the prompt: {block_reason}")
                self.finish_reason = "content_filter"
            return result

        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                call = part["functionCall"] or {}
                index = self._tool_index
                self._tool_index += 1
                result.deltas.append(
                    ToolCallDelta(
                        index=index,
                        partial_call=ToolCallFragment(
                            id=call.get("id") or _function_call_id(index, self._call_id_seed),
                            name=call.get("name"),
                            arguments=json.dumps(call.get("args") or {}, ensure_ascii=False),
                        ),
                    )
                )
            elif part.get("text") and not part.get("thought"):
                result.deltas.append(TextDelta(text=part["text"]))

        if candidate.get("finishReason"):
            self.finish_reason = candidate["finishReason"]
        return result


class GoogleStrategy(ProviderStrategy):
    name = "google"

    def create_decoder(self) -> StreamDecoder:
        return GoogleStreamDecoder(self.name)

    def endpoint(self, model: ModelDescriptor, stream: bool) -> str:
        base = _ACTION_SUFFIX.sub("", model.endpoint().split("?", 1)[0])
        if stream:
            return f"{base}:streamGenerateContent?alt=sse"
        return f"{base}:generateContent"

    def headers(self, api_key: str | None, stream: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
        if api_key:
            headers["x-goog-api-key"] = api_key
        return headers

    def build_body(
        self,
        model: ModelDescriptor,
        messages: list[ChatMessage],
        options: CompletionOptions,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "contents": self.convert_messages(messages),
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        system_parts = [{"text": m.text()} for m in messages if m.role == "system" and m.text()]
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        tools = self.convert_tools(options.tools)
        if tools:
            body["tools"] = tools
            tool_config = self.tool_config(options.tool_choice, tools)
            if tool_config is not None:
                body["toolConfig"] = tool_config
        return body

    @staticmethod
    def tool_config(choice: str | None, tools: list[dict[str, Any]]) -> dict[str, Any] | None:
        if choice is None or not any("functionDeclarations" in t for t in tools):
            return None
        mode = {"auto": "AUTO", "none": "NONE", "required": "ANY"}.get(choice)
        if mode:
            return {"functionCallingConfig": {"mode": mode}}
        return {
            "functionCallingConfig": {
                "mode": "ANY",
                "allowedFunctionNames": [normalize_tool_name(choice)],
            }
        }

    def convert_messages(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        call_names: dict[str, str] = {}
        contents: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                continue
            if message.role == "assistant":
                parts: list[dict[str, Any]] = []
                if message.text():
                    parts.append({"text": message.text()})
                for call in message.tool_calls or []:
                    call_names[call.id] = call.name
                parts.extend(self.tool_calls_to_provider(message.tool_calls or []))
                contents.append({"role": "model", "parts": parts or [{"text": ""}]})
            elif message.role == "tool":
                name = message.name or call_names.get(message.tool_call_id or "", "")
                response_part = {
                    "functionResponse": {
                        "name": normalize_tool_name(name),
                        "response": self._tool_response(message),
                    }
                }
                if message.tool_call_id:
                    response_part["functionResponse"]["id"] = message.tool_call_id
                previous = contents[-1] if contents else None
                if previous is not None and previous["role"] == "user" and all(
                    "functionResponse" in p for p in previous["parts"]
                ):
                    previous["parts"].append(response_part)
                else:
                    contents.append({"role": "user", "parts": [response_part]})
            else:
                contents.append({"role": "user", "parts": self._parts(message)})
        return contents

    @staticmethod
    def _tool_response(message: ChatMessage) -> dict[str, Any]:
        text = message.text()
        if message.is_error:
            return {"error": text}
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError):
            return {"result": text}
        if isinstance(parsed, dict):
            return parsed
        return {"result": parsed}

    @staticmethod
    def _parts(message: ChatMessage) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for part in message.parts():
            if isinstance(part, ImagePart):
                parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
            else:
                parts.append({"text": part.text})
        return parts or [{"text": ""}]

    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        functions, special = split_tools(tools, self.name)
        if any(tool.id in GOOGLE_SEARCH_TOOL_IDS for tool in special):
            if functions:
                logger.warning(
                    "Google search grounding cannot be combined with function calling; "
                    f"dropping {len(functions)} function declaration(s)"
                )
            return [{"google_search": {}}]
        for tool in special:
            logger.warning(f"Special tool {tool.id} has no google equivalent; skipping")
        if not functions:
            return []
        return [
            {
                "functionDeclarations": [
                    {
                        "name": normalize_tool_name(tool.function_name),
                        "description": tool.description,
                        "parameters": sanitize_schema_for_provider(tool.parameters, self.name),
                    }
                    for tool in functions
                ]
            }
        ]

    def tool_calls_to_provider(self, calls: list[ToolCall]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for call in calls:
            function_call: dict[str, Any] = {"name": call.name, "args": call.arguments}
            if call.id:
                function_call["id"] = call.id
            parts.append({"functionCall": function_call})
        return parts

    def tool_calls_from_provider(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        seed = uuid.uuid4().hex[:8]
        calls: list[ToolCall] = []
        for raw in raw_calls:
            call = raw.get("functionCall", raw) if isinstance(raw, dict) else {}
            if "name" not in call:
                continue
            index = len(calls)
            calls.append(
                ToolCall(
                    id=call.get("id") or _function_call_id(index, seed),
                    name=call["name"],
                    arguments=parse_tool_arguments(call.get("args"), call["name"]),
                    provider=self.name,
                    index=index,
                )
            )
        return calls

    def parse_response(self, data: dict[str, Any]) -> CompletionResult:
        candidates = data.get("candidates") or []
        if not candidates:
            return CompletionResult(model=data.get("modelVersion"), usage=data.get("usageMetadata"))
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
        tool_calls = self.tool_calls_from_provider([p for p in parts if "functionCall" in p])
        finish_reason = normalize_finish_reason(candidate.get("finishReason"))
        if tool_calls and finish_reason == "stop":
            finish_reason = "tool_calls"
        return CompletionResult(
            content=text,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            model=data.get("modelVersion"),
            usage=data.get("usageMetadata"),
        )
