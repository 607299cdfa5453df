"""
Provider Strategy Interface

Each supported provider is one strategy object that bundles the three things
that differ between vendors: how a completion request is built, how the
streamed response is decoded, and how tools and tool calls are mapped.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from llm_relay.chat.models import (
    ChatMessage,
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    ModelDescriptor,
    ProviderError,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolDefinition,
)
from llm_relay.errors import NormalizationError
from llm_relay.streaming.sse_parser import SSEFrame

logger = logging.getLogger(__name__)


@dataclass
class FrameResult:
    """What a decoder extracted from one framed payload."""

    deltas: list[TextDelta | ToolCallDelta] = field(default_factory=list)
    done: bool = False
    error: ProviderError | None = None


class StreamDecoder(ABC):
    """
    Stateful per-request decoder from framed provider payloads to deltas.

    Decoders never parse tool arguments; they only forward fragments. The
    last finish reason the provider reported is kept in ``finish_reason``.
    """

    provider: str = "unknown"

    def __init__(self, provider: str | None = None) -> None:
        if provider:
            self.provider = provider
        self.finish_reason: str | None = None

    @abstractmethod
    def decode(self, frame: SSEFrame) -> FrameResult:
        """Decode one frame. Raises NormalizationError on unreadable payloads."""

    @staticmethod
    def load_json(data: str) -> dict[str, Any]:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise NormalizationError(f"Invalid JSON in stream chunk: {e}", data) from e
        if not isinstance(payload, dict):
            raise NormalizationError("Stream chunk is not a JSON object", data)
        return payload

    def error_event(self, payload: dict[str, Any], raw: str) -> ProviderError:
        """Build a ProviderError from an in-band error payload."""
        error = payload.get("error", payload)
        message = "Provider reported an error during streaming"
        code = "STREAM_ERROR"
        status: int | None = None
        if isinstance(error, dict):
            message = str(error.get("message") or message)
            code = str(error.get("type") or error.get("status") or error.get("code") or code)
            if isinstance(error.get("code"), int):
                status = error["code"]
        elif isinstance(error, str):
            message = error
        return ProviderError(http_status=status, raw_body=raw, message=message, code=code)


class ProviderStrategy(ABC):
    """Request building, stream decoding and tool mapping for one provider."""

    name: ClassVar[str]
    requires_api_key: ClassVar[bool] = True

    def build_request(
        self,
        model: ModelDescriptor,
        messages: list[ChatMessage],
        api_key: str | None,
        options: CompletionOptions,
    ) -> CompletionRequest:
        """Build the HTTP request. ``options`` must already carry resolved temperature and max tokens."""
        if options.temperature is None or options.max_tokens is None:
            raise ValueError("temperature and max_tokens must be resolved before building a request")
        body = self.build_body(model, messages, options)
        return CompletionRequest(
            provider=self.name,
            model_id=model.id,
            url=self.endpoint(model, options.stream),
            headers=self.headers(api_key, options.stream),
            body=body,
            stream=options.stream,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
        )

    def endpoint(self, model: ModelDescriptor, stream: bool) -> str:
        return model.endpoint()

    @abstractmethod
    def headers(self, api_key: str | None, stream: bool) -> dict[str, str]: ...

    @abstractmethod
    def build_body(
        self,
        model: ModelDescriptor,
        messages: list[ChatMessage],
        options: CompletionOptions,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Generic tool definitions to the provider's tool array."""

    @abstractmethod
    def tool_calls_to_provider(self, calls: list[ToolCall]) -> list[dict[str, Any]]: ...

    @abstractmethod
    def tool_calls_from_provider(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]: ...

    @abstractmethod
    def create_decoder(self) -> StreamDecoder: ...

    @abstractmethod
    def parse_response(self, data: dict[str, Any]) -> CompletionResult:
        """Normalize a non-streaming response body."""
