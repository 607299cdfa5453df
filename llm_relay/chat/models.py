"""
Chat Relay Data Models

Provider-agnostic data structures shared by the request builder, the
streaming normalizer and the session relay: catalog records, chat messages,
generic tool definitions and calls, outbound completion requests and the
normalized stream event union.
All strongly typed with Pydantic for validation and type safety.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# API-facing models accept and emit camelCase, matching the browser client.
_API_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


# ==============================================================================
# CATALOG RECORDS
# ==============================================================================


class ModelDescriptor(BaseModel):
    """A configured model and the endpoint that serves it."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, protected_namespaces=()
    )

    id: str
    model_id: str
    name: str = ""
    provider: str
    url: str
    token_limit: int = Field(default=4096, gt=0)
    default: bool = False
    api_key_env: str | None = None
    concurrency: int | None = Field(default=None, gt=0)

    def endpoint(self) -> str:
        """Endpoint URL with the ``{model_id}`` placeholder filled in."""
        return self.url.replace("{model_id}", self.model_id)


class AppRecord(BaseModel):
    """A configured app: prompt template bound to a preferred model."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, protected_namespaces=()
    )

    id: str
    name: str = ""
    system_prompt: str | None = None
    preferred_model: str | None = None
    preferred_temperature: float | None = None
    preferred_output_tokens: int | None = None
    tools: list[str] = Field(default_factory=list)
    allowed_models: list[str] = Field(default_factory=list)


# ==============================================================================
# CHAT MESSAGES
# ==============================================================================


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Inline image, base64 encoded."""

    model_config = _API_CONFIG

    type: Literal["image"] = "image"
    mime_type: str = "image/png"
    data: str


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]


class ToolCall(BaseModel):
    """A provider-agnostic tool invocation requested by the model."""

    model_config = _API_CONFIG

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    provider: str | None = None
    status: Literal["pending", "complete"] = "complete"
    index: int = 0


class ChatMessage(BaseModel):
    """One message of a conversation. The relay never mutates these."""

    model_config = _API_CONFIG

    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[ContentPart] | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None
    is_error: bool = False

    @field_validator("tool_calls")
    @classmethod
    def validate_tool_calls(cls, v: list[ToolCall] | None) -> list[ToolCall] | None:
        """Convert empty tool_calls list to None to avoid API errors."""
        if v is not None and len(v) == 0:
            return None
        return v

    def text(self) -> str:
        """Concatenated text of the message, ignoring non-text parts."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))

    def parts(self) -> list[TextPart | ImagePart]:
        """Content as a list of parts."""
        if self.content is None:
            return []
        if isinstance(self.content, str):
            return [TextPart(text=self.content)] if self.content else []
        return list(self.content)


# ==============================================================================
# TOOL DEFINITIONS
# ==============================================================================


class ToolDefinition(BaseModel):
    """Generic tool schema shared by every provider."""

    model_config = _API_CONFIG

    id: str
    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    is_special_tool: bool = False
    provider: str | None = None

    @property
    def function_name(self) -> str:
        return self.id or self.name


# ==============================================================================
# OUTBOUND REQUESTS
# ==============================================================================


class CompletionOptions(BaseModel):
    """Caller-supplied knobs for one completion."""

    stream: bool = True
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    tools: list[ToolDefinition] = Field(default_factory=list)
    tool_choice: str | None = None


class CompletionRequest(BaseModel):
    """A fully built provider HTTP request. The API key lives only in ``headers``."""

    model_config = ConfigDict(protected_namespaces=())

    provider: str
    model_id: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict, repr=False)
    body: dict[str, Any]
    stream: bool = True
    max_tokens: int
    temperature: float


class CompletionResult(BaseModel):
    """Normalized non-streaming completion."""

    model_config = _API_CONFIG

    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: str | None = None
    model: str | None = None
    usage: dict[str, Any] | None = None


# ==============================================================================
# NORMALIZED STREAM EVENTS
# ==============================================================================


class ToolCallFragment(BaseModel):
    """Partial tool call as streamed; ``arguments`` is a raw JSON text fragment."""

    id: str | None = None
    name: str | None = None
    arguments: str = ""


class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolCallDelta(BaseModel):
    type: Literal["tool_call_delta"] = "tool_call_delta"
    index: int
    partial_call: ToolCallFragment


class Complete(BaseModel):
    type: Literal["complete"] = "complete"
    finish_reason: str
    full_tool_calls: list[ToolCall] = Field(default_factory=list)


class ProviderError(BaseModel):
    """Failure observed inside the stream (in-band error or unreadable payload)."""

    type: Literal["provider_error"] = "provider_error"
    http_status: int | None = None
    raw_body: str = ""
    message: str
    code: str = "NORMALIZATION_ERROR"


StreamEvent = Annotated[
    TextDelta | ToolCallDelta | Complete | ProviderError, Field(discriminator="type")
]


# ==============================================================================
# HTTP API PAYLOADS
# ==============================================================================


class ChatTurnRequest(BaseModel):
    """Body of ``POST /api/apps/{appId}/chat/{chatId}``."""

    model_config = _API_CONFIG

    messages: list[ChatMessage] = Field(min_length=1)
    model_id: str | None = None
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    tool_choice: str | None = None


class SessionStatus(BaseModel):
    model_config = _API_CONFIG

    active: bool
    last_activity: datetime | None = None
    processing: bool | None = None


def utc_now() -> datetime:
    return datetime.now(UTC)
