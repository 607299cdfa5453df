#!/usr/bin/env python3
"""Test provider request building: parameter resolution, clamping and provider shapes."""

from __future__ import annotations

import pytest

from llm_relay.chat.models import (
    AppRecord,
    ChatMessage,
    CompletionOptions,
    ImagePart,
    ModelDescriptor,
    TextPart,
    ToolCall,
    ToolDefinition,
)
from llm_relay.errors import ApiKeyMissingError, UnsupportedProviderError
from llm_relay.request_builder import RequestDefaults, build_request, resolve_options


def _model(provider: str = "openai", **overrides) -> ModelDescriptor:
    urls = {
        "openai": "https://api.openai.com/v1/chat/completions",
        "anthropic": "https://api.anthropic.com/v1/messages",
        "google": "https://generativelanguage.googleapis.com/v1beta/models/{model_id}",
        "mistral": "https://api.mistral.ai/v1/chat/completions",
        "custom": "http://localhost:8000/v1/chat/completions",
    }
    fields = {
        "id": f"{provider}-model",
        "model_id": "m-1",
        "provider": provider,
        "url": urls.get(provider, "https://example.invalid"),
        "token_limit": 4096,
    }
    fields.update(overrides)
    return ModelDescriptor(**fields)


MESSAGES = [
    ChatMessage(role="system", content="Be brief."),
    ChatMessage(role="user", content="Weather in Paris?"),
]

TOOL = ToolDefinition(id="get_weather", description="Weather", parameters={"type": "object", "properties": {}})


def test_max_tokens_clamped_to_model_limit():
    print("🧪 Testing max_tokens clamp")
    request = build_request(_model(), MESSAGES, "sk-test", CompletionOptions(max_tokens=100000))
    assert request.max_tokens == 4096
    assert request.body["max_tokens"] == 4096
    print("✅ 100000 clamped to 4096")


def test_parameter_resolution_order():
    print("🧪 Testing temperature and max_tokens fallbacks")
    model = _model()
    app = AppRecord(id="a", preferred_temperature=0.2, preferred_output_tokens=1000)
    defaults = RequestDefaults(temperature=0.9, max_tokens=2048)

    explicit = resolve_options(model, CompletionOptions(temperature=1.5, max_tokens=10), app, defaults)
    assert (explicit.temperature, explicit.max_tokens) == (1.5, 10)

    from_app = resolve_options(model, CompletionOptions(), app, defaults)
    assert (from_app.temperature, from_app.max_tokens) == (0.2, 1000)

    from_defaults = resolve_options(model, CompletionOptions(), AppRecord(id="b"), defaults)
    assert (from_defaults.temperature, from_defaults.max_tokens) == (0.9, 2048)

    zero = resolve_options(model, CompletionOptions(temperature=0.0), app, defaults)
    assert zero.temperature == 0.0
    print("✅ request > app > default, and 0.0 is a real value")


def test_unsupported_provider():
    with pytest.raises(UnsupportedProviderError) as exc_info:
        build_request(_model("cohere"), MESSAGES, "key", CompletionOptions())
    assert "cohere" in exc_info.value.message


def test_missing_api_key():
    with pytest.raises(ApiKeyMissingError):
        build_request(_model("anthropic"), MESSAGES, None, CompletionOptions())


def test_custom_provider_needs_no_key():
    request = build_request(_model("custom"), MESSAGES, None, CompletionOptions())
    assert "Authorization" not in request.headers
    assert request.provider == "custom"


def test_api_key_never_in_repr_or_url():
    print("🧪 Testing credential hygiene")
    for provider in ("openai", "anthropic", "google", "mistral"):
        request = build_request(_model(provider), MESSAGES, "sk-secret-123", CompletionOptions())
        assert "sk-secret-123" not in repr(request)
        assert "sk-secret-123" not in request.url
        assert "sk-secret-123" in " ".join(request.headers.values())
    print("✅ Key only lives in headers")


def test_openai_body():
    request = build_request(
        _model(), MESSAGES, "k", CompletionOptions(temperature=0.3, tools=[TOOL], tool_choice="get_weather")
    )
    body = request.body
    assert body["model"] == "m-1"
    assert body["stream"] is True
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}
    assert body["tools"][0]["function"]["name"] == "get_weather"
    assert body["tool_choice"] == {"type": "function", "function": {"name": "get_weather"}}
    assert request.headers["Authorization"] == "Bearer k"


def test_anthropic_body():
    print("🧪 Testing Anthropic message conversion")
    call = ToolCall(id="toolu_1", name="get_weather", arguments={"city": "Paris"})
    messages = MESSAGES + [
        ChatMessage(role="assistant", content="Checking.", tool_calls=[call]),
        ChatMessage(role="tool", tool_call_id="toolu_1", content='{"temp": 21}'),
        ChatMessage(role="tool", tool_call_id="toolu_2", content="boom", is_error=True),
    ]
    request = build_request(
        _model("anthropic"), messages, "k", CompletionOptions(tools=[TOOL], tool_choice="required")
    )
    body = request.body
    assert body["system"] == "Be brief."
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    assert body["messages"][1]["content"][1] == {
        "type": "tool_use",
        "id": "toolu_1",
        "name": "get_weather",
        "input": {"city": "Paris"},
    }
    results = body["messages"][2]["content"]
    assert [r["tool_use_id"] for r in results] == ["toolu_1", "toolu_2"]
    assert results[1]["is_error"] is True
    assert body["tool_choice"] == {"type": "any"}
    assert request.headers["x-api-key"] == "k"
    assert request.headers["anthropic-version"] == "2023-06-01"
    print("✅ System hoisted, tool results merged into one user turn")


def test_google_body_and_endpoint():
    print("🧪 Testing Gemini request")
    call = ToolCall(id="call_0_x", name="get_weather", arguments={"city": "Rome"})
    messages = MESSAGES + [
        ChatMessage(role="assistant", tool_calls=[call]),
        ChatMessage(role="tool", tool_call_id="call_0_x", content='{"temp": 25}'),
    ]
    request = build_request(
        _model("google"), messages, "g-key", CompletionOptions(temperature=0.1, max_tokens=256, tools=[TOOL])
    )
    assert request.url == (
        "https://generativelanguage.googleapis.com/v1beta/models/m-1:streamGenerateContent?alt=sse"
    )
    assert request.headers["x-goog-api-key"] == "g-key"
    body = request.body
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["generationConfig"] == {"temperature": 0.1, "maxOutputTokens": 256}
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    response = body["contents"][2]["parts"][0]["functionResponse"]
    assert response == {"name": "get_weather", "response": {"temp": 25}, "id": "call_0_x"}
    assert body["tools"][0]["functionDeclarations"][0]["name"] == "get_weather"

    sync = build_request(_model("google"), MESSAGES, "g-key", CompletionOptions(stream=False))
    assert sync.url.endswith("/models/m-1:generateContent")
    print("✅ Streaming and unary endpoints, function responses named from the call")


def test_images_per_provider():
    image_message = ChatMessage(
        role="user", content=[TextPart(text="What is this?"), ImagePart(mime_type="image/jpeg", data="QUJD")]
    )
    openai_body = build_request(_model(), [image_message], "k", CompletionOptions()).body
    assert openai_body["messages"][0]["content"][1] == {
        "type": "image_url",
        "image_url": {"url": "data:image/jpeg;base64,QUJD"},
    }
    anthropic_body = build_request(_model("anthropic"), [image_message], "k", CompletionOptions()).body
    assert anthropic_body["messages"][0]["content"][1]["source"] == {
        "type": "base64",
        "media_type": "image/jpeg",
        "data": "QUJD",
    }
    google_body = build_request(_model("google"), [image_message], "k", CompletionOptions()).body
    assert google_body["contents"][0]["parts"][1] == {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}}


def test_mistral_tool_choice():
    request = build_request(_model("mistral"), MESSAGES, "k", CompletionOptions(tools=[TOOL], tool_choice="required"))
    assert request.body["tool_choice"] == "any"


def test_web_search_option_for_openai():
    web_search = ToolDefinition(id="webSearch", is_special_tool=True, provider="openai")
    request = build_request(_model(), MESSAGES, "k", CompletionOptions(tools=[web_search]))
    assert request.body["web_search_options"] == {}
    assert "tools" not in request.body



def test_web_search_server_tool_for_anthropic():
    print("🧪 Testing the Anthropic web search server tool")
    web_search = ToolDefinition(id="webSearch", is_special_tool=True, provider="anthropic")
    request = build_request(_model("anthropic"), MESSAGES, "k", CompletionOptions(tools=[TOOL, web_search]))
    assert request.body["tools"] == [
        {"name": "get_weather", "description": "Weather", "input_schema": {"type": "object", "properties": {}}},
        {"type": "web_search_20250305", "name": "web_search", "max_uses": 5},
    ]
    print("✅ Server tool block sits beside the function tool")

if __name__ == "__main__":
    test_max_tokens_clamped_to_model_limit()
    test_parameter_resolution_order()
    test_unsupported_provider()
    test_missing_api_key()
    test_custom_provider_needs_no_key()
    test_api_key_never_in_repr_or_url()
    test_openai_body()
    test_anthropic_body()
    test_google_body_and_endpoint()
    test_images_per_provider()
    test_mistral_tool_choice()
    test_web_search_option_for_openai()
    test_web_search_server_tool_for_anthropic()
