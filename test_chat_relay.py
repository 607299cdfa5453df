#!/usr/bin/env python3
"""
Test the chat relay end to end against a fake LLM client.

The fake client streams canned OpenAI-style bodies, raises, or hangs until
cancelled, which is enough to exercise cancel-and-replace, stop, timeouts
and error mapping without any network.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from unittest.mock import MagicMock

import pytest

from llm_relay.chat.chat_relay import ChatRelay
from llm_relay.chat.models import AppRecord, ChatMessage, ChatTurnRequest, ModelDescriptor, ToolDefinition
from llm_relay.errors import (
    AppNotFoundError,
    ConfigurationError,
    ModelNotFoundError,
    NoActiveSessionError,
    ProviderAPIError,
    RequestTimeoutError,
)

logging.basicConfig(level=logging.INFO)

HANG = object()


def openai_body(*texts: str, finish: str = "stop") -> bytes:
    frames = [
        f"data: {json.dumps({'choices': [{'index': 0, 'delta': {'content': t}}]})}\n\n" for t in texts
    ]
    frames.append(f"data: {json.dumps({'choices': [{'index': 0, 'delta': {}, 'finish_reason': finish}]})}\n\n")
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode()


class FakeLLMClient:
    """Plays back one scripted response per call; the last one repeats."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[Any] = []
        self.active = 0
        self.peak = 0
        self.started = asyncio.Event()
        self.sync_response: dict[str, Any] = {
            "model": "gpt-4o-2024",
            "choices": [{"message": {"role": "assistant", "content": "Hello!"}, "finish_reason": "stop"}],
        }

    def _next(self) -> Any:
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]

    async def stream_bytes(self, request):
        self.requests.append(request)
        response = self._next()
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.set()
        try:
            if isinstance(response, Exception):
                raise response
            if response is HANG:
                await asyncio.Event().wait()
            for i in range(0, len(response), 16):
                yield response[i : i + 16]
                await asyncio.sleep(0)
        finally:
            self.active -= 1

    async def complete(self, request) -> dict[str, Any]:
        self.requests.append(request)
        response = self._next()
        if isinstance(response, Exception):
            raise response
        if response is HANG:
            await asyncio.Event().wait()
        return self.sync_response


class RecordingTransport:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: str, data: dict[str, Any]) -> None:
        if not self._closed:
            self.events.append((event, data))

    def close(self) -> None:
        self._closed = True

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


class FakeCatalog:
    def __init__(self) -> None:
        self.models = {
            "gpt": ModelDescriptor(
                id="gpt", model_id="gpt-4o", provider="openai", url="https://api.test/v1/chat/completions", default=True
            ),
            "claude": ModelDescriptor(
                id="claude", model_id="claude-x", provider="anthropic", url="https://api.test/v1/messages"
            ),
        }
        self.apps = {
            "chat": AppRecord(id="chat", system_prompt="Be nice."),
            "locked": AppRecord(id="locked", preferred_model="gpt", allowed_models=["gpt"]),
            "tools": AppRecord(id="tools", tools=["lookup", "unknown"]),
        }
        self.tools = {"lookup": ToolDefinition(id="lookup", description="Look something up")}

    def get_model(self, model_id: str) -> ModelDescriptor:
        if model_id not in self.models:
            raise ModelNotFoundError(model_id)
        return self.models[model_id]

    def default_model(self) -> ModelDescriptor:
        return self.models["gpt"]

    def get_app(self, app_id: str) -> AppRecord:
        if app_id not in self.apps:
            raise AppNotFoundError(app_id)
        return self.apps[app_id]

    def get_tools(self, tool_ids: list[str]) -> list[ToolDefinition]:
        return [self.tools[t] for t in tool_ids if t in self.tools]

    def resolve_api_key(self, model: ModelDescriptor) -> str | None:
        return "test-key"


def _turn(text: str = "Hi", **kwargs: Any) -> ChatTurnRequest:
    return ChatTurnRequest(messages=[ChatMessage(role="user", content=text)], **kwargs)


async def _relay(client: FakeLLMClient, **kwargs: Any) -> tuple[ChatRelay, RecordingTransport]:
    relay = ChatRelay(FakeCatalog(), client, recorder=kwargs.pop("recorder", MagicMock()), **kwargs)
    transport = RecordingTransport()
    await relay.register_session("c1", "chat", transport)
    return relay, transport


async def test_streaming_turn():
    print("🧪 Testing a plain streaming turn")
    client = FakeLLMClient(openai_body("Hel", "lo"))
    relay, transport = await _relay(client)

    request = await relay.dispatch_turn("c1", "chat", _turn())
    await request.wait()

    assert transport.names() == ["connected", "processing", "chunk", "chunk", "done"]
    assert transport.events[0][1] == {"chatId": "c1"}
    assert "".join(d["content"] for n, d in transport.events if n == "chunk") == "Hello"
    assert transport.events[-1][1] == {"finishReason": "stop"}
    assert relay.status("c1").processing is False
    print("✅ connected → processing → chunk* → done")


async def test_cut_off_tool_call_is_not_reported_as_done():
    print("🧪 Testing a stream that drops mid tool call")
    partial = {"index": 0, "id": "c1", "function": {"name": "get_weather", "arguments": '{"city": "Pa'}}
    body = f"data: {json.dumps({'choices': [{'index': 0, 'delta': {'tool_calls': [partial]}}]})}\n\n".encode()
    relay, transport = await _relay(FakeLLMClient(body))

    await (await relay.dispatch_turn("c1", "chat", _turn())).wait()

    assert transport.names() == ["connected", "processing", "done"]
    assert transport.events[-1][1] == {"finishReason": "connection_closed"}
    print("✅ done carried no toolCalls for the truncated call")


async def test_app_system_prompt_and_tools():
    client = FakeLLMClient(openai_body("ok"))
    relay, _ = await _relay(client)

    await (await relay.dispatch_turn("c1", "chat", _turn())).wait()
    body = client.requests[0].body
    assert body["messages"][0] == {"role": "system", "content": "Be nice."}
    assert client.requests[0].headers["Authorization"] == "Bearer test-key"

    await (await relay.dispatch_turn("c1", "tools", _turn())).wait()
    tools = client.requests[1].body["tools"]
    assert [t["function"]["name"] for t in tools] == ["lookup"]


async def test_new_turn_cancels_in_flight_turn():
    print("🧪 Testing cancel-and-replace")
    client = FakeLLMClient(HANG, openai_body("second"))
    relay, transport = await _relay(client)

    first = await relay.dispatch_turn("c1", "chat", _turn("one"))
    await client.started.wait()
    second = await relay.dispatch_turn("c1", "chat", _turn("two"))

    assert first.done and first.cancel_requested
    await second.wait()

    assert client.peak == 1
    assert transport.names() == ["connected", "processing", "processing", "chunk", "done"]
    assert transport.events[3][1] == {"content": "second"}
    print("✅ At most one request in flight; only the new turn produced output")


async def test_stop_emits_single_stopped_event():
    print("🧪 Testing stop")
    client = FakeLLMClient(HANG)
    relay, transport = await _relay(client)

    request = await relay.dispatch_turn("c1", "chat", _turn())
    await client.started.wait()
    await relay.stop("c1")

    assert request.done
    assert transport.names() == ["connected", "processing", "stopped"]
    assert transport.events[-1][1] == {"message": "Chat stream stopped by client"}
    assert transport.closed
    assert client.active == 0

    with pytest.raises(NoActiveSessionError):
        await relay.stop("c1")
    print("✅ Exactly one stopped event, nothing after it")


async def test_stop_without_in_flight_turn():
    relay, transport = await _relay(FakeLLMClient(openai_body("x")))
    await relay.stop("c1")
    assert transport.names() == ["connected", "stopped"]


async def test_timeout_then_session_is_reusable():
    print("🧪 Testing request timeout")
    client = FakeLLMClient(HANG, openai_body("recovered"))
    relay, transport = await _relay(client, request_timeout=0.05)

    await (await relay.dispatch_turn("c1", "chat", _turn())).wait()
    errors = [d for n, d in transport.events if n == "error"]
    assert len(errors) == 1
    assert errors[0]["code"] == "REQUEST_TIMEOUT"
    assert errors[0]["message"] == "Request timed out after 0.05 seconds"
    assert "done" not in transport.names()
    assert relay.registry.active_request("c1") is None

    await (await relay.dispatch_turn("c1", "chat", _turn())).wait()
    assert transport.names()[-1] == "done"
    print("✅ One error event, then the same session served the next turn")


async def test_provider_http_error_is_classified():
    client = FakeLLMClient(ProviderAPIError(429, '{"error": {"message": "slow down"}}', "openai"))
    relay, transport = await _relay(client)

    await (await relay.dispatch_turn("c1", "chat", _turn())).wait()
    name, data = transport.events[-1]
    assert name == "error"
    assert data["code"] == "429"
    assert "rate limiting" in data["recommendation"]


async def test_in_stream_error_is_classified():
    body = b'data: {"choices": [{"delta": {"content": "par"}}]}\n\ndata: {"error": {"message": "Overloaded", "type": "overloaded_error"}}\n\n'
    relay, transport = await _relay(FakeLLMClient(body))

    await (await relay.dispatch_turn("c1", "chat", _turn())).wait()
    assert transport.names() == ["connected", "processing", "chunk", "error"]
    assert transport.events[-1][1]["code"] == "overloaded_error"


async def test_configuration_errors_send_nothing_upstream():
    print("🧪 Testing configuration errors")
    client = FakeLLMClient(openai_body("x"))
    relay, _ = await _relay(client)

    with pytest.raises(ModelNotFoundError):
        await relay.dispatch_turn("c1", "chat", _turn(model_id="missing"))
    with pytest.raises(AppNotFoundError):
        await relay.dispatch_turn("c1", "nope", _turn())
    with pytest.raises(ConfigurationError) as exc_info:
        await relay.dispatch_turn("c1", "locked", _turn(model_id="claude"))
    assert exc_info.value.code == "MODEL_NOT_ALLOWED"

    assert client.requests == []
    print("✅ Rejected before any provider call")


async def test_dispatch_without_session():
    relay = ChatRelay(FakeCatalog(), FakeLLMClient(openai_body("x")), recorder=MagicMock())
    with pytest.raises(NoActiveSessionError):
        await relay.dispatch_turn("ghost", "chat", _turn())


async def test_disconnect_cancels_turn_unless_replaced():
    client = FakeLLMClient(HANG)
    relay, old = await _relay(client)
    new = RecordingTransport()
    await relay.register_session("c1", "chat", new)

    request = await relay.dispatch_turn("c1", "chat", _turn())
    await client.started.wait()

    assert await relay.unregister_on_disconnect("c1", old) is False
    assert not request.done
    assert await relay.unregister_on_disconnect("c1", new) is True
    assert request.done


async def test_recorder_failure_does_not_break_turn():
    recorder = MagicMock()
    recorder.record_interaction.side_effect = RuntimeError("disk full")
    relay, transport = await _relay(FakeLLMClient(openai_body("fine")), recorder=recorder)

    await (await relay.dispatch_turn("c1", "chat", _turn())).wait()
    assert transport.names()[-1] == "done"
    kinds = [c.args[0] for c in recorder.record_interaction.call_args_list]
    assert kinds == ["chat_request", "chat_response"]


async def test_complete_once_and_model_test():
    print("🧪 Testing the non-streaming path")
    client = FakeLLMClient(None)
    relay = ChatRelay(FakeCatalog(), client, recorder=MagicMock())

    result = await relay.complete_once("chat", _turn())
    assert result.content == "Hello!"
    assert result.finish_reason == "stop"
    assert client.requests[0].stream is False
    assert client.requests[0].body["stream"] is False

    probe = await relay.test_model("gpt")
    assert probe.content == "Hello!"
    assert client.requests[1].body["messages"] == [{"role": "user", "content": "Say hello!"}]
    print("✅ Synchronous completion and model probe")


async def test_complete_once_timeout():
    relay = ChatRelay(FakeCatalog(), FakeLLMClient(HANG), recorder=MagicMock(), request_timeout=0.05)
    with pytest.raises(RequestTimeoutError):
        await relay.complete_once("chat", _turn())


async def test_shutdown_cancels_everything():
    client = FakeLLMClient(HANG)
    relay, transport = await _relay(client)
    request = await relay.dispatch_turn("c1", "chat", _turn())
    await client.started.wait()

    await relay.shutdown()
    assert request.done
    assert transport.closed
    assert len(relay.registry) == 0


if __name__ == "__main__":
    for test in (
        test_streaming_turn,
        test_cut_off_tool_call_is_not_reported_as_done,
        test_app_system_prompt_and_tools,
        test_new_turn_cancels_in_flight_turn,
        test_stop_emits_single_stopped_event,
        test_stop_without_in_flight_turn,
        test_timeout_then_session_is_reusable,
        test_provider_http_error_is_classified,
        test_in_stream_error_is_classified,
        test_configuration_errors_send_nothing_upstream,
        test_dispatch_without_session,
        test_disconnect_cancels_turn_unless_replaced,
        test_recorder_failure_does_not_break_turn,
        test_complete_once_and_model_test,
        test_complete_once_timeout,
        test_shutdown_cancels_everything,
    ):
        asyncio.run(test())
