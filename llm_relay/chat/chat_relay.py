"""
Chat Relay

Coordinates one chat turn end to end: resolves the app and model, builds the
provider request, passes it through the throttler, normalizes the streamed
response and pushes the resulting events to the chat's SSE transport.

Per chat id at most one turn is in flight. A new turn cancels the running one
and waits for it to finish before starting, so the old turn can never emit
anything after the new one begins.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict

from llm_relay.catalog import Catalog, InteractionRecorder, LoggingInteractionRecorder
from llm_relay.chat.logging_utils import (
    log_directional_flow,
    log_error_with_context,
    log_llm_request_complete,
    log_llm_request_start,
    log_stream_event,
)
from llm_relay.chat.models import (
    AppRecord,
    ChatMessage,
    ChatTurnRequest,
    Complete,
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    ModelDescriptor,
    ProviderError,
    SessionStatus,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
)
from llm_relay.chat.session_registry import CancellableRequest, SessionRegistry
from llm_relay.chat.transport import Transport
from llm_relay.clients.llm_client import LLMClient
from llm_relay.clients.throttler import RequestThrottler
from llm_relay.config import Configuration
from llm_relay.errors import (
    ClassifiedError,
    ConfigurationError,
    NoActiveSessionError,
    RequestTimeoutError,
    classify_error,
    classify_stream_error,
)
from llm_relay.providers import get_provider_strategy
from llm_relay.request_builder import RequestDefaults, build_request
from llm_relay.streaming.normalizer import StreamNormalizer

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Chat stream stopped by client"
MODEL_TEST_PROMPT = "Say hello!"


class PreparedTurn(BaseModel):
    """Everything resolved for a turn before any network I/O."""

    model_config = ConfigDict(protected_namespaces=())

    app: AppRecord | None
    model: ModelDescriptor
    request: CompletionRequest


class ChatRelay:
    """Relays chat turns between SSE sessions and LLM providers."""

    def __init__(
        self,
        catalog: Catalog,
        llm_client: LLMClient,
        registry: SessionRegistry | None = None,
        throttler: RequestThrottler | None = None,
        recorder: InteractionRecorder | None = None,
        request_timeout: float = 60.0,
        defaults: RequestDefaults | None = None,
    ) -> None:
        if request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self.catalog = catalog
        self.llm_client = llm_client
        self.registry = registry if registry is not None else SessionRegistry()
        self.throttler = throttler if throttler is not None else RequestThrottler()
        self.recorder = recorder if recorder is not None else LoggingInteractionRecorder()
        self.request_timeout = request_timeout
        self.defaults = defaults or RequestDefaults()

    @classmethod
    def from_configuration(
        cls, configuration: Configuration, catalog: Catalog, llm_client: LLMClient
    ) -> ChatRelay:
        relay_config = configuration.get_relay_config()
        return cls(
            catalog=catalog,
            llm_client=llm_client,
            throttler=RequestThrottler.from_config(
                configuration.get_throttle_config(), configuration.get_models()
            ),
            request_timeout=relay_config["request_timeout_seconds"],
            defaults=RequestDefaults(
                temperature=relay_config["default_temperature"],
                max_tokens=relay_config["default_max_tokens"],
            ),
        )

    # ------------------------------------------------------------------
    # Turn preparation
    # ------------------------------------------------------------------

    def prepare_turn(self, app_id: str, turn: ChatTurnRequest, stream: bool) -> PreparedTurn:
        """Resolve app, model, tools and key and build the request. Raises ConfigurationError."""
        app = self.catalog.get_app(app_id)
        model_id = turn.model_id or app.preferred_model
        model = self.catalog.get_model(model_id) if model_id else self.catalog.default_model()
        if app.allowed_models and model.id not in app.allowed_models:
            raise ConfigurationError(
                f"Model {model.id} is not allowed for app {app.id}",
                code="MODEL_NOT_ALLOWED",
                details={"appId": app.id, "modelId": model.id},
            )

        messages = list(turn.messages)
        if app.system_prompt and not any(m.role == "system" for m in messages):
            messages.insert(0, ChatMessage(role="system", content=app.system_prompt))

        options = CompletionOptions(
            stream=stream,
            temperature=turn.temperature,
            max_tokens=turn.max_tokens,
            tools=self.catalog.get_tools(app.tools),
            tool_choice=turn.tool_choice,
        )
        request = build_request(
            model,
            messages,
            self.catalog.resolve_api_key(model),
            options,
            app=app,
            defaults=self.defaults,
        )
        return PreparedTurn(app=app, model=model, request=request)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def register_session(self, chat_id: str, app_id: str, transport: Transport) -> None:
        await self.registry.register_session(chat_id, app_id, transport)
        transport.send("connected", {"chatId": chat_id})
        log_directional_flow("←", "SSE", "chat %s connected (app %s)", chat_id, app_id)

    async def dispatch_turn(
        self, chat_id: str, app_id: str, turn: ChatTurnRequest
    ) -> CancellableRequest:
        """
        Start a streaming turn for a chat with an open transport.

        Raises:
            NoActiveSessionError: no transport is registered for ``chat_id``.
            ConfigurationError: app/model/provider/key problems; nothing is sent upstream.
        """
        session = self.registry.get_session(chat_id)
        if session is None:
            raise NoActiveSessionError(chat_id)
        session.touch()

        prepared = self.prepare_turn(app_id, turn, stream=True)
        request = CancellableRequest(chat_id, prepared.model.id)

        previous = await self.registry.replace_request(chat_id, request)
        if previous is not None:
            logger.info(f"Chat {chat_id}: new turn cancels in-flight request {previous.request_id}")
            await previous.cancel()

        self._record(
            "chat_request",
            {
                "chatId": chat_id,
                "appId": app_id,
                "modelId": prepared.model.id,
                "provider": prepared.model.provider,
                "messageCount": len(turn.messages),
                "requestId": request.request_id,
            },
        )
        request.start(self._run_streaming_turn(chat_id, request, prepared))
        return request

    async def stop(self, chat_id: str) -> None:
        """Cancel the in-flight turn, send one ``stopped`` event and close the transport."""
        session = await self.registry.remove_session(chat_id)
        if session is None:
            raise NoActiveSessionError(chat_id)
        request = await self.registry.take_request(chat_id)
        if request is not None:
            await request.cancel()
        session.transport.send("stopped", {"message": STOPPED_MESSAGE})
        session.transport.close()
        log_directional_flow("←", "SSE", "chat %s stopped by client", chat_id)

    async def unregister_on_disconnect(self, chat_id: str, transport: Transport) -> bool:
        """Drop bookkeeping for a closed connection unless a newer one has replaced it."""
        session = await self.registry.remove_session(chat_id, transport)
        if session is None:
            return False
        request = await self.registry.take_request(chat_id)
        if request is not None:
            logger.info(f"Chat {chat_id}: client disconnected, cancelling {request.request_id}")
            await request.cancel()
        log_directional_flow("←", "SSE", "chat %s disconnected", chat_id)
        return True

    def status(self, chat_id: str) -> SessionStatus:
        return self.registry.status(chat_id)

    async def shutdown(self) -> None:
        """Cancel every in-flight turn and close every transport."""
        sessions, requests = await self.registry.drain()
        if requests:
            logger.info(f"Cancelling {len(requests)} in-flight request(s)")
            await asyncio.gather(*(r.cancel() for r in requests))
        for session in sessions:
            session.transport.close()

    # ------------------------------------------------------------------
    # Streaming path
    # ------------------------------------------------------------------

    async def _run_streaming_turn(
        self, chat_id: str, request: CancellableRequest, prepared: PreparedTurn
    ) -> None:
        model = prepared.model
        self._emit(chat_id, "processing", {"message": "Processing your request...", "modelId": model.id})
        start_time = log_llm_request_start(request.request_id, model.provider, model.id)
        outcome = "error"
        try:
            async with asyncio.timeout(self.request_timeout):
                async with self.throttler.slot(model.id):
                    log_directional_flow("→", "LLM", "%s request for chat %s", model.provider, chat_id)
                    outcome = await self._relay_stream(chat_id, prepared)
        except TimeoutError:
            outcome = "timeout"
            self._emit_error(chat_id, prepared, classify_error(RequestTimeoutError(self.request_timeout)))
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception as e:
            log_error_with_context(f"relaying chat {chat_id}", e)
            self._emit_error(chat_id, prepared, classify_error(e))
        finally:
            await self.registry.release_request(chat_id, request)
            log_llm_request_complete(request.request_id, start_time, outcome)

    async def _relay_stream(self, chat_id: str, prepared: PreparedTurn) -> str:
        strategy = get_provider_strategy(prepared.model.provider)
        normalizer = StreamNormalizer(strategy.create_decoder())
        byte_stream = self.llm_client.stream_bytes(prepared.request)
        events = normalizer.normalize(byte_stream)
        collected: list[str] = []
        outcome = "error"
        try:
            async for event in events:
                outcome = self._forward(chat_id, prepared, event, collected) or outcome
        finally:
            await events.aclose()
            await byte_stream.aclose()
        return outcome

    def _forward(
        self, chat_id: str, prepared: PreparedTurn, event: StreamEvent, collected: list[str]
    ) -> str | None:
        """Translate one normalized event into the SSE vocabulary. Returns the outcome on terminal events."""
        if isinstance(event, TextDelta):
            collected.append(event.text)
            self._emit(chat_id, "chunk", {"content": event.text})
            return None
        if isinstance(event, ToolCallDelta):
            logger.debug(f"Chat {chat_id}: tool call fragment for index {event.index}")
            return None
        if isinstance(event, Complete):
            done: dict[str, Any] = {"finishReason": event.finish_reason}
            if event.full_tool_calls:
                done["toolCalls"] = [c.model_dump(by_alias=True) for c in event.full_tool_calls]
            self._emit(chat_id, "done", done)
            log_directional_flow(
                "←", "LLM", "chat %s complete (%s, %d chars)", chat_id, event.finish_reason, sum(map(len, collected))
            )
            self._record(
                "chat_response",
                {
                    "chatId": chat_id,
                    "modelId": prepared.model.id,
                    "finishReason": event.finish_reason,
                    "content": "".join(collected),
                    "toolCalls": len(event.full_tool_calls),
                },
            )
            return "complete"
        if isinstance(event, ProviderError):
            classified = classify_stream_error(event.code, event.message, event.http_status, event.raw_body)
            self._emit_error(chat_id, prepared, classified)
            return "error"
        raise TypeError(f"Unhandled stream event: {event!r}")

    def _emit(self, chat_id: str, event: str, data: dict[str, Any]) -> None:
        transport = self.registry.transport_for(chat_id)
        if transport is None or transport.closed:
            logger.debug(f"Chat {chat_id}: no open transport for {event}")
            return
        transport.send(event, data)
        log_stream_event(chat_id, event, data)

    def _emit_error(self, chat_id: str, prepared: PreparedTurn, classified: ClassifiedError) -> None:
        logger.error(f"Chat {chat_id}: {classified.kind.value} error {classified.code}: {classified.message}")
        self._emit(chat_id, "error", classified.to_event())
        self._record(
            "chat_error",
            {
                "chatId": chat_id,
                "modelId": prepared.model.id,
                "provider": prepared.model.provider,
                "kind": classified.kind.value,
                "code": classified.code,
                "message": classified.message,
            },
        )

    # ------------------------------------------------------------------
    # Non-streaming path
    # ------------------------------------------------------------------

    async def complete_once(self, app_id: str, turn: ChatTurnRequest) -> CompletionResult:
        """Answer a turn synchronously, for clients without an SSE connection."""
        prepared = self.prepare_turn(app_id, turn, stream=False)
        return await self._complete(prepared, {"appId": app_id})

    async def test_model(self, model_id: str) -> CompletionResult:
        """One-shot completion used to check a model's endpoint and key."""
        model = self.catalog.get_model(model_id)
        request = build_request(
            model,
            [ChatMessage(role="user", content=MODEL_TEST_PROMPT)],
            self.catalog.resolve_api_key(model),
            CompletionOptions(stream=False, max_tokens=64),
            defaults=self.defaults,
        )
        return await self._complete(PreparedTurn(app=None, model=model, request=request), {"test": True})

    async def _complete(self, prepared: PreparedTurn, context: dict[str, Any]) -> CompletionResult:
        model = prepared.model
        strategy = get_provider_strategy(model.provider)
        self._record("chat_request", {**context, "modelId": model.id, "provider": model.provider, "stream": False})
        start_time = log_llm_request_start("sync", model.provider, model.id)
        try:
            try:
                async with asyncio.timeout(self.request_timeout):
                    async with self.throttler.slot(model.id):
                        data = await self.llm_client.complete(prepared.request)
            except TimeoutError as e:
                raise RequestTimeoutError(self.request_timeout) from e
            result = strategy.parse_response(data)
        except Exception as e:
            classified = classify_error(e)
            self._record(
                "chat_error",
                {**context, "modelId": model.id, "kind": classified.kind.value, "code": classified.code},
            )
            log_llm_request_complete("sync", start_time, "error")
            raise

        if result.model is None:
            result.model = model.model_id
        self._record(
            "chat_response",
            {**context, "modelId": model.id, "finishReason": result.finish_reason, "content": result.content},
        )
        log_llm_request_complete("sync", start_time)
        return result

    def _record(self, kind: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget interaction logging; a failing recorder never breaks a turn."""
        try:
            self.recorder.record_interaction(kind, payload)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Interaction recorder failed for {kind}: {e}")
