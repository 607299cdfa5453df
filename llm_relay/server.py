"""
HTTP Server for the LLM Relay

Thin communication layer between browser clients and the chat relay. The
browser opens an SSE stream per chat, posts turns to it and may stop it.
All business logic is delegated to ChatRelay.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from llm_relay.catalog import ConfigCatalog
from llm_relay.chat.chat_relay import ChatRelay
from llm_relay.chat.logging_utils import should_log_feature
from llm_relay.chat.models import ChatTurnRequest
from llm_relay.chat.transport import SSETransport
from llm_relay.clients.llm_client import LLMClient
from llm_relay.config import Configuration
from llm_relay.errors import (
    ConfigurationError,
    NoActiveSessionError,
    classify_error,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error_response(exc: Exception, model_id: str | None = None) -> JSONResponse:
    classified = classify_error(exc)
    content: dict[str, Any] = {
        "error": classified.message,
        "code": classified.code,
        "recommendation": classified.recommendation,
        "details": classified.details,
    }
    if model_id:
        content["modelId"] = model_id
    return JSONResponse(status_code=classified.http_status, content=content)


class RelayServer:
    """
    HTTP/SSE communication server.

    This class only handles:
    - SSE stream registration and teardown
    - Request validation and routing
    - Mapping relay errors to HTTP responses
    """

    def __init__(self, configuration: Configuration, relay: ChatRelay, llm_client: LLMClient | None = None):
        self.configuration = configuration
        self.relay = relay
        self.llm_client = llm_client
        self.server_config = configuration.get_server_config()
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI app."""
        app = FastAPI(title="LLM Relay")
        router = APIRouter(prefix="/api")

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.server_config["cors_origins"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.get("/")
        async def root():  # type: ignore
            return {"message": "LLM Relay"}

        @app.get("/health")
        async def health():  # type: ignore
            return {"status": "healthy", "sessions": len(self.relay.registry)}

        @router.get("/apps/{app_id}/chat/{chat_id}")
        async def open_stream(app_id: str, chat_id: str) -> StreamingResponse:  # type: ignore
            transport = SSETransport(chat_id, self.server_config["sse_keepalive_seconds"])
            await self.relay.register_session(chat_id, app_id, transport)
            if should_log_feature("server", "sse_connections"):
                logger.info(f"SSE stream opened for chat {chat_id} (app {app_id})")
            return StreamingResponse(
                self._stream_frames(chat_id, transport),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )

        @router.post("/apps/{app_id}/chat/{chat_id}")
        async def post_turn(app_id: str, chat_id: str, request: Request):  # type: ignore
            try:
                turn = ChatTurnRequest.model_validate(await request.json())
            except (ValidationError, ValueError) as e:
                return JSONResponse(
                    status_code=400,
                    content={"error": f"Invalid chat request: {e}", "code": "INVALID_REQUEST"},
                )

            if self.relay.registry.get_session(chat_id) is None:
                return await self._complete_without_stream(app_id, turn)

            try:
                await self.relay.dispatch_turn(chat_id, app_id, turn)
            except NoActiveSessionError:
                # Stream closed between the check and the dispatch.
                return await self._complete_without_stream(app_id, turn)
            except ConfigurationError as e:
                classified = classify_error(e)
                transport = self.relay.registry.transport_for(chat_id)
                if transport is not None:
                    transport.send("error", classified.to_event())
                logger.warning(f"Chat {chat_id}: rejected turn: {classified.message}")
                return {"status": "error", "message": classified.message}
            return {"status": "streaming", "chatId": chat_id}

        @router.post("/apps/{app_id}/chat/{chat_id}/stop")
        async def stop_stream(app_id: str, chat_id: str):  # type: ignore
            try:
                await self.relay.stop(chat_id)
            except NoActiveSessionError:
                return JSONResponse(
                    status_code=404,
                    content={"success": False, "message": "Chat session not found"},
                )
            return {"success": True, "message": "Chat stream stopped"}

        @router.get("/apps/{app_id}/chat/{chat_id}/status")
        async def stream_status(app_id: str, chat_id: str):  # type: ignore
            return self.relay.status(chat_id).model_dump(by_alias=True, exclude_none=True, mode="json")

        @router.get("/models/{model_id}/chat/test")
        async def test_model(model_id: str):  # type: ignore
            try:
                result = await self.relay.test_model(model_id)
            except Exception as e:
                logger.error(f"Model test failed for {model_id}: {e}")
                return _error_response(e, model_id)
            return {"success": True, "modelId": model_id, "response": result.content}

        # Prevent static analyzers from marking route handlers as unused
        __keep_for_pyright = (root, health, open_stream, post_turn, stop_stream, stream_status, test_model)
        del __keep_for_pyright

        app.include_router(router)

        return app

    async def _stream_frames(self, chat_id: str, transport: SSETransport) -> AsyncGenerator[str, None]:
        try:
            async for frame in transport.frames():
                yield frame
        finally:
            transport.close()
            await self.relay.unregister_on_disconnect(chat_id, transport)
            if should_log_feature("server", "sse_connections"):
                logger.info(f"SSE stream closed for chat {chat_id}")

    async def _complete_without_stream(self, app_id: str, turn: ChatTurnRequest) -> Any:
        try:
            result = await self.relay.complete_once(app_id, turn)
        except Exception as e:
            logger.error(f"Non-streaming completion failed for app {app_id}: {e}")
            return _error_response(e, turn.model_id)
        return result.model_dump(by_alias=True)

    async def start_server(self) -> None:
        """Start the HTTP server with comprehensive cleanup."""
        host = self.server_config["host"]
        port = self.server_config["port"]

        logger.info(f"Starting relay server on {host}:{port}")

        server_config = uvicorn.Config(self.app, host=host, port=port, log_level="info")
        server = uvicorn.Server(server_config)

        try:
            await server.serve()
        except KeyboardInterrupt:
            logger.info("Received shutdown signal, cleaning up...")
        except Exception as e:
            logger.error(f"Relay server error: {e}")
            raise
        finally:
            logger.info("Shutting down relay server and cleaning up resources...")
            try:
                await self.relay.shutdown()
                if self.llm_client is not None:
                    await self.llm_client.close()
                logger.info("Relay cleanup completed")
            except Exception as e:
                logger.error(f"Error during relay cleanup: {e}")
                # Don't re-raise cleanup errors to avoid masking the original exception


def create_relay_server(configuration: Configuration) -> RelayServer:
    """Wire catalog, HTTP client and relay from configuration."""
    llm_client = LLMClient(configuration)
    relay = ChatRelay.from_configuration(configuration, ConfigCatalog(configuration), llm_client)
    return RelayServer(configuration, relay, llm_client)


async def run_server(configuration: Configuration) -> None:
    """Run the relay server until it is shut down."""
    server = create_relay_server(configuration)
    await server.start_server()
