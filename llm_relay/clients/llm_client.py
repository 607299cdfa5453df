"""
Outbound LLM HTTP client.

One pooled httpx client is shared by every provider; each CompletionRequest
carries its own URL and headers. Streaming responses are handed back as raw
byte chunks so framing and decoding stay in the normalizer.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncGenerator
from typing import Any
from urllib.parse import urlsplit

import httpx

from llm_relay.chat.logging_utils import should_log_feature
from llm_relay.chat.models import CompletionRequest
from llm_relay.config import Configuration
from llm_relay.errors import (
    NormalizationError,
    ProviderAPIError,
    RequestTimeoutError,
    TransportError,
)

logger = logging.getLogger(__name__)


class LLMClient:
    """Pooled HTTP client for provider completion endpoints."""

    def __init__(
        self,
        configuration: Configuration | None = None,
        http_config: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if http_config is None:
            if configuration is None:
                raise ValueError("LLMClient needs a configuration or an explicit http_config")
            http_config = configuration.get_http_client_config()
        self._http_config = http_config
        self._active_streams: int = 0

        # Create HTTP client with configurable connection pooling
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                http_config["read_timeout_seconds"],
                connect=http_config["connect_timeout_seconds"],
            ),
            http2=http_config.get("http2", True),
            limits=httpx.Limits(
                max_connections=http_config["max_connections"],
                max_keepalive_connections=http_config["max_keepalive_connections"],
                keepalive_expiry=http_config["keepalive_expiry_seconds"],
            ),
            transport=transport,
            trust_env=False,
        )
        self._log_connection_event(
            "client_initialized",
            {
                "max_connections": http_config["max_connections"],
                "read_timeout": http_config["read_timeout_seconds"],
            },
        )

    @property
    def active_streams(self) -> int:
        return self._active_streams

    def _log_connection_event(self, event_type: str, details: dict[str, Any]) -> None:
        """Log a connection event if logging is enabled."""
        if not should_log_feature("clients", "connection_events"):
            return
        logger.info(f"🔌 Connection {event_type}: {details}")

    def _log_http_request(
        self,
        method: str,
        url: str,
        status_code: int | None = None,
        duration_ms: float | None = None,
    ) -> None:
        """Log HTTP request details if logging is enabled."""
        if not should_log_feature("clients", "http_requests"):
            return

        parts = urlsplit(url)
        message_parts = [f"🔌 HTTP {method} {parts.scheme}://{parts.netloc}{parts.path}"]
        if status_code is not None:
            message_parts.append(f"Status: {status_code}")
        if duration_ms is not None:
            message_parts.append(f"Duration: {duration_ms:.2f}ms")

        logger.info(" | ".join(message_parts))

    def _wrap_httpx_error(self, e: httpx.HTTPError, request: CompletionRequest) -> Exception:
        if isinstance(e, httpx.TimeoutException):
            logger.error(f"Timeout talking to {request.provider}: {type(e).__name__}")
            return RequestTimeoutError(self._http_config["read_timeout_seconds"])
        if isinstance(e, httpx.TransportError):
            logger.error(f"Transport error talking to {request.provider}: {type(e).__name__}: {e}")
            return TransportError.from_httpx(e, request.provider)
        logger.error(f"HTTP error talking to {request.provider}: {e}")
        return TransportError(f"HTTP error: {e!s}", provider=request.provider)

    async def stream_bytes(self, request: CompletionRequest) -> AsyncGenerator[bytes]:
        """
        POST a streaming request and yield raw body chunks as they arrive.

        Raises:
            ProviderAPIError: non-2xx status (raised before any chunk is yielded).
            TransportError: connection-level failure.
            RequestTimeoutError: httpx connect/read timeout.
        """
        self._active_streams += 1
        self._log_connection_event(
            "stream_started", {"active_streams": self._active_streams, "provider": request.provider}
        )
        start_time = time.monotonic()
        try:
            async with self.client.stream(
                "POST",
                request.url,
                json=request.body,
                headers={**request.headers, "Accept-Encoding": "identity"},
            ) as response:
                duration_ms = (time.monotonic() - start_time) * 1000
                self._log_http_request("POST", request.url, response.status_code, duration_ms)

                # FAIL FAST: provider rejected the request
                if response.status_code >= 400:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        f"← LLM[{request.provider}]: HTTP {response.status_code}: {error_text[:1000]}"
                    )
                    raise ProviderAPIError(response.status_code, error_text, request.provider)

                content_type = response.headers.get("content-type", "")
                if not any(t in content_type for t in ("text/event-stream", "application/json", "text/plain", "stream")):
                    logger.warning(f"Unexpected content-type: {content_type}, proceeding anyway")

                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as e:
            raise self._wrap_httpx_error(e, request) from e
        finally:
            self._active_streams -= 1
            self._log_connection_event(
                "stream_ended", {"active_streams": self._active_streams, "provider": request.provider}
            )

    async def complete(self, request: CompletionRequest) -> dict[str, Any]:
        """POST a non-streaming request and return the decoded JSON body."""
        start_time = time.monotonic()
        try:
            response = await self.client.post(request.url, json=request.body, headers=request.headers)
        except httpx.HTTPError as e:
            raise self._wrap_httpx_error(e, request) from e

        duration_ms = (time.monotonic() - start_time) * 1000
        self._log_http_request("POST", request.url, response.status_code, duration_ms)

        if response.status_code >= 400:
            logger.error(f"← LLM[{request.provider}]: HTTP {response.status_code}: {response.text[:1000]}")
            raise ProviderAPIError(response.status_code, response.text, request.provider)
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise NormalizationError(f"Provider returned invalid JSON: {e}", response.text) from e
        if not isinstance(data, dict):
            raise NormalizationError("Provider response is not a JSON object", response.text)
        return data

    async def close(self) -> None:
        """Close the HTTP client."""
        self._log_connection_event("client_closing", {"active_streams": self._active_streams})
        await self.client.aclose()
        self._log_connection_event("client_closed", {})

    async def __aenter__(self) -> LLMClient:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.close()
