"""
Relay Error Taxonomy and Classification

Every failure the relay can surface to a client belongs to one of a small set
of kinds. Exceptions raised inside the relay carry enough context to be
classified, and ``classify_error`` turns any exception (ours, httpx's, or an
unexpected one) into a ``ClassifiedError`` that can be sent over SSE or
returned as an HTTP error body.
"""

from __future__ import annotations

import asyncio
import json
import logging
import ssl
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    SESSION = "session"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    PROVIDER_API = "provider_api"
    NORMALIZATION = "normalization"
    THROTTLED = "throttled"
    INTERNAL = "internal"


# ==============================================================================
# EXCEPTIONS
# ==============================================================================


class RelayError(Exception):
    """Base class for all errors raised by the relay."""

    kind: ErrorKind = ErrorKind.INTERNAL
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class ConfigurationError(RelayError):
    """Unknown model/app/provider or missing credentials. Raised before any network call."""

    kind = ErrorKind.CONFIGURATION
    default_code = "CONFIGURATION_ERROR"


class ModelNotFoundError(ConfigurationError):
    default_code = "MODEL_NOT_FOUND"

    def __init__(self, model_id: str) -> None:
        super().__init__(f"Model not found: {model_id}", details={"modelId": model_id})
        self.model_id = model_id


class AppNotFoundError(ConfigurationError):
    default_code = "APP_NOT_FOUND"

    def __init__(self, app_id: str) -> None:
        super().__init__(f"App not found: {app_id}", details={"appId": app_id})
        self.app_id = app_id


class ApiKeyMissingError(ConfigurationError):
    default_code = "API_KEY_MISSING"

    def __init__(self, model_id: str, env_var: str | None) -> None:
        hint = f" (set {env_var})" if env_var else ""
        super().__init__(
            f"No API key configured for model {model_id}{hint}",
            details={"modelId": model_id, "envVar": env_var},
        )


class UnsupportedProviderError(ConfigurationError):
    default_code = "UNSUPPORTED_PROVIDER"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported provider: {provider}", details={"provider": provider})
        self.provider = provider


class NoActiveSessionError(RelayError):
    """A turn or stop was requested for a chat id without a registered transport."""

    kind = ErrorKind.SESSION
    default_code = "NO_ACTIVE_SESSION"

    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat session not found: {chat_id}", details={"chatId": chat_id})
        self.chat_id = chat_id


class TransportError(RelayError):
    """Network failure before or during the provider exchange."""

    kind = ErrorKind.TRANSPORT
    default_code = "TRANSPORT_ERROR"

    def __init__(self, message: str, reason: str = "network", provider: str | None = None) -> None:
        code = {
            "dns": "ENOTFOUND",
            "connection_refused": "ECONNREFUSED",
            "tls": "TLS_ERROR",
        }.get(reason, self.default_code)
        super().__init__(message, code=code, details={"reason": reason, "provider": provider})
        self.reason = reason
        self.provider = provider

    @classmethod
    def from_httpx(cls, exc: httpx.TransportError, provider: str | None = None) -> TransportError:
        """Map an httpx transport failure onto a transport reason."""
        text = str(exc).lower()
        cause: BaseException | None = exc
        seen: set[int] = set()
        while cause is not None and id(cause) not in seen:
            if isinstance(cause, ssl.SSLError):
                return cls(f"TLS handshake failed: {exc}", reason="tls", provider=provider)
            seen.add(id(cause))
            cause = cause.__cause__ or cause.__context__
        if "certificate" in text or "ssl" in text:
            return cls(f"TLS handshake failed: {exc}", reason="tls", provider=provider)
        if any(m in text for m in ("name or service not known", "nodename nor servname", "getaddrinfo", "name resolution")):
            return cls(f"Could not resolve provider host: {exc}", reason="dns", provider=provider)
        if "connection refused" in text or "errno 111" in text:
            return cls(f"Connection refused by provider: {exc}", reason="connection_refused", provider=provider)
        return cls(f"Network error talking to provider: {exc or type(exc).__name__}", provider=provider)


class RequestTimeoutError(RelayError):
    """The wall-clock deadline for a request elapsed."""

    kind = ErrorKind.TIMEOUT
    default_code = "REQUEST_TIMEOUT"

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"Request timed out after {timeout:g} seconds", details={"timeoutSeconds": timeout}
        )
        self.timeout = timeout


class ProviderAPIError(RelayError):
    """The provider answered with a non-2xx status."""

    kind = ErrorKind.PROVIDER_API

    def __init__(self, status: int, body: str, provider: str | None = None) -> None:
        super().__init__(
            _provider_message(status, body),
            code=str(status),
            details={"status": status, "provider": provider, "body": body[:2000]},
        )
        self.status = status
        self.body = body
        self.provider = provider


class NormalizationError(RelayError):
    """A provider payload could not be interpreted."""

    kind = ErrorKind.NORMALIZATION
    default_code = "NORMALIZATION_ERROR"

    def __init__(self, message: str, raw_payload: str = "") -> None:
        super().__init__(message, details={"raw": raw_payload[:2000]})
        self.raw_payload = raw_payload


class ThrottleRejectedError(RelayError):
    """Too many requests are already queued for a model."""

    kind = ErrorKind.THROTTLED
    default_code = "THROTTLED"

    def __init__(self, model_id: str, max_queue: int) -> None:
        super().__init__(
            f"Too many pending requests for model {model_id} (queue limit {max_queue})",
            details={"modelId": model_id, "maxQueue": max_queue},
        )


def _provider_message(status: int, body: str) -> str:
    """Pull the human readable message out of a provider error body when there is one."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        data = None
    if isinstance(data, dict):
        error = data.get("error", data)
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return f"Provider returned {status}: {error['message']}"
        if isinstance(error, str):
            return f"Provider returned {status}: {error}"
    snippet = body.strip()[:200]
    return f"Provider returned {status}" + (f": {snippet}" if snippet else "")


# ==============================================================================
# CLASSIFICATION
# ==============================================================================


class ClassifiedError(BaseModel):
    """Client-facing description of a failure."""

    kind: ErrorKind
    code: str
    message: str
    recommendation: str
    http_status: int = 500
    retryable: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    def to_event(self) -> dict[str, Any]:
        """Payload of the SSE ``error`` event."""
        return {"message": self.message, "code": self.code, "recommendation": self.recommendation}


_RECOMMENDATIONS = {
    "auth": "Check that the API key for this model is valid and has access to it.",
    "not_found": "Check the model name and endpoint URL configured for this model.",
    "rate_limit": "The provider is rate limiting requests. Wait a moment and try again.",
    "context_window": "The conversation is too long for this model. Shorten it or pick a model with a larger context.",
    "bad_request": "The provider rejected the request. Check the message format and model parameters.",
    "server": "The provider is having problems. Try again later or switch to another model.",
    "dns": "The provider host could not be resolved. Check the endpoint URL and network connectivity.",
    "connection_refused": "The provider refused the connection. Check that the endpoint is running and reachable.",
    "tls": "A secure connection to the provider could not be established. Check the endpoint certificate.",
    "network": "The connection to the provider failed. Check network connectivity and try again.",
    "timeout": "The model took too long to respond. Try again or use a shorter prompt.",
    "normalization": "The provider sent a response that could not be read. Try again or switch models.",
    "throttled": "Too many requests are in flight for this model. Try again shortly.",
    "configuration": "Check the app and model configuration.",
    "session": "Open the chat stream before sending messages, or start a new chat.",
    "internal": "An unexpected error occurred. Try again.",
}


def _classify_provider_status(exc: ProviderAPIError) -> ClassifiedError:
    status = exc.status
    lowered = exc.body.lower()
    if status in (401, 403) or (status == 400 and "api key" in lowered):
        recommendation = _RECOMMENDATIONS["auth"]
        message = f"Authentication with {exc.provider or 'the provider'} failed: {exc.message}"
    elif status == 404:
        recommendation = _RECOMMENDATIONS["not_found"]
        message = exc.message
    elif status == 429:
        recommendation = _RECOMMENDATIONS["rate_limit"]
        message = f"Rate limit exceeded: {exc.message}"
    elif status == 400 and ("context length" in lowered or "context_length" in lowered or "too many tokens" in lowered):
        recommendation = _RECOMMENDATIONS["context_window"]
        message = exc.message
    elif status >= 500:
        recommendation = _RECOMMENDATIONS["server"]
        message = f"Provider service error: {exc.message}"
    else:
        recommendation = _RECOMMENDATIONS["bad_request"]
        message = exc.message
    return ClassifiedError(
        kind=ErrorKind.PROVIDER_API,
        code=exc.code,
        message=message,
        recommendation=recommendation,
        http_status=502,
        retryable=status == 429 or status >= 500,
        details=exc.details,
    )


def _describe(exc: BaseException) -> str:
    """``str(exc)``, falling back to the type name when rendering fails or is empty."""
    try:
        text = str(exc)
    except Exception:  # noqa: BLE001
        text = ""
    return text or type(exc).__name__


def classify_error(exc: BaseException) -> ClassifiedError:
    """Classify any exception. Never raises."""
    try:
        return _classify(exc)
    except Exception as classify_exc:  # noqa: BLE001
        logger.error(f"Error classifying {type(exc).__name__}: {classify_exc}")
        return ClassifiedError(
            kind=ErrorKind.INTERNAL,
            code="INTERNAL_ERROR",
            message=_describe(exc),
            recommendation=_RECOMMENDATIONS["internal"],
        )


def _classify(exc: BaseException) -> ClassifiedError:
    if isinstance(exc, ProviderAPIError):
        return _classify_provider_status(exc)

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        exc = exc if isinstance(exc, RequestTimeoutError) else RequestTimeoutError(0)
    if isinstance(exc, httpx.TransportError):
        exc = TransportError.from_httpx(exc)

    if isinstance(exc, RequestTimeoutError):
        return ClassifiedError(
            kind=exc.kind,
            code=exc.code,
            message=exc.message if exc.timeout else "Request timed out",
            recommendation=_RECOMMENDATIONS["timeout"],
            http_status=504,
            retryable=True,
            details=exc.details,
        )
    if isinstance(exc, TransportError):
        return ClassifiedError(
            kind=exc.kind,
            code=exc.code,
            message=exc.message,
            recommendation=_RECOMMENDATIONS.get(exc.reason, _RECOMMENDATIONS["network"]),
            http_status=502,
            retryable=True,
            details=exc.details,
        )
    if isinstance(exc, (ModelNotFoundError, AppNotFoundError)):
        return ClassifiedError(
            kind=exc.kind,
            code=exc.code,
            message=exc.message,
            recommendation=_RECOMMENDATIONS["configuration"],
            http_status=404,
            details=exc.details,
        )
    if isinstance(exc, NoActiveSessionError):
        return ClassifiedError(
            kind=exc.kind,
            code=exc.code,
            message=exc.message,
            recommendation=_RECOMMENDATIONS["session"],
            http_status=404,
            details=exc.details,
        )
    if isinstance(exc, RelayError):
        key = {
            ErrorKind.CONFIGURATION: "configuration",
            ErrorKind.NORMALIZATION: "normalization",
            ErrorKind.THROTTLED: "throttled",
        }.get(exc.kind, "internal")
        status = {
            ErrorKind.CONFIGURATION: 400,
            ErrorKind.NORMALIZATION: 502,
            ErrorKind.THROTTLED: 429,
        }.get(exc.kind, 500)
        return ClassifiedError(
            kind=exc.kind,
            code=exc.code,
            message=exc.message,
            recommendation=_RECOMMENDATIONS[key],
            http_status=status,
            retryable=exc.kind is ErrorKind.THROTTLED,
            details=exc.details,
        )

    return ClassifiedError(
        kind=ErrorKind.INTERNAL,
        code="INTERNAL_ERROR",
        message=_describe(exc),
        recommendation=_RECOMMENDATIONS["internal"],
        details={"type": type(exc).__name__},
    )


def is_retryable(exc: BaseException) -> bool:
    """Advisory only; the relay never retries on its own."""
    return classify_error(exc).retryable


def classify_stream_error(
    code: str, message: str, http_status: int | None = None, raw_body: str = ""
) -> ClassifiedError:
    """Classify a failure reported inside an otherwise successful response stream."""
    if code == NormalizationError.default_code:
        return _classify(NormalizationError(message, raw_body))
    if http_status is not None and http_status >= 400:
        return _classify_provider_status(ProviderAPIError(http_status, raw_body or message))
    lowered = f"{code} {message}".lower()
    if "rate" in lowered or "overloaded" in lowered or "quota" in lowered:
        recommendation = _RECOMMENDATIONS["rate_limit"]
    else:
        recommendation = _RECOMMENDATIONS["server"]
    return ClassifiedError(
        kind=ErrorKind.PROVIDER_API,
        code=code,
        message=message,
        recommendation=recommendation,
        http_status=502,
        retryable=True,
        details={"raw": raw_body[:2000]},
    )
