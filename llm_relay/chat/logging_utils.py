"""
Relay Logging Utilities

Shared logging helpers with per-module feature flags. Feature flags are
installed once from the ``logging.modules`` config section by ``main`` and
checked cheaply at runtime.
"""

from __future__ import annotations

import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

_module_features: dict[str, dict[str, bool]] = {}

_SECRET_HEADERS = {"authorization", "x-api-key", "x-goog-api-key", "api-key"}


def set_module_features(module: str, features: dict[str, bool]) -> None:
    """Install feature flags for a logging module group."""
    _module_features[module] = dict(features)


def should_log_feature(module: str, feature: str) -> bool:
    """
    Check if a specific logging feature should be enabled.

    Uses cached feature flags for better performance during runtime.
    """
    return _module_features.get(module, {}).get(feature, False)


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Copy of ``headers`` with credentials masked."""
    return {k: ("***" if k.lower() in _SECRET_HEADERS else v) for k, v in headers.items()}


def truncate(text: str, limit: int = 500) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def log_directional_flow(
    direction: str, component: str, message: str, *args: Any
) -> None:
    """
    Log directional flow messages with consistent arrow formatting.

    Args:
        direction: Either "→" (outgoing) or "←" (incoming/completed)
        component: Component name (e.g., "LLM", "SSE", "Client")
        message: Message template with optional format placeholders
        *args: Arguments for message formatting
    """
    formatted_msg = message % args if args else message
    logger.info(f"{direction} {component}: {formatted_msg}")


def log_error_with_context(context: str, error: BaseException) -> None:
    """
    Log errors with consistent formatting across the application.

    Args:
        context: Descriptive context of where the error occurred
        error: The exception that was raised
    """
    logger.error(f"Error {context}: {type(error).__name__}: {error}")


def log_llm_request_start(request_id: str, provider: str, model: str) -> float:
    """Log the start of an LLM request and return start time."""
    start_time = time.monotonic()
    if should_log_feature("relay", "llm_requests"):
        logger.info(f"🚀 LLM request started: request_id={request_id}, provider={provider}, model={model}")
    return start_time


def log_llm_request_complete(request_id: str, start_time: float, outcome: str = "complete") -> None:
    """Log the completion of an LLM request with timing."""
    if not should_log_feature("relay", "llm_requests"):
        return
    elapsed_ms = (time.monotonic() - start_time) * 1000
    status = "✅" if outcome == "complete" else "❌"
    logger.info(
        f"{status} LLM request finished: request_id={request_id}, outcome={outcome}, "
        f"elapsed={elapsed_ms:.2f}ms"
    )


def log_stream_event(chat_id: str, event: str, data: dict[str, Any]) -> None:
    """Log an SSE event sent to a client, if stream event logging is enabled."""
    if not should_log_feature("relay", "stream_events"):
        return
    logger.debug(f"← SSE[{chat_id}]: {event} {truncate(str(data), 200)}")
