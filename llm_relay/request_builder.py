"""
Provider Request Builder

Resolves generation parameters (request value, then the app's preference,
then the configured default), clamps the output token budget to the model's
limit, and hands off to the provider strategy. Pure construction: no I/O.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from llm_relay.chat.logging_utils import redact_headers, should_log_feature
from llm_relay.chat.models import (
    AppRecord,
    ChatMessage,
    CompletionOptions,
    CompletionRequest,
    ModelDescriptor,
)
from llm_relay.errors import ApiKeyMissingError
from llm_relay.providers import get_provider_strategy

logger = logging.getLogger(__name__)


class RequestDefaults(BaseModel):
    """Global fallbacks used when neither the request nor the app sets a value."""

    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)


def resolve_options(
    model: ModelDescriptor,
    options: CompletionOptions,
    app: AppRecord | None = None,
    defaults: RequestDefaults | None = None,
) -> CompletionOptions:
    """Fill in temperature and max tokens and clamp max tokens to the model's limit."""
    defaults = defaults or RequestDefaults()

    temperature = options.temperature
    if temperature is None and app is not None:
        temperature = app.preferred_temperature
    if temperature is None:
        temperature = defaults.temperature

    requested = options.max_tokens
    if requested is None and app is not None:
        requested = app.preferred_output_tokens
    if requested is None:
        requested = defaults.max_tokens
    max_tokens = min(requested, model.token_limit)
    if max_tokens < requested:
        logger.debug(f"Clamped max_tokens {requested} to token limit {model.token_limit} of {model.id}")

    return options.model_copy(update={"temperature": temperature, "max_tokens": max_tokens})


def build_request(
    model: ModelDescriptor,
    messages: list[ChatMessage],
    api_key: str | None,
    options: CompletionOptions,
    app: AppRecord | None = None,
    defaults: RequestDefaults | None = None,
) -> CompletionRequest:
    """
    Build the provider-specific HTTP request for a completion.

    Raises:
        UnsupportedProviderError: ``model.provider`` has no strategy.
        ApiKeyMissingError: the provider needs a key and none was resolved.
    """
    strategy = get_provider_strategy(model.provider)
    if strategy.requires_api_key and not api_key:
        raise ApiKeyMissingError(model.id, model.api_key_env)

    resolved = resolve_options(model, options, app, defaults)
    request = strategy.build_request(model, messages, api_key, resolved)

    if should_log_feature("clients", "http_requests"):
        logger.info(
            f"Built {model.provider} request for {model.id}: url={request.url} "
            f"headers={redact_headers(request.headers)} max_tokens={request.max_tokens} "
            f"temperature={request.temperature} tools={len(resolved.tools)}"
        )
    return request
