"""
Provider registry.

Maps a model's ``provider`` value to the strategy that knows how to talk to
it. Adding a provider means adding a strategy module and one entry here.
"""

from __future__ import annotations

from llm_relay.errors import UnsupportedProviderError

from .anthropic import AnthropicStrategy
from .base import FrameResult, ProviderStrategy, StreamDecoder
from .google import GoogleStrategy
from .mistral import MistralStrategy
from .openai import CustomOpenAIStrategy, OpenAIStrategy

_STRATEGIES: dict[str, ProviderStrategy] = {
    strategy.name: strategy
    for strategy in (
        OpenAIStrategy(),
        AnthropicStrategy(),
        GoogleStrategy(),
        MistralStrategy(),
        CustomOpenAIStrategy(),
    )
}


def get_provider_strategy(provider: str) -> ProviderStrategy:
    """Return the strategy for ``provider`` or raise UnsupportedProviderError."""
    try:
        return _STRATEGIES[provider]
    except KeyError:
        raise UnsupportedProviderError(provider) from None


def supported_providers() -> list[str]:
    return sorted(_STRATEGIES)


__all__ = [
    "FrameResult",
    "ProviderStrategy",
    "StreamDecoder",
    "get_provider_strategy",
    "supported_providers",
]
