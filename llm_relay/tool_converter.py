"""
Generic Tool-Call Converter

Bidirectional mapping between the provider-agnostic tool schema / tool call
shape and each provider's wire format. The per-provider logic lives in the
provider strategies; these functions are the stable entry points.
"""

from __future__ import annotations

from typing import Any

from llm_relay.chat.models import ToolCall, ToolDefinition
from llm_relay.providers import get_provider_strategy


def tools_to_provider_format(
    generic_tools: list[ToolDefinition], provider: str
) -> list[dict[str, Any]]:
    """Provider tool array for ``generic_tools``; special tools become native blocks."""
    return get_provider_strategy(provider).convert_tools(generic_tools)


def tool_calls_from_provider_format(
    raw_calls: list[dict[str, Any]], provider: str
) -> list[ToolCall]:
    """Complete provider tool calls (from a finished response) to generic ToolCalls."""
    return get_provider_strategy(provider).tool_calls_from_provider(raw_calls)


def tool_calls_to_provider_format(calls: list[ToolCall], provider: str) -> list[dict[str, Any]]:
    """Generic ToolCalls to the provider shape used when replaying assistant turns."""
    return get_provider_strategy(provider).tool_calls_to_provider(calls)
