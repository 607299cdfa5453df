"""Helpers shared by the provider strategies."""

from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any

from llm_relay.chat.models import ToolDefinition

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

# Schema keywords Gemini's function declaration parser rejects.
_GOOGLE_UNSUPPORTED_SCHEMA_KEYS = frozenset(
    {
        "exclusiveMaximum",
        "exclusiveMinimum",
        "title",
        "format",
        "minLength",
        "maxLength",
        "additionalProperties",
        "$schema",
    }
)

_FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "length": "length",
    "max_tokens": "length",
    "tool_calls": "tool_calls",
    "tool_use": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
    "safety": "content_filter",
    "recitation": "content_filter",
    "blocklist": "content_filter",
    "prohibited_content": "content_filter",
}


def normalize_tool_name(name: str) -> str:
    """Make a tool name acceptable to every provider."""
    normalized = _INVALID_NAME_CHARS.sub("_", name or "")
    if not normalized:
        return "unnamed_tool"
    if not (normalized[0].isalpha() or normalized[0] == "_"):
        normalized = f"tool_{normalized}"
    return normalized


def normalize_finish_reason(reason: str | None) -> str | None:
    """Map provider finish reasons onto stop, length, tool_calls or content_filter."""
    if reason is None:
        return None
    return _FINISH_REASONS.get(reason.lower(), reason)


def sanitize_schema_for_provider(schema: Any, provider: str) -> Any:
    """Return a copy of a JSON schema without keywords the provider rejects."""
    if provider != "google":
        return copy.deepcopy(schema)
    return _strip_keys(schema, _GOOGLE_UNSUPPORTED_SCHEMA_KEYS)


def _strip_keys(value: Any, keys: frozenset[str]) -> Any:
    if isinstance(value, dict):
        return {k: _strip_keys(v, keys) for k, v in value.items() if k not in keys}
    if isinstance(value, list):
        return [_strip_keys(item, keys) for item in value]
    return value


def parse_tool_arguments(raw: str | dict[str, Any] | None, tool_name: str = "") -> dict[str, Any]:
    """
    Parse a complete tool-argument JSON document.

    Only called once a tool call is complete. Invalid JSON is kept verbatim
    under ``__raw_arguments`` so nothing the model produced is lost.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Malformed JSON arguments for {tool_name or 'tool'}: {e}")
        return {"__raw_arguments": raw}
    if isinstance(parsed, dict):
        return parsed
    return {"value": parsed}


def dump_tool_arguments(arguments: dict[str, Any]) -> str:
    """Serialize arguments back to the JSON string OpenAI-style APIs expect."""
    if set(arguments) == {"__raw_arguments"}:
        return str(arguments["__raw_arguments"])
    return json.dumps(arguments, ensure_ascii=False)


def split_tools(
    tools: list[ToolDefinition], provider: str
) -> tuple[list[ToolDefinition], list[ToolDefinition]]:
    """
    Separate ordinary function tools from the provider's special tools.

    Special tools owned by another provider (or special tools with no owner)
    are dropped, as are tools pinned to another provider.
    """
    functions: list[ToolDefinition] = []
    special: list[ToolDefinition] = []
    for tool in tools:
        if tool.provider and tool.provider != provider:
            logger.debug(f"Skipping tool {tool.id} reserved for provider {tool.provider}")
            continue
        if tool.is_special_tool:
            if tool.provider == provider:
                special.append(tool)
            else:
                logger.debug(f"Skipping special tool {tool.id} without provider binding")
            continue
        functions.append(tool)
    return functions, special
