"""Mistral chat completions: OpenAI wire format with a few differences."""

from __future__ import annotations

import logging
from typing import Any

from llm_relay.chat.models import ToolDefinition
from llm_relay.providers.common import normalize_tool_name
from llm_relay.providers.openai import OpenAIStrategy

logger = logging.getLogger(__name__)


class MistralStrategy(OpenAIStrategy):
    name = "mistral"

    def tool_choice(self, choice: str | None) -> Any:
        if choice is None:
            return None
        # Mistral spells "required" as "any".
        if choice == "required":
            return "any"
        if choice in ("auto", "none"):
            return choice
        return {"type": "function", "function": {"name": normalize_tool_name(choice)}}

    def special_tool_options(self, special: list[ToolDefinition]) -> dict[str, Any]:
        for tool in special:
            logger.warning(f"Special tool {tool.id} has no mistral equivalent; skipping")
        return {}
