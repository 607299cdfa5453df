"""
Collaborator contracts and their configuration-backed implementations.

The relay only needs to look up apps, models and tools, resolve API keys and
record interactions. Anything satisfying these protocols can be injected;
``ConfigCatalog`` and ``LoggingInteractionRecorder`` are the defaults.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from llm_relay.chat.logging_utils import should_log_feature, truncate
from llm_relay.chat.models import AppRecord, ModelDescriptor, ToolDefinition
from llm_relay.config import Configuration
from llm_relay.errors import AppNotFoundError, ModelNotFoundError

logger = logging.getLogger(__name__)


class Catalog(Protocol):
    def get_model(self, model_id: str) -> ModelDescriptor: ...

    def default_model(self) -> ModelDescriptor: ...

    def get_app(self, app_id: str) -> AppRecord: ...

    def get_tools(self, tool_ids: list[str]) -> list[ToolDefinition]: ...

    def resolve_api_key(self, model: ModelDescriptor) -> str | None: ...


class InteractionRecorder(Protocol):
    def record_interaction(self, kind: str, payload: dict[str, Any]) -> None: ...


class ConfigCatalog:
    """Apps, models and tools from the ``apps``/``models``/``tools`` config sections."""

    def __init__(self, configuration: Configuration) -> None:
        self.configuration = configuration
        self._models = {m.id: m for m in configuration.get_models()}
        self._apps = {a.id: a for a in configuration.get_apps()}
        self._tools = {t.id: t for t in configuration.get_tools()}

    def get_model(self, model_id: str) -> ModelDescriptor:
        try:
            return self._models[model_id]
        except KeyError:
            raise ModelNotFoundError(model_id) from None

    def default_model(self) -> ModelDescriptor:
        for model in self._models.values():
            if model.default:
                return model
        if not self._models:
            raise ModelNotFoundError("<default>")
        return next(iter(self._models.values()))

    def get_app(self, app_id: str) -> AppRecord:
        try:
            return self._apps[app_id]
        except KeyError:
            raise AppNotFoundError(app_id) from None

    def get_tools(self, tool_ids: list[str]) -> list[ToolDefinition]:
        tools: list[ToolDefinition] = []
        for tool_id in tool_ids:
            tool = self._tools.get(tool_id)
            if tool is None:
                logger.warning(f"App references unknown tool {tool_id}; skipping")
                continue
            tools.append(tool)
        return tools

    def resolve_api_key(self, model: ModelDescriptor) -> str | None:
        return self.configuration.resolve_api_key(model)


class LoggingInteractionRecorder:
    """Writes interaction records as JSON log lines on the ``llm_relay.interactions`` logger."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("llm_relay.interactions")

    def record_interaction(self, kind: str, payload: dict[str, Any]) -> None:
        if not should_log_feature("relay", "interactions"):
            return
        self._logger.info(truncate(json.dumps({"type": kind, **payload}, default=str), 2000))
