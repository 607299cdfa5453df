"""Configuration management for the chat relay."""

from __future__ import annotations

import logging
import os
from typing import Any, cast

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from llm_relay.chat.models import AppRecord, ModelDescriptor, ToolDefinition

CONFIG_ENV_VAR = "LLM_RELAY_CONFIG"

# Fallback environment variable per provider when a model names none.
DEFAULT_PROVIDER_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "custom": "CUSTOM_API_KEY",
}


class Configuration:
    """Relay configuration: packaged YAML defaults, an optional override file and .env secrets."""

    def __init__(self, config_path: str | None = None) -> None:
        """Initialize configuration from YAML and environment variables.

        Args:
            config_path: Optional YAML file deep-merged over the packaged
                defaults. Falls back to the ``LLM_RELAY_CONFIG`` environment
                variable.
        """
        self.load_env()  # Load .env for API keys
        self._default_config = self._load_yaml_config(
            os.path.join(os.path.dirname(__file__), "config.yaml")
        )
        override_path = config_path or os.getenv(CONFIG_ENV_VAR)
        self._override_path = override_path
        if override_path:
            self._current_config = self._deep_merge(
                self._default_config, self._load_yaml_config(override_path)
            )
            logging.info(f"Loaded configuration overrides from {override_path}")
        else:
            self._current_config = self._default_config

    @staticmethod
    def load_env() -> None:
        """Load environment variables from .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml_config(config_path: str) -> dict[str, Any]:
        """Load configuration from YAML file."""
        with open(config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a dictionary")
            return cast(dict[str, Any], config)

    def _deep_merge(
        self, base: dict[str, Any], override: dict[str, Any]
    ) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = value

        return result

    def _get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Get a configuration value by path, with fallback to a default."""
        current: Any = self._current_config
        for key in path:
            if isinstance(current, dict) and key in current:
                current = current[key]  # type: ignore[assignment]
            else:
                return default
        return current  # type: ignore[return-value]

    def get_config_dict(self) -> dict[str, Any]:
        """Get the full configuration dictionary.

        Returns:
            The complete configuration dictionary.
        """
        return self._current_config

    def get_server_config(self) -> dict[str, Any]:
        """Get HTTP server configuration.

        Returns:
            Server configuration with validated host, port, CORS origins and
            SSE keep-alive interval.
        """
        server = self._get_config_value(["server"], {}) or {}
        host = server.get("host", "localhost")
        port = server.get("port", 3000)
        keepalive = server.get("sse_keepalive_seconds", 15.0)
        origins = server.get("cors_origins", ["*"])

        if not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError("server.port must be an integer between 1 and 65535")
        if keepalive is not None and keepalive <= 0:
            raise ValueError("server.sse_keepalive_seconds must be positive")

        return {
            "host": host,
            "port": port,
            "sse_keepalive_seconds": keepalive,
            "cors_origins": list(origins),
        }

    def get_relay_config(self) -> dict[str, Any]:
        """Get relay request configuration.

        Returns:
            Request timeout and generation defaults.
        """
        relay = self._get_config_value(["relay"], {}) or {}
        timeout = relay.get("request_timeout_seconds", 60.0)
        temperature = relay.get("default_temperature", 0.7)
        max_tokens = relay.get("default_max_tokens", 4096)

        if timeout <= 0:
            raise ValueError("relay.request_timeout_seconds must be positive")
        if not 0 <= temperature <= 2:
            raise ValueError("relay.default_temperature must be between 0 and 2")
        if not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValueError("relay.default_max_tokens must be a positive integer")

        return {
            "request_timeout_seconds": float(timeout),
            "default_temperature": float(temperature),
            "default_max_tokens": max_tokens,
        }

    def get_throttle_config(self) -> dict[str, Any]:
        """Get per-model concurrency limits.

        Returns:
            ``default_concurrency``, ``max_queue`` and a ``models`` mapping of
            model id to concurrency limit.
        """
        throttle = self._get_config_value(["relay", "throttle"], {}) or {}
        default_concurrency = throttle.get("default_concurrency", 5)
        max_queue = throttle.get("max_queue", 50)
        per_model = throttle.get("models", {}) or {}

        if not isinstance(default_concurrency, int) or default_concurrency < 1:
            raise ValueError("relay.throttle.default_concurrency must be a positive integer")
        if not isinstance(max_queue, int) or max_queue < 0:
            raise ValueError("relay.throttle.max_queue must be a non-negative integer")
        for model_id, limit in per_model.items():
            if not isinstance(limit, int) or limit < 1:
                raise ValueError(f"relay.throttle.models.{model_id} must be a positive integer")

        return {
            "default_concurrency": default_concurrency,
            "max_queue": max_queue,
            "models": dict(per_model),
        }

    def get_http_client_config(self) -> dict[str, Any]:
        """Get outbound HTTP client pooling and timeout configuration."""
        http = self._get_config_value(["http"], {}) or {}
        config = {
            "connect_timeout_seconds": http.get("connect_timeout_seconds", 10.0),
            "read_timeout_seconds": http.get("read_timeout_seconds", 120.0),
            "max_connections": http.get("max_connections", 100),
            "max_keepalive_connections": http.get("max_keepalive_connections", 20),
            "keepalive_expiry_seconds": http.get("keepalive_expiry_seconds", 30.0),
            "http2": bool(http.get("http2", True)),
        }
        for key in ("connect_timeout_seconds", "read_timeout_seconds", "keepalive_expiry_seconds"):
            if config[key] <= 0:
                raise ValueError(f"http.{key} must be positive")
        if config["max_connections"] < 1:
            raise ValueError("http.max_connections must be at least 1")
        if config["max_keepalive_connections"] > config["max_connections"]:
            raise ValueError("http.max_keepalive_connections must be <= http.max_connections")
        return config

    def get_logging_config(self) -> dict[str, Any]:
        """Get logging configuration from YAML.

        Returns:
            Logging configuration dictionary.
        """
        return self._get_config_value(["logging"], {}) or {}

    def get_models(self) -> list[ModelDescriptor]:
        return [
            self._validate(ModelDescriptor, entry, "models")
            for entry in self._get_config_value(["models"], []) or []
        ]

    def get_apps(self) -> list[AppRecord]:
        return [
            self._validate(AppRecord, entry, "apps")
            for entry in self._get_config_value(["apps"], []) or []
        ]

    def get_tools(self) -> list[ToolDefinition]:
        return [
            self._validate(ToolDefinition, entry, "tools")
            for entry in self._get_config_value(["tools"], []) or []
        ]

    @staticmethod
    def _validate(model_cls: Any, entry: Any, section: str) -> Any:
        try:
            return model_cls.model_validate(entry)
        except ValidationError as e:
            raise ValueError(f"Invalid entry in '{section}': {e}") from e

    def get_api_key_env(self, model: ModelDescriptor) -> str | None:
        """Environment variable holding the API key for ``model``."""
        if model.api_key_env:
            return model.api_key_env
        configured = self._get_config_value(["providers", "api_key_env"], {}) or {}
        return configured.get(model.provider) or DEFAULT_PROVIDER_KEY_ENV.get(model.provider)

    def resolve_api_key(self, model: ModelDescriptor) -> str | None:
        """Look up the API key for a model.

        Returns:
            The key, or None when the variable is unset. Callers decide
            whether a missing key is an error for the model's provider.
        """
        env_key = self.get_api_key_env(model)
        if not env_key:
            return None
        return os.getenv(env_key) or None
