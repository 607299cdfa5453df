"""
Main application entry point - SSE relay server with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from llm_relay.chat.logging_utils import set_module_features
from llm_relay.config import Configuration
from llm_relay.server import run_server

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Module-to-logger mapping; levels are set on parent loggers and children inherit.
MODULE_LOGGER_MAP: dict[str, dict[str, Any]] = {
    "relay": {
        "loggers": ["llm_relay.chat", "llm_relay.streaming", "llm_relay.interactions"],
        "default_level": "INFO",
        "features": ["llm_requests", "stream_events", "interactions"],
    },
    "clients": {
        "loggers": ["llm_relay.clients", "llm_relay.providers", "httpx"],
        "default_level": "INFO",
        "features": ["http_requests", "connection_events"],
    },
    "server": {
        "loggers": ["llm_relay.server", "uvicorn"],
        "default_level": "INFO",
        "features": ["sse_connections"],
    },
}


def _configure_advanced_logging(logging_config: dict[str, Any]) -> None:
    """
    Advanced logging configuration with hierarchical loggers and feature control.

    Sets the global level, a level per module group, and installs the
    group's feature flags for runtime checks via ``should_log_feature``.
    """
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    modules_config = logging_config.get("modules", {})

    for module_name, module_config in modules_config.items():
        if not isinstance(module_config, dict):
            continue

        mapping = MODULE_LOGGER_MAP.get(module_name, {})
        module_level = module_config.get("level", mapping.get("default_level", global_level))
        level_value = LEVEL_MAP.get(module_level, logging.WARNING)

        for logger_name in mapping.get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        features = module_config.get("enable_features", {}) or {}
        unknown = set(features) - set(mapping.get("features", features))
        if unknown:
            logging.warning(f"Unknown logging features for {module_name}: {sorted(unknown)}")
        set_module_features(module_name, features)


# Configure logging for the application
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)


async def main(config_path: str | None = None) -> None:
    """Main entry point - SSE relay with graceful shutdown handling."""
    config = Configuration(config_path)  # falls back to LLM_RELAY_CONFIG

    # Apply consolidated logging configuration from YAML
    logging_config = config.get_logging_config()

    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    _configure_advanced_logging(logging_config)

    # Setup graceful shutdown handler
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        """Handle shutdown signals gracefully."""
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    try:
        server_task = asyncio.create_task(run_server(config))

        # Wait for either server completion or shutdown signal
        done, pending = await asyncio.wait(
            [server_task, asyncio.create_task(shutdown_event.wait())],
            return_when=asyncio.FIRST_COMPLETED,
        )

        # Cancelling the server task runs its cleanup (relay shutdown, client close)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for task in done:
            if task is server_task:
                exception = task.exception()
                if exception is not None:
                    raise exception

    except KeyboardInterrupt:
        logging.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logging.error(f"Application error: {e}")
        raise
    finally:
        logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
