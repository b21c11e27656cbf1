"""
ClassDB Server - runtime wiring.

This module assembles the data access stack from configuration:
- Storage adapter (SQLite or in-memory)
- DataController with the configured collection prefix
- Logging (JSON or text)

Usage:
    runtime = Runtime(ServerConfig.from_env())
    await runtime.start()
    await runtime.controller.find("Post", {}, {"acl": ["u1"]})
    await runtime.stop()

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The controller is only handed out after the adapter connected
    - stop() is safe to call twice and after a failed start()

How to change safely:
    - Keep setup_logging idempotent, the CLI calls it on every run
    - Test startup and shutdown with both storage backends
"""

from __future__ import annotations

import logging

import json_log_formatter

from .access import DataController
from .config import LogFormat, ServerConfig
from .storage import StorageAdapter, create_storage_adapter

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == LogFormat.JSON:
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Runtime:
    """Owns the storage adapter and the controller built on it.

    Attributes:
        config: Server configuration
        adapter: Storage adapter instance
        controller: Data access controller (None until started)

    Example:
        >>> runtime = Runtime(config)
        >>> await runtime.start()
        >>> schema = await runtime.controller.load_schema()
        >>> await runtime.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        adapter: StorageAdapter | None = None,
    ) -> None:
        """Initialize the runtime.

        Args:
            config: Optional configuration (loaded from env if not provided)
            adapter: Optional adapter overriding the configured backend
        """
        self.config = config or ServerConfig.from_env()
        self.adapter = adapter or create_storage_adapter(self.config)
        self.controller: DataController | None = None
        self._running = False

    async def start(self) -> DataController:
        """Connect the adapter and build the controller."""
        if self._running and self.controller is not None:
            logger.warning("Runtime already running")
            return self.controller

        logger.info(
            "Starting ClassDB runtime",
            extra={"storage_backend": self.config.storage.backend.value},
        )
        controller = DataController(
            self.adapter,
            collection_prefix=self.config.storage.collection_prefix,
        )
        await controller.connect()
        self.controller = controller
        self._running = True
        return controller

    async def stop(self) -> None:
        """Close the adapter."""
        if not self._running:
            return
        await self.adapter.close()
        self._running = False
        self.controller = None
        logger.info("ClassDB runtime stopped")

    async def __aenter__(self) -> DataController:
        return await self.start()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
