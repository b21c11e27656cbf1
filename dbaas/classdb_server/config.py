"""
Configuration management for ClassDB Server.

Settings come from environment variables only. The storage section picks
the adapter and the collection prefix; the observability section drives
setup_logging() in main.py.

Invariants:
    - Every setting has a default usable for a local SQLite file
    - Unknown STORAGE_BACKEND / LOG_FORMAT values raise ValueError at load time
    - ServerConfig.from_env() always returns a validated config

How to change safely:
    - New settings need a default so existing deployments keep loading
    - Mirror any new variable in log_config() unless it is sensitive
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StorageBackend(Enum):
    """Supported storage adapters."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class LogFormat(Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


def _parse_enum(enum_cls: type, env_name: str, default: str):
    raw = os.getenv(env_name, default).lower()
    try:
        return enum_cls(raw)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {env_name} '{raw}'. Must be one of: {valid}")


@dataclass(frozen=True)
class StorageConfig:
    """Storage adapter configuration.

    Attributes:
        backend: Which storage adapter to use
        data_dir: Directory for the SQLite database
        database_file: SQLite database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        collection_prefix: Prepended to every collection name
    """

    backend: StorageBackend = StorageBackend.SQLITE
    data_dir: str = "/var/lib/classdb"
    database_file: str = "classdb.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    collection_prefix: str = ""

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If STORAGE_BACKEND names no known backend
        """
        return cls(
            backend=_parse_enum(StorageBackend, "STORAGE_BACKEND", "sqlite"),
            data_dir=os.getenv("DATA_DIR", "/var/lib/classdb"),
            database_file=os.getenv("SQLITE_DATABASE_FILE", "classdb.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            collection_prefix=os.getenv("COLLECTION_PREFIX", ""),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.JSON

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If LOG_FORMAT names no known format
        """
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=_parse_enum(LogFormat, "LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        storage: Storage adapter configuration
        observability: Logging configuration
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If any setting is invalid
        """
        config = cls(
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must not be negative")
        if self.observability.log_level not in logging.getLevelNamesMapping():
            raise ValueError(f"Invalid LOG_LEVEL '{self.observability.log_level}'")

        if self.storage.backend == StorageBackend.SQLITE:
            if not self.storage.database_file:
                raise ValueError("SQLITE_DATABASE_FILE is required when STORAGE_BACKEND=sqlite")
            if not os.path.exists(self.storage.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.storage.data_dir}. "
                    "It will be created on connect."
                )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir
                if self.storage.backend == StorageBackend.SQLITE
                else None,
                "collection_prefix": self.storage.collection_prefix,
                "log_level": self.observability.log_level,
                "log_format": self.observability.log_format.value,
            },
        )
