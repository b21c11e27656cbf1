"""
Storage adapter abstraction for ClassDB.

This module provides a pluggable document store interface supporting:
- SQLite (single-file local deployments, tooling)
- In-memory (for testing)

Production deployments plug in any adapter that satisfies the
StorageAdapter protocol and speaks the Mongo-style query dialect.

Invariants:
    - Adapters raise AdapterError with a stable adapter_code
    - A $nearSphere on an unindexed field fails with GEO_INDEX_MISSING
    - Index creation is idempotent

How to change safely:
    - New backends must implement the StorageAdapter protocol
    - Run the integration suite against every backend
"""

from .base import (
    BAD_VALUE,
    DUPLICATE_KEY,
    GEO_INDEX_MISSING,
    Document,
    RawCollection,
    RemoveResult,
    SortSpec,
    StorageAdapter,
    UpdateResult,
    create_storage_adapter,
)
from .collection import ResilientCollection
from .memory import InMemoryStorageAdapter
from .sqlite import SqliteStorageAdapter

__all__ = [
    # Protocol and types
    "StorageAdapter",
    "RawCollection",
    "Document",
    "SortSpec",
    "UpdateResult",
    "RemoveResult",
    "GEO_INDEX_MISSING",
    "DUPLICATE_KEY",
    "BAD_VALUE",
    # Factory
    "create_storage_adapter",
    # Wrappers
    "ResilientCollection",
    # Implementations
    "InMemoryStorageAdapter",
    "SqliteStorageAdapter",
]
