"""
Base protocol and types for the storage adapter abstraction.

This module defines the protocols every document store backend must
implement, along with result types and the adapter error codes that the
data access layer pattern-matches on.

Invariants:
    - Collections are addressed by name; the adapter owns naming on disk
    - find_one_and_update returns the document AFTER the change
    - find_one_and_delete returns the document BEFORE deletion
    - Failures are raised as AdapterError with a stable adapter_code

How to change safely:
    - Protocol changes require updating all implementations
    - Never renumber adapter codes, callers self-heal on them
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
    TYPE_CHECKING,
)
import logging

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)

# Adapter codes (MongoDB numbering, kept so real drivers map one-to-one)
GEO_INDEX_MISSING = 17007
DUPLICATE_KEY = 11000
BAD_VALUE = 2

Document = Dict[str, Any]
SortSpec = Dict[str, int]


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of an update call.

    Attributes:
        matched_count: Documents matched by the filter
        modified_count: Documents actually changed
        upserted_id: _id of the inserted document when upserting
    """

    matched_count: int
    modified_count: int
    upserted_id: Optional[str] = None


@dataclass(frozen=True)
class RemoveResult:
    """Outcome of a remove call."""

    removed_count: int


@runtime_checkable
class RawCollection(Protocol):
    """Protocol for a named collection in the document store.

    Queries and updates use the store-native (Mongo-style) dialect.

    Example:
        >>> coll = adapter.collection("GameScore")
        >>> await coll.insert([{"_id": "a1", "score": 10}])
        >>> await coll.find({"score": {"$gt": 5}}, limit=10)
        [{'_id': 'a1', 'score': 10}]
    """

    name: str

    @abstractmethod
    async def find(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[Document]:
        """Return matching documents.

        Raises:
            AdapterError: GEO_INDEX_MISSING when $nearSphere targets an
                unindexed field, or any other store failure
        """
        ...

    @abstractmethod
    async def count(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> int:
        """Count matching documents."""
        ...

    @abstractmethod
    async def insert(self, docs: List[Document]) -> List[str]:
        """Insert documents, returning their _ids.

        Raises:
            AdapterError: DUPLICATE_KEY if an _id already exists
        """
        ...

    @abstractmethod
    async def update(self, filter: Document, doc: Document, upsert: bool = False) -> UpdateResult:
        """Update the first matching document.

        ``doc`` is either an operator document ($set, $inc, ...) or a
        replacement document.
        """
        ...

    @abstractmethod
    async def remove(self, filter: Document) -> RemoveResult:
        """Remove every matching document."""
        ...

    @abstractmethod
    async def find_one_and_update(self, filter: Document, update: Document) -> Optional[Document]:
        """Atomically update one document and return its new state."""
        ...

    @abstractmethod
    async def find_one_and_delete(self, filter: Document) -> Optional[Document]:
        """Atomically delete one document and return its last state."""
        ...

    @abstractmethod
    async def create_index(self, spec: Dict[str, Any]) -> str:
        """Create an index (idempotent). Returns the index name."""
        ...

    @abstractmethod
    async def drop(self) -> None:
        """Drop the collection and its indexes."""
        ...


@runtime_checkable
class StorageAdapter(Protocol):
    """Protocol for document store backends.

    The adapter owns connection lifecycle and hands out collections.

    Example:
        >>> adapter = InMemoryStorageAdapter()
        >>> await adapter.connect()
        >>> coll = adapter.collection("_SCHEMA")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend. Must be called before use."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    def collection(self, name: str) -> RawCollection:
        """Return a handle for the named collection (created lazily)."""
        ...

    @abstractmethod
    async def collection_exists(self, name: str) -> bool:
        """Whether the collection holds data or indexes."""
        ...

    @abstractmethod
    async def drop_collection(self, name: str) -> None:
        """Drop the named collection."""
        ...

    @abstractmethod
    async def collections_containing(self, prefix: str) -> List[RawCollection]:
        """Return every existing collection whose name starts with prefix."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_storage_adapter(config: "ServerConfig") -> StorageAdapter:
    """Factory function to create a storage adapter from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate StorageAdapter implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryStorageAdapter
    from .sqlite import SqliteStorageAdapter

    storage = config.storage
    if storage.backend == StorageBackend.MEMORY:
        return InMemoryStorageAdapter()
    elif storage.backend == StorageBackend.SQLITE:
        return SqliteStorageAdapter(
            data_dir=storage.data_dir,
            database_file=storage.database_file,
            wal_mode=storage.wal_mode,
            busy_timeout_ms=storage.busy_timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported storage backend: {storage.backend}")
