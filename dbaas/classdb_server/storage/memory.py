"""
In-memory storage adapter for testing.

This module provides a fully functional document store held in memory for:
- Unit tests
- Integration tests
- Local development without a database

Every collection call is recorded in ``calls`` so tests can assert that an
operation issued no store traffic at all.

Invariants:
    - All data is lost on process exit
    - Same query/update semantics as the SQLite adapter (shared engine)
    - find-and-modify operations are atomic under the adapter lock

How to change safely:
    - This is test-only code, changes don't affect production adapters
    - Keep interface compatible with the StorageAdapter protocol
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

from ..errors import AdapterError
from .base import (
    DUPLICATE_KEY,
    Document,
    RemoveResult,
    SortSpec,
    UpdateResult,
)
from .documents import (
    apply_update,
    match,
    new_document_id,
    select,
    upsert_seed,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdapterCall:
    """One recorded collection operation (testing helper)."""

    collection: str
    operation: str


@dataclass
class InMemoryCollectionData:
    """Documents and indexes of one collection, in insertion order."""

    docs: Dict[str, Document] = field(default_factory=dict)
    indexes: Dict[str, Any] = field(default_factory=dict)


class InMemoryCollection:
    """Collection handle over the adapter's shared storage."""

    def __init__(self, adapter: InMemoryStorageAdapter, name: str) -> None:
        self._adapter = adapter
        self.name = name

    @property
    def _data(self) -> InMemoryCollectionData:
        return self._adapter._collections.setdefault(self.name, InMemoryCollectionData())

    def _existing(self) -> InMemoryCollectionData:
        # Reads must not create the collection
        return self._adapter._collections.get(self.name) or InMemoryCollectionData()

    def _geo_indexes(self) -> list[str]:
        indexes = self._existing().indexes
        return [f for f, kind in indexes.items() if kind in ("2d", "2dsphere")]

    async def find(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[Document]:
        self._adapter._record(self.name, "find")
        async with self._adapter._lock:
            return select(
                self._existing().docs.values(),
                query,
                skip=skip,
                limit=limit,
                sort=sort,
                geo_indexes=self._geo_indexes(),
                collection_name=self.name,
            )

    async def count(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> int:
        self._adapter._record(self.name, "count")
        async with self._adapter._lock:
            return len(
                select(
                    self._existing().docs.values(),
                    query,
                    skip=skip,
                    limit=limit,
                    geo_indexes=self._geo_indexes(),
                    collection_name=self.name,
                )
            )

    async def insert(self, docs: List[Document]) -> List[str]:
        self._adapter._record(self.name, "insert")
        async with self._adapter._lock:
            data = self._data
            staged = []
            for doc in docs:
                stored = copy.deepcopy(doc)
                stored.setdefault("_id", new_document_id())
                if stored["_id"] in data.docs or any(s["_id"] == stored["_id"] for s in staged):
                    raise AdapterError(
                        f"E11000 duplicate key error collection: {self.name} _id: {stored['_id']}",
                        adapter_code=DUPLICATE_KEY,
                        collection=self.name,
                    )
                staged.append(stored)
            for stored in staged:
                data.docs[stored["_id"]] = stored
            return [stored["_id"] for stored in staged]

    async def update(self, filter: Document, doc: Document, upsert: bool = False) -> UpdateResult:
        self._adapter._record(self.name, "update")
        async with self._adapter._lock:
            data = self._data
            for doc_id, existing in data.docs.items():
                if match(existing, filter):
                    updated = apply_update(existing, doc)
                    data.docs[doc_id] = updated
                    return UpdateResult(matched_count=1, modified_count=int(updated != existing))
            if not upsert:
                return UpdateResult(matched_count=0, modified_count=0)
            created = apply_update(upsert_seed(filter), doc)
            created.setdefault("_id", new_document_id())
            data.docs[created["_id"]] = created
            return UpdateResult(matched_count=0, modified_count=0, upserted_id=created["_id"])

    async def remove(self, filter: Document) -> RemoveResult:
        self._adapter._record(self.name, "remove")
        async with self._adapter._lock:
            data = self._existing()
            doomed = [doc_id for doc_id, doc in data.docs.items() if match(doc, filter)]
            for doc_id in doomed:
                del data.docs[doc_id]
            return RemoveResult(removed_count=len(doomed))

    async def find_one_and_update(self, filter: Document, update: Document) -> Optional[Document]:
        self._adapter._record(self.name, "find_one_and_update")
        async with self._adapter._lock:
            data = self._existing()
            for doc_id, existing in data.docs.items():
                if match(existing, filter):
                    updated = apply_update(existing, update)
                    data.docs[doc_id] = updated
                    return copy.deepcopy(updated)
            return None

    async def find_one_and_delete(self, filter: Document) -> Optional[Document]:
        self._adapter._record(self.name, "find_one_and_delete")
        async with self._adapter._lock:
            data = self._existing()
            for doc_id, existing in data.docs.items():
                if match(existing, filter):
                    del data.docs[doc_id]
                    return existing
            return None

    async def create_index(self, spec: Dict[str, Any]) -> str:
        self._adapter._record(self.name, "create_index")
        async with self._adapter._lock:
            self._data.indexes.update(spec)
        name = "_".join(f"{k}_{v}" for k, v in spec.items())
        logger.debug("Created index", extra={"collection": self.name, "index": name})
        return name

    async def drop(self) -> None:
        self._adapter._record(self.name, "drop")
        async with self._adapter._lock:
            self._adapter._collections.pop(self.name, None)


class InMemoryStorageAdapter:
    """In-memory implementation of StorageAdapter for testing.

    Attributes:
        calls: Every collection operation issued, in order

    Thread safety:
        Uses an asyncio lock; safe to use from multiple coroutines.

    Example:
        >>> adapter = InMemoryStorageAdapter()
        >>> await adapter.connect()
        >>> await adapter.collection("Post").insert([{"_id": "p1"}])
        >>> adapter.calls
        [AdapterCall(collection='Post', operation='insert')]
    """

    def __init__(self) -> None:
        self._collections: Dict[str, InMemoryCollectionData] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self.calls: List[AdapterCall] = []

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryStorageAdapter connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._collections.clear()
        logger.debug("InMemoryStorageAdapter closed")

    def collection(self, name: str) -> InMemoryCollection:
        return InMemoryCollection(self, name)

    async def collection_exists(self, name: str) -> bool:
        return name in self._collections

    async def drop_collection(self, name: str) -> None:
        await self.collection(name).drop()

    async def collections_containing(self, prefix: str) -> List[InMemoryCollection]:
        return [self.collection(name) for name in list(self._collections) if name.startswith(prefix)]

    def _record(self, collection: str, operation: str) -> None:
        self.calls.append(AdapterCall(collection=collection, operation=operation))

    # Testing helpers

    def calls_to(self, collection: str) -> List[str]:
        """Operations issued against one collection (testing helper)."""
        return [c.operation for c in self.calls if c.collection == collection]

    def reset_calls(self) -> None:
        """Forget recorded calls (testing helper)."""
        self.calls.clear()

    def documents(self, collection: str) -> List[Document]:
        """Snapshot of a collection's documents (testing helper)."""
        data = self._collections.get(collection)
        return [copy.deepcopy(doc) for doc in data.docs.values()] if data else []
