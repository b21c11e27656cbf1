"""
SQLite storage adapter for ClassDB.

Stores every collection in a single SQLite file:
- documents: one row per document, body kept as JSON
- indexes: declared index kinds per collection field

Queries are evaluated by the shared document engine over the rows of one
collection, so semantics match the in-memory adapter exactly. This adapter
is meant for local deployments and tooling, not for large datasets.

Invariants:
    - One SQLite file per data directory
    - Every mutation runs in a BEGIN IMMEDIATE transaction
    - find-and-modify reads and writes inside the same transaction
    - Datetimes round-trip as {"$date": iso}

How to change safely:
    - Table changes must stay backward compatible with existing files
    - Keep semantics identical to InMemoryStorageAdapter (shared engine)
    - Test with the integration suite against both adapters

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - body_json TEXT
        - PRIMARY KEY (collection, doc_id)

    indexes:
        - collection TEXT
        - field TEXT
        - kind TEXT
        - PRIMARY KEY (collection, field)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import AdapterError
from .base import DUPLICATE_KEY, Document, RemoveResult, SortSpec, UpdateResult
from .documents import apply_update, match, new_document_id, select, upsert_seed

logger = logging.getLogger(__name__)

GEO_INDEX_KINDS = ("2d", "2dsphere")


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_object(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1 and "$date" in obj and isinstance(obj["$date"], str):
        return datetime.fromisoformat(obj["$date"])
    return obj


def encode_document(doc: Document) -> str:
    """Serialize a document to JSON, datetimes as {"$date": iso}."""
    return json.dumps(doc, default=_encode_value, sort_keys=True)


def decode_document(body: str) -> Document:
    return json.loads(body, object_hook=_decode_object)


class SqliteCollection:
    """Collection handle backed by rows of the documents table."""

    def __init__(self, adapter: SqliteStorageAdapter, name: str) -> None:
        self._adapter = adapter
        self.name = name

    def _load(self, conn: sqlite3.Connection) -> List[Document]:
        cursor = conn.execute(
            "SELECT body_json FROM documents WHERE collection = ? ORDER BY rowid",
            (self.name,),
        )
        return [decode_document(row["body_json"]) for row in cursor.fetchall()]

    def _geo_indexes(self, conn: sqlite3.Connection) -> List[str]:
        cursor = conn.execute(
            "SELECT field FROM indexes WHERE collection = ? AND kind IN (?, ?)",
            (self.name, *GEO_INDEX_KINDS),
        )
        return [row["field"] for row in cursor.fetchall()]

    def _write(self, conn: sqlite3.Connection, doc: Document) -> None:
        conn.execute(
            "UPDATE documents SET body_json = ? WHERE collection = ? AND doc_id = ?",
            (encode_document(doc), self.name, str(doc["_id"])),
        )

    def _insert_row(self, conn: sqlite3.Connection, doc: Document) -> None:
        try:
            conn.execute(
                "INSERT INTO documents (collection, doc_id, body_json) VALUES (?, ?, ?)",
                (self.name, str(doc["_id"]), encode_document(doc)),
            )
        except sqlite3.IntegrityError as e:
            raise AdapterError(
                f"E11000 duplicate key error collection: {self.name} _id: {doc['_id']}",
                adapter_code=DUPLICATE_KEY,
                collection=self.name,
            ) from e

    def _delete_row(self, conn: sqlite3.Connection, doc_id: Any) -> None:
        conn.execute(
            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
            (self.name, str(doc_id)),
        )

    async def find(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[Document]:
        with self._adapter._get_connection() as conn:
            docs = self._load(conn)
            geo_indexes = self._geo_indexes(conn)
        return select(
            docs,
            query,
            skip=skip,
            limit=limit,
            sort=sort,
            geo_indexes=geo_indexes,
            collection_name=self.name,
        )

    async def count(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> int:
        with self._adapter._get_connection() as conn:
            docs = self._load(conn)
            geo_indexes = self._geo_indexes(conn)
        return len(
            select(
                docs,
                query,
                skip=skip,
                limit=limit,
                geo_indexes=geo_indexes,
                collection_name=self.name,
            )
        )

    async def insert(self, docs: List[Document]) -> List[str]:
        ids = []
        with self._adapter._transaction() as conn:
            for doc in docs:
                stored = dict(doc)
                stored.setdefault("_id", new_document_id())
                self._insert_row(conn, stored)
                ids.append(stored["_id"])
        return ids

    async def update(self, filter: Document, doc: Document, upsert: bool = False) -> UpdateResult:
        with self._adapter._transaction() as conn:
            for existing in self._load(conn):
                if match(existing, filter):
                    updated = apply_update(existing, doc)
                    self._write(conn, updated)
                    return UpdateResult(matched_count=1, modified_count=int(updated != existing))
            if not upsert:
                return UpdateResult(matched_count=0, modified_count=0)
            created = apply_update(upsert_seed(filter), doc)
            created.setdefault("_id", new_document_id())
            self._insert_row(conn, created)
            return UpdateResult(matched_count=0, modified_count=0, upserted_id=created["_id"])

    async def remove(self, filter: Document) -> RemoveResult:
        with self._adapter._transaction() as conn:
            doomed = [doc["_id"] for doc in self._load(conn) if match(doc, filter)]
            for doc_id in doomed:
                self._delete_row(conn, doc_id)
        return RemoveResult(removed_count=len(doomed))

    async def find_one_and_update(self, filter: Document, update: Document) -> Optional[Document]:
        with self._adapter._transaction() as conn:
            for existing in self._load(conn):
                if match(existing, filter):
                    updated = apply_update(existing, update)
                    self._write(conn, updated)
                    return updated
        return None

    async def find_one_and_delete(self, filter: Document) -> Optional[Document]:
        with self._adapter._transaction() as conn:
            for existing in self._load(conn):
                if match(existing, filter):
                    self._delete_row(conn, existing["_id"])
                    return existing
        return None

    async def create_index(self, spec: Dict[str, Any]) -> str:
        with self._adapter._transaction() as conn:
            for field_name, kind in spec.items():
                conn.execute(
                    "INSERT OR REPLACE INTO indexes (collection, field, kind) VALUES (?, ?, ?)",
                    (self.name, field_name, str(kind)),
                )
        name = "_".join(f"{k}_{v}" for k, v in spec.items())
        logger.debug("Created index", extra={"collection": self.name, "index": name})
        return name

    async def drop(self) -> None:
        with self._adapter._transaction() as conn:
            conn.execute("DELETE FROM documents WHERE collection = ?", (self.name,))
            conn.execute("DELETE FROM indexes WHERE collection = ?", (self.name,))


class SqliteStorageAdapter:
    """SQLite implementation of StorageAdapter.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> adapter = SqliteStorageAdapter("/var/lib/classdb")
        >>> await adapter.connect()
        >>> await adapter.collection("GameScore").insert([{"score": 10}])
    """

    def __init__(
        self,
        data_dir: str,
        database_file: str = "classdb.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the adapter.

        Args:
            data_dir: Directory holding the database file
            database_file: Database file name inside data_dir
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.database_file = database_file
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.database_file

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a configured connection to the database file.

        Raises:
            AdapterError: If the adapter is not connected
        """
        if not self._connected:
            raise AdapterError("SqliteStorageAdapter is not connected")

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                body_json TEXT NOT NULL DEFAULT '{}',
                PRIMARY KEY (collection, doc_id)
            );

            CREATE TABLE IF NOT EXISTS indexes (
                collection TEXT NOT NULL,
                field TEXT NOT NULL,
                kind TEXT NOT NULL,
                PRIMARY KEY (collection, field)
            );
        """)

    async def connect(self) -> None:
        """Create the database file and tables if they don't exist."""
        async with self._lock:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._connected = True
            with self._get_connection() as conn:
                self._create_schema(conn)
        logger.info("SqliteStorageAdapter connected", extra={"path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False
        logger.debug("SqliteStorageAdapter closed")

    def collection(self, name: str) -> SqliteCollection:
        return SqliteCollection(self, name)

    async def collection_exists(self, name: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT 1 FROM documents WHERE collection = ?
                UNION ALL
                SELECT 1 FROM indexes WHERE collection = ?
                LIMIT 1
                """,
                (name, name),
            )
            return cursor.fetchone() is not None

    async def drop_collection(self, name: str) -> None:
        await self.collection(name).drop()

    async def collections_containing(self, prefix: str) -> List[SqliteCollection]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT collection FROM documents UNION SELECT collection FROM indexes"
            )
            names = sorted(row["collection"] for row in cursor.fetchall())
        # LIKE treats "_" as a wildcard, so the prefix is matched here
        return [self.collection(name) for name in names if name.startswith(prefix)]
