"""
Unit tests for the reference storage adapters.

Tests cover:
- CRUD operations on InMemoryStorageAdapter and SqliteStorageAdapter
- Duplicate key errors
- find-and-modify semantics
- Collection listing and dropping
- Call recording on the in-memory adapter
"""

import tempfile
from datetime import datetime, timezone

import pytest

from dbaas.classdb_server.errors import AdapterError
from dbaas.classdb_server.storage import (
    DUPLICATE_KEY,
    InMemoryStorageAdapter,
    SqliteStorageAdapter,
    StorageAdapter,
)
from dbaas.classdb_server.storage.sqlite import decode_document, encode_document


@pytest.fixture(params=["memory", "sqlite"])
async def adapter(request):
    """Connected adapter of each kind."""
    if request.param == "memory":
        adapter = InMemoryStorageAdapter()
        await adapter.connect()
        yield adapter
        await adapter.close()
    else:
        with tempfile.TemporaryDirectory() as tmpdir:
            adapter = SqliteStorageAdapter(tmpdir, wal_mode=False)
            await adapter.connect()
            yield adapter
            await adapter.close()


class TestAdapterContract:
    """Behaviour shared by every adapter."""

    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, adapter):
        """Adapters implement the StorageAdapter protocol."""
        assert isinstance(adapter, StorageAdapter)
        assert adapter.is_connected

    @pytest.mark.asyncio
    async def test_insert_and_find(self, adapter):
        """Inserted documents are found again."""
        coll = adapter.collection("GameScore")
        ids = await coll.insert([{"_id": "a", "score": 10}, {"score": 5}])
        assert ids[0] == "a"
        assert len(ids) == 2

        found = await coll.find({"score": {"$gt": 7}})
        assert found == [{"_id": "a", "score": 10}]
        assert await coll.count({}) == 2

    @pytest.mark.asyncio
    async def test_duplicate_id_raises(self, adapter):
        """Inserting an existing _id fails with DUPLICATE_KEY."""
        coll = adapter.collection("GameScore")
        await coll.insert([{"_id": "a"}])
        with pytest.raises(AdapterError) as exc:
            await coll.insert([{"_id": "a"}])
        assert exc.value.adapter_code == DUPLICATE_KEY

    @pytest.mark.asyncio
    async def test_update_with_upsert(self, adapter):
        """Upsert inserts from the filter's equality fields."""
        coll = adapter.collection("_GlobalConfig")
        result = await coll.update({"_id": 1}, {"$set": {"params.a": 1}}, upsert=True)
        assert result.matched_count == 0
        await coll.update({"_id": 1}, {"$set": {"params.b": 2}}, upsert=True)

        docs = await coll.find({"_id": 1})
        assert docs == [{"_id": 1, "params": {"a": 1, "b": 2}}]

    @pytest.mark.asyncio
    async def test_update_without_match(self, adapter):
        """update without upsert leaves the collection untouched."""
        coll = adapter.collection("Post")
        result = await coll.update({"_id": "x"}, {"$set": {"a": 1}})
        assert result.matched_count == 0
        assert await coll.find({}) == []

    @pytest.mark.asyncio
    async def test_find_one_and_update_returns_new_document(self, adapter):
        """find_one_and_update returns the updated document."""
        coll = adapter.collection("Post")
        await coll.insert([{"_id": "p1", "views": 1}])
        updated = await coll.find_one_and_update({"_id": "p1"}, {"$inc": {"views": 2}})
        assert updated == {"_id": "p1", "views": 3}
        assert await coll.find_one_and_update({"_id": "missing"}, {"$inc": {"views": 1}}) is None

    @pytest.mark.asyncio
    async def test_find_one_and_delete_returns_old_document(self, adapter):
        """find_one_and_delete returns the removed document."""
        coll = adapter.collection("Post")
        await coll.insert([{"_id": "p1", "title": "t"}])
        removed = await coll.find_one_and_delete({"_id": "p1"})
        assert removed == {"_id": "p1", "title": "t"}
        assert await coll.find({}) == []

    @pytest.mark.asyncio
    async def test_remove_counts(self, adapter):
        """remove deletes every match."""
        coll = adapter.collection("Post")
        await coll.insert([{"_id": "a", "x": 1}, {"_id": "b", "x": 1}, {"_id": "c", "x": 2}])
        result = await coll.remove({"x": 1})
        assert result.removed_count == 2

    @pytest.mark.asyncio
    async def test_create_index_enables_geo_query(self, adapter):
        """A 2d index makes $nearSphere queries succeed."""
        coll = adapter.collection("Place")
        await coll.insert([{"_id": "a", "location": [1.0, 1.0]}])
        await coll.create_index({"location": "2d"})
        await coll.create_index({"location": "2d"})
        found = await coll.find({"location": {"$nearSphere": [0, 0]}})
        assert [d["_id"] for d in found] == ["a"]

    @pytest.mark.asyncio
    async def test_collections_containing_and_drop(self, adapter):
        """Collections are listed by prefix and dropped."""
        await adapter.collection("app_Post").insert([{"_id": "a"}])
        await adapter.collection("app_User").insert([{"_id": "b"}])
        await adapter.collection("other").insert([{"_id": "c"}])

        names = sorted(c.name for c in await adapter.collections_containing("app_"))
        assert names == ["app_Post", "app_User"]

        await adapter.drop_collection("app_Post")
        assert not await adapter.collection_exists("app_Post")
        assert await adapter.collection_exists("other")

    @pytest.mark.asyncio
    async def test_datetimes_round_trip(self, adapter):
        """datetime values come back as datetimes."""
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        coll = adapter.collection("Post")
        await coll.insert([{"_id": "a", "_created_at": when}])
        found = await coll.find({"_created_at": {"$lt": datetime.now(timezone.utc)}})
        assert found[0]["_created_at"] == when


class TestInMemoryCallRecording:
    """Tests for the in-memory adapter's call log."""

    @pytest.mark.asyncio
    async def test_calls_are_recorded(self):
        """Each collection operation is recorded."""
        adapter = InMemoryStorageAdapter()
        await adapter.connect()
        await adapter.collection("Post").insert([{"_id": "a"}])
        await adapter.collection("Post").find({})

        assert adapter.calls_to("Post") == ["insert", "find"]
        adapter.reset_calls()
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_reads_do_not_create_collections(self):
        """find on an unknown collection leaves it absent."""
        adapter = InMemoryStorageAdapter()
        await adapter.connect()
        assert await adapter.collection("Ghost").find({}) == []
        assert not await adapter.collection_exists("Ghost")


class TestSqliteAdapter:
    """SQLite-specific behaviour."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.mark.asyncio
    async def test_requires_connect(self, data_dir):
        """Operations before connect() fail."""
        adapter = SqliteStorageAdapter(data_dir)
        with pytest.raises(AdapterError):
            await adapter.collection("Post").find({})

    @pytest.mark.asyncio
    async def test_data_survives_reconnect(self, data_dir):
        """Documents persist in the database file."""
        adapter = SqliteStorageAdapter(data_dir)
        await adapter.connect()
        await adapter.collection("Post").insert([{"_id": "a", "title": "t"}])
        await adapter.close()

        reopened = SqliteStorageAdapter(data_dir)
        await reopened.connect()
        assert await reopened.collection("Post").find({}) == [{"_id": "a", "title": "t"}]

    @pytest.mark.asyncio
    async def test_prefix_underscore_is_literal(self, data_dir):
        """An underscore in the prefix is not a wildcard."""
        adapter = SqliteStorageAdapter(data_dir, wal_mode=False)
        await adapter.connect()
        await adapter.collection("a_b").insert([{"_id": "1"}])
        await adapter.collection("axb").insert([{"_id": "2"}])
        names = [c.name for c in await adapter.collections_containing("a_")]
        assert names == ["a_b"]

    def test_document_encoding(self):
        """Datetimes are encoded as {"$date": iso}."""
        when = datetime(2024, 1, 2, tzinfo=timezone.utc)
        body = encode_document({"_id": "a", "at": when})
        assert '"$date"' in body
        assert decode_document(body) == {"_id": "a", "at": when}
