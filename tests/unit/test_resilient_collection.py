"""
Unit tests for ResilientCollection.

Tests cover:
- Recognizing missing geo index errors
- Creating the index and retrying once
- Propagating every other error
"""

import pytest

from dbaas.classdb_server.errors import AdapterError
from dbaas.classdb_server.storage import (
    BAD_VALUE,
    GEO_INDEX_MISSING,
    InMemoryStorageAdapter,
    ResilientCollection,
)
from dbaas.classdb_server.storage.collection import missing_geo_index_field

GEO_MESSAGE = (
    "Unable to execute query: error processing query: ns=app.Place "
    "field=location planner returned error: unable to find index for $geoNear query"
)


class AlwaysFailingCollection:
    """Raw collection whose find always fails with the given error."""

    name = "Place"

    def __init__(self, error):
        self.error = error
        self.finds = 0
        self.indexes = []

    async def find(self, query, skip=None, limit=None, sort=None):
        self.finds += 1
        raise self.error

    async def create_index(self, spec):
        self.indexes.append(spec)
        return "idx"


class TestMissingGeoIndexField:
    """Tests for missing_geo_index_field."""

    def test_extracts_field(self):
        """The field name is read from the message."""
        error = AdapterError(GEO_MESSAGE, adapter_code=GEO_INDEX_MISSING)
        assert missing_geo_index_field(error) == "location"

    def test_other_code_is_ignored(self):
        """Only GEO_INDEX_MISSING is recognized."""
        error = AdapterError(GEO_MESSAGE, adapter_code=BAD_VALUE)
        assert missing_geo_index_field(error) is None

    def test_other_message_is_ignored(self):
        """The message must mention the $geoNear planner failure."""
        error = AdapterError("field=location something else", adapter_code=GEO_INDEX_MISSING)
        assert missing_geo_index_field(error) is None


class TestResilientCollection:
    """Tests for the self-healing find."""

    @pytest.fixture
    async def adapter(self):
        adapter = InMemoryStorageAdapter()
        await adapter.connect()
        await adapter.collection("Place").insert([{"_id": "a", "location": [2.0, 1.0]}])
        adapter.reset_calls()
        return adapter

    @pytest.mark.asyncio
    async def test_creates_index_and_retries(self, adapter):
        """A missing geo index is created, then the find is retried."""
        coll = ResilientCollection(adapter.collection("Place"))
        result = await coll.find({"location": {"$nearSphere": [0, 0]}})

        assert [d["_id"] for d in result] == ["a"]
        assert adapter.calls_to("Place") == ["find", "create_index", "find"]

    @pytest.mark.asyncio
    async def test_no_retry_once_indexed(self, adapter):
        """Subsequent geo queries go straight through."""
        coll = ResilientCollection(adapter.collection("Place"))
        await coll.find({"location": {"$nearSphere": [0, 0]}})
        adapter.reset_calls()

        await coll.find({"location": {"$nearSphere": [0, 0]}})
        assert adapter.calls_to("Place") == ["find"]

    @pytest.mark.asyncio
    async def test_retries_only_once(self):
        """A second failure propagates."""
        raw = AlwaysFailingCollection(AdapterError(GEO_MESSAGE, adapter_code=GEO_INDEX_MISSING))
        coll = ResilientCollection(raw)

        with pytest.raises(AdapterError):
            await coll.find({"location": {"$nearSphere": [0, 0]}})
        assert raw.finds == 2
        assert raw.indexes == [{"location": "2d"}]

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        """Errors other than a missing geo index are not healed."""
        raw = AlwaysFailingCollection(AdapterError("boom", adapter_code=BAD_VALUE))
        coll = ResilientCollection(raw)

        with pytest.raises(AdapterError, match="boom"):
            await coll.find({})
        assert raw.finds == 1
        assert raw.indexes == []
