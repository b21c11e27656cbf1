"""
Fixtures for controller integration tests.

Every test using the ``adapter`` or ``controller`` fixture runs once per
reference storage adapter.
"""

import tempfile

import pytest

from dbaas.classdb_server.access import DataController
from dbaas.classdb_server.storage import InMemoryStorageAdapter, SqliteStorageAdapter

SCHEMA_DOCS = [
    {
        "_id": "Post",
        "title": "string",
        "count": "number",
        "author": "*_User",
        "likes": "relation<_User>",
        "tags": "array",
    },
    {"_id": "Place", "name": "string", "location": "geopoint"},
    {
        "_id": "Secret",
        "value": "string",
        "_metadata": {
            "class_permissions": {
                "get": {"*": True},
                "find": {"role:admin": True},
                "create": {"role:admin": True},
                "update": {"role:admin": True},
                "delete": {"role:admin": True},
            }
        },
    },
    {"_id": "Locked", "title": "string", "_metadata": {"class_permissions": {"create": {}}}},
]


@pytest.fixture(params=["memory", "sqlite"])
async def adapter(request):
    """Connected adapter with the test schema stored in _SCHEMA."""
    if request.param == "memory":
        adapter = InMemoryStorageAdapter()
        await adapter.connect()
        await adapter.collection("_SCHEMA").insert(SCHEMA_DOCS)
        yield adapter
        await adapter.close()
    else:
        with tempfile.TemporaryDirectory() as tmpdir:
            adapter = SqliteStorageAdapter(tmpdir, wal_mode=False)
            await adapter.connect()
            await adapter.collection("_SCHEMA").insert(SCHEMA_DOCS)
            yield adapter
            await adapter.close()


@pytest.fixture
async def memory_adapter():
    """In-memory adapter, for tests that inspect recorded calls."""
    adapter = InMemoryStorageAdapter()
    await adapter.connect()
    await adapter.collection("_SCHEMA").insert(SCHEMA_DOCS)
    adapter.reset_calls()
    yield adapter
    await adapter.close()


@pytest.fixture
def controller(adapter):
    return DataController(adapter)
