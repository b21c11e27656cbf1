"""
Unit tests for SchemaCache.

Tests cover:
- Caching after the first load
- Single-flight loading under concurrency
- Acceptor-driven reloads
- Failed loads are not cached
- Acceptors applied by callers joining an in-flight load
- invalidate() detaching an in-flight load
"""

import asyncio

import pytest

from dbaas.classdb_server.schema import Schema, SchemaCache


class CountingLoader:
    """Loader returning a fresh schema per call, optionally slow or failing."""

    def __init__(self, delay=0.0, fail_first=False):
        self.calls = 0
        self.delay = delay
        self.fail_first = fail_first

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.fail_first and self.calls == 1:
            raise RuntimeError("store unavailable")
        return Schema.from_documents([{"_id": "Post", "title": "string"}])


class TestSchemaCache:
    """Tests for SchemaCache."""

    @pytest.mark.asyncio
    async def test_caches_after_first_load(self):
        """The second load is served from the cache."""
        loader = CountingLoader()
        cache = SchemaCache(loader)

        first = await cache.load()
        second = await cache.load()

        assert first is second
        assert cache.cached is first
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_read(self):
        """Concurrent callers share a single in-flight load."""
        loader = CountingLoader(delay=0.01)
        cache = SchemaCache(loader)

        results = await asyncio.gather(*(cache.load() for _ in range(10)))

        assert loader.calls == 1
        assert all(result is results[0] for result in results)

    @pytest.mark.asyncio
    async def test_rejecting_acceptor_reloads_once(self):
        """An acceptor returning False forces exactly one reload."""
        loader = CountingLoader()
        cache = SchemaCache(loader)
        first = await cache.load()

        reloaded = await cache.load(lambda schema: schema.has_keys("Post", ["subtitle"]))

        assert loader.calls == 2
        assert reloaded is not first

    @pytest.mark.asyncio
    async def test_accepting_acceptor_uses_cache(self):
        """An acceptor returning True keeps the cached schema."""
        loader = CountingLoader()
        cache = SchemaCache(loader)
        await cache.load()

        await cache.load(lambda schema: schema.has_keys("Post", ["title"]))
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_failed_load_is_not_cached(self):
        """A failing loader leaves the cache empty for the next caller."""
        loader = CountingLoader(fail_first=True)
        cache = SchemaCache(loader)

        with pytest.raises(RuntimeError):
            await cache.load()
        assert cache.cached is None

        await cache.load()
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate(self):
        """invalidate forces the next load to read again."""
        loader = CountingLoader()
        cache = SchemaCache(loader)
        await cache.load()

        cache.invalidate()
        await cache.load()
        assert loader.calls == 2


class VersionedLoader:
    """Loader serving successive schema versions, one per call."""

    def __init__(self, versions, delay=0.01):
        self.versions = versions
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        version = self.versions[min(self.calls, len(self.versions) - 1)]
        self.calls += 1
        await asyncio.sleep(self.delay)
        return Schema.from_documents([version])


class TestInFlightLoads:
    """Tests for callers joining a load that is already running."""

    @pytest.mark.asyncio
    async def test_joined_load_applies_acceptor(self):
        """A caller whose acceptor rejects the in-flight result reloads once."""
        loader = VersionedLoader([{"_id": "Post"}, {"_id": "Post", "subtitle": "string"}])
        cache = SchemaCache(loader)

        first = asyncio.ensure_future(cache.load())
        await asyncio.sleep(0)
        joined = await cache.load(lambda schema: schema.has_keys("Post", ["subtitle"]))

        assert loader.calls == 2
        assert joined.has_keys("Post", ["subtitle"])
        assert not (await first).has_keys("Post", ["subtitle"])
        assert cache.cached is joined

    @pytest.mark.asyncio
    async def test_joined_load_accepted(self):
        """An accepting joiner shares the in-flight result."""
        loader = VersionedLoader([{"_id": "Post", "title": "string"}])
        cache = SchemaCache(loader)

        results = await asyncio.gather(
            cache.load(),
            cache.load(lambda schema: schema.has_keys("Post", ["title"])),
        )

        assert loader.calls == 1
        assert results[0] is results[1]

    @pytest.mark.asyncio
    async def test_rejecting_joiners_share_one_reload(self):
        """Several rejecting joiners trigger a single reload between them."""
        loader = VersionedLoader([{"_id": "Post"}, {"_id": "Post", "subtitle": "string"}])
        cache = SchemaCache(loader)

        def wants_subtitle(schema):
            return schema.has_keys("Post", ["subtitle"])

        first = asyncio.ensure_future(cache.load())
        await asyncio.sleep(0)
        results = await asyncio.gather(*(cache.load(wants_subtitle) for _ in range(5)))
        await first

        assert loader.calls == 2
        assert all(result is results[0] for result in results)

    @pytest.mark.asyncio
    async def test_invalidate_detaches_in_flight_load(self):
        """A load started before invalidate() does not repopulate the cache."""
        loader = VersionedLoader([{"_id": "Post", "title": "string"}, {"_id": "Other"}])
        cache = SchemaCache(loader)

        stale = asyncio.ensure_future(cache.load())
        await asyncio.sleep(0)
        cache.invalidate()
        await stale

        assert cache.cached is None

        fresh = await cache.load()
        assert loader.calls == 2
        assert cache.cached is fresh
        assert not fresh.has_keys("Post", ["title"])
