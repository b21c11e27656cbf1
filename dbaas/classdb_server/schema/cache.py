"""
Single-flight schema cache.

The cache is the only state the data access layer shares across requests.
Loading is expensive (a full _SCHEMA read), so:
- Concurrent callers share one in-flight load
- A resolved schema is cached until invalidated
- A caller whose acceptor rejects the cached schema triggers one reload

Invariants:
    - At most one schema load is attached to the cache at any time
    - A caller joining an in-flight load applies its acceptor to that result
    - The acceptor is never reapplied to the reload it triggered
    - A load detached by invalidate() never writes back into the cache
    - A failed load is not cached; the next call loads again
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .schema import Schema

logger = logging.getLogger(__name__)

SchemaLoader = Callable[[], Awaitable[Schema]]
SchemaAcceptor = Callable[[Schema], bool]


class SchemaCache:
    """Caches the live Schema behind a single-flight guard.

    Example:
        >>> cache = SchemaCache(lambda: Schema.load(schema_collection))
        >>> schema = await cache.load()
        >>> schema = await cache.load(lambda s: s.has_keys("Post", ["title"]))
    """

    def __init__(self, loader: SchemaLoader) -> None:
        self._loader = loader
        self._schema: Optional[Schema] = None
        self._inflight: Optional[asyncio.Future[Schema]] = None
        self._generation = 0

    @property
    def cached(self) -> Optional[Schema]:
        """The cached schema, if one has been loaded."""
        return self._schema

    async def load(self, acceptor: Optional[SchemaAcceptor] = None) -> Schema:
        """Return the schema, loading or reloading it as needed.

        Args:
            acceptor: Predicate on the cached schema; when it returns False
                the schema is reloaded once and the fresh copy returned

        Raises:
            ClassDbError: Whatever the loader raises
        """
        if self._inflight is not None:
            schema = await asyncio.shield(self._inflight)
            if acceptor is None or acceptor(schema):
                return schema
            logger.debug("In-flight schema rejected, reloading")
            return await self._reload()

        if self._schema is not None:
            if acceptor is None or acceptor(self._schema):
                return self._schema
            logger.debug("Cached schema rejected, reloading")

        return await self._reload()

    async def _reload(self) -> Schema:
        # Rejecting callers that resume together share the next load.
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._load(self._generation))
        return await asyncio.shield(self._inflight)

    async def _load(self, generation: int) -> Schema:
        try:
            schema = await self._loader()
            if generation == self._generation:
                self._schema = schema
            return schema
        finally:
            if generation == self._generation:
                self._inflight = None

    def invalidate(self) -> None:
        """Drop the cached schema and detach any in-flight load."""
        self._generation += 1
        self._schema = None
        self._inflight = None
