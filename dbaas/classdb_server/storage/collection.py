"""
Self-healing collection wrapper.

ResilientCollection wraps a RawCollection and recovers from exactly one
kind of failure: a geo query against a field with no geospatial index.
The index is created on the reported field and the find is retried once.

Invariants:
    - At most one retry per find call
    - Only AdapterError(GEO_INDEX_MISSING) naming a field is healed
    - Every other error propagates unchanged
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from ..errors import AdapterError
from .base import GEO_INDEX_MISSING, Document, RawCollection, RemoveResult, SortSpec, UpdateResult

logger = logging.getLogger(__name__)

GEO_INDEX_MESSAGE = re.compile(r"unable to find index for .geoNear")
GEO_INDEX_FIELD = re.compile(r"field=([A-Za-z_0-9]+) ")


def missing_geo_index_field(error: AdapterError) -> Optional[str]:
    """Field named by a missing-geo-index error, or None for any other error."""
    if error.adapter_code != GEO_INDEX_MISSING:
        return None
    if not GEO_INDEX_MESSAGE.search(error.message):
        return None
    found = GEO_INDEX_FIELD.search(error.message)
    return found.group(1) if found else None


class ResilientCollection:
    """RawCollection wrapper used by the data access layer.

    Example:
        >>> coll = ResilientCollection(adapter.collection("Place"))
        >>> await coll.find({"location": {"$nearSphere": [0, 0]}})
    """

    def __init__(self, raw: RawCollection) -> None:
        self._raw = raw

    @property
    def name(self) -> str:
        return self._raw.name

    @property
    def raw(self) -> RawCollection:
        return self._raw

    async def find(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[Document]:
        """Find documents, provisioning a missing 2d index once if needed.

        Raises:
            AdapterError: Any store failure other than a healable missing
                geo index, or the failure of the single retry
        """
        try:
            return await self._raw.find(query, skip=skip, limit=limit, sort=sort)
        except AdapterError as e:
            field_name = missing_geo_index_field(e)
            if field_name is None:
                raise
            logger.info(
                "Creating missing geo index",
                extra={"collection": self.name, "field": field_name},
            )
            await self._raw.create_index({field_name: "2d"})
            return await self._raw.find(query, skip=skip, limit=limit, sort=sort)

    async def count(
        self,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> int:
        return await self._raw.count(query, skip=skip, limit=limit, sort=sort)

    async def insert(self, docs: List[Document]) -> List[str]:
        return await self._raw.insert(docs)

    async def update(self, filter: Document, doc: Document, upsert: bool = False) -> UpdateResult:
        return await self._raw.update(filter, doc, upsert=upsert)

    async def remove(self, filter: Document) -> RemoveResult:
        return await self._raw.remove(filter)

    async def find_one_and_update(self, filter: Document, update: Document) -> Optional[Document]:
        """Atomically update one document and return it after the change."""
        return await self._raw.find_one_and_update(filter, update)

    async def find_one_and_delete(self, filter: Document) -> Optional[Document]:
        """Atomically delete one document and return it as it was."""
        return await self._raw.find_one_and_delete(filter)

    async def create_index(self, spec: Dict[str, Any]) -> str:
        return await self._raw.create_index(spec)

    async def drop(self) -> None:
        await self._raw.drop()
