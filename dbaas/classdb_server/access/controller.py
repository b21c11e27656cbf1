"""
Schema- and permission-aware data access for ClassDB.

DataController sits between the object API and the document store. Each
operation reconciles, in order:
1. Schema discovery (cached, reloaded once when a query names unknown keys)
2. Class-level permission checks for non-master callers
3. Relation resolution ($relatedTo, relation predicates, relation operators)
4. Row-level ACL filtering (_rperm for reads, _wperm for writes)
5. Translation to the store dialect and execution

Invariants:
    - Permission checks run before any relation lookup or data access, so a
      denied caller causes no store traffic beyond a schema load
    - Relation operators are extracted before translation
    - The schema cache is the only state shared between requests
    - Zero-match update/destroy raises ObjectNotFound (except _Session
      destroys)
    - Relation edges are not removed when objects are destroyed

How to change safely:
    - Keep the ordering above; tests assert zero adapter calls on denial
    - Never change the _Join:<key>:<class> naming (persisted state)
    - Run the integration suite against both reference adapters

Example:
    >>> controller = DataController(InMemoryStorageAdapter())
    >>> await controller.connect()
    >>> await controller.create("Post", {"title": "Hello"}, {})
    >>> await controller.find("Post", {"title": "Hello"}, {"acl": ["u1"]})
    [{'objectId': '...', 'title': 'Hello'}]
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from ..acl import AclManager, ClassOperation, get_acl_manager
from ..errors import InvalidClassName, ObjectNotFound, PermissionDenied, ValidationError
from ..schema import (
    SCHEMA_CLASS,
    Schema,
    SchemaAcceptor,
    SchemaCache,
    class_name_is_valid,
    keys_for_query,
)
from ..storage.base import Document, RawCollection, SortSpec, StorageAdapter
from ..storage.collection import ResilientCollection
from ..storage.documents import deep_get, new_document_id
from .operators import Increment, parse_operation
from .options import QueryOptions
from .projector import SESSION_CLASS, ResponseProjector
from .relations import RelationManager
from .transform import (
    transform_create,
    transform_key,
    transform_sort,
    transform_update,
    transform_where,
)

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_CLASS = "_GlobalConfig"
GLOBAL_CONFIG_ID = 1

Options = Union[QueryOptions, Mapping[str, Any], None]


class DataController:
    """Runs find/create/update/destroy against a storage adapter.

    Attributes:
        adapter: Storage adapter holding every collection
        collection_prefix: Prepended to every collection name
        schema_cache: Shared single-flight schema cache
        relations: Join collection manager

    Thread safety:
        Safe for concurrent coroutines; per-request state is local.
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        collection_prefix: str = "",
        acl_manager: Optional[AclManager] = None,
    ) -> None:
        self.adapter = adapter
        self.collection_prefix = collection_prefix
        self.schema_cache = SchemaCache(self._read_schema)
        self.relations = RelationManager(self.collection)
        self._acl = acl_manager or get_acl_manager()

    async def connect(self) -> None:
        await self.adapter.connect()

    async def close(self) -> None:
        await self.adapter.close()

    # --- Collections ---------------------------------------------------------

    def collection(self, class_name: str) -> ResilientCollection:
        """Collection for a class, after validating the class name.

        Raises:
            InvalidClassName: If class_name is not a valid class name
        """
        self._check_class_name(class_name)
        return self.adaptive_collection(class_name)

    def adaptive_collection(self, class_name: str) -> ResilientCollection:
        return ResilientCollection(self.raw_collection(class_name))

    def raw_collection(self, class_name: str) -> RawCollection:
        return self.adapter.collection(self.collection_prefix + class_name)

    async def collection_exists(self, class_name: str) -> bool:
        return await self.adapter.collection_exists(self.collection_prefix + class_name)

    async def drop_collection(self, class_name: str) -> None:
        await self.adapter.drop_collection(self.collection_prefix + class_name)

    def _check_class_name(self, class_name: str) -> None:
        if not class_name_is_valid(class_name):
            raise InvalidClassName(class_name)

    # --- Schema --------------------------------------------------------------

    async def _read_schema(self) -> Schema:
        return await Schema.load(self.collection(SCHEMA_CLASS))

    async def load_schema(self, acceptor: Optional[SchemaAcceptor] = None) -> Schema:
        """Cached schema; reloaded once if acceptor rejects the cached copy."""
        return await self.schema_cache.load(acceptor)

    async def redirect_class_name_for_key(self, class_name: str, key: str) -> str:
        """Target class of a relation field, or class_name for any other key."""
        schema = await self.load_schema()
        return schema.get_relation_target(class_name, key) or class_name

    async def validate_object(
        self,
        class_name: str,
        obj: Dict[str, Any],
        query: Optional[Dict[str, Any]] = None,
    ) -> Schema:
        """Validate obj against the cached schema without changing the cache."""
        schema = await self.load_schema()
        return schema.validate_object(class_name, obj, query)

    # --- Operations ----------------------------------------------------------

    async def find(
        self,
        class_name: str,
        query: Dict[str, Any],
        options: Options = None,
    ) -> Union[List[Dict[str, Any]], int]:
        """Find objects of a class.

        Returns:
            Projected objects, or the match count when options.count is set

        Raises:
            InvalidClassName: If class_name is invalid
            PermissionDenied: If the caller may not get/find on the class
            ValidationError: If the query or options are malformed
            AdapterError: If the store fails
        """
        self._check_class_name(class_name)
        opts = QueryOptions.parse(options)
        keys = keys_for_query(query)
        schema = await self.load_schema(lambda s: s.has_keys(class_name, keys))

        if not opts.is_master:
            operation = ClassOperation.FIND
            if len(query) == 1 and isinstance(query.get("objectId"), str):
                operation = ClassOperation.GET
            schema.validate_permission(class_name, opts.acl_group, operation)

        resolved = await self.relations.resolve_related_to(class_name, query)
        resolved = await self.relations.resolve_relation_predicates(class_name, resolved, schema)

        where = transform_where(schema, class_name, resolved)
        sort = transform_sort(schema, class_name, opts.sort) if opts.sort else None
        if not opts.is_master:
            where = self._acl.restrict_read(where, opts.acl_group)

        collection = self.adaptive_collection(class_name)
        if opts.count:
            return await collection.count(where, skip=opts.skip, limit=opts.limit)

        results = await collection.find(where, skip=opts.skip, limit=opts.limit, sort=sort)
        projector = ResponseProjector(schema, opts.is_master, opts.acl_group)
        return [projector.project(class_name, doc) for doc in results]

    async def count(self, class_name: str, query: Dict[str, Any], options: Options = None) -> int:
        opts = QueryOptions.parse(options).model_copy(update={"count": True})
        return await self.find(class_name, query, opts)

    async def create(self, class_name: str, obj: Dict[str, Any], options: Options = None) -> None:
        """Insert a new object.

        An objectId is generated when obj has none, so relation edges can
        name their owner before the insert.

        Raises:
            InvalidClassName: If class_name is invalid
            PermissionDenied: If the caller may not create on the class
            ValidationError: If obj disagrees with the schema
            AdapterError: If the store fails (e.g. duplicate objectId)
        """
        self._check_class_name(class_name)
        opts = QueryOptions.parse(options)
        schema = await self.load_schema()

        if not opts.is_master:
            schema.validate_permission(class_name, opts.acl_group, ClassOperation.CREATE)
        schema = schema.validate_object(class_name, obj)

        object_id = obj.get("objectId") or new_document_id()
        payload, mutations = self.relations.extract_relation_mutations(class_name, object_id, obj)
        payload["objectId"] = object_id
        await self.relations.apply_relation_mutations(mutations)

        doc = transform_create(schema, class_name, payload)
        await self.collection(class_name).insert([doc])
        logger.debug("Created object", extra={"class_name": class_name, "object_id": object_id})

    async def update(
        self,
        class_name: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
        options: Options = None,
    ) -> Dict[str, Any]:
        """Atomically update the first object matching query.

        Returns:
            Store-computed values only: the new value of every Increment

        Raises:
            InvalidClassName: If class_name is invalid
            PermissionDenied: If the caller may not update on the class
            ValidationError: If the update disagrees with the schema
            ObjectNotFound: If no writable object matched
            AdapterError: If the store fails
        """
        self._check_class_name(class_name)
        opts = QueryOptions.parse(options)
        keys = keys_for_query(query)
        schema = await self.load_schema(lambda s: s.has_keys(class_name, keys))

        if not opts.is_master:
            schema.validate_permission(class_name, opts.acl_group, ClassOperation.UPDATE)
        schema = schema.validate_object(class_name, update, query)

        query_id = query.get("objectId")
        payload, mutations = self.relations.extract_relation_mutations(
            class_name, query_id if isinstance(query_id, str) else None, update
        )
        await self.relations.apply_relation_mutations(mutations)

        where = transform_where(schema, class_name, query)
        if not opts.is_master:
            where = self._acl.restrict_write(where, opts.acl_group)
        store_update = transform_update(schema, class_name, payload)

        result = await self.adaptive_collection(class_name).find_one_and_update(where, store_update)
        if result is None:
            raise ObjectNotFound(class_name=class_name)

        response: Dict[str, Any] = {}
        for key, value in payload.items():
            if isinstance(parse_operation(value), Increment):
                response[key] = deep_get(result, transform_key(schema, class_name, key), None)
        return response

    async def destroy(self, class_name: str, query: Dict[str, Any], options: Options = None) -> None:
        """Remove every writable object matching query.

        Raises:
            InvalidClassName: If class_name is invalid
            PermissionDenied: If the caller may not delete on the class
            ObjectNotFound: If nothing was removed (never for _Session)
            AdapterError: If the store fails
        """
        self._check_class_name(class_name)
        opts = QueryOptions.parse(options)
        schema = await self.load_schema()

        if not opts.is_master:
            schema.validate_permission(class_name, opts.acl_group, ClassOperation.DELETE)

        where = transform_where(schema, class_name, query)
        if not opts.is_master:
            where = self._acl.restrict_write(where, opts.acl_group)

        result = await self.collection(class_name).remove(where)
        # Session invalidation is idempotent
        if result.removed_count == 0 and class_name != SESSION_CLASS:
            raise ObjectNotFound(class_name=class_name)

    # --- Tooling -------------------------------------------------------------

    async def raw_find(
        self,
        class_name: str,
        query: Document,
        skip: Optional[int] = None,
        limit: Optional[int] = None,
        sort: Optional[SortSpec] = None,
    ) -> List[Document]:
        """Store-dialect find without schema, ACLs or projection (tests and tooling)."""
        return await self.adaptive_collection(class_name).find(
            query, skip=skip, limit=limit, sort=sort
        )

    async def delete_everything(self) -> None:
        """Drop every collection under the prefix and forget the schema."""
        self.schema_cache.invalidate()
        collections = await self.adapter.collections_containing(self.collection_prefix)
        await asyncio.gather(*(collection.drop() for collection in collections))
        logger.info(
            "Deleted every collection",
            extra={"prefix": self.collection_prefix, "count": len(collections)},
        )

    async def get_global_config(self) -> Dict[str, Any]:
        """Parameters of the global config document.

        Raises:
            ObjectNotFound: If no global config has been stored
        """
        results = await self.raw_collection(GLOBAL_CONFIG_CLASS).find(
            {"_id": GLOBAL_CONFIG_ID}, limit=1
        )
        if not results:
            raise ObjectNotFound("config does not exist", class_name=GLOBAL_CONFIG_CLASS)
        return results[0].get("params") or {}

    async def update_global_config(self, params: Dict[str, Any], options: Options = None) -> None:
        """Set global config parameters (master only).

        Raises:
            PermissionDenied: If the caller is not master
            ValidationError: If a parameter name is not usable as a key
        """
        opts = QueryOptions.parse(options)
        if not opts.is_master:
            raise PermissionDenied(
                GLOBAL_CONFIG_CLASS, "update", "unauthorized: master key is required"
            )
        if not isinstance(params, dict):
            raise ValidationError("config params must be an object")
        for key in params:
            if not key or "." in key or key.startswith("$"):
                raise ValidationError(f"invalid config param: {key}", field_name=key)

        update = {"$set": {f"params.{key}": value for key, value in params.items()}}
        await self.raw_collection(GLOBAL_CONFIG_CLASS).update(
            {"_id": GLOBAL_CONFIG_ID}, update, upsert=True
        )
        logger.info("Updated global config", extra={"keys": sorted(params)})
