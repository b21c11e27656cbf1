"""
Many-to-many relations over join collections.

A relation field never lives on the owning object. Each (owning class,
relation key) pair owns a join collection named

    _Join:<relationKey>:<owningClassName>

holding one edge document {"owningId": ..., "relatedId": ...} per pair.

RelationManager maintains edges and rewrites queries and updates that
mention relations:
- $relatedTo clauses become objectId $in <related ids>
- $in / pointer equality on a relation field becomes objectId $in <owners>
- AddRelation / RemoveRelation operators become edge mutations

Invariants:
    - The join collection name format is persisted state, never change it
    - Adding an edge is an upsert, so adding twice leaves one edge
    - Removing an absent edge is a no-op
    - Query resolvers return new trees and never mutate their input
    - Edges are not deleted when the owning or related object is deleted

How to change safely:
    - Keep resolvers recursing through both $or and $and
    - Edge mutations run concurrently; do not rely on their order
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import ValidationError
from ..schema import Schema
from ..storage.collection import ResilientCollection
from .operators import AddRelation, parse_operation, relation_operations

logger = logging.getLogger(__name__)

CollectionFactory = Callable[[str], ResilientCollection]


def join_table_name(owning_class: str, key: str) -> str:
    """Name of the join collection for a relation field."""
    return f"_Join:{key}:{owning_class}"


@dataclass(frozen=True)
class RelationMutation:
    """One edge to add or remove.

    Attributes:
        add: True to add the edge, False to remove it
        key: Relation field name on the owning class
        owning_class: Class declaring the relation
        owning_id: objectId of the owning object
        related_id: objectId of the related object
    """

    add: bool
    key: str
    owning_class: str
    owning_id: Optional[str]
    related_id: str


def _dedupe(ids: Iterable[Any]) -> List[Any]:
    seen: List[Any] = []
    for object_id in ids:
        if object_id not in seen:
            seen.append(object_id)
    return seen


def merge_object_id_in(existing: Any, ids: Sequence[str]) -> Dict[str, Any]:
    """Union ids into an objectId constraint.

    Raises:
        ValidationError: If the existing constraint is not a string or an
            operator object
    """
    if existing is None:
        return {"$in": _dedupe(ids)}
    if isinstance(existing, str):
        return {"$eq": existing, "$in": _dedupe(ids)}
    if isinstance(existing, dict):
        merged = dict(existing)
        merged["$in"] = _dedupe(list(existing.get("$in") or []) + list(ids))
        return merged
    raise ValidationError(f"bad objectId constraint: {existing!r}", field_name="objectId")


def _pointer_id(pointer: Dict[str, Any]) -> str:
    object_id = pointer.get("objectId")
    if not isinstance(object_id, str):
        raise ValidationError("bad $in value")
    return object_id


def _related_ids_of(value: Any) -> Optional[List[str]]:
    if isinstance(value, dict) and "$in" in value:
        members = value["$in"]
        if not isinstance(members, list):
            raise ValidationError("bad $in value")
        return [_pointer_id(m) if isinstance(m, dict) else m for m in members]
    if isinstance(value, dict) and value.get("__type") == "Pointer":
        return [_pointer_id(value)]
    return None


class RelationManager:
    """Maintains join collections and resolves relation clauses.

    Example:
        >>> relations = RelationManager(controller.collection)
        >>> await relations.add_relation("likes", "Post", "p1", "u1")
        >>> await relations.related_ids("Post", "likes", "p1")
        ['u1']
    """

    def __init__(self, collection_for: CollectionFactory) -> None:
        self._collection_for = collection_for

    def _join(self, owning_class: str, key: str) -> ResilientCollection:
        return self._collection_for(join_table_name(owning_class, key))

    async def add_relation(
        self, key: str, owning_class: str, owning_id: Optional[str], related_id: str
    ) -> None:
        """Add an edge (idempotent)."""
        doc = {"relatedId": related_id, "owningId": owning_id}
        await self._join(owning_class, key).update(doc, doc, upsert=True)
        logger.debug(
            "Added relation edge",
            extra={"join": join_table_name(owning_class, key), "owning_id": owning_id},
        )

    async def remove_relation(
        self, key: str, owning_class: str, owning_id: Optional[str], related_id: str
    ) -> None:
        """Remove an edge; absent edges are ignored."""
        doc = {"relatedId": related_id, "owningId": owning_id}
        await self._join(owning_class, key).remove(doc)
        logger.debug(
            "Removed relation edge",
            extra={"join": join_table_name(owning_class, key), "owning_id": owning_id},
        )

    async def related_ids(self, owning_class: str, key: str, owning_id: str) -> List[str]:
        """Ids related to one owner through a relation field."""
        results = await self._join(owning_class, key).find({"owningId": owning_id})
        return [r["relatedId"] for r in results]

    async def owning_ids(
        self, owning_class: str, key: str, related_ids: Sequence[str]
    ) -> List[str]:
        """Owners pointing at any of the given related ids."""
        results = await self._join(owning_class, key).find(
            {"relatedId": {"$in": list(related_ids)}}
        )
        return [r["owningId"] for r in results]

    async def _resolve_branches(self, query: Dict[str, Any], resolve: Callable) -> Dict[str, Any]:
        resolved = dict(query)
        for logical in ("$or", "$and"):
            branches = resolved.get(logical)
            if isinstance(branches, list):
                resolved[logical] = list(await asyncio.gather(*(resolve(sub) for sub in branches)))
        return resolved

    async def resolve_related_to(self, class_name: str, query: Dict[str, Any]) -> Dict[str, Any]:
        """Replace every $relatedTo with an objectId $in constraint.

        Raises:
            ValidationError: If a $relatedTo clause is malformed
        """
        resolved = await self._resolve_branches(
            query, lambda sub: self.resolve_related_to(class_name, sub)
        )
        related_to = resolved.pop("$relatedTo", None)
        if related_to is None:
            return resolved

        try:
            owner = related_to["object"]
            ids = await self.related_ids(owner["className"], related_to["key"], owner["objectId"])
        except (KeyError, TypeError) as e:
            raise ValidationError("improper usage of $relatedTo", errors=[str(e)]) from e
        resolved["objectId"] = merge_object_id_in(resolved.get("objectId"), ids)
        return resolved

    async def resolve_relation_predicates(
        self, class_name: str, query: Dict[str, Any], schema: Schema
    ) -> Dict[str, Any]:
        """Replace $in / pointer predicates on relation fields with owner ids."""
        resolved = await self._resolve_branches(
            query, lambda sub: self.resolve_relation_predicates(class_name, sub, schema)
        )
        for key in list(resolved):
            if key.startswith("$") or schema.get_relation_target(class_name, key) is None:
                continue
            related = _related_ids_of(resolved[key])
            if related is None:
                continue
            ids = await self.owning_ids(class_name, key, related)
            del resolved[key]
            resolved["objectId"] = merge_object_id_in(resolved.get("objectId"), ids)
        return resolved

    def extract_relation_mutations(
        self, class_name: str, object_id: Optional[str], update: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], List[RelationMutation]]:
        """Split relation operators out of an update or object payload.

        The owner is the payload's own objectId when present, else object_id.

        Returns:
            (payload without relation keys, edge mutations to apply)
        """
        owner = update.get("objectId") or object_id
        remaining: Dict[str, Any] = {}
        mutations: List[RelationMutation] = []
        for key, value in update.items():
            if not (isinstance(value, dict) and "__op" in value):
                remaining[key] = value
                continue
            found = relation_operations(parse_operation(value))
            if not found:
                remaining[key] = value
                continue
            for op in found:
                for related_id in op.object_ids:
                    mutations.append(
                        RelationMutation(
                            add=isinstance(op, AddRelation),
                            key=key,
                            owning_class=class_name,
                            owning_id=owner,
                            related_id=related_id,
                        )
                    )
        return remaining, mutations

    async def apply_relation_mutations(self, mutations: Sequence[RelationMutation]) -> None:
        """Apply edge mutations concurrently; any failure fails the call."""
        await asyncio.gather(*(self._apply(m) for m in mutations))

    async def _apply(self, mutation: RelationMutation) -> None:
        if mutation.add:
            await self.add_relation(
                mutation.key, mutation.owning_class, mutation.owning_id, mutation.related_id
            )
        else:
            await self.remove_relation(
                mutation.key, mutation.owning_class, mutation.owning_id, mutation.related_id
            )
