"""
Typed update operators.

REST-format updates mix plain values with "__op" operator objects:

    {
        "title": "Hello",
        "views": {"__op": "Increment", "amount": 1},
        "tags": {"__op": "AddUnique", "objects": ["a", "b"]},
        "likes": {"__op": "AddRelation", "objects": [{"__type": "Pointer", ...}]},
    }

parse_operation turns each value into one variant of UpdateOperation so the
translator and the relation extractor can dispatch on type instead of
re-inspecting dictionaries.

Invariants:
    - Any value without "__op" parses as SetValue
    - Relation operators carry pointer objects with a string objectId
    - Batch nests other operators, never another Batch's result flattened
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from ..errors import ValidationError


@dataclass(frozen=True)
class SetValue:
    """Replace the field with a value."""

    value: Any


@dataclass(frozen=True)
class Delete:
    """Remove the field."""


@dataclass(frozen=True)
class Increment:
    """Add amount to a numeric field; the store computes the result."""

    amount: Union[int, float]


@dataclass(frozen=True)
class Add:
    """Append objects to an array field."""

    objects: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class AddUnique:
    """Append objects not already present in an array field."""

    objects: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class Remove:
    """Remove every occurrence of objects from an array field."""

    objects: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class AddRelation:
    """Add relation edges to the pointed objects."""

    objects: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def object_ids(self) -> List[str]:
        return [obj["objectId"] for obj in self.objects]


@dataclass(frozen=True)
class RemoveRelation:
    """Remove relation edges to the pointed objects."""

    objects: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def object_ids(self) -> List[str]:
        return [obj["objectId"] for obj in self.objects]


@dataclass(frozen=True)
class Batch:
    """Several operators applied to the same field."""

    ops: List[UpdateOperation] = field(default_factory=list)


UpdateOperation = Union[
    SetValue, Delete, Increment, Add, AddUnique, Remove, AddRelation, RemoveRelation, Batch
]

RelationOperation = Union[AddRelation, RemoveRelation]


def _objects(value: Dict[str, Any], op: str) -> List[Any]:
    objects = value.get("objects")
    if not isinstance(objects, list):
        raise ValidationError(f"{op} needs an array of objects", errors=[f"bad {op}: {value!r}"])
    return objects


def _pointers(value: Dict[str, Any], op: str) -> List[Dict[str, Any]]:
    objects = _objects(value, op)
    for obj in objects:
        if not isinstance(obj, dict) or not isinstance(obj.get("objectId"), str):
            raise ValidationError(f"{op} objects must be pointers with an objectId")
    return objects


def parse_operation(value: Any) -> UpdateOperation:
    """Parse one REST-format update value.

    Raises:
        ValidationError: If an operator is unknown or malformed
    """
    if not isinstance(value, dict) or "__op" not in value:
        return SetValue(value)

    op = value["__op"]
    if op == "Delete":
        return Delete()
    if op == "Increment":
        amount = value.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ValidationError("incrementing must provide a number")
        return Increment(amount)
    if op == "Add":
        return Add(_objects(value, op))
    if op == "AddUnique":
        return AddUnique(_objects(value, op))
    if op == "Remove":
        return Remove(_objects(value, op))
    if op == "AddRelation":
        return AddRelation(_pointers(value, op))
    if op == "RemoveRelation":
        return RemoveRelation(_pointers(value, op))
    if op == "Batch":
        ops = value.get("ops")
        if not isinstance(ops, list):
            raise ValidationError("Batch needs an array of ops")
        return Batch([parse_operation(sub) for sub in ops])
    raise ValidationError(f"The {op} operator is not supported yet.")


def parse_update(update: Dict[str, Any]) -> Dict[str, UpdateOperation]:
    """Parse every value of a REST-format update, keeping key order."""
    return {key: parse_operation(value) for key, value in update.items()}


def relation_operations(op: UpdateOperation) -> List[RelationOperation]:
    """Relation operators in op, looking inside Batch."""
    if isinstance(op, (AddRelation, RemoveRelation)):
        return [op]
    if isinstance(op, Batch):
        found: List[RelationOperation] = []
        for sub in op.ops:
            found.extend(relation_operations(sub))
        return found
    return []
