"""
Document engine shared by the reference storage adapters.

Implements the store-native dialect the data access layer emits:
- Query matching with Mongo semantics (array fields match element-wise,
  {field: None} matches a missing field)
- Update application ($set, $unset, $inc, $push, $addToSet, $pullAll,
  or a replacement document)
- Sort, skip and limit
- $nearSphere geo queries, which require a 2d index on the field

Invariants:
    - Functions never mutate their input documents
    - Unknown operators raise AdapterError(BAD_VALUE)
    - A $nearSphere on an unindexed field raises AdapterError(GEO_INDEX_MISSING)
"""

from __future__ import annotations

import copy
import math
import re
import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from ..errors import AdapterError
from .base import BAD_VALUE, GEO_INDEX_MISSING, Document, SortSpec

MISSING = object()

LOGICAL_OPERATORS = {"$and", "$or", "$nor"}
# Operators that only qualify a sibling operator
MODIFIER_OPERATORS = {"$options", "$maxDistance"}


def new_document_id() -> str:
    """Generate an _id for documents inserted without one."""
    return uuid.uuid4().hex[:24]


def deep_get(doc: Any, dotted_key: str, default: Any = MISSING) -> Any:
    """Resolve a dotted key, returning default when any segment is absent."""
    current = doc
    for part in dotted_key.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return default
    return current


def deep_set(doc: Document, dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def deep_unset(doc: Document, dotted_key: str) -> None:
    parts = dotted_key.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            return
        current = current[part]
    current.pop(parts[-1], None)


# --- Matching ---------------------------------------------------------------


def match(doc: Document, query: Document) -> bool:
    """Whether doc satisfies every clause of query."""
    for key, cond in query.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(cond, list):
                raise AdapterError(f"{key} must be an array", adapter_code=BAD_VALUE)
            results = (match(doc, clause) for clause in cond)
            if key == "$and":
                ok = all(results)
            elif key == "$or":
                ok = any(results)
            else:
                ok = not any(results)
            if not ok:
                return False
        elif key.startswith("$"):
            raise AdapterError(f"unknown top level operator: {key}", adapter_code=BAD_VALUE)
        elif not _match_field(deep_get(doc, key), cond):
            return False
    return True


def _is_operator_dict(cond: Any) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)


def _match_field(value: Any, cond: Any) -> bool:
    if not _is_operator_dict(cond):
        return _equals(value, cond)
    for op, arg in cond.items():
        if op in MODIFIER_OPERATORS:
            continue
        if not _apply_operator(value, op, arg, cond):
            return False
    return True


def _equals(value: Any, target: Any) -> bool:
    if target is None:
        return value is MISSING or value is None
    if value is MISSING:
        return False
    if isinstance(value, list) and not isinstance(target, list):
        return any(item == target for item in value)
    return value == target


def _candidates(value: Any) -> list[Any]:
    if value is MISSING:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _compare(value: Any, op: str, arg: Any) -> bool:
    for item in _candidates(value):
        if item is None:
            continue
        try:
            if op == "$gt" and item > arg:
                return True
            if op == "$gte" and item >= arg:
                return True
            if op == "$lt" and item < arg:
                return True
            if op == "$lte" and item <= arg:
                return True
        except TypeError:
            continue
    return False


def _apply_operator(value: Any, op: str, arg: Any, cond: Document) -> bool:
    if op == "$eq":
        return _equals(value, arg)
    if op == "$ne":
        return not _equals(value, arg)
    if op in ("$gt", "$gte", "$lt", "$lte"):
        return _compare(value, op, arg)
    if op == "$in":
        _require_list(op, arg)
        return any(_equals(value, target) for target in arg)
    if op == "$nin":
        _require_list(op, arg)
        return not any(_equals(value, target) for target in arg)
    if op == "$exists":
        return (value is not MISSING) == bool(arg)
    if op == "$all":
        _require_list(op, arg)
        return isinstance(value, list) and all(item in value for item in arg)
    if op == "$size":
        return isinstance(value, list) and len(value) == arg
    if op == "$regex":
        flags = _regex_flags(cond.get("$options", ""))
        return any(
            isinstance(item, str) and re.search(arg, item, flags) is not None
            for item in _candidates(value)
        )
    if op == "$nearSphere":
        point = _as_point(value)
        if point is None:
            return False
        max_distance = cond.get("$maxDistance")
        return max_distance is None or sphere_distance(point, _as_point(arg)) <= max_distance
    raise AdapterError(f"unknown operator: {op}", adapter_code=BAD_VALUE)


def _require_list(op: str, arg: Any) -> None:
    if not isinstance(arg, list):
        raise AdapterError(f"{op} needs an array", adapter_code=BAD_VALUE)


def _regex_flags(options: str) -> int:
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    if "x" in options:
        flags |= re.VERBOSE
    return flags


def _as_point(value: Any) -> Optional[tuple[float, float]]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return float(value[0]), float(value[1])
    return None


def sphere_distance(a: tuple[float, float], b: Optional[tuple[float, float]]) -> float:
    """Great-circle distance in radians between two [longitude, latitude] points."""
    if b is None:
        raise AdapterError("$nearSphere needs a [longitude, latitude] point", adapter_code=BAD_VALUE)
    lng1, lat1 = math.radians(a[0]), math.radians(a[1])
    lng2, lat2 = math.radians(b[0]), math.radians(b[1])
    h = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    )
    return 2 * math.asin(min(1.0, math.sqrt(h)))


def near_clauses(query: Document) -> dict[str, Any]:
    """Collect {field: point} for every $nearSphere reachable through $and."""
    found: dict[str, Any] = {}
    for key, cond in query.items():
        if key == "$and" and isinstance(cond, list):
            for clause in cond:
                found.update(near_clauses(clause))
        elif not key.startswith("$") and isinstance(cond, dict) and "$nearSphere" in cond:
            found[key] = cond["$nearSphere"]
    return found


# --- Selection --------------------------------------------------------------


def _sort_key(value: Any) -> tuple:
    # Cross-type ordering: null < numbers < strings < objects < arrays < booleans < dates
    if value is MISSING or value is None:
        return (0,)
    if isinstance(value, bool):
        return (5, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, dict):
        return (3, repr(sorted(value.items(), key=lambda kv: kv[0])))
    if isinstance(value, list):
        return (4, repr(value))
    if isinstance(value, datetime):
        return (6, value.timestamp())
    return (7, repr(value))


def select(
    docs: Iterable[Document],
    query: Document,
    skip: Optional[int] = None,
    limit: Optional[int] = None,
    sort: Optional[SortSpec] = None,
    geo_indexes: Iterable[str] = (),
    collection_name: str = "",
) -> list[Document]:
    """Filter, order and page documents. Returns deep copies.

    Raises:
        AdapterError: GEO_INDEX_MISSING if a $nearSphere field has no 2d index
    """
    near = near_clauses(query)
    indexed = set(geo_indexes)
    for field in near:
        if field not in indexed:
            raise AdapterError(
                f"Unable to execute query: error processing query: ns={collection_name} "
                f"field={field} planner returned error: unable to find index for $geoNear query",
                adapter_code=GEO_INDEX_MISSING,
                collection=collection_name,
            )

    results = [doc for doc in docs if match(doc, query)]

    if sort:
        for key, direction in reversed(list(sort.items())):
            results.sort(key=lambda d: _sort_key(deep_get(d, key)), reverse=direction < 0)
    elif near:
        field, point = next(iter(near.items()))
        origin = _as_point(point)
        results.sort(key=lambda d: sphere_distance(_as_point(deep_get(d, field)) or (0.0, 0.0), origin))

    if skip:
        results = results[skip:]
    if limit:
        results = results[:limit]
    return [copy.deepcopy(doc) for doc in results]


# --- Updates ----------------------------------------------------------------


def is_operator_update(update: Document) -> bool:
    """Operator documents use $-keys only; an empty document is a no-op update."""
    return all(key.startswith("$") for key in update)


def apply_update(doc: Document, update: Document) -> Document:
    """Return a new document with update applied."""
    if not is_operator_update(update):
        if any(key.startswith("$") for key in update):
            raise AdapterError("cannot mix operators and fields in an update", adapter_code=BAD_VALUE)
        replaced = copy.deepcopy(update)
        if "_id" in doc:
            replaced["_id"] = doc["_id"]
        return replaced

    result = copy.deepcopy(doc)
    for op, fields in update.items():
        if not isinstance(fields, dict):
            raise AdapterError(f"{op} needs a document", adapter_code=BAD_VALUE)
        for key, arg in fields.items():
            if key == "_id":
                continue
            if op == "$set":
                deep_set(result, key, copy.deepcopy(arg))
            elif op == "$unset":
                deep_unset(result, key)
            elif op == "$inc":
                current = deep_get(result, key, 0)
                if isinstance(current, bool) or not isinstance(current, (int, float)):
                    raise AdapterError(
                        f"Cannot apply $inc to a value of non-numeric type for field '{key}'",
                        adapter_code=BAD_VALUE,
                    )
                deep_set(result, key, current + arg)
            elif op in ("$push", "$addToSet", "$pullAll"):
                current = deep_get(result, key, [])
                if not isinstance(current, list):
                    raise AdapterError(f"{op} targets non-array field '{key}'", adapter_code=BAD_VALUE)
                items = _each(arg) if op != "$pullAll" else list(arg)
                if op == "$push":
                    updated = current + items
                elif op == "$addToSet":
                    updated = list(current)
                    for item in items:
                        if item not in updated:
                            updated.append(item)
                else:
                    updated = [item for item in current if item not in items]
                deep_set(result, key, copy.deepcopy(updated))
            else:
                raise AdapterError(f"unknown update operator: {op}", adapter_code=BAD_VALUE)
    return result


def _each(arg: Any) -> list[Any]:
    if isinstance(arg, dict) and "$each" in arg:
        return list(arg["$each"])
    return [arg]


def upsert_seed(filter: Document) -> Document:
    """Seed document for an upsert: the filter's plain equality fields."""
    seed: Document = {}
    for key, value in filter.items():
        if key.startswith("$") or _is_operator_dict(value):
            continue
        deep_set(seed, key, copy.deepcopy(value))
    return seed
