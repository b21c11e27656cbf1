"""
Translation between the public object format and the store-native format.

Public (REST) objects and queries use field names and typed values:

    {"objectId": "p1", "author": {"__type": "Pointer", "className": "_User", "objectId": "u1"},
     "createdAt": "2024-01-01T00:00:00.000Z", "ACL": {"*": {"read": true}}}

Store-native documents use reserved keys and plain values:

    {"_id": "p1", "_p_author": "_User$u1", "_created_at": datetime(2024, 1, 1),
     "_rperm": ["*"], "_wperm": []}

Key mapping:
    objectId -> _id, createdAt -> _created_at, updatedAt -> _updated_at,
    expiresAt -> _expiresAt, sessionToken -> _session_token,
    authData.<provider> -> _auth_data_<provider>, pointer <key> -> _p_<key>,
    ACL -> _rperm / _wperm

Invariants:
    - Relation-typed values never reach the store document
    - Relation update operators must be extracted before transform_update
    - _hashed_password and other internal keys are never projected
    - Geo points are stored as [longitude, latitude]
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..acl import READ_PERMISSIONS, WRITE_PERMISSIONS, get_acl_manager
from ..errors import ValidationError
from ..schema import INTERNAL_FIELDS, FieldKind, FieldType, Schema
from ..storage.base import Document
from .operators import (
    Add,
    AddRelation,
    AddUnique,
    Batch,
    Delete,
    Increment,
    Remove,
    RemoveRelation,
    SetValue,
    UpdateOperation,
    parse_operation,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.0
EARTH_RADIUS_KILOMETERS = 6371.0

# Public key -> store key for fields with a fixed store name
FIXED_KEYS = {
    "objectId": "_id",
    "createdAt": "_created_at",
    "updatedAt": "_updated_at",
    "expiresAt": "_expiresAt",
    "sessionToken": "_session_token",
}
UNTRANSFORMED_KEYS = {store: public for public, store in FIXED_KEYS.items()}

POINTER_PREFIX = "_p_"
AUTH_DATA_PREFIX = "_auth_data_"

_VALUE_OPERATORS = {"$lt", "$lte", "$gt", "$gte", "$ne", "$eq"}
_LIST_OPERATORS = {"$in", "$nin", "$all"}
_LOGICAL_OPERATORS = {"$and", "$or", "$nor"}


# --- Values -----------------------------------------------------------------


def parse_iso_date(value: Any) -> datetime:
    """Parse an ISO-8601 string or a {"__type": "Date"} object.

    Raises:
        ValidationError: If the value is not a valid date
    """
    iso = value.get("iso") if isinstance(value, dict) else value
    if not isinstance(iso, str):
        raise ValidationError(f"invalid date: {value!r}")
    try:
        parsed = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"invalid date: {iso}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_iso_date(value: datetime) -> str:
    """Format a datetime as "YYYY-MM-DDTHH:MM:SS.mmmZ" in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def transform_atom(value: Any) -> Any:
    """Translate one public value into its store form."""
    if isinstance(value, list):
        return [transform_atom(item) for item in value]
    if not isinstance(value, dict):
        return value

    kind = value.get("__type")
    if kind == "Pointer":
        return f"{value['className']}${value['objectId']}"
    if kind == "Date":
        return parse_iso_date(value)
    if kind == "GeoPoint":
        return [value["longitude"], value["latitude"]]
    if kind == "File":
        return value["name"]
    if kind == "Bytes":
        return value["base64"]
    return {key: transform_atom(item) for key, item in value.items()}


def untransform_atom(value: Any) -> Any:
    """Translate a store value whose declared type is unknown."""
    if isinstance(value, datetime):
        return {"__type": "Date", "iso": format_iso_date(value)}
    if isinstance(value, list):
        return [untransform_atom(item) for item in value]
    if isinstance(value, dict):
        return {key: untransform_atom(item) for key, item in value.items()}
    return value


def _is_pointer(value: Any) -> bool:
    return isinstance(value, dict) and value.get("__type") == "Pointer"


def _is_relation(value: Any) -> bool:
    return isinstance(value, dict) and value.get("__type") == "Relation"


# --- Keys -------------------------------------------------------------------


def transform_key(schema: Schema, class_name: str, key: str) -> str:
    """Store-native name of a public field."""
    if key in FIXED_KEYS:
        return FIXED_KEYS[key]
    if key.startswith("authData."):
        return AUTH_DATA_PREFIX + key[len("authData.") :]
    expected = schema.get_expected_type(class_name, key)
    if expected is not None and expected.is_pointer:
        return POINTER_PREFIX + key
    return key


def transform_sort(schema: Schema, class_name: str, sort: Dict[str, int]) -> Dict[str, int]:
    return {transform_key(schema, class_name, key): direction for key, direction in sort.items()}


# --- Queries ----------------------------------------------------------------


def transform_where(schema: Schema, class_name: str, where: Dict[str, Any]) -> Document:
    """Translate a public query into the store dialect.

    Raises:
        ValidationError: If the query uses an unsupported operator or
            still contains an unresolved $relatedTo
    """
    result: Document = {}
    for key, value in where.items():
        if key in _LOGICAL_OPERATORS:
            if not isinstance(value, list):
                raise ValidationError(f"{key} must be an array")
            result[key] = [transform_where(schema, class_name, sub) for sub in value]
        elif key.startswith("$"):
            raise ValidationError(f"bad top level key: {key}")
        else:
            store_key = transform_key(schema, class_name, key)
            if _is_pointer(value) and not store_key.startswith(POINTER_PREFIX):
                store_key = POINTER_PREFIX + key
            result[store_key] = _transform_constraint(value)
    return result


def _transform_constraint(value: Any) -> Any:
    if not (isinstance(value, dict) and any(k.startswith("$") for k in value)):
        return transform_atom(value)

    constraint: Dict[str, Any] = {}
    for op, arg in value.items():
        if op in _VALUE_OPERATORS:
            constraint[op] = transform_atom(arg)
        elif op in _LIST_OPERATORS:
            if not isinstance(arg, list):
                raise ValidationError(f"bad {op} value")
            constraint[op] = [transform_atom(item) for item in arg]
        elif op == "$exists":
            constraint[op] = bool(arg)
        elif op in ("$regex", "$options"):
            if not isinstance(arg, str):
                raise ValidationError(f"bad {op} value")
            constraint[op] = arg
        elif op == "$nearSphere":
            constraint[op] = transform_atom(arg)
        elif op == "$maxDistance" or op == "$maxDistanceInRadians":
            constraint["$maxDistance"] = float(arg)
        elif op == "$maxDistanceInMiles":
            constraint["$maxDistance"] = float(arg) / EARTH_RADIUS_MILES
        elif op == "$maxDistanceInKilometers":
            constraint["$maxDistance"] = float(arg) / EARTH_RADIUS_KILOMETERS
        else:
            raise ValidationError(f"bad constraint: {op}")
    return constraint


# --- Writes -----------------------------------------------------------------


def _transform_acl(acl: Any) -> Document:
    manager = get_acl_manager()
    errors = manager.validate_acl(acl)
    if errors:
        raise ValidationError("invalid ACL", field_name="ACL", errors=errors)
    read, write = manager.acl_to_permissions(acl)
    return {READ_PERMISSIONS: read, WRITE_PERMISSIONS: write}


def transform_create(schema: Schema, class_name: str, obj: Dict[str, Any]) -> Document:
    """Translate a public object into a store document for insertion.

    Relation operators must already be extracted from obj.

    Raises:
        ValidationError: If a value cannot be represented in the store
    """
    doc: Document = {}
    for key, value in obj.items():
        if key in INTERNAL_FIELDS:
            doc[key] = value
        elif key == "ACL":
            doc.update(_transform_acl(value))
        elif key == "authData":
            for provider, data in (value or {}).items():
                doc[AUTH_DATA_PREFIX + provider] = data
        elif key in ("createdAt", "updatedAt", "expiresAt"):
            doc[FIXED_KEYS[key]] = parse_iso_date(value)
        elif _is_relation(value):
            continue
        elif isinstance(value, dict) and "__op" in value:
            initial = _initial_value(parse_operation(value))
            if initial is not _OMIT:
                doc[transform_key(schema, class_name, key)] = initial
        elif _is_pointer(value):
            doc[POINTER_PREFIX + key] = transform_atom(value)
        else:
            doc[transform_key(schema, class_name, key)] = transform_atom(value)
    return doc


_OMIT = object()


def _initial_value(op: UpdateOperation) -> Any:
    if isinstance(op, Delete):
        return _OMIT
    if isinstance(op, Increment):
        return op.amount
    if isinstance(op, Add):
        return transform_atom(op.objects)
    if isinstance(op, AddUnique):
        unique: List[Any] = []
        for item in transform_atom(op.objects):
            if item not in unique:
                unique.append(item)
        return unique
    if isinstance(op, Remove):
        return []
    raise ValidationError(f"{type(op).__name__} cannot be used when creating an object")


def transform_update(schema: Schema, class_name: str, update: Dict[str, Any]) -> Document:
    """Translate a public update into a store operator document.

    Raises:
        ValidationError: If a relation operator was not extracted first, or
            an operator cannot be expressed in the store dialect
    """
    store: Dict[str, Dict[str, Any]] = {}

    def put(op: str, key: str, value: Any) -> None:
        store.setdefault(op, {})[key] = value

    for key, value in update.items():
        if key == "objectId":
            continue
        if key in INTERNAL_FIELDS:
            put("$set", key, value)
            continue
        if key == "ACL":
            for store_key, groups in _transform_acl(value).items():
                put("$set", store_key, groups)
            continue
        if key in ("createdAt", "updatedAt", "expiresAt"):
            put("$set", FIXED_KEYS[key], parse_iso_date(value))
            continue

        op = parse_operation(value)
        store_key = transform_key(schema, class_name, key)
        if isinstance(op, SetValue):
            if _is_relation(op.value):
                continue
            if _is_pointer(op.value):
                store_key = POINTER_PREFIX + key
            put("$set", store_key, transform_atom(op.value))
        elif isinstance(op, Delete):
            put("$unset", store_key, "")
        elif isinstance(op, Increment):
            put("$inc", store_key, op.amount)
        elif isinstance(op, Add):
            put("$push", store_key, {"$each": transform_atom(op.objects)})
        elif isinstance(op, AddUnique):
            put("$addToSet", store_key, {"$each": transform_atom(op.objects)})
        elif isinstance(op, Remove):
            put("$pullAll", store_key, transform_atom(op.objects))
        elif isinstance(op, (AddRelation, RemoveRelation, Batch)):
            raise ValidationError(
                f"{type(op).__name__} on {key} must be applied through its join table",
                field_name=key,
            )
    return store


# --- Results ----------------------------------------------------------------


def _untransform_typed(expected: Optional[FieldType], value: Any) -> Any:
    if expected is None or value is None:
        return untransform_atom(value)
    if expected.kind == FieldKind.DATE and isinstance(value, datetime):
        return {"__type": "Date", "iso": format_iso_date(value)}
    if expected.kind == FieldKind.GEOPOINT and isinstance(value, list) and len(value) == 2:
        return {"__type": "GeoPoint", "longitude": value[0], "latitude": value[1]}
    if expected.kind == FieldKind.FILE and isinstance(value, str):
        return {"__type": "File", "name": value}
    if expected.kind == FieldKind.BYTES and isinstance(value, str):
        return {"__type": "Bytes", "base64": value}
    return untransform_atom(value)


def untransform_object(schema: Schema, class_name: str, doc: Document) -> Dict[str, Any]:
    """Translate a store document into the public object shape."""
    obj: Dict[str, Any] = {}
    read_groups = None
    write_groups = None

    for key, value in doc.items():
        if key in ("_created_at", "_updated_at") and isinstance(value, datetime):
            obj[UNTRANSFORMED_KEYS[key]] = format_iso_date(value)
        elif key in UNTRANSFORMED_KEYS:
            obj[UNTRANSFORMED_KEYS[key]] = untransform_atom(value)
        elif key == READ_PERMISSIONS:
            read_groups = value
        elif key == WRITE_PERMISSIONS:
            write_groups = value
        elif key.startswith(AUTH_DATA_PREFIX):
            obj.setdefault("authData", {})[key[len(AUTH_DATA_PREFIX) :]] = value
        elif key.startswith(POINTER_PREFIX):
            public_key = key[len(POINTER_PREFIX) :]
            if isinstance(value, str) and "$" in value:
                target, object_id = value.split("$", 1)
                obj[public_key] = {"__type": "Pointer", "className": target, "objectId": object_id}
            else:
                obj[public_key] = value
        elif key.startswith("_"):
            # Internal keys (password hash, tokens) are never projected
            continue
        else:
            expected = schema.get_expected_type(class_name, key)
            if expected is not None and expected.is_relation:
                continue
            obj[key] = _untransform_typed(expected, value)

    if read_groups is not None or write_groups is not None:
        obj["ACL"] = get_acl_manager().permissions_to_acl(read_groups, write_groups)

    for key, expected in (schema.fields(class_name) or {}).items():
        if expected.is_relation:
            obj[key] = {"__type": "Relation", "className": expected.target_class}
    return obj
