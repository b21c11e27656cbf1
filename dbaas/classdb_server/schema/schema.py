"""
Live class schema for ClassDB.

A Schema is an immutable-by-convention snapshot of the _SCHEMA collection:
class name -> field name -> FieldType, plus each class's class-level
permissions. It answers the questions the data access layer asks before
touching data:
- Which type does a field have (pointer, relation, date, ...)?
- Are all keys of a query known, or is the cached snapshot stale?
- Does an object payload agree with the declared types?
- May this caller perform this operation on this class?

Storage format (one document per class):
    {
        "_id": "Post",
        "title": "string",
        "author": "*_User",
        "likes": "relation<_User>",
        "_metadata": {"class_permissions": {"find": {"*": true}}}
    }

Invariants:
    - objectId, createdAt, updatedAt and ACL are known for every class
    - validate_object never mutates the receiver, it returns a new Schema
    - Fields added by validate_object are provisional and never persisted
    - A class holds at most one geopoint field per object payload

How to change safely:
    - Keep from_documents tolerant of unknown type strings (log and skip)
    - New built-in classes need entries in BUILTIN_FIELDS
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from ..acl import ClassOperation, get_acl_manager
from ..errors import IncorrectType, InvalidKeyName
from .types import (
    ARRAY,
    BOOLEAN,
    DATE,
    FILE,
    GEOPOINT,
    NUMBER,
    OBJECT,
    STRING,
    BYTES,
    FieldType,
)

logger = logging.getLogger(__name__)

SCHEMA_CLASS = "_SCHEMA"
METADATA_KEY = "_metadata"

SYSTEM_CLASSES = frozenset(
    {
        "_User",
        "_Installation",
        "_Session",
        "_Role",
        "_PushStatus",
        "_SCHEMA",
        "_GlobalConfig",
    }
)

_JOIN_CLASS_NAME = re.compile(r"^_Join:[A-Za-z0-9_]+:[A-Za-z0-9_]+$")
_CLASS_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_FIELD_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")

DEFAULT_FIELDS: Dict[str, FieldType] = {
    "objectId": STRING,
    "createdAt": DATE,
    "updatedAt": DATE,
    "ACL": OBJECT,
}

BUILTIN_FIELDS: Dict[str, Dict[str, FieldType]] = {
    "_User": {
        "username": STRING,
        "password": STRING,
        "email": STRING,
        "emailVerified": BOOLEAN,
        "authData": OBJECT,
        "sessionToken": STRING,
    },
    "_Installation": {
        "installationId": STRING,
        "deviceToken": STRING,
        "channels": ARRAY,
        "deviceType": STRING,
        "pushType": STRING,
        "GCMSenderId": STRING,
        "timeZone": STRING,
        "localeIdentifier": STRING,
        "badge": NUMBER,
        "appVersion": STRING,
        "appName": STRING,
        "appIdentifier": STRING,
        "parseVersion": STRING,
    },
    "_Role": {
        "name": STRING,
        "users": FieldType.relation("_User"),
        "roles": FieldType.relation("_Role"),
    },
    "_Session": {
        "restricted": BOOLEAN,
        "user": FieldType.pointer("_User"),
        "installationId": STRING,
        "sessionToken": STRING,
        "expiresAt": DATE,
        "createdWith": OBJECT,
    },
}

# Store-only keys written by trusted callers, never validated or projected
INTERNAL_FIELDS = frozenset(
    {"_hashed_password", "_email_verify_token", "_perishable_token", "_tombstone"}
)

# Columns that must be present when an object is created
REQUIRED_COLUMNS: Dict[str, Sequence[str]] = {
    "_Role": ("name", "ACL"),
}

_POINTER_ONLY_TYPES = {
    "Date": DATE,
    "GeoPoint": GEOPOINT,
    "File": FILE,
    "Bytes": BYTES,
}


def class_name_is_valid(class_name: str) -> bool:
    """Whether class_name is a system class, a join class, or a plain identifier."""
    if not isinstance(class_name, str):
        return False
    return (
        class_name in SYSTEM_CLASSES
        or _JOIN_CLASS_NAME.match(class_name) is not None
        or _CLASS_NAME.match(class_name) is not None
    )


def field_name_is_valid(field_name: str) -> bool:
    return isinstance(field_name, str) and _FIELD_NAME.match(field_name) is not None


def keys_for_query(query: Dict[str, Any]) -> set[str]:
    """Field names a query constrains, looking through $and / $or branches.

    Operator keys such as $relatedTo name no field and are skipped.
    """
    keys: set[str] = set()
    for key, value in query.items():
        if key in ("$and", "$or") and isinstance(value, list):
            for subquery in value:
                keys |= keys_for_query(subquery)
        elif not key.startswith("$"):
            keys.add(key)
    return keys


def value_type(value: Any) -> Optional[FieldType]:
    """Infer the field type a REST-format value or update operator implies.

    Returns None when the value carries no type (null, Delete).

    Raises:
        IncorrectType: If the value is a malformed typed object or operator
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, str):
        return STRING
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, list):
        return ARRAY
    if isinstance(value, dict):
        if "__type" in value:
            return _typed_object_type(value)
        if "__op" in value:
            return _operator_type(value)
        return OBJECT
    raise IncorrectType(f"bad obj: {value!r}")


def _typed_object_type(value: Dict[str, Any]) -> FieldType:
    kind = value["__type"]
    if kind in ("Pointer", "Relation"):
        target = value.get("className")
        if not isinstance(target, str) or not target:
            raise IncorrectType(f"type {kind} needs a class name")
        return FieldType.pointer(target) if kind == "Pointer" else FieldType.relation(target)
    if kind in _POINTER_ONLY_TYPES:
        return _POINTER_ONLY_TYPES[kind]
    raise IncorrectType(f"invalid type: {kind}")


def _operator_type(value: Dict[str, Any]) -> Optional[FieldType]:
    op = value["__op"]
    if op == "Increment":
        return NUMBER
    if op == "Delete":
        return None
    if op in ("Add", "AddUnique", "Remove"):
        return ARRAY
    if op in ("AddRelation", "RemoveRelation"):
        objects = value.get("objects") or []
        if not objects or not isinstance(objects[0], dict) or not objects[0].get("className"):
            raise IncorrectType(f"{op} needs objects with a className")
        return FieldType.relation(objects[0]["className"])
    if op == "Batch":
        ops = value.get("ops") or []
        return value_type(ops[0]) if ops else None
    raise IncorrectType(f"unexpected op: {op}")


class Schema:
    """Snapshot of every class's fields and class-level permissions.

    Attributes:
        data: class name -> field name -> declared type (stored fields only)
        class_permissions: class name -> operation -> {group: granted}

    Example:
        >>> schema = Schema.from_documents([{"_id": "Post", "title": "string"}])
        >>> schema.get_expected_type("Post", "title")
        FieldType(kind=<FieldKind.STRING: 'string'>, target_class=None)
        >>> schema.has_keys("Post", {"title", "objectId"})
        True
    """

    def __init__(
        self,
        data: Optional[Dict[str, Dict[str, FieldType]]] = None,
        class_permissions: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None,
    ) -> None:
        self.data: Dict[str, Dict[str, FieldType]] = data or {}
        self.class_permissions: Dict[str, Dict[str, Dict[str, Any]]] = class_permissions or {}

    @classmethod
    def from_documents(cls, documents: Iterable[Dict[str, Any]]) -> Schema:
        """Build a schema from raw _SCHEMA documents."""
        data: Dict[str, Dict[str, FieldType]] = {}
        perms: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for doc in documents:
            class_name = doc.get("_id")
            if not isinstance(class_name, str):
                logger.warning("Skipping schema document without class name", extra={"doc": doc})
                continue
            fields: Dict[str, FieldType] = {}
            for key, type_str in doc.items():
                if key.startswith("_"):
                    continue
                try:
                    fields[key] = FieldType.parse(type_str)
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(
                        f"Invalid field type {class_name}.{key}: {type_str!r}, error: {e}"
                    )
            data[class_name] = fields
            metadata = doc.get(METADATA_KEY) or {}
            if metadata.get("class_permissions"):
                perms[class_name] = metadata["class_permissions"]
        return cls(data, perms)

    @classmethod
    async def load(cls, collection: Any) -> Schema:
        """Read every _SCHEMA document from collection (one find call)."""
        documents = await collection.find({})
        schema = cls.from_documents(documents)
        logger.debug("Loaded schema", extra={"class_count": len(schema.data)})
        return schema

    def copy(self) -> Schema:
        return Schema(
            {name: dict(fields) for name, fields in self.data.items()},
            copy.deepcopy(self.class_permissions),
        )

    def class_names(self) -> List[str]:
        return sorted(self.data)

    def has_class(self, class_name: str) -> bool:
        return class_name in self.data

    def fields(self, class_name: str) -> Optional[Dict[str, FieldType]]:
        """All known fields of a class, defaults and built-ins included.

        Returns None for a class the schema does not know.
        """
        if class_name not in self.data and class_name not in BUILTIN_FIELDS:
            return None
        merged = dict(DEFAULT_FIELDS)
        merged.update(BUILTIN_FIELDS.get(class_name, {}))
        merged.update(self.data.get(class_name, {}))
        return merged

    def get_expected_type(self, class_name: str, key: str) -> Optional[FieldType]:
        fields = self.fields(class_name)
        if fields is None:
            return None
        return fields.get(key)

    def get_relation_target(self, class_name: str, key: str) -> Optional[str]:
        """Target class when key is a relation field, else None."""
        expected = self.get_expected_type(class_name, key)
        if expected is not None and expected.is_relation:
            return expected.target_class
        return None

    def has_keys(self, class_name: str, keys: Iterable[str]) -> bool:
        """Whether every key is a known field of the class."""
        keys = list(keys)
        fields = self.fields(class_name)
        if fields is None:
            return not keys
        return all(key.split(".")[0] in fields for key in keys)

    def validate_permission(
        self,
        class_name: str,
        acl_group: Sequence[str],
        operation: Union[ClassOperation, str],
    ) -> None:
        """Check class-level permission for a non-master caller.

        Raises:
            PermissionDenied: If the operation is restricted and no caller
                group is granted it
        """
        if not isinstance(operation, ClassOperation):
            operation = ClassOperation(operation)
        get_acl_manager().check_class_permission_or_raise(
            class_name,
            self.class_permissions.get(class_name),
            acl_group,
            operation,
        )

    def validate_object(
        self,
        class_name: str,
        obj: Dict[str, Any],
        query: Optional[Dict[str, Any]] = None,
    ) -> Schema:
        """Validate a REST-format object or update against this schema.

        Args:
            class_name: Target class
            obj: Object payload or update (may contain __op operators)
            query: The update's query, None when creating

        Returns:
            A new Schema including any provisional fields the payload adds

        Raises:
            InvalidKeyName: If a key is not a valid field name
            IncorrectType: If a value disagrees with the declared type, or a
                required column is missing on create
        """
        updated = self.copy()
        updated.data.setdefault(class_name, {})

        geocount = 0
        for key, value in obj.items():
            if key in INTERNAL_FIELDS:
                continue
            expected = value_type(value)
            if expected == GEOPOINT:
                geocount += 1
                if geocount > 1:
                    raise IncorrectType(
                        "there can only be one geopoint field in a class", field_name=key
                    )
            if expected is None:
                continue
            updated._validate_field(class_name, key, expected)

        if query is None:
            for column in REQUIRED_COLUMNS.get(class_name, ()):
                if obj.get(column) is None:
                    raise IncorrectType(f"{column} is required.", field_name=column)
        return updated

    def _validate_field(self, class_name: str, key: str, expected: FieldType) -> None:
        if "." in key:
            # Dotted keys address a subfield of an object field
            key = key.split(".")[0]
            expected = OBJECT
        if not field_name_is_valid(key):
            raise InvalidKeyName(key)

        current = self.get_expected_type(class_name, key)
        if current is None:
            self.data[class_name][key] = expected
        elif current != expected:
            raise IncorrectType(
                f"schema mismatch for {class_name}.{key}; expected {current} but got {expected}",
                field_name=key,
            )

    def to_dict(self) -> Dict[str, Any]:
        """Render the schema as _SCHEMA-style type strings, for tooling."""
        rendered: Dict[str, Any] = {}
        for class_name in self.class_names():
            fields = self.fields(class_name) or {}
            entry: Dict[str, Any] = {key: fields[key].to_str() for key in sorted(fields)}
            if class_name in self.class_permissions:
                entry[METADATA_KEY] = {"class_permissions": self.class_permissions[class_name]}
            rendered[class_name] = entry
        return rendered
