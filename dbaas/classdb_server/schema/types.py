"""
Field type definitions for the ClassDB schema system.

Every class field carries a declared type, persisted in _SCHEMA documents
as a type string:
- Primitives: string, number, boolean, date, object, array, geopoint,
  file, bytes
- Pointers: "*ClassName" (also accepted as "pointer<ClassName>")
- Relations: "relation<ClassName>"

Invariants:
    - Type strings round-trip through FieldType.parse / FieldType.to_str
    - Pointers are always written back in the "*ClassName" form
    - Pointer and relation types always carry a target class

How to change safely:
    - New primitive kinds must be appended, stored schemas reference them
    - Never change the string value of an existing kind

Example:
    >>> FieldType.parse("relation<_User>")
    FieldType(kind=<FieldKind.RELATION: 'relation'>, target_class='_User')
    >>> FieldType.parse("*Post").to_str()
    '*Post'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

_RELATION_PATTERN = re.compile(r"^relation<(.+)>$")
_POINTER_PATTERN = re.compile(r"^pointer<(.+)>$")


class FieldKind(Enum):
    """Supported field kinds in the schema."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"  # Arbitrary JSON object
    ARRAY = "array"
    GEOPOINT = "geopoint"  # Stored as [longitude, latitude]
    FILE = "file"  # Stored as the file name
    BYTES = "bytes"  # Base64 payload
    POINTER = "pointer"  # Stored as "_p_<key>": "Class$objectId"
    RELATION = "relation"  # Stored in a _Join collection, never on the object

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


@dataclass(frozen=True)
class FieldType:
    """Declared type of a single class field.

    Attributes:
        kind: The field kind
        target_class: Target class for POINTER and RELATION kinds
    """

    kind: FieldKind
    target_class: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind in (FieldKind.POINTER, FieldKind.RELATION) and not self.target_class:
            raise ValueError(f"target_class required for {self.kind.value} fields")

    @classmethod
    def parse(cls, value: str) -> FieldType:
        """Parse a stored type string.

        Raises:
            ValueError: If the string names no known type
        """
        if value.startswith("*"):
            return cls(FieldKind.POINTER, value[1:])
        relation = _RELATION_PATTERN.match(value)
        if relation:
            return cls(FieldKind.RELATION, relation.group(1))
        pointer = _POINTER_PATTERN.match(value)
        if pointer:
            return cls(FieldKind.POINTER, pointer.group(1))
        return cls(FieldKind.from_str(value))

    @classmethod
    def pointer(cls, target_class: str) -> FieldType:
        return cls(FieldKind.POINTER, target_class)

    @classmethod
    def relation(cls, target_class: str) -> FieldType:
        return cls(FieldKind.RELATION, target_class)

    @property
    def is_pointer(self) -> bool:
        return self.kind == FieldKind.POINTER

    @property
    def is_relation(self) -> bool:
        return self.kind == FieldKind.RELATION

    def to_str(self) -> str:
        """Render the stored type string."""
        if self.kind == FieldKind.POINTER:
            return f"*{self.target_class}"
        if self.kind == FieldKind.RELATION:
            return f"relation<{self.target_class}>"
        return self.kind.value

    def __str__(self) -> str:
        return self.to_str()


STRING = FieldType(FieldKind.STRING)
NUMBER = FieldType(FieldKind.NUMBER)
BOOLEAN = FieldType(FieldKind.BOOLEAN)
DATE = FieldType(FieldKind.DATE)
OBJECT = FieldType(FieldKind.OBJECT)
ARRAY = FieldType(FieldKind.ARRAY)
GEOPOINT = FieldType(FieldKind.GEOPOINT)
FILE = FieldType(FieldKind.FILE)
BYTES = FieldType(FieldKind.BYTES)
