"""
Schema module for ClassDB.

This module provides the class schema used to validate requests:
- Field types (FieldKind, FieldType) and their stored string forms
- Schema snapshots with type lookup, key checks and object validation
- SchemaCache, the single-flight cache shared by all requests

Invariants:
    - The _SCHEMA collection is the single source of truth for fields
    - Unknown query keys trigger at most one reload per request
    - Class names and field names follow the identifier rules below

How to change safely:
    - Add new field kinds by appending to FieldKind
    - Never rename stored type strings
"""

from .cache import SchemaAcceptor, SchemaCache, SchemaLoader
from .schema import (
    BUILTIN_FIELDS,
    DEFAULT_FIELDS,
    INTERNAL_FIELDS,
    REQUIRED_COLUMNS,
    SCHEMA_CLASS,
    SYSTEM_CLASSES,
    Schema,
    class_name_is_valid,
    field_name_is_valid,
    keys_for_query,
    value_type,
)
from .types import FieldKind, FieldType

__all__ = [
    # Types
    "FieldKind",
    "FieldType",
    # Schema
    "Schema",
    "SCHEMA_CLASS",
    "SYSTEM_CLASSES",
    "DEFAULT_FIELDS",
    "BUILTIN_FIELDS",
    "REQUIRED_COLUMNS",
    "INTERNAL_FIELDS",
    "class_name_is_valid",
    "field_name_is_valid",
    "keys_for_query",
    "value_type",
    # Cache
    "SchemaCache",
    "SchemaLoader",
    "SchemaAcceptor",
]
