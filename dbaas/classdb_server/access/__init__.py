"""
Data access layer for ClassDB.

This module turns object API requests into document store operations:
- DataController: find/create/update/destroy with schema and ACL checks
- QueryOptions: validated caller options (acl group, paging, sort)
- Update operators and relation bookkeeping
- Translation between the REST object format and the store dialect

Invariants:
    - Master callers (no "acl" option) bypass class and row permissions
    - Non-master reads are filtered by _rperm, writes by _wperm
    - Relation edges live in _Join:<key>:<class> collections

How to change safely:
    - Keep permission checks ahead of every store call
    - Test new operators against both reference adapters
"""

from .controller import GLOBAL_CONFIG_CLASS, GLOBAL_CONFIG_ID, DataController
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
    parse_update,
)
from .options import MASTER, QueryOptions
from .projector import ResponseProjector
from .relations import RelationManager, RelationMutation, join_table_name
from .transform import (
    transform_create,
    transform_key,
    transform_update,
    transform_where,
    untransform_object,
)

__all__ = [
    # Controller
    "DataController",
    "GLOBAL_CONFIG_CLASS",
    "GLOBAL_CONFIG_ID",
    # Options
    "QueryOptions",
    "MASTER",
    # Operators
    "UpdateOperation",
    "SetValue",
    "Delete",
    "Increment",
    "Add",
    "AddUnique",
    "Remove",
    "AddRelation",
    "RemoveRelation",
    "Batch",
    "parse_operation",
    "parse_update",
    # Relations
    "RelationManager",
    "RelationMutation",
    "join_table_name",
    # Projection
    "ResponseProjector",
    # Translation
    "transform_where",
    "transform_create",
    "transform_update",
    "transform_key",
    "untransform_object",
]
