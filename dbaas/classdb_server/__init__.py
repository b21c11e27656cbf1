"""
ClassDB Server - schema-aware data access for class-based object stores.

This package implements the layer between an object API and a document store:
- Classes with typed fields, stored in the _SCHEMA collection
- Class-level permissions and per-object ACLs (_rperm / _wperm)
- Relations kept in _Join:<key>:<class> join collections
- Pluggable storage adapters speaking a Mongo-style query dialect

Architecture:
    ┌─────────────┐     ┌────────────────┐     ┌─────────────────┐
    │  Object API │────▶│ DataController │────▶│  SchemaCache    │
    │  (caller)   │     │                │     │  (_SCHEMA)      │
    └─────────────┘     └───────┬────────┘     └─────────────────┘
                                │
                                ▼
                   ┌─────────────────────────┐
                   │  ResilientCollection    │
                   │  (geo index self-heal)  │
                   └────────────┬────────────┘
                                │
                   ┌────────────┴────────────┐
                   ▼                         ▼
              ┌─────────┐              ┌──────────┐
              │ SQLite  │              │ In-memory│
              └─────────┘              └──────────┘

Invariants:
    - The _SCHEMA collection is the source of truth for field types
    - Permission checks precede every data access
    - Public field names never reach the store untranslated

How to change safely:
    - Never rename persisted keys (_rperm, _wperm, _p_*, _Join:*)
    - Run the integration suite against both adapters

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
