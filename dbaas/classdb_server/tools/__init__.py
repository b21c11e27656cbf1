"""
CLI tools for ClassDB administration.

This module provides command-line tools for:
- schema: Print the stored class schema
- find: Run a master query against a class
- purge: Drop every collection under the configured prefix

Invariants:
    - Tools run as master against the configured storage adapter
    - Destructive operations require explicit confirmation
"""

from .admin_cli import AdminCLI

__all__ = ["AdminCLI"]
