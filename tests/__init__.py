"""
ClassDB Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Controller tests against the in-memory and SQLite adapters
"""
