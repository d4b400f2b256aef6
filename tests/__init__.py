"""
atmirror Test Suite.

This package contains:
- unit/: Unit tests (in-memory feed and hosts, temporary SQLite files)
- integration/: Full invocations and the read API against SQLite
"""
