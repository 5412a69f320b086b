"""
docrepo Test Suite.

This package contains:
- unit/: Unit tests (declarations, schemas, storage engine on temp files)
- integration/: Repository tests against real SQLite files
"""
