"""Integration tests for Tessera.

This package contains end-to-end tests that drive the command-line entry
point against real legacy databases:

- test_full_migration.py: detect -> dry run -> migrate -> list -> recover

Integration tests use:
- Temporary data directories for isolation
- Real SQLite and DuckDB legacy files built by the shared fixtures
- Real component interactions (not mocked)

Usage:
    # Run all integration tests
    uv run pytest tests/integration/ -v
"""
