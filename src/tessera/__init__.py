"""Tessera - legacy database migration into a unified vector store.

Tessera detects conversation databases (SQLite) and knowledge databases
(DuckDB) left behind by earlier releases, backs them up with checksums,
migrates them into a single sqlite-vec database and rolls back on failure.
"""

__version__ = "0.3.0"
__all__ = ["__version__"]
