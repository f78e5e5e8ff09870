"""Storage layer for Tessera.

- Connection: protocol every database handle implements
- open_read_only: opens legacy SQLite and DuckDB files without write access
- UnifiedStore: the sqlite-vec migration target

Example:
    >>> from tessera.storage import UnifiedStore, open_read_only
    >>> legacy = open_read_only(DatabaseKind.SQLITE, Path("app_db/chat.db"))
    >>> rows = legacy.query("SELECT * FROM conversations")
"""

from tessera.storage.connection import (
    Connection,
    DuckDBConnection,
    LegacyConnectionError,
    SQLiteConnection,
    open_read_only,
)
from tessera.storage.unified_store import (
    UnifiedStore,
    UnifiedStoreError,
    deserialize_embedding,
    serialize_embedding,
)

__all__ = [
    "Connection",
    "DuckDBConnection",
    "LegacyConnectionError",
    "SQLiteConnection",
    "UnifiedStore",
    "UnifiedStoreError",
    "deserialize_embedding",
    "open_read_only",
    "serialize_embedding",
]
