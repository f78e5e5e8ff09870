"""SQLite storage for the unified migration target.

This module provides the single database that replaces the legacy
conversation and knowledge stores:
- Conversations, messages and message attachments
- Knowledge files and their chunks
- Vector embeddings (float32 blobs readable by sqlite-vec functions)
- Schema version and migration metadata bookkeeping

The store implements the Connection protocol, so the validator and the
data migrator can run against it without knowing it is SQLite.

Example:
    >>> store = UnifiedStore(Path("~/.tessera/unified_db/unified.db"))
    >>> store.insert_batch("conversations", [{"conv_id": "c1", ...}])
    >>> store.count("conversations")
    1
"""

import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

import numpy as np
import sqlite_vec

from tessera.constants import UNIFIED_SCHEMA_VERSION

logger = logging.getLogger(__name__)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        conv_id TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL DEFAULT '',
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        is_pinned INTEGER NOT NULL DEFAULT 0,
        is_new INTEGER NOT NULL DEFAULT 1,
        settings TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        msg_id TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL
            REFERENCES conversations(conv_id) ON DELETE CASCADE,
        parent_id TEXT,
        role TEXT NOT NULL
            CHECK (role IN ('user', 'assistant', 'system', 'function')),
        content TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        order_seq INTEGER NOT NULL DEFAULT 0,
        token_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'sent',
        metadata TEXT NOT NULL DEFAULT '{}',
        is_context_edge INTEGER NOT NULL DEFAULT 0,
        is_variant INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_attachments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL
            REFERENCES messages(msg_id) ON DELETE CASCADE,
        attachment_type TEXT NOT NULL,
        attachment_data TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_files (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        path TEXT NOT NULL,
        mime_type TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processing', 'completed', 'error')),
        uploaded_at INTEGER NOT NULL,
        file_size INTEGER NOT NULL DEFAULT 0,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_chunks (
        id TEXT PRIMARY KEY,
        file_id TEXT NOT NULL
            REFERENCES knowledge_files(id) ON DELETE CASCADE,
        chunk_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        error TEXT,
        chunk_size INTEGER,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS knowledge_vectors (
        id TEXT PRIMARY KEY,
        file_id TEXT NOT NULL
            REFERENCES knowledge_files(id) ON DELETE CASCADE,
        chunk_id TEXT NOT NULL
            REFERENCES knowledge_chunks(id) ON DELETE CASCADE,
        embedding BLOB NOT NULL,
        dimensions INTEGER NOT NULL,
        model_name TEXT,
        created_at INTEGER NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS migration_metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_parent ON messages(parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_attachments_message ON message_attachments(message_id)",
    "CREATE INDEX IF NOT EXISTS idx_chunks_file ON knowledge_chunks(file_id)",
    "CREATE INDEX IF NOT EXISTS idx_vectors_chunk ON knowledge_vectors(chunk_id)",
)

# Tables that accept rows through insert_batch
_DATA_TABLES = frozenset(
    {
        "conversations",
        "messages",
        "message_attachments",
        "knowledge_files",
        "knowledge_chunks",
        "knowledge_vectors",
    }
)


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """Serialize an embedding to float32 bytes for sqlite-vec."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def deserialize_embedding(data: bytes) -> list[float]:
    """Deserialize float32 bytes back into a list of floats."""
    return np.frombuffer(data, dtype=np.float32).tolist()


class UnifiedStoreError(Exception):
    """Custom exception for unified store errors."""

    pass


class UnifiedStore:
    """SQLite + sqlite-vec database holding all migrated data.

    Args:
        db_path: Path to SQLite database file

    Attributes:
        db_path: Path to database file
        _conn: SQLite connection
    """

    def __init__(self, db_path: Path):
        """Open the store and create the schema if needed.

        Args:
            db_path: Path to database file

        Raises:
            UnifiedStoreError: If database initialization fails
        """
        self.db_path = db_path
        self._columns: dict[str, frozenset[str]] = {}

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA busy_timeout = 10000")
            self._conn.row_factory = sqlite3.Row

            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)

            self._init_schema()

        except Exception as e:
            raise UnifiedStoreError(f"Failed to initialize unified store: {e}") from e

    def _init_schema(self) -> None:
        """Initialize database schema."""
        cursor = self._conn.cursor()
        for statement in _SCHEMA_STATEMENTS:
            cursor.execute(statement)
        cursor.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (UNIFIED_SCHEMA_VERSION, time.time()),
        )
        self._conn.commit()

    # =========================================================================
    # Connection protocol
    # =========================================================================

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        cursor = self._conn.execute(sql, tuple(params))
        return [dict(row) for row in cursor.fetchall()]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self._conn.execute(sql, tuple(params))
        self._conn.commit()
        return cursor.rowcount

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()

    # =========================================================================
    # Bulk loading
    # =========================================================================

    def _table_columns(self, table: str) -> frozenset[str]:
        if table not in self._columns:
            rows = self._conn.execute(f"PRAGMA table_info({table})").fetchall()
            self._columns[table] = frozenset(row["name"] for row in rows)
        return self._columns[table]

    def insert_batch(self, table: str, rows: list[dict[str, Any]]) -> tuple[int, int]:
        """Insert rows in one transaction, skipping rows the schema rejects.

        A row that violates a constraint (duplicate key, dangling foreign
        key, invalid role) is skipped; the rest of the batch still commits.

        Args:
            table: Target data table
            rows: Column->value mappings; unknown columns are ignored

        Returns:
            Tuple of (inserted, skipped)

        Raises:
            ValueError: If table is not a data table
            UnifiedStoreError: If the batch fails for any other reason
        """
        if table not in _DATA_TABLES:
            raise ValueError(f"Unknown data table: {table}")
        if not rows:
            return 0, 0

        allowed = self._table_columns(table)
        inserted = skipped = 0
        try:
            with self.transaction():
                for row in rows:
                    columns = [c for c in row if c in allowed]
                    placeholders = ", ".join("?" for _ in columns)
                    sql = (
                        f"INSERT INTO {table} ({', '.join(columns)}) "
                        f"VALUES ({placeholders})"
                    )
                    try:
                        self._conn.execute(sql, tuple(row[c] for c in columns))
                        inserted += 1
                    except sqlite3.IntegrityError as e:
                        skipped += 1
                        logger.debug(f"Skipped row in {table}: {e}")
        except Exception as e:
            raise UnifiedStoreError(f"Failed to insert batch into {table}: {e}") from e

        return inserted, skipped

    # =========================================================================
    # Bookkeeping
    # =========================================================================

    def count(self, table: str) -> int:
        """Count rows in a data or bookkeeping table."""
        if table not in _DATA_TABLES and table not in ("schema_version", "migration_metadata"):
            raise ValueError(f"Unknown table: {table}")
        row = self._conn.execute(f"SELECT COUNT(*) AS n FROM {table}").fetchone()
        return row["n"]

    def get_schema_version(self) -> int:
        row = self._conn.execute("SELECT MAX(version) AS v FROM schema_version").fetchone()
        return row["v"] or 0

    def set_metadata(self, key: str, value: str) -> None:
        """Insert or replace a migration metadata entry."""
        try:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO migration_metadata (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, value, time.time()),
            )
            self._conn.commit()
        except Exception as e:
            raise UnifiedStoreError(f"Failed to write metadata {key}: {e}") from e

    def get_metadata(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM migration_metadata WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None
