"""Connection protocol shared by the legacy engines and the unified store.

The migration components never talk to sqlite3 or duckdb directly. They
receive something implementing Connection, which keeps detection,
validation and data copying engine-agnostic and easy to fake in tests.

API Contract:
    - query(sql, params) -> list[dict] - rows as column->value mappings
    - execute(sql, params) -> int - affected row count (-1 when unknown)
    - transaction() - context manager, commits on success, rolls back on error
    - close() - release the underlying handle
"""

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import duckdb

from tessera.types.legacy import DatabaseKind

__all__ = [
    "Connection",
    "DuckDBConnection",
    "LegacyConnectionError",
    "SQLiteConnection",
    "open_read_only",
]

logger = logging.getLogger(__name__)


class LegacyConnectionError(Exception):
    """Raised when a legacy database cannot be opened."""

    pass


@runtime_checkable
class Connection(Protocol):
    """Narrow database capability used throughout the migration."""

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a statement and return every row as a dict."""
        ...

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement that returns no rows."""
        ...

    def transaction(self) -> AbstractContextManager[None]:
        """Group statements so they commit or roll back together."""
        ...

    def close(self) -> None:
        """Release the connection."""
        ...


class SQLiteConnection:
    """Connection over a stdlib sqlite3 handle."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @property
    def raw(self) -> sqlite3.Connection:
        return self._conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        cursor = self._conn.execute(sql, tuple(params))
        return [dict(row) for row in cursor.fetchall()]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        cursor = self._conn.execute(sql, tuple(params))
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
        self._conn.close()


class DuckDBConnection:
    """Connection over a duckdb handle."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self._conn = conn

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        self._conn.execute(sql, list(params))
        if self._conn.description is None:
            return []
        columns = [d[0] for d in self._conn.description]
        return [dict(zip(columns, row)) for row in self._conn.fetchall()]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        # DuckDB does not expose a reliable rowcount
        self._conn.execute(sql, list(params))
        return -1

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self._conn.begin()
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def close(self) -> None:
        self._conn.close()


def open_read_only(kind: DatabaseKind, path: Path) -> Connection:
    """Open a legacy database without allowing writes.

    Args:
        kind: Storage engine of the file
        path: Database file path

    Returns:
        Connection bound to the file

    Raises:
        LegacyConnectionError: If the file cannot be opened
    """
    try:
        if kind == DatabaseKind.SQLITE:
            uri = f"{Path(path).resolve().as_uri()}?mode=ro"
            conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
            try:
                conn.execute("PRAGMA query_only = ON")
                # sqlite3 opens lazily; reading the schema validates the header
                conn.execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
            except sqlite3.Error:
                conn.close()
                raise
            return SQLiteConnection(conn)
        return DuckDBConnection(duckdb.connect(str(path), read_only=True))
    except (sqlite3.Error, duckdb.Error) as e:
        raise LegacyConnectionError(f"Unable to open database {path}: {e}") from e
