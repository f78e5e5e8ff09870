"""Copy legacy rows into the unified store.

Conversation databases (SQLite) provide conversations, messages and
message attachments. Knowledge databases (DuckDB) provide knowledge
files, chunks and embedding vectors. Parents are copied before children
so foreign keys resolve; rows the target schema rejects are skipped and
counted instead of failing the whole migration.
"""

import json
import logging
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import numpy as np

from tessera.storage.connection import Connection, open_read_only
from tessera.storage.unified_store import UnifiedStore
from tessera.types.legacy import DatabaseKind, LegacyDatabaseInfo

logger = logging.getLogger(__name__)

# Legacy conversation columns folded into the settings JSON
_CONVERSATION_SETTINGS = (
    "model_id",
    "provider_id",
    "context_length",
    "max_tokens",
    "temperature",
    "system_prompt",
    "context_chain",
    "artifacts",
)

_TABLE_ORDER = {
    DatabaseKind.SQLITE: ("conversations", "messages", "message_attachments"),
    DatabaseKind.COLUMNAR: ("knowledge_files", "knowledge_chunks", "knowledge_vectors"),
}


@dataclass
class DataMigrationResult:
    """Counts from one data-migration pass.

    Attributes:
        records_migrated: Rows written to the unified store
        records_skipped: Rows rejected by the target schema
        tables: Rows written per target table
        warnings: Missing tables and skipped rows
    """

    records_migrated: int = 0
    records_skipped: int = 0
    tables: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _epoch_ms(value: Any) -> int:
    if value is None or value == "":
        return _now_ms()
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    return int(value)


def _as_json(value: Any, default: str = "{}") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _convert_conversation(row: dict[str, Any]) -> dict[str, Any]:
    created_at = _epoch_ms(row.get("created_at"))
    settings = {k: row[k] for k in _CONVERSATION_SETTINGS if row.get(k) is not None}
    return {
        "conv_id": row.get("conv_id"),
        "title": row.get("title") or "",
        "created_at": created_at,
        "updated_at": _epoch_ms(row.get("updated_at") or created_at),
        "is_pinned": int(row.get("is_pinned") or 0),
        "is_new": int(row.get("is_new") or 0),
        "settings": json.dumps(settings, default=str),
    }


def _convert_message(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "msg_id": row.get("msg_id"),
        "conversation_id": row.get("conversation_id"),
        "parent_id": row.get("parent_id") or None,
        "role": row.get("role"),
        "content": row.get("content") if row.get("content") is not None else "",
        "created_at": _epoch_ms(row.get("created_at")),
        "order_seq": row.get("order_seq") or 0,
        "token_count": row.get("token_count") or 0,
        "status": row.get("status") or "sent",
        "metadata": _as_json(row.get("metadata")),
        "is_context_edge": int(row.get("is_context_edge") or 0),
        "is_variant": int(row.get("is_variant") or 0),
    }


def _convert_attachment(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "message_id": row.get("message_id"),
        "attachment_type": row.get("attachment_type") or "unknown",
        "attachment_data": _as_json(row.get("attachment_data"), default=""),
        "created_at": _epoch_ms(row.get("created_at")),
    }


def _convert_knowledge_file(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row.get("id"),
        "name": row.get("name"),
        "path": row.get("path"),
        "mime_type": row.get("mime_type"),
        "status": row.get("status") or "pending",
        "uploaded_at": _epoch_ms(row.get("uploaded_at")),
        "file_size": row.get("file_size") or 0,
        "metadata": _as_json(row.get("metadata")),
    }


def _convert_chunk(row: dict[str, Any]) -> dict[str, Any]:
    content = row.get("content") or ""
    return {
        "id": row.get("id"),
        "file_id": row.get("file_id"),
        "chunk_index": row.get("chunk_index") or 0,
        "content": content,
        "status": row.get("status") or "pending",
        "error": row.get("error"),
        "chunk_size": row.get("chunk_size") or len(content),
        "metadata": _as_json(row.get("metadata")),
    }


def _convert_vector(row: dict[str, Any]) -> Optional[dict[str, Any]]:
    raw = row.get("embedding")
    if raw is None:
        return None
    embedding = np.asarray(raw, dtype=np.float32)
    if embedding.ndim != 1 or embedding.size == 0:
        return None
    return {
        "id": row.get("id"),
        "file_id": row.get("file_id"),
        "chunk_id": row.get("chunk_id"),
        "embedding": embedding.tobytes(),
        "dimensions": int(embedding.size),
        "model_name": row.get("model_name"),
        "created_at": _epoch_ms(row.get("created_at")),
        "metadata": _as_json(row.get("metadata")),
    }


_CONVERTERS: dict[str, Callable[[dict[str, Any]], Optional[dict[str, Any]]]] = {
    "conversations": _convert_conversation,
    "messages": _convert_message,
    "message_attachments": _convert_attachment,
    "knowledge_files": _convert_knowledge_file,
    "knowledge_chunks": _convert_chunk,
    "knowledge_vectors": _convert_vector,
}


class DataMigrator:
    """Copies legacy data into a UnifiedStore in batches.

    Args:
        batch_size: Rows read and written per transaction
        opener: Factory for read-only connections (injectable for tests)
    """

    def __init__(
        self,
        batch_size: int,
        opener: Callable[[DatabaseKind, Path], Connection] = open_read_only,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.batch_size = batch_size
        self._open = opener

    def migrate(
        self,
        databases: Sequence[LegacyDatabaseInfo],
        store: UnifiedStore,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> DataMigrationResult:
        """Copy every detected database into the store.

        Conversation databases are copied before knowledge databases.

        Args:
            databases: Legacy databases to read
            store: Destination
            on_progress: Called with the running count of migrated rows

        Returns:
            DataMigrationResult with per-table counts

        Raises:
            LegacyConnectionError: If a legacy database cannot be opened
            UnifiedStoreError: If a batch cannot be written
        """
        result = DataMigrationResult()
        ordered = sorted(databases, key=lambda db: db.kind != DatabaseKind.SQLITE)

        for database in ordered:
            conn = self._open(database.kind, database.path)
            try:
                for table in _TABLE_ORDER[database.kind]:
                    if table not in database.tables:
                        result.warnings.append(f"{database.path.name} has no {table} table")
                        continue
                    self._copy_table(conn, table, store, result, on_progress)
            finally:
                conn.close()

        if result.records_skipped:
            result.warnings.append(
                f"{result.records_skipped} records were rejected by the new schema and skipped"
            )
        logger.info(
            f"Migrated {result.records_migrated} records "
            f"({result.records_skipped} skipped): {result.tables}"
        )
        return result

    def _batches(self, conn: Connection, table: str) -> Iterator[list[dict[str, Any]]]:
        offset = 0
        while True:
            rows = conn.query(
                f'SELECT * FROM "{table}" ORDER BY rowid '
                f"LIMIT {int(self.batch_size)} OFFSET {int(offset)}"
            )
            if not rows:
                return
            yield rows
            offset += len(rows)

    def _copy_table(
        self,
        conn: Connection,
        table: str,
        store: UnifiedStore,
        result: DataMigrationResult,
        on_progress: Optional[Callable[[int], None]],
    ) -> None:
        convert = _CONVERTERS[table]
        for batch in self._batches(conn, table):
            converted = [convert(row) for row in batch]
            rows = [row for row in converted if row is not None]
            inserted, skipped = store.insert_batch(table, rows)

            result.records_migrated += inserted
            result.records_skipped += skipped + (len(converted) - len(rows))
            result.tables[table] = result.tables.get(table, 0) + inserted
            if on_progress is not None:
                on_progress(result.records_migrated)
