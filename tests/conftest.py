"""Pytest configuration and shared fixtures for tessera tests.

This module provides reusable fixtures for testing:
- env_setup: (autouse) Sets required environment variables
- temp_dir: Temporary directory for file operations
- paths: Migration directory layout rooted in temp_dir
- make_legacy_sqlite / make_legacy_duckdb: Builders for legacy databases
- legacy_databases: The standard two-database scenario
  (2 conversations + 10 messages, 3 knowledge files + 50 chunks)
- store: Empty unified store at the target path
- seed_store: Fills a unified store with a small consistent data set

Usage:
    def test_something(paths, legacy_databases):
        detector = LegacyDatabaseDetector(paths.scan_dirs)
"""

import os
import sqlite3
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import duckdb
import pytest

from tessera.config import MigrationPaths
from tessera.storage.unified_store import UnifiedStore, serialize_embedding


@pytest.fixture(autouse=True)
def env_setup() -> Generator[None, None, None]:
    """Set required environment variables for all tests.

    This fixture runs automatically before each test to ensure
    all TESSERA_* environment variables are set.
    """
    env_vars = {
        "TESSERA_DATA_DIR": str(Path(tempfile.gettempdir()) / "tessera-test-data"),
        "TESSERA_LOG_LEVEL": "DEBUG",
        "TESSERA_BACKUP_RETENTION_DAYS": "30",
        "TESSERA_BATCH_SIZE": "7",
        "TESSERA_RETRY_DELAY_SECONDS": "0",
    }
    original = {k: os.environ.get(k) for k in env_vars}
    os.environ.update(env_vars)
    yield
    for key, value in original.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test file operations.

    Yields:
        Path: Path to the temporary directory (cleaned up after test)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def paths(temp_dir: Path) -> MigrationPaths:
    """Migration layout with empty legacy directories."""
    layout = MigrationPaths.from_data_dir(temp_dir)
    layout.app_db_dir.mkdir()
    layout.knowledge_dir.mkdir()
    return layout


# ============================================================================
# Legacy database builders
# ============================================================================

_LEGACY_SQLITE_SCHEMA = """
CREATE TABLE conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conv_id TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    is_pinned INTEGER DEFAULT 0,
    model_id TEXT,
    provider_id TEXT,
    context_length INTEGER,
    max_tokens INTEGER,
    temperature REAL,
    system_prompt TEXT,
    context_chain TEXT,
    is_new INTEGER DEFAULT 1,
    artifacts INTEGER DEFAULT 0
);
CREATE TABLE messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    msg_id TEXT UNIQUE NOT NULL,
    conversation_id TEXT NOT NULL,
    parent_id TEXT,
    content TEXT NOT NULL,
    role TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    order_seq INTEGER NOT NULL,
    token_count INTEGER DEFAULT 0,
    status TEXT DEFAULT 'sent',
    metadata TEXT DEFAULT '{}',
    is_context_edge INTEGER DEFAULT 0,
    is_variant INTEGER DEFAULT 0
);
CREATE TABLE message_attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL,
    attachment_type TEXT NOT NULL,
    attachment_data TEXT NOT NULL,
    created_at INTEGER NOT NULL
);
"""


def build_legacy_sqlite(
    path: Path,
    conversations: int = 2,
    messages: int = 10,
    attachments: int = 0,
    orphan_messages: int = 0,
    version: int = 3,
) -> Path:
    """Write a legacy conversation database."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.executescript(_LEGACY_SQLITE_SCHEMA)
    conn.execute(f"PRAGMA user_version = {int(version)}")

    for i in range(conversations):
        conn.execute(
            """
            INSERT INTO conversations
            (conv_id, title, created_at, updated_at, model_id, provider_id, temperature)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"conv-{i}", f"Conversation {i}", 1_700_000_000_000 + i, 1_700_000_100_000 + i,
             "gpt-4", "openai", 0.7),
        )

    last_in_conv: dict[str, str] = {}
    for i in range(messages):
        conv_id = f"conv-{i % conversations}"
        msg_id = f"msg-{i}"
        conn.execute(
            """
            INSERT INTO messages
            (msg_id, conversation_id, parent_id, content, role, created_at, order_seq)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (msg_id, conv_id, last_in_conv.get(conv_id), f"Message {i}",
             "user" if i % 2 == 0 else "assistant", 1_700_000_000_000 + i, i),
        )
        last_in_conv[conv_id] = msg_id

    for i in range(attachments):
        conn.execute(
            """
            INSERT INTO message_attachments
            (message_id, attachment_type, attachment_data, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (f"msg-{i % max(messages, 1)}", "file", '{"name": "a.txt"}', 1_700_000_000_000),
        )

    for i in range(orphan_messages):
        conn.execute(
            """
            INSERT INTO messages
            (msg_id, conversation_id, content, role, created_at, order_seq)
            VALUES (?, 'deleted-conversation', 'lost', 'user', 1700000000000, ?)
            """,
            (f"orphan-{i}", i),
        )

    conn.commit()
    conn.close()
    return path


def build_legacy_duckdb(
    path: Path,
    files: int = 3,
    chunks: int = 50,
    vectors: int = 0,
    dimensions: int = 4,
) -> Path:
    """Write a legacy knowledge database."""
    path.parent.mkdir(parents=True, exist_ok=True)
    con = duckdb.connect(str(path))
    con.execute(
        """
        CREATE TABLE knowledge_files (
            id VARCHAR PRIMARY KEY, name VARCHAR, path VARCHAR, mime_type VARCHAR,
            status VARCHAR, uploaded_at BIGINT, file_size BIGINT, metadata VARCHAR
        )
        """
    )
    con.execute(
        """
        CREATE TABLE knowledge_chunks (
            id VARCHAR PRIMARY KEY, file_id VARCHAR, chunk_index INTEGER,
            content VARCHAR, status VARCHAR, error VARCHAR, chunk_size INTEGER,
            metadata VARCHAR
        )
        """
    )
    con.execute(
        """
        CREATE TABLE knowledge_vectors (
            id VARCHAR PRIMARY KEY, file_id VARCHAR, chunk_id VARCHAR,
            embedding FLOAT[], model_name VARCHAR, created_at BIGINT, metadata VARCHAR
        )
        """
    )

    for i in range(files):
        con.execute(
            "INSERT INTO knowledge_files VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [f"file-{i}", f"doc{i}.md", f"/docs/doc{i}.md", "text/markdown",
             "completed", 1_700_000_000_000 + i, 1024 * (i + 1), "{}"],
        )
    for i in range(chunks):
        content = f"Chunk {i} of knowledge"
        con.execute(
            "INSERT INTO knowledge_chunks VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [f"chunk-{i}", f"file-{i % files}", i, content, "completed", None,
             len(content), "{}"],
        )
    for i in range(vectors):
        con.execute(
            "INSERT INTO knowledge_vectors VALUES (?, ?, ?, ?, ?, ?, ?)",
            [f"vec-{i}", f"file-{i % files}", f"chunk-{i}",
             [float(i + d) / 10 for d in range(dimensions)], "embed-small",
             1_700_000_000_000 + i, "{}"],
        )

    con.close()
    return path


@pytest.fixture
def make_legacy_sqlite() -> Callable[..., Path]:
    """Factory fixture for legacy conversation databases."""
    return build_legacy_sqlite


@pytest.fixture
def make_legacy_duckdb() -> Callable[..., Path]:
    """Factory fixture for legacy knowledge databases."""
    return build_legacy_duckdb


@pytest.fixture
def legacy_databases(paths: MigrationPaths) -> tuple[Path, Path]:
    """Standard scenario: one conversation database and one knowledge database.

    Returns:
        Tuple of (sqlite_path, duckdb_path)
    """
    sqlite_path = build_legacy_sqlite(paths.app_db_dir / "chat.db")
    duckdb_path = build_legacy_duckdb(paths.knowledge_dir / "knowledge.duckdb", vectors=6)
    return sqlite_path, duckdb_path


# ============================================================================
# Unified store
# ============================================================================


@pytest.fixture
def store(paths: MigrationPaths) -> Generator[UnifiedStore, None, None]:
    """Empty unified store at the configured target path."""
    unified = UnifiedStore(paths.target_db_path)
    yield unified
    unified.close()


def seed_unified_store(
    store: UnifiedStore, conversations: int = 1, messages: int = 5, vectors: int = 2
) -> None:
    """Insert a small, consistent data set into a unified store."""
    store.insert_batch(
        "conversations",
        [
            {"conv_id": f"c{i}", "title": f"Chat {i}", "created_at": 1, "updated_at": 2}
            for i in range(conversations)
        ],
    )
    store.insert_batch(
        "messages",
        [
            {
                "msg_id": f"m{i}",
                "conversation_id": f"c{i % conversations}",
                "role": "user",
                "content": f"hello {i}",
                "created_at": i,
            }
            for i in range(messages)
        ],
    )
    store.insert_batch(
        "knowledge_files",
        [{"id": "f0", "name": "doc.md", "path": "/doc.md", "uploaded_at": 1}],
    )
    store.insert_batch(
        "knowledge_chunks",
        [
            {"id": f"k{i}", "file_id": "f0", "chunk_index": i, "content": f"chunk {i}"}
            for i in range(max(vectors, 1))
        ],
    )
    store.insert_batch(
        "knowledge_vectors",
        [
            {
                "id": f"v{i}",
                "file_id": "f0",
                "chunk_id": f"k{i}",
                "embedding": serialize_embedding([0.1 * i, 0.2, 0.3, 0.4]),
                "dimensions": 4,
                "created_at": 1,
            }
            for i in range(vectors)
        ],
    )


@pytest.fixture
def seed_store() -> Callable[..., None]:
    """Factory fixture that fills a unified store with consistent data."""
    return seed_unified_store
