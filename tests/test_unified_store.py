"""Tests for the unified SQLite store."""

import pytest

from tessera.storage import Connection, UnifiedStore, UnifiedStoreError
from tessera.storage.unified_store import deserialize_embedding, serialize_embedding


class TestInitialization:
    """Tests for store creation."""

    def test_creates_schema(self, store, paths):
        assert paths.target_db_path.exists()
        assert store.get_schema_version() == 1
        assert store.count("conversations") == 0
        assert isinstance(store, Connection)

    def test_reopen_is_idempotent(self, store, paths):
        store.set_metadata("source", "legacy")
        store.close()

        reopened = UnifiedStore(paths.target_db_path)
        try:
            assert reopened.count("schema_version") == 1
            assert reopened.get_metadata("source") == "legacy"
        finally:
            reopened.close()

    def test_sqlite_vec_loaded(self, store):
        assert store.query("SELECT vec_version() AS v")[0]["v"]

    def test_unwritable_location(self, temp_dir):
        blocker = temp_dir / "file"
        blocker.write_text("not a directory")
        with pytest.raises(UnifiedStoreError):
            UnifiedStore(blocker / "unified.db")


class TestInsertBatch:
    """Tests for bulk loading."""

    def test_inserts_rows(self, store, seed_store):
        seed_store(store, conversations=2, messages=6, vectors=3)
        assert store.count("conversations") == 2
        assert store.count("messages") == 6
        assert store.count("knowledge_vectors") == 3

    def test_skips_constraint_violations(self, store, seed_store):
        seed_store(store)
        inserted, skipped = store.insert_batch(
            "messages",
            [
                {"msg_id": "new", "conversation_id": "c0", "role": "user",
                 "content": "hi", "created_at": 1},
                {"msg_id": "m0", "conversation_id": "c0", "role": "user",
                 "content": "duplicate", "created_at": 1},
                {"msg_id": "dangling", "conversation_id": "missing", "role": "user",
                 "content": "hi", "created_at": 1},
                {"msg_id": "badrole", "conversation_id": "c0", "role": "robot",
                 "content": "hi", "created_at": 1},
            ],
        )
        assert (inserted, skipped) == (1, 3)
        assert store.count("messages") == 6

    def test_ignores_unknown_columns(self, store):
        inserted, _ = store.insert_batch(
            "conversations",
            [{"conv_id": "c", "title": "t", "created_at": 1, "updated_at": 1,
              "model_id": "not a unified column"}],
        )
        assert inserted == 1

    def test_rejects_unknown_table(self, store):
        with pytest.raises(ValueError):
            store.insert_batch("schema_version", [{"version": 2}])

    def test_empty_batch(self, store):
        assert store.insert_batch("conversations", []) == (0, 0)


class TestEmbeddings:
    def test_float32_blob(self):
        blob = serialize_embedding([0.5, -1.0, 2.0])
        assert len(blob) == 12
        assert deserialize_embedding(blob) == [0.5, -1.0, 2.0]

    def test_vec_length_reads_blob(self, store, seed_store):
        seed_store(store, vectors=1)
        row = store.query("SELECT vec_length(embedding) AS n FROM knowledge_vectors")[0]
        assert row["n"] == 4


class TestTransaction:
    def test_rolls_back_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store._conn.execute(
                    "INSERT INTO knowledge_files (id, name, path, uploaded_at) "
                    "VALUES ('f', 'n', 'p', 1)"
                )
                raise RuntimeError("abort")
        assert store.count("knowledge_files") == 0
