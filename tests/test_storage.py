"""Tests for the SQLite storage layer.

All databases live in ``tmp_path``; nothing here needs Ollama or network
access.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from engrams.config import get_config
from engrams.storage import (
    PARTITION_SCHEMA,
    SYSTEM_SCHEMA,
    Storage,
    deserialize_embedding,
    serialize_embedding,
)

from tests.conftest import DIMS


async def _table_names(storage: Storage) -> set[str]:
    rows = await storage.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    return {row["name"] for row in rows}


# -----------------------------------------------------------------------
# 1. Initialization
# -----------------------------------------------------------------------


class TestInitialization:
    async def test_creates_db_file(self, storage: Storage) -> None:
        assert storage.db_path.exists()
        assert storage.initialized is True

    async def test_creates_parent_directories(self, tmp_path: Path) -> None:
        deep = tmp_path / "a" / "b" / "c" / "deep.db"
        s = Storage(deep)
        await s.initialize()
        assert deep.exists()
        await s.close()

    async def test_wal_mode_enabled(self, storage: Storage) -> None:
        rows = await storage.execute("PRAGMA journal_mode")
        assert rows[0][0] == "wal"

    async def test_idempotent(self, storage: Storage) -> None:
        await storage.initialize()
        rows = await storage.execute("SELECT COUNT(*) FROM memories")
        assert rows[0][0] == 0

    async def test_vec_available_is_bool(self, storage: Storage) -> None:
        assert isinstance(storage.vec_available, bool)

    def test_unknown_schema_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="Unknown schema"):
            Storage(tmp_path / "x.db", schema="bogus")


# -----------------------------------------------------------------------
# 2. Schema
# -----------------------------------------------------------------------


class TestSchema:
    async def test_partition_tables(self, storage: Storage) -> None:
        names = await _table_names(storage)
        assert {"memories", "memories_fts", "edges"} <= names
        assert "retrieval_log" not in names

    async def test_partition_vector_table_when_available(self, storage: Storage) -> None:
        names = await _table_names(storage)
        assert ("memories_vec" in names) is storage.vec_available

    async def test_system_tables(self, system_storage: Storage) -> None:
        names = await _table_names(system_storage)
        assert {
            "retrieval_log",
            "consolidation_queue",
            "transitions",
            "tuning_state",
            "tuning_history",
            "consolidation_log",
            "locks",
        } <= names
        assert "memories" not in names

    async def test_kind_check_constraint(self, storage: Storage) -> None:
        with pytest.raises(sqlite3.IntegrityError):
            await storage.execute_write(
                """
                INSERT INTO memories (id, content, kind, scope, created_at,
                                      updated_at, last_accessed_at)
                VALUES ('x', 'c', 'dream', 'project', 't', 't', 't')
                """
            )

    async def test_pending_task_unique_per_reason(self, system_storage: Storage) -> None:
        sql = (
            "INSERT INTO consolidation_queue (memory_id, scope, reason, created_at) "
            "VALUES ('m1', 'project', 'merge', 't')"
        )
        await system_storage.execute_write(sql)
        with pytest.raises(sqlite3.IntegrityError):
            await system_storage.execute_write(sql)


# -----------------------------------------------------------------------
# 3. Writes and transactions
# -----------------------------------------------------------------------


class TestWrites:
    async def test_fts_trigger_indexes_content(self, storage: Storage) -> None:
        await storage.execute_write(
            """
            INSERT INTO memories (id, content, kind, scope, created_at,
                                  updated_at, last_accessed_at)
            VALUES ('m1', 'redis scan cursor', 'semantic', 'project', 't', 't', 't')
            """
        )
        rows = await storage.execute(
            "SELECT rowid FROM memories_fts WHERE memories_fts MATCH 'cursor'"
        )
        assert len(rows) == 1

    async def test_transaction_rolls_back_on_error(self, system_storage: Storage) -> None:
        def _fail(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO tuning_state (key, value, updated_at) VALUES ('k', '{}', 't')"
            )
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await system_storage.execute_transaction(_fail)

        rows = await system_storage.execute("SELECT COUNT(*) FROM tuning_state WHERE key = 'k'")
        assert rows[0][0] == 0

    async def test_transaction_returns_callback_value(self, system_storage: Storage) -> None:
        result = await system_storage.execute_transaction(lambda conn: 42)
        assert result == 42

    async def test_execute_write_returning(self, system_storage: Storage) -> None:
        rows = await system_storage.execute_write_returning(
            "INSERT INTO tuning_state (key, value, updated_at) VALUES ('a', '{}', 't') "
            "RETURNING key"
        )
        assert rows[0]["key"] == "a"


# -----------------------------------------------------------------------
# 4. Advisory locks
# -----------------------------------------------------------------------


class TestLocks:
    async def test_second_acquire_fails_until_release(self, system_storage: Storage) -> None:
        first = await system_storage.execute_transaction(
            lambda conn: Storage.try_acquire_lock(conn, "job", "h1")
        )
        second = await system_storage.execute_transaction(
            lambda conn: Storage.try_acquire_lock(conn, "job", "h2")
        )
        assert first is True
        assert second is False

        await system_storage.execute_transaction(
            lambda conn: Storage.release_lock(conn, "job", "h1")
        )
        third = await system_storage.execute_transaction(
            lambda conn: Storage.try_acquire_lock(conn, "job", "h2")
        )
        assert third is True

    async def test_release_by_other_holder_is_noop(self, system_storage: Storage) -> None:
        await system_storage.execute_transaction(
            lambda conn: Storage.try_acquire_lock(conn, "job", "h1")
        )
        await system_storage.execute_transaction(
            lambda conn: Storage.release_lock(conn, "job", "intruder")
        )
        rows = await system_storage.execute("SELECT holder FROM locks WHERE name = 'job'")
        assert rows[0]["holder"] == "h1"


# -----------------------------------------------------------------------
# 5. Maintenance
# -----------------------------------------------------------------------


class TestMaintenance:
    async def test_backup_creates_file(self, storage: Storage) -> None:
        path = await storage.backup()
        assert path.exists()
        assert path.parent == get_config().backup_dir

    async def test_backup_prunes_old_copies(
        self, storage: Storage, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(storage, "_backup_count", 2)
        for _ in range(4):
            await storage.backup()
        backups = list(get_config().backup_dir.glob("partition_*.db"))
        assert len(backups) == 2

    async def test_backup_on_init(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ENGRAMS_BACKUP_ON_INIT", "true")
        cfg = get_config(reload=True)
        s = Storage(tmp_path / "auto.db", SYSTEM_SCHEMA)
        await s.initialize()
        await s.close()
        assert list(cfg.backup_dir.glob("auto_*.db"))

    async def test_optimize_runs(self, storage: Storage) -> None:
        await storage.optimize()

    async def test_table_counts(self, storage: Storage, system_storage: Storage) -> None:
        assert await storage.table_counts() == {"memories": 0, "edges": 0}
        counts = await system_storage.table_counts()
        assert counts["retrieval_log"] == 0
        assert "tuning_history" in counts

    async def test_db_size(self, storage: Storage) -> None:
        assert await storage.get_db_size_mb() >= 0.0

    async def test_close_then_reinitialize(self, tmp_path: Path) -> None:
        s = Storage(tmp_path / "reopen.db", PARTITION_SCHEMA, DIMS)
        await s.initialize()
        await s.close()
        assert s.initialized is False
        await s.initialize()
        rows = await s.execute("SELECT COUNT(*) FROM memories")
        assert rows[0][0] == 0
        await s.close()


# -----------------------------------------------------------------------
# 6. Embedding serialisation
# -----------------------------------------------------------------------


class TestEmbeddingSerialization:
    def test_roundtrip_float32(self) -> None:
        vec = [0.5, -1.25, 3.0, 0.0]
        blob = serialize_embedding(vec)
        assert len(blob) == 16
        assert deserialize_embedding(blob) == vec
