"""SQLite backend for the engrams engine.

One :class:`Storage` instance manages one database file.  The engine opens
one file per scope partition (``session.db``, ``project.db``, ``user.db``)
using the *partition* schema, plus a ``system.db`` using the *system* schema
for engine-wide tables.

Partitions use FTS5 for BM25 keyword relevance and sqlite-vec for vector
KNN.  All public methods are async-friendly, wrapping synchronous sqlite3
calls via :func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections; each thread pool worker keeps one
      long-lived connection open.
    - WAL mode enables concurrent readers alongside a single writer.

Usage::

    from engrams.storage import Storage

    store = Storage(cfg.data_dir / "project.db")
    await store.initialize()
    rows = await store.execute("SELECT * FROM memories WHERE id = ?", (mid,))
"""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio
import sqlite_vec

from engrams.config import get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

PARTITION_SCHEMA = "partition"
SYSTEM_SCHEMA = "system"

# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into a compact binary representation.

    Parameters
    ----------
    vec:
        A list of floats.

    Returns
    -------
    bytes
        Little-endian packed float32 values suitable for sqlite-vec queries.
    """
    return struct.pack(f"{len(vec)}f", *vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack binary embedding data back into a list of floats."""
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"{count}f", data))


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_PARTITION_SQL = """\
-- Memory records of a single scope
CREATE TABLE IF NOT EXISTS memories (
    pk INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    content TEXT NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('episodic','semantic','procedural','working')),
    scope TEXT NOT NULL CHECK(scope IN ('session','project','user')),
    tags TEXT NOT NULL DEFAULT '[]',
    embedding BLOB,
    importance REAL NOT NULL DEFAULT 0.5,
    confidence REAL NOT NULL DEFAULT 1.0,
    access_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'created' CHECK(status IN (
        'created','active','consolidated','archived','forgotten'
    )),
    source TEXT,
    session_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_accessed_at TEXT NOT NULL
);

-- Full-text search virtual table (external content, synced via triggers)
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    content, tags, content=memories, content_rowid=pk
);

CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, content, tags)
    VALUES (new.pk, new.content, new.tags);
END;

CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, tags)
    VALUES ('delete', old.pk, old.content, old.tags);
END;

CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF content, tags ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, content, tags)
    VALUES ('delete', old.pk, old.content, old.tags);
    INSERT INTO memories_fts(rowid, content, tags)
    VALUES (new.pk, new.content, new.tags);
END;

-- Directed, typed links between records
CREATE TABLE IF NOT EXISTS edges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    relation TEXT NOT NULL,
    weight REAL NOT NULL DEFAULT 1.0,
    created_at TEXT NOT NULL,
    UNIQUE(source_id, target_id, relation)
);

CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(status);
CREATE INDEX IF NOT EXISTS idx_memories_kind ON memories(kind);
CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_last_accessed ON memories(last_accessed_at);
CREATE INDEX IF NOT EXISTS idx_edges_source ON edges(source_id);
CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_id);
"""

# Vector table DDL -- only executed when sqlite-vec loads successfully.
_VEC_SQL = """\
CREATE VIRTUAL TABLE IF NOT EXISTS memories_vec USING vec0(
    memory_pk INTEGER PRIMARY KEY,
    embedding FLOAT[{dims}] distance_metric=cosine
);
"""

_SYSTEM_SQL = """\
-- Append-only log of every recall; was_useful is set later by feedback
CREATE TABLE IF NOT EXISTS retrieval_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    query TEXT NOT NULL,
    strategy TEXT NOT NULL,
    result_count INTEGER NOT NULL DEFAULT 0,
    result_ids TEXT NOT NULL DEFAULT '[]',
    scope TEXT,
    was_useful INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS consolidation_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    reason TEXT NOT NULL CHECK(reason IN (
        'decay','duplicate','promotion','merge','scheduled'
    )),
    priority REAL NOT NULL DEFAULT 0.5,
    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN (
        'pending','processing','completed','failed'
    )),
    created_at TEXT NOT NULL,
    processed_at TEXT,
    error TEXT
);

-- At most one pending task per (memory_id, reason)
CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_pending
    ON consolidation_queue(memory_id, reason) WHERE status = 'pending';

-- Lifecycle audit trail
CREATE TABLE IF NOT EXISTS transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    old_status TEXT NOT NULL,
    new_status TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tuning_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tuning_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);

-- Audit log for consolidation runs
CREATE TABLE IF NOT EXISTS consolidation_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    details TEXT,
    memories_affected TEXT,
    created_at TEXT NOT NULL
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_retrieval_log_created ON retrieval_log(created_at);
CREATE INDEX IF NOT EXISTS idx_transitions_memory ON transitions(memory_id);
CREATE INDEX IF NOT EXISTS idx_queue_status ON consolidation_queue(status, priority DESC);
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    schema:
        ``"partition"`` for a scope partition or ``"system"`` for the
        engine-wide tables.
    embedding_dims:
        Width of the ``memories_vec`` column.  Defaults to the configured
        embedding dimensions.
    """

    def __init__(
        self,
        db_path: Path,
        schema: str = PARTITION_SCHEMA,
        embedding_dims: int | None = None,
    ) -> None:
        if schema not in (PARTITION_SCHEMA, SYSTEM_SCHEMA):
            raise ValueError(f"Unknown schema {schema!r}")
        cfg = get_config()
        self._db_path = Path(db_path)
        self._schema = schema
        self._dims: int = embedding_dims or cfg.embedding.dims
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
        self._backup_on_init: bool = cfg.backup_on_init
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False
        self._vec_available = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def schema(self) -> str:
        return self._schema

    @property
    def vec_available(self) -> bool:
        """Whether the sqlite-vec extension loaded and ``memories_vec`` exists."""
        return self._vec_available

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        Idempotent.  Creates directories, tables, triggers and virtual
        tables, then takes an automatic backup when enabled.
        """
        if self._initialized:
            return
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info(
            "Storage initialised at %s (schema=%s, vec=%s)",
            self._db_path,
            self._schema,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        if self._schema == PARTITION_SCHEMA:
            self._vec_available = self._probe_vec_support()

        conn = self._open_connection()
        try:
            if self._schema == PARTITION_SCHEMA:
                conn.executescript(_PARTITION_SQL)
                if self._vec_available:
                    conn.executescript(_VEC_SQL.format(dims=self._dims))
            else:
                conn.executescript(_SYSTEM_SQL)
            conn.commit()
        finally:
            conn.close()

        if self._backup_on_init:
            self._backup_sync()

    def _probe_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment."""
        conn = sqlite3.connect(str(self._db_path))
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "vector search will be unavailable"
                )
                return False

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            log.debug("sqlite-vec extension loaded successfully")
            return True
        except (AttributeError, OSError, sqlite3.OperationalError) as exc:
            log.warning(
                "sqlite-vec extension could not be loaded (%s); "
                "vector search will be unavailable",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        if self._vec_available:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.lastrowid or 0
            except Exception:
                conn.rollback()
                raise

    async def execute_write_returning(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a write query with a ``RETURNING`` clause under the write lock."""
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_returning_sync(sql, params),
        )

    def _execute_write_returning_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                rows = cursor.fetchall()
                conn.commit()
                return rows
            except Exception:
                conn.rollback()
                raise

    async def execute_many(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        """Execute a statement for each set of parameters under the write lock."""
        await anyio.to_thread.run_sync(
            lambda: self._execute_many_sync(sql, params_list),
        )

    def _execute_many_sync(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.executemany(sql, params_list)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration.  The callback
        receives a raw :class:`sqlite3.Connection` already inside the
        transaction; commit happens on success and rollback on exception.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Stale locks older than 10 minutes are cleaned up before the
        acquisition attempt.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', '-10 minutes')",
            (name,),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock.

        If *holder* is given the lock is only released when held by it.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute("DELETE FROM locks WHERE name = ?", (name,))

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups of the same file beyond the configured retention count
        are deleted.

        Returns
        -------
        Path
            Filesystem path of the newly created backup file.
        """
        return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        self._backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"{self._db_path.stem}_{timestamp}.db"

        # Online backup API for a consistent snapshot.
        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob(f"{self._db_path.stem}_*.db"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    async def optimize(self) -> None:
        """Run ``ANALYZE``, FTS5 ``optimize`` and an integrity check."""
        await anyio.to_thread.run_sync(self._optimize_sync)

    def _optimize_sync(self) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("ANALYZE")
                if self._schema == PARTITION_SCHEMA:
                    conn.execute(
                        "INSERT INTO memories_fts(memories_fts) VALUES ('optimize')"
                    )
                rows = conn.execute("PRAGMA integrity_check(1)").fetchall()
                status = rows[0][0] if rows else "unknown"
                if status != "ok":
                    log.warning("Integrity check on %s returned: %s", self._db_path, status)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    async def get_db_size_mb(self) -> float:
        """Return the database file size (including WAL) in megabytes."""
        return await anyio.to_thread.run_sync(self._get_db_size_mb_sync)

    def _get_db_size_mb_sync(self) -> float:
        if not self._db_path.exists():
            return 0.0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_suffix(".db-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for the core tables of this database."""
        if self._schema == PARTITION_SCHEMA:
            sql = """
                SELECT 'memories' AS tbl, COUNT(*) AS cnt FROM memories
                UNION ALL
                SELECT 'edges', COUNT(*) FROM edges
            """
        else:
            sql = """
                SELECT 'retrieval_log' AS tbl, COUNT(*) AS cnt FROM retrieval_log
                UNION ALL
                SELECT 'consolidation_queue', COUNT(*) FROM consolidation_queue
                UNION ALL
                SELECT 'transitions', COUNT(*) FROM transitions
                UNION ALL
                SELECT 'tuning_history', COUNT(*) FROM tuning_history
            """
        rows = await self.execute(sql)
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        self._initialized = False
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
