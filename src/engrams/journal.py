"""Engine-wide bookkeeping in the ``system`` database.

The :class:`Journal` owns every table that is not a memory partition:

* ``retrieval_log`` -- one append-only row per recall, with the
  ``was_useful`` flag set later by feedback.
* ``consolidation_queue`` -- pending maintenance tasks.
* ``transitions`` -- lifecycle audit trail.
* ``tuning_state`` / ``tuning_history`` -- the self-tuned parameters and
  every change ever applied to them.
* ``consolidation_log`` -- one row per non-dry-run consolidation pass.
* ``locks`` -- advisory locks (see :meth:`Storage.try_acquire_lock`).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from engrams.config import EngramsConfig, get_config
from engrams.errors import ValidationError
from engrams.records import TASK_REASONS, TASK_STATUSES, parse_ts, to_iso, utcnow
from engrams.storage import Storage

log = logging.getLogger(__name__)

TUNING_KEYS: tuple[str, ...] = (
    "scope_weights",
    "decay_half_lives",
    "promotion_thresholds",
    "retrieval_strategy",
)


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------


@dataclass
class RetrievalLogEntry:
    id: int
    query: str
    strategy: str
    result_count: int
    result_ids: list[str] = field(default_factory=list)
    scope: str | None = None
    was_useful: bool | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> RetrievalLogEntry:
        useful = row["was_useful"]
        return cls(
            id=row["id"],
            query=row["query"],
            strategy=row["strategy"],
            result_count=row["result_count"],
            result_ids=json.loads(row["result_ids"] or "[]"),
            scope=row["scope"],
            was_useful=None if useful is None else bool(useful),
            created_at=parse_ts(row["created_at"]),
        )


@dataclass
class ConsolidationTask:
    id: int
    memory_id: str
    scope: str
    reason: str
    priority: float
    status: str = "pending"
    created_at: datetime | None = None
    processed_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> ConsolidationTask:
        return cls(
            id=row["id"],
            memory_id=row["memory_id"],
            scope=row["scope"],
            reason=row["reason"],
            priority=row["priority"],
            status=row["status"],
            created_at=parse_ts(row["created_at"]),
            processed_at=parse_ts(row["processed_at"]),
            error=row["error"],
        )


@dataclass
class TransitionRecord:
    memory_id: str
    scope: str
    old_status: str
    new_status: str
    reason: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> TransitionRecord:
        return cls(
            memory_id=row["memory_id"],
            scope=row["scope"],
            old_status=row["old_status"],
            new_status=row["new_status"],
            reason=row["reason"],
            created_at=parse_ts(row["created_at"]),
        )


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


class Journal:
    """Async accessor for the system database.

    Parameters
    ----------
    storage:
        A :class:`~engrams.storage.Storage` opened with the ``system``
        schema.
    config:
        Supplies the factory defaults used to seed ``tuning_state``.
    """

    def __init__(self, storage: Storage, config: EngramsConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or get_config()

    @property
    def storage(self) -> Storage:
        return self._storage

    async def initialize(self) -> None:
        await self._storage.initialize()
        await self.seed_tuning_state()

    # ------------------------------------------------------------------
    # Tuning state
    # ------------------------------------------------------------------

    async def seed_tuning_state(self) -> None:
        """Insert factory defaults for any tuning key that is missing."""
        now = to_iso(utcnow())
        defaults = self._cfg.tuning_defaults()
        await self._storage.execute_many(
            "INSERT OR IGNORE INTO tuning_state (key, value, updated_at) VALUES (?, ?, ?)",
            [(key, json.dumps(value, sort_keys=True), now) for key, value in defaults.items()],
        )

    async def tuning_state(self) -> dict[str, dict[str, Any]]:
        """Every tuning entry, with factory defaults filling any gaps."""
        state = {k: dict(v) for k, v in self._cfg.tuning_defaults().items()}
        rows = await self._storage.execute("SELECT key, value FROM tuning_state")
        for row in rows:
            try:
                value = json.loads(row["value"])
            except json.JSONDecodeError:
                log.warning("Ignoring corrupt tuning_state entry %r", row["key"])
                continue
            if isinstance(value, dict):
                state.setdefault(row["key"], {}).update(value)
        return state

    async def get_tuning(self, key: str) -> dict[str, Any]:
        if key not in TUNING_KEYS:
            raise ValidationError(f"Unknown tuning key {key!r}", field="key")
        return (await self.tuning_state())[key]

    async def scope_weights(self) -> dict[str, float]:
        return {k: float(v) for k, v in (await self.get_tuning("scope_weights")).items()}

    async def half_lives(self) -> dict[str, float]:
        return {k: float(v) for k, v in (await self.get_tuning("decay_half_lives")).items()}

    async def promotion_thresholds(self) -> dict[str, float]:
        return await self.get_tuning("promotion_thresholds")

    async def default_strategy(self) -> str:
        return str((await self.get_tuning("retrieval_strategy"))["default_strategy"])

    async def set_tuning(
        self,
        key: str,
        field_name: str,
        value: Any,
        reason: str,
        now: datetime | None = None,
    ) -> tuple[Any, Any]:
        """Set ``tuning_state[key][field_name] = value`` and log the change.

        The read-modify-write and the history append happen in one
        transaction.  Setting the value already stored is a no-op and
        writes no history.

        Returns
        -------
        tuple
            ``(old_value, new_value)`` for the field.
        """
        if key not in TUNING_KEYS:
            raise ValidationError(f"Unknown tuning key {key!r}", field="key")
        ts = to_iso(now or utcnow())
        defaults = self._cfg.tuning_defaults()[key]

        def _do_set(conn: sqlite3.Connection) -> tuple[Any, Any]:
            row = conn.execute(
                "SELECT value FROM tuning_state WHERE key = ?", (key,)
            ).fetchone()
            current = dict(defaults)
            if row is not None:
                current.update(json.loads(row["value"]))
            old = current.get(field_name)
            if old == value:
                return old, value
            current[field_name] = value
            conn.execute(
                """
                INSERT INTO tuning_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                               updated_at = excluded.updated_at
                """,
                (key, json.dumps(current, sort_keys=True), ts),
            )
            conn.execute(
                """
                INSERT INTO tuning_history (key, old_value, new_value, reason, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (f"{key}.{field_name}", json.dumps(old), json.dumps(value), reason, ts),
            )
            return old, value

        return await self._storage.execute_transaction(_do_set)

    async def tuning_history(self, limit: int = 100) -> list[dict[str, Any]]:
        rows = await self._storage.execute(
            "SELECT key, old_value, new_value, reason, created_at "
            "FROM tuning_history ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [
            {
                "key": row["key"],
                "old_value": json.loads(row["old_value"]) if row["old_value"] else None,
                "new_value": json.loads(row["new_value"]),
                "reason": row["reason"],
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Retrieval log
    # ------------------------------------------------------------------

    async def log_retrieval(
        self,
        query: str,
        strategy: str,
        result_ids: list[str],
        scope: str | None,
        was_useful: bool | None = None,
        now: datetime | None = None,
    ) -> int:
        return await self._storage.execute_write(
            """
            INSERT INTO retrieval_log
                (query, strategy, result_count, result_ids, scope, was_useful, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                query,
                strategy,
                len(result_ids),
                json.dumps(result_ids),
                scope,
                None if was_useful is None else int(was_useful),
                to_iso(now or utcnow()),
            ),
        )

    async def set_feedback(self, log_id: int, was_useful: bool) -> RetrievalLogEntry | None:
        """Record usefulness for a logged recall.  Returns the updated entry."""
        rows = await self._storage.execute_write_returning(
            "UPDATE retrieval_log SET was_useful = ? WHERE id = ? RETURNING *",
            (int(was_useful), log_id),
        )
        return RetrievalLogEntry.from_row(rows[0]) if rows else None

    async def logs_since(self, since: datetime) -> list[RetrievalLogEntry]:
        rows = await self._storage.execute(
            "SELECT * FROM retrieval_log WHERE created_at >= ? ORDER BY id ASC",
            (to_iso(since),),
        )
        return [RetrievalLogEntry.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Consolidation queue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        memory_id: str,
        scope: str,
        reason: str,
        priority: float = 0.5,
        now: datetime | None = None,
    ) -> bool:
        """Queue a task.  Returns ``False`` when an identical one is pending."""
        if reason not in TASK_REASONS:
            raise ValidationError(f"Invalid task reason {reason!r}", field="reason")
        rows = await self._storage.execute_write_returning(
            """
            INSERT OR IGNORE INTO consolidation_queue
                (memory_id, scope, reason, priority, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
            RETURNING id
            """,
            (memory_id, scope, reason, min(1.0, max(0.0, priority)), to_iso(now or utcnow())),
        )
        return bool(rows)

    async def pending_tasks(
        self,
        scope: str | None = None,
        limit: int | None = None,
    ) -> list[ConsolidationTask]:
        """Pending tasks, highest priority first."""
        sql = "SELECT * FROM consolidation_queue WHERE status = 'pending'"
        params: list[Any] = []
        if scope is not None:
            sql += " AND scope = ?"
            params.append(scope)
        sql += " ORDER BY priority DESC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = await self._storage.execute(sql, tuple(params))
        return [ConsolidationTask.from_row(row) for row in rows]

    async def mark_task(
        self,
        task_id: int,
        status: str,
        error: str | None = None,
        now: datetime | None = None,
    ) -> None:
        if status not in TASK_STATUSES:
            raise ValidationError(f"Invalid task status {status!r}", field="status")
        await self._storage.execute_write(
            "UPDATE consolidation_queue SET status = ?, error = ?, processed_at = ? WHERE id = ?",
            (status, error, to_iso(now or utcnow()), task_id),
        )

    # ------------------------------------------------------------------
    # Lifecycle audit
    # ------------------------------------------------------------------

    async def record_transition(
        self,
        memory_id: str,
        scope: str,
        old_status: str,
        new_status: str,
        reason: str | None,
        now: datetime | None = None,
    ) -> None:
        await self._storage.execute_write(
            """
            INSERT INTO transitions
                (memory_id, scope, old_status, new_status, reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (memory_id, scope, old_status, new_status, reason, to_iso(now or utcnow())),
        )

    async def transitions(self, memory_id: str | None = None) -> list[TransitionRecord]:
        if memory_id is None:
            rows = await self._storage.execute("SELECT * FROM transitions ORDER BY id ASC")
        else:
            rows = await self._storage.execute(
                "SELECT * FROM transitions WHERE memory_id = ? ORDER BY id ASC",
                (memory_id,),
            )
        return [TransitionRecord.from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Consolidation log and locking
    # ------------------------------------------------------------------

    async def log_consolidation(
        self,
        action: str,
        details: dict[str, Any],
        affected: list[str],
        now: datetime | None = None,
    ) -> None:
        await self._storage.execute_write(
            """
            INSERT INTO consolidation_log (action, details, memories_affected, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (action, json.dumps(details, default=str), json.dumps(affected), to_iso(now or utcnow())),
        )

    async def acquire_lock(self, name: str) -> str | None:
        """Take the named advisory lock.  Returns the holder token or ``None``."""
        holder = uuid.uuid4().hex

        def _do_acquire(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, name, holder)

        acquired = await self._storage.execute_transaction(_do_acquire)
        return holder if acquired else None

    async def release_lock(self, name: str, holder: str) -> None:
        def _do_release(conn: sqlite3.Connection) -> None:
            Storage.release_lock(conn, name, holder)

        await self._storage.execute_transaction(_do_release)
