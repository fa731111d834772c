"""Record Store: scoped CRUD, search and graph access over one partition.

A :class:`RecordStore` wraps the :class:`~engrams.storage.Storage` of one
scope.  The scope is fixed at construction and stamped on every record the
store writes, so there is never an ambient "current scope" anywhere in the
engine.

Failures of the underlying SQLite database surface as
:class:`~engrams.errors.StoreUnavailable` carrying the scope.

Usage::

    store = RecordStore(Storage(data_dir / "project.db"), "project")
    await store.insert(record)
    hits = await store.text_search("pytest fixtures", limit=10)
"""

from __future__ import annotations

import functools
import logging
import re
import sqlite3
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from engrams.errors import NotFoundError, StaleRecordError, StoreUnavailable, ValidationError
from engrams.records import (
    MemoryRecord,
    record_similarity,
    to_iso,
    utcnow,
    validate_scope,
)
from engrams.storage import Storage, serialize_embedding

log = logging.getLogger(__name__)

_T = TypeVar("_T")

_MEMORY_COLUMNS = (
    "id, content, kind, scope, tags, embedding, importance, confidence, "
    "access_count, status, source, session_id, metadata, created_at, "
    "updated_at, last_accessed_at"
)

_ORDERABLE = frozenset(
    {"created_at", "updated_at", "last_accessed_at", "importance", "access_count", "id"}
)

_GROUPINGS: dict[str, str] = {
    "kind": "kind",
    "status": "status",
    "month": "substr(created_at, 1, 7)",
    "importance_band": (
        "CASE WHEN importance < 0.25 THEN '0.00-0.25' "
        "WHEN importance < 0.5 THEN '0.25-0.50' "
        "WHEN importance < 0.75 THEN '0.50-0.75' "
        "ELSE '0.75-1.00' END"
    ),
    "tag": "json_each.value",
}


def _sanitize_fts_query(query: str, match_any: bool = False) -> str:
    """Convert natural language into a safe FTS5 MATCH expression.

    Keeps alphanumeric tokens of three or more characters (at most 20),
    quotes each one so FTS5 operators are never interpreted, and joins
    them with implicit AND, or with OR when *match_any* is set.  Returns
    an empty string when no usable tokens are found.
    """
    words = re.findall(r"[a-zA-Z0-9_]{3,}", query)[:20]
    if not words:
        return ""
    quoted = [f'"{w}"' for w in dict.fromkeys(w.lower() for w in words)]
    return (" OR " if match_any else " ").join(quoted)


def _store_errors(
    fn: Callable[..., Awaitable[_T]],
) -> Callable[..., Awaitable[_T]]:
    """Re-raise SQLite and filesystem errors as :class:`StoreUnavailable`."""

    @functools.wraps(fn)
    async def wrapper(self: RecordStore, *args: Any, **kwargs: Any) -> _T:
        try:
            return await fn(self, *args, **kwargs)
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(self.scope, str(exc)) from exc

    return wrapper


class RecordStore:
    """Async record access for a single scope partition.

    Parameters
    ----------
    storage:
        The partition's :class:`~engrams.storage.Storage`.  Initialised
        lazily on first use if the caller has not done so.
    scope:
        The scope this partition holds.
    """

    def __init__(self, storage: Storage, scope: str) -> None:
        validate_scope(scope)
        self._storage = storage
        self._scope = scope

    @property
    def scope(self) -> str:
        return self._scope

    @property
    def storage(self) -> Storage:
        return self._storage

    @property
    def vector_enabled(self) -> bool:
        return self._storage.vec_available

    async def _ready(self) -> Storage:
        if not self._storage.initialized:
            await self._storage.initialize()
        return self._storage

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    @_store_errors
    async def insert(self, record: MemoryRecord) -> MemoryRecord:
        """Insert *record* (and its vector) in one transaction."""
        if record.scope != self._scope:
            raise ValidationError(
                f"Record scope {record.scope!r} does not match partition {self._scope!r}",
                field="scope",
            )
        storage = await self._ready()
        params = record.to_params()

        def _do_insert(conn: sqlite3.Connection) -> None:
            cursor = conn.execute(
                f"""
                INSERT INTO memories ({_MEMORY_COLUMNS})
                VALUES (:id, :content, :kind, :scope, :tags, :embedding,
                        :importance, :confidence, :access_count, :status,
                        :source, :session_id, :metadata, :created_at,
                        :updated_at, :last_accessed_at)
                """,
                params,
            )
            if record.embedding and storage.vec_available:
                conn.execute(
                    "INSERT INTO memories_vec (memory_pk, embedding) VALUES (?, ?)",
                    (cursor.lastrowid, params["embedding"]),
                )

        await storage.execute_transaction(_do_insert)
        log.debug("Inserted memory %s into %s", record.id, self._scope)
        return record

    @_store_errors
    async def update(self, record: MemoryRecord, expected_status: str | None = None) -> MemoryRecord:
        """Persist every mutable field of *record*.

        The stored status is checked inside the write transaction.  A row
        that is already ``forgotten`` is never rewritten, and when
        *expected_status* is given the stored status must equal it.

        Raises
        ------
        LookupError
            (:class:`~engrams.errors.NotFoundError`) when the row is gone.
        RuntimeError
            (:class:`~engrams.errors.StaleRecordError`) when the stored
            status rules the write out.
        """
        storage = await self._ready()
        params = record.to_params()

        def _do_update(conn: sqlite3.Connection) -> bool:
            row = conn.execute(
                "SELECT pk, status FROM memories WHERE id = ?", (record.id,)
            ).fetchone()
            if row is None:
                return False
            stored = row["status"]
            if stored == "forgotten" or (expected_status is not None and stored != expected_status):
                raise StaleRecordError(record.id, expected_status, stored)
            conn.execute(
                """
                UPDATE memories SET
                    content = :content, kind = :kind, tags = :tags,
                    embedding = :embedding, importance = :importance,
                    confidence = :confidence, access_count = :access_count,
                    status = :status, source = :source,
                    session_id = :session_id, metadata = :metadata,
                    updated_at = :updated_at,
                    last_accessed_at = :last_accessed_at
                WHERE id = :id
                """,
                params,
            )
            if storage.vec_available:
                conn.execute("DELETE FROM memories_vec WHERE memory_pk = ?", (row["pk"],))
                if record.embedding:
                    conn.execute(
                        "INSERT INTO memories_vec (memory_pk, embedding) VALUES (?, ?)",
                        (row["pk"], params["embedding"]),
                    )
            return True

        if not await storage.execute_transaction(_do_update):
            raise NotFoundError(record.id, self._scope)
        return record

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    @_store_errors
    async def get(self, memory_id: str) -> MemoryRecord | None:
        storage = await self._ready()
        rows = await storage.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
        )
        return MemoryRecord.from_row(rows[0]) if rows else None

    @_store_errors
    async def get_many(self, memory_ids: Iterable[str]) -> dict[str, MemoryRecord]:
        """Batch fetch; ids not in this partition are simply absent."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        storage = await self._ready()
        placeholders = ",".join("?" * len(ids))
        rows = await storage.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id IN ({placeholders})",
            tuple(ids),
        )
        return {row["id"]: MemoryRecord.from_row(row) for row in rows}

    @_store_errors
    async def query(
        self,
        statuses: Iterable[str] | None = None,
        kind: str | None = None,
        created_before: datetime | None = None,
        created_after: datetime | None = None,
        order_by: str = "created_at",
        descending: bool = False,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        """Filtered, ordered listing of records in this partition."""
        if order_by not in _ORDERABLE:
            raise ValidationError(f"Cannot order by {order_by!r}", field="order_by")
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            statuses = list(statuses)
            if not statuses:
                return []
            clauses.append(f"status IN ({','.join('?' * len(statuses))})")
            params.extend(statuses)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(to_iso(created_before))
        if created_after is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(created_after))

        where = " AND ".join(clauses) if clauses else "1=1"
        direction = "DESC" if descending else "ASC"
        sql = (
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE {where} "
            f"ORDER BY {order_by} {direction}, id ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        storage = await self._ready()
        rows = await storage.execute(sql, tuple(params))
        return [MemoryRecord.from_row(row) for row in rows]

    @_store_errors
    async def find_by_metadata(self, key: str, value: Any) -> list[MemoryRecord]:
        """Records whose top-level ``metadata[key]`` equals *value*."""
        storage = await self._ready()
        rows = await storage.execute(
            f"SELECT {_MEMORY_COLUMNS} FROM memories "
            "WHERE json_extract(metadata, ?) = ? ORDER BY created_at ASC, id ASC",
            (f"$.{key}", value),
        )
        return [MemoryRecord.from_row(row) for row in rows]

    @_store_errors
    async def group_stats(
        self,
        grouping: str,
        statuses: Iterable[str] | None = None,
    ) -> dict[str, tuple[int, float]]:
        """Count and summed importance per group.

        Parameters
        ----------
        grouping:
            ``kind``, ``status``, ``month`` (of ``created_at``),
            ``importance_band`` (quartiles of ``[0, 1]``) or ``tag`` (a
            record counts once for each of its tags).
        statuses:
            Restrict to records with these statuses.

        Returns
        -------
        dict[str, tuple[int, float]]
            ``{group: (count, importance_sum)}``.
        """
        if grouping not in _GROUPINGS:
            raise ValidationError(f"Cannot group by {grouping!r}", field="grouping")
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            statuses = list(statuses)
            clauses.append(f"status IN ({','.join('?' * len(statuses))})")
            params.extend(statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        source = "memories, json_each(memories.tags)" if grouping == "tag" else "memories"
        expr = _GROUPINGS[grouping]

        storage = await self._ready()
        rows = await storage.execute(
            f"""
            SELECT {expr} AS grp, COUNT(*) AS cnt, SUM(importance) AS imp
            FROM {source} {where}
            GROUP BY grp
            """,
            tuple(params),
        )
        return {row["grp"]: (row["cnt"], float(row["imp"] or 0.0)) for row in rows}

    @_store_errors
    async def created_range(self) -> tuple[str | None, str | None]:
        """Earliest and latest ``created_at`` in the partition."""
        storage = await self._ready()
        rows = await storage.execute(
            "SELECT MIN(created_at) AS lo, MAX(created_at) AS hi FROM memories"
        )
        return (rows[0]["lo"], rows[0]["hi"]) if rows else (None, None)

    # ------------------------------------------------------------------
    # Relevance
    # ------------------------------------------------------------------

    @_store_errors
    async def text_search(
        self,
        query: str,
        limit: int = 20,
        statuses: Iterable[str] | None = None,
        kind: str | None = None,
        match_any: bool = False,
    ) -> dict[str, float]:
        """BM25 relevance of records matching *query*.

        Uses the ``memories_fts`` rank signal (``f.rank``, negative; more
        negative is more relevant), normalised to ``[0, 1]`` by the best
        score in this partition's result set.

        Returns
        -------
        dict[str, float]
            Mapping of memory id to normalised BM25 score.
        """
        fts_query = _sanitize_fts_query(query, match_any=match_any)
        if not fts_query:
            return {}

        clauses = ["memories_fts MATCH ?"]
        params: list[Any] = [fts_query]
        if statuses is not None:
            statuses = list(statuses)
            clauses.append(f"m.status IN ({','.join('?' * len(statuses))})")
            params.extend(statuses)
        if kind is not None:
            clauses.append("m.kind = ?")
            params.append(kind)
        params.append(limit)

        storage = await self._ready()
        rows = await storage.execute(
            f"""
            SELECT m.id AS memory_id, -f.rank AS raw_score
            FROM memories_fts f
            JOIN memories m ON m.pk = f.rowid
            WHERE {' AND '.join(clauses)}
            ORDER BY f.rank, m.id
            LIMIT ?
            """,
            tuple(params),
        )
        if not rows:
            return {}

        scores = {row["memory_id"]: float(row["raw_score"]) for row in rows}
        max_score = max(scores.values())
        if max_score > 0:
            return {mid: score / max_score for mid, score in scores.items()}
        return {mid: 0.0 for mid in scores}

    @_store_errors
    async def vector_search(
        self,
        embedding: list[float],
        limit: int = 20,
        statuses: Iterable[str] | None = None,
        kind: str | None = None,
    ) -> dict[str, float]:
        """Cosine similarity of the nearest records to *embedding*.

        Returns an empty mapping when sqlite-vec is unavailable.
        """
        if not self.vector_enabled or not embedding:
            return {}
        storage = await self._ready()
        # Over-fetch since status/kind filtering happens after the KNN.
        rows = await storage.execute(
            """
            WITH knn AS (
                SELECT memory_pk, distance
                FROM memories_vec
                WHERE embedding MATCH ? AND k = ?
            )
            SELECT m.id AS memory_id, m.status AS status, m.kind AS kind,
                   knn.distance AS distance
            FROM knn
            JOIN memories m ON m.pk = knn.memory_pk
            ORDER BY knn.distance, m.id
            """,
            (serialize_embedding(embedding), limit * 3),
        )
        allowed = set(statuses) if statuses is not None else None
        hits: dict[str, float] = {}
        for row in rows:
            if allowed is not None and row["status"] not in allowed:
                continue
            if kind is not None and row["kind"] != kind:
                continue
            hits[row["memory_id"]] = max(0.0, min(1.0, 1.0 - float(row["distance"])))
            if len(hits) >= limit:
                break
        return hits

    async def find_similar(
        self,
        record: MemoryRecord,
        threshold: float,
        statuses: Iterable[str] | None = None,
        limit: int = 20,
    ) -> list[tuple[MemoryRecord, float]]:
        """Records in this partition whose content is similar to *record*.

        Candidates come from an any-term text search plus, when both sides
        carry embeddings, a vector KNN.  Each candidate is then scored with
        :func:`~engrams.records.record_similarity`; only those at or above
        *threshold* are returned, most similar first.  *record* itself is
        excluded.
        """
        statuses = list(statuses) if statuses is not None else None
        candidates = set(
            await self.text_search(record.content, limit=limit, statuses=statuses, match_any=True)
        )
        if record.embedding:
            candidates.update(
                await self.vector_search(record.embedding, limit=limit, statuses=statuses)
            )
        candidates.discard(record.id)
        if not candidates:
            return []

        found = await self.get_many(candidates)
        scored = [
            (other, record_similarity(record, other))
            for other in found.values()
        ]
        scored = [(other, sim) for other, sim in scored if sim >= threshold]
        scored.sort(key=lambda pair: (-pair[1], pair[0].id))
        return scored

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    @_store_errors
    async def add_edge(
        self,
        source_id: str,
        target_id: str,
        relation: str,
        weight: float = 1.0,
        now: datetime | None = None,
    ) -> None:
        """Create (or refresh the weight of) a directed edge."""
        storage = await self._ready()
        await storage.execute_write(
            """
            INSERT INTO edges (source_id, target_id, relation, weight, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(source_id, target_id, relation)
            DO UPDATE SET weight = excluded.weight
            """,
            (source_id, target_id, relation, weight, to_iso(now or utcnow())),
        )

    @_store_errors
    async def edges(self, memory_id: str) -> list[dict[str, Any]]:
        """All edges touching *memory_id*, outgoing first."""
        storage = await self._ready()
        rows = await storage.execute(
            """
            SELECT source_id, target_id, relation, weight, created_at
            FROM edges
            WHERE source_id = ? OR target_id = ?
            ORDER BY (source_id = ?) DESC, created_at ASC, target_id ASC
            """,
            (memory_id, memory_id, memory_id),
        )
        return [dict(row) for row in rows]

    async def neighbors(self, memory_id: str, depth: int = 1) -> dict[str, int]:
        """Breadth-first traversal of edges in either direction.

        Returns
        -------
        dict[str, int]
            Mapping of reachable memory id to hop distance, excluding the
            start node.
        """
        seen: dict[str, int] = {memory_id: 0}
        frontier: deque[str] = deque([memory_id])
        while frontier:
            current = frontier.popleft()
            hops = seen[current]
            if hops >= depth:
                continue
            for edge in await self.edges(current):
                other = edge["target_id"] if edge["source_id"] == current else edge["source_id"]
                if other not in seen:
                    seen[other] = hops + 1
                    frontier.append(other)
        seen.pop(memory_id)
        return seen

    @_store_errors
    async def redirect_edges(self, old_id: str, new_id: str) -> None:
        """Point every edge of *old_id* at *new_id*, dropping self-loops."""
        storage = await self._ready()

        def _do_redirect(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE OR IGNORE edges SET source_id = ? WHERE source_id = ?",
                (new_id, old_id),
            )
            conn.execute(
                "UPDATE OR IGNORE edges SET target_id = ? WHERE target_id = ?",
                (new_id, old_id),
            )
            conn.execute(
                "DELETE FROM edges WHERE source_id = ? OR target_id = ? OR source_id = target_id",
                (old_id, old_id),
            )

        await storage.execute_transaction(_do_redirect)
