"""Caller-facing orchestrator for the engrams engine.

The :class:`Engine` opens one SQLite partition per scope plus the system
database, wires the components together and exposes every operation a
caller (an MCP server, a CLI, a hook script) needs.  All public methods
return plain dicts so their output can be JSON-serialised as is.

Usage::

    from engrams.engine import Engine

    async with Engine() as engine:
        stored = await engine.store("Redis SCAN is O(N)", kind="semantic", scope="project")
        hits = await engine.recall("how does redis scan work")
        await engine.feedback(hits["log_id"], was_useful=True)
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from engrams.config import EngramsConfig, get_config
from engrams.consolidation import ConsolidationScheduler
from engrams.embeddings import EmbeddingProvider, OllamaEmbeddingProvider
from engrams.errors import NotFoundError, StaleRecordError, StoreUnavailable, ValidationError
from engrams.evolution import EvolutionController
from engrams.fusion import DEFAULT_K
from engrams.inspection import Inspector
from engrams.journal import Journal
from engrams.lifecycle import LifecycleManager
from engrams.promotion import PromotionPipeline
from engrams.records import (
    SCOPES,
    MemoryRecord,
    utcnow,
    validate_content,
    validate_kind,
    validate_kind_scope,
    validate_scope,
    validate_unit,
)
from engrams.retrieval import RetrievalCoordinator
from engrams.scoring import apply_user_feedback, compute_importance
from engrams.storage import PARTITION_SCHEMA, SYSTEM_SCHEMA, Storage
from engrams.store import RecordStore

log = logging.getLogger(__name__)

_MAX_DEPTH = 5


class Engine:
    """The central orchestrator.  One engine per process.

    Components are created by :meth:`initialize` and released by
    :meth:`shutdown`.  Between those calls the engine is safe to share
    between concurrent callers.

    Parameters
    ----------
    data_dir:
        Directory holding ``session.db``, ``project.db``, ``user.db`` and
        ``system.db``; defaults to the configured ``data_dir``.
    embeddings:
        Embedding provider.  When omitted, an
        :class:`~engrams.embeddings.OllamaEmbeddingProvider` is created if
        embeddings are enabled in the configuration.
    config:
        Defaults to :func:`~engrams.config.get_config`.
    """

    def __init__(
        self,
        data_dir: Path | None = None,
        embeddings: EmbeddingProvider | None = None,
        config: EngramsConfig | None = None,
    ) -> None:
        self._config = config or get_config()
        self._data_dir = Path(data_dir) if data_dir is not None else self._config.data_dir
        self._embeddings = embeddings
        self._storages: dict[str, Storage] = {}
        self._stores: dict[str, RecordStore] = {}
        self._system: Storage | None = None
        self._journal: Journal | None = None
        self._lifecycle: LifecycleManager | None = None
        self._promotion: PromotionPipeline | None = None
        self._retrieval: RetrievalCoordinator | None = None
        self._consolidation: ConsolidationScheduler | None = None
        self._evolution: EvolutionController | None = None
        self._inspector: Inspector | None = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the databases and build the components.  Idempotent.

        A scope partition that cannot be opened is logged and left to be
        retried on first use; the system database must open.
        """
        if self._initialized:
            return
        cfg = self._config
        dims = self._embeddings.dims if self._embeddings is not None else cfg.embedding.dims

        self._system = Storage(self._data_dir / "system.db", SYSTEM_SCHEMA)
        self._journal = Journal(self._system, cfg)
        await self._journal.initialize()

        for scope in SCOPES:
            storage = Storage(self._data_dir / f"{scope}.db", PARTITION_SCHEMA, dims)
            self._storages[scope] = storage
            self._stores[scope] = RecordStore(storage, scope)
            try:
                await storage.initialize()
            except Exception as exc:
                log.warning("Partition %s unavailable at startup: %s", scope, exc)

        if self._embeddings is None and cfg.embedding.enabled:
            self._embeddings = OllamaEmbeddingProvider(cfg.embedding)

        self._lifecycle = LifecycleManager(self._stores, self._journal, cfg.lifecycle)
        self._promotion = PromotionPipeline(
            self._stores, self._journal, self._lifecycle, cfg.promotion
        )
        self._retrieval = RetrievalCoordinator(
            self._stores, self._journal, self._lifecycle, self._embeddings, cfg
        )
        self._consolidation = ConsolidationScheduler(
            self._stores, self._journal, self._lifecycle, self._promotion, cfg.consolidation
        )
        self._evolution = EvolutionController(self._journal, self._stores, cfg.evolution)
        self._inspector = Inspector(self._stores)

        self._initialized = True
        log.info("Engine initialized. Data dir: %s", self._data_dir)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Engine not initialized. Call await engine.initialize() first.")

    async def shutdown(self) -> None:
        """Close every database.  Safe to call more than once."""
        for storage in self._storages.values():
            await storage.close()
        if self._system is not None:
            await self._system.close()
        self._initialized = False
        log.info("Engine shut down")

    async def __aenter__(self) -> Engine:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Record operations
    # ------------------------------------------------------------------

    async def store(
        self,
        content: str,
        kind: str,
        scope: str,
        tags: Sequence[str] | None = None,
        importance: float | None = None,
        metadata: Mapping[str, Any] | None = None,
        confidence: float = 1.0,
        source: str | None = None,
        session_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Store a new record.

        Parameters
        ----------
        content:
            The knowledge payload.
        kind:
            ``episodic``, ``semantic``, ``procedural`` or ``working``.
        scope:
            ``session``, ``project`` or ``user``.  ``working`` records must
            be stored in ``session``.
        tags:
            Optional tags.
        importance:
            Explicit importance in ``[0, 1]``.  When omitted it is computed
            from the composite formula.
        metadata:
            Free-form JSON object.
        confidence:
            Belief strength in ``[0, 1]``.

        Returns
        -------
        dict
            Keys: ``id``, ``memory``, ``embedded``.

        Raises
        ------
        ValidationError
            On invalid content, kind, scope, kind/scope combination or
            out-of-range numbers.
        StoreUnavailable
            If the scope partition cannot be written.
        """
        self._ensure_initialized()
        validate_content(content)
        validate_kind(kind)
        validate_scope(scope)
        validate_kind_scope(kind, scope)
        validate_unit(confidence, "confidence")
        if importance is not None:
            validate_unit(importance, "importance")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be a JSON object", field="metadata")

        now = now or utcnow()
        record = MemoryRecord.new(
            content,
            kind,
            scope,
            now=now,
            tags=list(tags or []),
            confidence=confidence,
            source=source,
            session_id=session_id,
            metadata=dict(metadata or {}),
        )
        record.importance = (
            importance if importance is not None else compute_importance(record, now=now)
        )

        if self._embeddings is not None:
            try:
                record.embedding = await self._embeddings.embed(content)
            except Exception as exc:
                log.warning("Embedding failed for new memory, storing without: %s", exc)

        await self._stores[scope].insert(record)
        log.info("Stored %s memory %s in %s", kind, record.id, scope)
        return {
            "id": record.id,
            "memory": record.to_dict(),
            "embedded": record.embedding is not None,
        }

    async def recall(
        self,
        query: str,
        scope: str | None = None,
        kind: str | None = None,
        limit: int | None = None,
        strategy: str | None = None,
        include_archived: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Ranked records for *query*.  See :meth:`RetrievalCoordinator.recall`.

        Returns
        -------
        dict
            Keys: ``memories`` (each with a ``score``), ``log_id``,
            ``strategy``, ``scopes_queried``, ``failed_scopes``.
        """
        self._ensure_initialized()
        assert self._retrieval is not None
        result = await self._retrieval.recall(
            query,
            scope=scope,
            kind=kind,
            limit=limit,
            strategy=strategy,
            include_archived=include_archived,
            now=now,
        )
        return result.to_dict()

    async def forget(
        self,
        memory_id: str,
        reason: str = "explicit",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Tombstone a record.  The row and its id are kept."""
        self._ensure_initialized()
        assert self._lifecycle is not None
        record = await self._locate(memory_id)
        previous = record.status
        try:
            await self._lifecycle.forget(record, reason, now)
        except StaleRecordError:
            # Moved by another caller since it was read; retry on the stored copy.
            record = await self._locate(memory_id)
            await self._lifecycle.forget(record, reason, now)
        log.info("Forgot memory %s (%s)", memory_id, reason)
        return {
            "id": record.id,
            "scope": record.scope,
            "previous_status": previous,
            "status": record.status,
        }

    async def promote(
        self,
        memory_id: str,
        target_scope: str,
        force: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Promote a record to a broader scope.

        Returns
        -------
        dict
            Keys: ``action`` (``created``, ``merged`` or ``skipped``),
            ``source_id``, ``target_scope``, ``target_id``, ``reasons``.
        """
        self._ensure_initialized()
        assert self._promotion is not None
        validate_scope(target_scope)
        record = await self._locate(memory_id)
        result = await self._promotion.promote(record, target_scope, force=force, now=now)
        return result.to_dict()

    async def link(
        self,
        source_id: str,
        target_id: str,
        relation: str,
        weight: float = 1.0,
    ) -> dict[str, Any]:
        """Create a directed edge between two records.

        The edge lives in the partition of the source record; the target
        may belong to any scope.
        """
        self._ensure_initialized()
        if not isinstance(relation, str) or not relation.strip():
            raise ValidationError("relation must be a non-empty string", field="relation")
        validate_unit(weight, "weight")
        source = await self._locate(source_id)
        await self._locate(target_id)
        await self._stores[source.scope].add_edge(source_id, target_id, relation.strip(), weight)
        return {
            "source_id": source_id,
            "target_id": target_id,
            "relation": relation.strip(),
            "weight": weight,
        }

    async def related(self, memory_id: str, depth: int = 1) -> dict[str, Any]:
        """Records reachable from *memory_id* within *depth* hops."""
        self._ensure_initialized()
        if not isinstance(depth, int) or not 1 <= depth <= _MAX_DEPTH:
            raise ValidationError(f"depth must be between 1 and {_MAX_DEPTH}", field="depth")
        record = await self._locate(memory_id)
        hops = await self._stores[record.scope].neighbors(memory_id, depth)
        found = await self._get_many(hops)
        related = [
            {**found[mid].to_dict(), "hops": distance}
            for mid, distance in sorted(hops.items(), key=lambda kv: (kv[1], kv[0]))
            if mid in found
        ]
        return {
            "id": memory_id,
            "edges": await self._stores[record.scope].edges(memory_id),
            "related": related,
        }

    # ------------------------------------------------------------------
    # Maintenance and inspection
    # ------------------------------------------------------------------

    async def consolidate(
        self,
        scope: str | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Run a consolidation cycle.  See :class:`ConsolidationScheduler`."""
        self._ensure_initialized()
        assert self._consolidation is not None
        report = await self._consolidation.run(scope=scope, dry_run=dry_run, now=now)
        return report.to_dict()

    async def peek(
        self,
        scope: str | None = None,
        sample_n: int = 5,
        focus: str | None = None,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._inspector is not None
        return await self._inspector.peek(scope=scope, sample_n=sample_n, focus=focus)

    async def partition(
        self,
        partition_by: str,
        scope: str | None = None,
        max_partitions: int = 4,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._inspector is not None
        return await self._inspector.partition(
            partition_by, scope=scope, max_partitions=max_partitions
        )

    async def aggregate(
        self,
        result_sets: Mapping[str, Sequence[Any]] | Sequence[Sequence[Any]],
        limit: int = 10,
        k: int = DEFAULT_K,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._inspector is not None
        return self._inspector.aggregate(result_sets, limit=limit, k=k)

    async def evolve(
        self,
        dry_run: bool = True,
        lookback_days: float | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Tune parameters from retrieval feedback.  Dry run by default."""
        self._ensure_initialized()
        assert self._evolution is not None
        result = await self._evolution.evolve(
            dry_run=dry_run, lookback_days=lookback_days, now=now
        )
        return result.to_dict()

    async def feedback(self, log_id: int, was_useful: bool) -> dict[str, Any]:
        """Mark a recall useful or not and nudge the returned records.

        Raises
        ------
        NotFoundError
            If *log_id* is not a retrieval log entry.
        """
        self._ensure_initialized()
        assert self._journal is not None
        if not isinstance(was_useful, bool):
            raise ValidationError("was_useful must be a boolean", field="was_useful")
        entry = await self._journal.set_feedback(log_id, was_useful)
        if entry is None:
            raise NotFoundError(str(log_id), what="Retrieval log entry")

        updated = 0
        found = await self._get_many(entry.result_ids)
        for record in found.values():
            if record.status == "forgotten":
                continue
            try:
                apply_user_feedback(record, was_useful)
                await self._stores[record.scope].update(record, expected_status=record.status)
                updated += 1
            except StaleRecordError as exc:
                log.debug("Skipping feedback for %s: %s", record.id, exc)
            except Exception as exc:
                log.warning("Failed to apply feedback to %s: %s", record.id, exc)
        return {"log_id": log_id, "was_useful": was_useful, "memories_updated": updated}

    async def status(self) -> dict[str, Any]:
        """Health and size of every partition.

        Returns
        -------
        dict
            Keys: ``scopes`` (per scope: ``available``, ``status_counts``,
            ``edges``, ``db_size_mb``, ``vector_search``), ``system`` (table
            counts), ``tuning`` (current tuning state), ``embeddings``.
        """
        self._ensure_initialized()
        assert self._journal is not None
        assert self._system is not None
        scopes: dict[str, Any] = {}
        for scope, store in self._stores.items():
            try:
                counts = await store.group_stats("status")
                tables = await store.storage.table_counts()
                scopes[scope] = {
                    "available": True,
                    "status_counts": {k: c for k, (c, _) in counts.items()},
                    "edges": tables.get("edges", 0),
                    "db_size_mb": await store.storage.get_db_size_mb(),
                    "vector_search": store.vector_enabled,
                }
            except Exception as exc:
                log.warning("Status of scope %s unavailable: %s", scope, exc)
                scopes[scope] = {"available": False, "error": str(exc)}

        embeddings: dict[str, Any] = {"enabled": self._embeddings is not None}
        health_check = getattr(self._embeddings, "health_check", None)
        if health_check is not None:
            embeddings["healthy"] = await health_check()

        return {
            "data_dir": str(self._data_dir),
            "scopes": scopes,
            "system": await self._system.table_counts(),
            "tuning": await self._journal.tuning_state(),
            "embeddings": embeddings,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _locate(self, memory_id: str) -> MemoryRecord:
        """Find *memory_id* in whichever partition holds it."""
        if not isinstance(memory_id, str) or not memory_id:
            raise ValidationError("memory id must be a non-empty string", field="id")
        unavailable: StoreUnavailable | None = None
        for scope in SCOPES:
            try:
                record = await self._stores[scope].get(memory_id)
            except StoreUnavailable as exc:
                unavailable = unavailable or exc
                continue
            if record is not None:
                return record
        if unavailable is not None:
            raise unavailable
        raise NotFoundError(memory_id)

    async def _get_many(self, memory_ids: Any) -> dict[str, MemoryRecord]:
        ids = list(memory_ids)
        found: dict[str, MemoryRecord] = {}
        for scope in SCOPES:
            if not ids:
                break
            try:
                hits = await self._stores[scope].get_many(ids)
            except StoreUnavailable as exc:
                log.warning("Skipping scope %s while resolving ids: %s", scope, exc)
                continue
            found.update(hits)
            ids = [i for i in ids if i not in hits]
        return found
