"""Cross-scope retrieval with a blended ranking.

Recall works in four steps:

1. **Candidates** -- per scope, BM25 hits from the FTS5 index (any query term
   may match) and, for the ``hybrid`` strategy with an embedding provider,
   vector KNN hits.
2. **Blend** -- every candidate gets
   ``bm25 * w1 + vector * w2 + strength * w3`` (``0.3/0.3/0.4`` with a query
   embedding, ``0.6/0/0.4`` without) multiplied by the tuned weight of its
   scope.
3. **Rank** -- descending score, ties broken by ascending record id.
4. **Side effects** -- a retrieval log entry is appended and every returned
   record is reinforced and passed to the lifecycle access hook.  Both are
   best-effort: failures are logged and never reach the caller.

Without an explicit scope every scope is searched concurrently; a scope that
fails contributes nothing and is reported in ``failed_scopes``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

import anyio

from engrams.config import EngramsConfig, get_config
from engrams.embeddings import EmbeddingProvider
from engrams.errors import StaleRecordError, ValidationError
from engrams.journal import Journal
from engrams.lifecycle import LifecycleManager
from engrams.records import (
    RECALLABLE_STATUSES,
    SCOPES,
    MemoryRecord,
    utcnow,
    validate_kind,
    validate_limit,
    validate_scope,
)
from engrams.scoring import compute_strength, strengthen_on_access
from engrams.store import RecordStore

log = logging.getLogger(__name__)

STRATEGIES: tuple[str, ...] = ("textonly", "hybrid")


@dataclass
class ScoredRecord:
    record: MemoryRecord
    score: float
    bm25: float = 0.0
    vector: float = 0.0
    strength: float = 0.0
    scope_weight: float = 1.0


@dataclass
class RecallResult:
    """Output of :meth:`RetrievalCoordinator.recall`.

    Attributes
    ----------
    records:
        Ranked records, best first.
    scores:
        Final blended score per record id.
    log_id:
        Id of the retrieval log entry, or ``None`` if logging failed.
        Pass it to ``Engine.feedback`` to mark the recall useful or not.
    strategy:
        The strategy actually used (``hybrid`` degrades to ``textonly``
        when no query embedding is available).
    scopes_queried:
        Scopes that were searched.
    failed_scopes:
        Scopes whose search failed during fan-out.
    breakdown:
        Per record id, the components of its score.
    """

    records: list[MemoryRecord] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)
    log_id: int | None = None
    strategy: str = "textonly"
    scopes_queried: list[str] = field(default_factory=list)
    failed_scopes: list[str] = field(default_factory=list)
    breakdown: dict[str, dict[str, float]] = field(default_factory=dict)

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.records]

    def to_dict(self) -> dict[str, Any]:
        return {
            "memories": [
                {**r.to_dict(), "score": round(self.scores[r.id], 4)} for r in self.records
            ],
            "log_id": self.log_id,
            "strategy": self.strategy,
            "scopes_queried": list(self.scopes_queried),
            "failed_scopes": list(self.failed_scopes),
        }


class RetrievalCoordinator:
    """Runs recall across scope partitions.

    Parameters
    ----------
    stores:
        Record store per scope name.
    journal:
        Retrieval log and tuned parameters.
    lifecycle:
        Access hook for returned records.
    embeddings:
        Optional provider; without one recall is text-only.
    config:
        Defaults to :func:`~engrams.config.get_config`.
    """

    def __init__(
        self,
        stores: Mapping[str, RecordStore],
        journal: Journal,
        lifecycle: LifecycleManager,
        embeddings: EmbeddingProvider | None = None,
        config: EngramsConfig | None = None,
    ) -> None:
        self._stores = stores
        self._journal = journal
        self._lifecycle = lifecycle
        self._embeddings = embeddings
        self._cfg = config or get_config()

    async def recall(
        self,
        query: str,
        scope: str | None = None,
        kind: str | None = None,
        limit: int | None = None,
        strategy: str | None = None,
        include_archived: bool = False,
        now: datetime | None = None,
    ) -> RecallResult:
        """Find the records most relevant to *query*.

        Parameters
        ----------
        query:
            Natural language query text.
        scope:
            Search only this scope; ``None`` searches all scopes.
        kind:
            Only return records of this kind.
        limit:
            Maximum number of records; defaults to the configured limit.
        strategy:
            ``"textonly"`` or ``"hybrid"``; defaults to the tuned default.
            That default starts as ``textonly`` even when an embedding
            provider is configured, and moves to ``hybrid`` only once
            feedback shows it works better (see ``Engine.evolve``).
        include_archived:
            Also consider archived records (which the lifecycle revives when
            they are returned with enough strength).
        now:
            Evaluation time for strength; defaults to the current time.

        Raises
        ------
        ValidationError
            On an empty query or an unknown scope, kind, strategy or limit.
        StoreUnavailable
            When a single requested scope cannot be searched.
        """
        rcfg = self._cfg.retrieval
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must not be empty", field="query")
        if scope is not None:
            validate_scope(scope)
        if kind is not None:
            validate_kind(kind)
        limit = rcfg.default_limit if limit is None else limit
        validate_limit(limit, rcfg.max_limit)
        if strategy is not None and strategy not in STRATEGIES:
            raise ValidationError(
                f"Invalid strategy {strategy!r}. Must be one of: {', '.join(STRATEGIES)}",
                field="strategy",
            )

        now = now or utcnow()
        state = await self._tuning()
        strategy = strategy or str(state["retrieval_strategy"]["default_strategy"])
        if strategy not in STRATEGIES:
            strategy = rcfg.default_strategy
        scope_weights = {k: float(v) for k, v in state["scope_weights"].items()}
        half_lives = {k: float(v) for k, v in state["decay_half_lives"].items()}

        query_vec = None
        if strategy == "hybrid":
            query_vec = await self._embed_query(query)
        if query_vec is None:
            strategy = "textonly"
            weights = (rcfg.text_bm25, 0.0, rcfg.text_strength)
        else:
            weights = (rcfg.hybrid_bm25, rcfg.hybrid_vector, rcfg.hybrid_strength)

        statuses = RECALLABLE_STATUSES + (("archived",) if include_archived else ())
        scopes = [scope] if scope is not None else [s for s in SCOPES if s in self._stores]
        per_scope: dict[str, list[ScoredRecord]] = {}
        failed: list[str] = []

        async def _run(target: str) -> None:
            per_scope[target] = await self._search_scope(
                target, query, query_vec, kind, limit, statuses,
                weights, scope_weights.get(target, 1.0), half_lives, now,
            )

        if scope is not None:
            await _run(scope)
        else:
            async def _isolated(target: str) -> None:
                try:
                    await _run(target)
                except Exception as exc:
                    log.warning("Recall in scope %s failed: %s", target, exc)
                    failed.append(target)

            async with anyio.create_task_group() as tg:
                for target in scopes:
                    tg.start_soon(_isolated, target)

        ranked = sorted(
            (hit for target in scopes for hit in per_scope.get(target, [])),
            key=lambda hit: (-hit.score, hit.record.id),
        )[:limit]

        result = RecallResult(
            records=[hit.record for hit in ranked],
            scores={hit.record.id: hit.score for hit in ranked},
            strategy=strategy,
            scopes_queried=scopes,
            failed_scopes=sorted(failed, key=SCOPES.index),
            breakdown={
                hit.record.id: {
                    "bm25": hit.bm25,
                    "vector": hit.vector,
                    "strength": hit.strength,
                    "scope_weight": hit.scope_weight,
                }
                for hit in ranked
            },
        )
        result.log_id = await self._log(query, strategy, result.ids, scope, now)
        stale = await self._reinforce(result.records, half_lives, now)
        if stale:
            result.records = [r for r in result.records if r.id not in stale]
        log.debug(
            "Recall %r (%s) over %s returned %d records",
            query[:80],
            strategy,
            ",".join(scopes),
            len(result.records),
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _search_scope(
        self,
        scope: str,
        query: str,
        query_vec: list[float] | None,
        kind: str | None,
        limit: int,
        statuses: tuple[str, ...],
        weights: tuple[float, float, float],
        scope_weight: float,
        half_lives: Mapping[str, float],
        now: datetime,
    ) -> list[ScoredRecord]:
        store = self._stores[scope]
        fetch = limit * self._cfg.retrieval.candidate_multiplier
        bm25 = await store.text_search(
            query, limit=fetch, statuses=statuses, kind=kind, match_any=True
        )
        vector: dict[str, float] = {}
        if query_vec is not None:
            vector = await store.vector_search(query_vec, limit=fetch, statuses=statuses, kind=kind)

        records = await store.get_many([*bm25, *vector])
        w_bm25, w_vec, w_strength = weights
        hits: list[ScoredRecord] = []
        for memory_id, record in records.items():
            strength = compute_strength(record, half_lives, now)
            b = bm25.get(memory_id, 0.0)
            v = vector.get(memory_id, 0.0)
            blended = b * w_bm25 + v * w_vec + strength * w_strength
            hits.append(
                ScoredRecord(record, blended * scope_weight, b, v, strength, scope_weight)
            )
        return hits

    async def _tuning(self) -> dict[str, dict[str, Any]]:
        try:
            return await self._journal.tuning_state()
        except Exception as exc:
            log.warning("Tuning state unavailable, using defaults: %s", exc)
            return self._cfg.tuning_defaults()

    async def _embed_query(self, query: str) -> list[float] | None:
        if self._embeddings is None:
            return None
        try:
            return await self._embeddings.embed(query)
        except Exception as exc:
            log.warning("Query embedding failed, falling back to text-only: %s", exc)
            return None

    async def _log(
        self,
        query: str,
        strategy: str,
        ids: list[str],
        scope: str | None,
        now: datetime,
    ) -> int | None:
        try:
            return await self._journal.log_retrieval(query, strategy, ids, scope, now=now)
        except Exception as exc:
            log.warning("Failed to log retrieval: %s", exc)
            return None

    async def _reinforce(
        self,
        records: list[MemoryRecord],
        half_lives: Mapping[str, float],
        now: datetime,
    ) -> set[str]:
        """Reinforce the returned records; return the ids that went stale.

        A record whose stored status changed after the search (forgotten or
        archived by another caller) is left untouched.
        """
        stale: set[str] = set()
        for record in records:
            try:
                strengthen_on_access(record, now)
                await self._stores[record.scope].update(record, expected_status=record.status)
                await self._lifecycle.on_access(record, half_lives, now)
            except StaleRecordError as exc:
                log.debug("Skipping reinforcement of %s: %s", record.id, exc)
                stale.add(record.id)
            except Exception as exc:
                log.warning("Failed to reinforce memory %s: %s", record.id, exc)
        return stale
