"""Lifecycle state machine for memory records.

Legal edges::

    created      -> active | archived (early exit)
    active       -> consolidated | archived
    consolidated -> archived | active
    archived     -> forgotten | active
    forgotten    (terminal)

Transitions are driven by thresholds on the record's current strength (see
:mod:`engrams.scoring`) and access count.  :meth:`LifecycleManager.evaluate`
is a pure decision function; :meth:`LifecycleManager.transition` is the only
code path that changes a persisted status, and it refuses anything outside
:data:`LEGAL_TRANSITIONS` and records every change in the audit trail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

from engrams.config import LifecycleConfig, get_config
from engrams.errors import ValidationError
from engrams.journal import Journal
from engrams.records import MemoryRecord, hours_between, utcnow
from engrams.scoring import compute_strength
from engrams.store import RecordStore

log = logging.getLogger(__name__)

LEGAL_TRANSITIONS: dict[str, frozenset[str]] = {
    "created": frozenset({"active", "archived"}),
    "active": frozenset({"consolidated", "archived"}),
    "consolidated": frozenset({"archived", "active"}),
    "archived": frozenset({"active", "forgotten"}),
    "forgotten": frozenset(),
}

# Longest possible automatic chain is created -> active -> archived -> forgotten.
_MAX_CHAIN = 3


def is_legal(old_status: str, new_status: str) -> bool:
    return new_status in LEGAL_TRANSITIONS.get(old_status, frozenset())


@dataclass
class Evaluation:
    """Outcome of :meth:`LifecycleManager.evaluate`.

    Attributes
    ----------
    target:
        Status the record should move to now, or ``None``.
    reason:
        Short label for the audit trail.
    enqueue_merge:
        The record is weak but has been used; it should be merged into a
        summary by the consolidation scheduler rather than archived.
    strength:
        Strength the decision was based on.
    """

    target: str | None
    reason: str
    enqueue_merge: bool = False
    strength: float = 0.0


@dataclass
class TickReport:
    scope: str
    evaluated: int = 0
    transitions: list[dict[str, str]] = field(default_factory=list)
    queued: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class LifecycleManager:
    """Applies the lifecycle rules to records of every scope.

    Parameters
    ----------
    stores:
        Record store per scope name.
    journal:
        System journal for the audit trail, the consolidation queue and the
        tuned half-lives.
    config:
        Thresholds; defaults to ``get_config().lifecycle``.
    """

    def __init__(
        self,
        stores: Mapping[str, RecordStore],
        journal: Journal,
        config: LifecycleConfig | None = None,
    ) -> None:
        self._stores = stores
        self._journal = journal
        self._cfg = config or get_config().lifecycle

    @property
    def tombstone(self) -> str:
        return self._cfg.tombstone_marker

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def evaluate(
        self,
        record: MemoryRecord,
        half_lives: Mapping[str, float],
        now: datetime | None = None,
    ) -> Evaluation:
        """Decide what, if anything, should happen to *record* at *now*."""
        now = now or utcnow()
        cfg = self._cfg
        status = record.status
        if status == "forgotten":
            return Evaluation(None, "terminal")

        strength = compute_strength(record, half_lives, now)

        if status == "created":
            age = hours_between(record.created_at, now)
            if record.importance < cfg.early_archive_importance and age < cfg.early_archive_window_hours:
                return Evaluation("archived", "early-archive", strength=strength)
            if record.access_count > 0:
                return Evaluation("active", "first-access", strength=strength)
            if age >= cfg.grace_period_hours:
                return Evaluation("active", "grace-period", strength=strength)
            return Evaluation(None, "new", strength=strength)

        if status == "active":
            if strength < cfg.archive_strength and record.access_count < cfg.consolidate_min_access:
                return Evaluation("archived", "decayed", strength=strength)
            if strength < cfg.consolidate_strength and record.access_count >= cfg.consolidate_min_access:
                return Evaluation(None, "needs-merge", enqueue_merge=True, strength=strength)
            return Evaluation(None, "healthy", strength=strength)

        if status == "archived" and strength < cfg.forget_strength:
            return Evaluation("forgotten", "faded", strength=strength)

        return Evaluation(None, "stable", strength=strength)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def transition(
        self,
        record: MemoryRecord,
        new_status: str,
        reason: str,
        now: datetime | None = None,
        persist: bool = True,
    ) -> MemoryRecord:
        """Move *record* to *new_status*.

        Forgetting tombstones the record: the content becomes the marker and
        the embedding is dropped, while id, tags and metadata are kept.
        The persisted write only lands if the stored status still equals
        the status *record* was read with.

        Raises
        ------
        ValidationError
            If the edge is not in :data:`LEGAL_TRANSITIONS`.
        StaleRecordError
            If the stored record has moved to another status meanwhile.
        """
        old_status = record.status
        if not is_legal(old_status, new_status):
            raise ValidationError(
                f"Illegal lifecycle transition {old_status} -> {new_status} "
                f"for memory {record.id}",
                field="status",
            )
        now = now or utcnow()
        record.status = new_status
        record.updated_at = now
        if new_status == "forgotten":
            record.content = self._cfg.tombstone_marker
            record.embedding = None
            record.metadata["forget_reason"] = reason

        if persist:
            await self._stores[record.scope].update(record, expected_status=old_status)
            await self._journal.record_transition(
                record.id, record.scope, old_status, new_status, reason, now
            )
        log.debug("Memory %s: %s -> %s (%s)", record.id, old_status, new_status, reason)
        return record

    async def on_access(
        self,
        record: MemoryRecord,
        half_lives: Mapping[str, float],
        now: datetime | None = None,
    ) -> MemoryRecord:
        """Lifecycle reaction to a retrieval of *record*.

        ``created`` records become ``active``.  ``archived`` and
        ``consolidated`` records return to ``active`` when their strength
        (already reinforced by the caller) exceeds the reactivation
        threshold.  The access history is kept as is.
        """
        now = now or utcnow()
        if record.status == "created":
            return await self.transition(record, "active", "first-access", now)
        if record.status in ("archived", "consolidated"):
            strength = compute_strength(record, half_lives, now)
            if strength > self._cfg.reactivate_strength:
                return await self.transition(record, "active", "revived", now)
        return record

    async def forget(
        self,
        record: MemoryRecord,
        reason: str = "explicit",
        now: datetime | None = None,
    ) -> MemoryRecord:
        """Tombstone *record*, passing through ``archived`` when needed."""
        now = now or utcnow()
        if record.status == "forgotten":
            return record
        if record.status != "archived":
            await self.transition(record, "archived", f"forget:{reason}", now)
        return await self.transition(record, "forgotten", reason, now)

    async def tick(
        self,
        scope: str,
        now: datetime | None = None,
        dry_run: bool = False,
        half_lives: Mapping[str, float] | None = None,
        records: list[MemoryRecord] | None = None,
    ) -> TickReport:
        """Evaluate every non-forgotten record of *scope* and apply the rules.

        Transitions chain within one tick, so a record that has been idle
        long enough can go ``created -> active -> archived -> forgotten`` in
        a single call.  Per-record failures are collected in the report.

        Parameters
        ----------
        records:
            Pre-loaded snapshot to evaluate instead of reading the store.
            Records are updated in place so a caller can keep using the
            snapshot (the consolidation scheduler relies on this in dry-run
            mode).
        """
        now = now or utcnow()
        report = TickReport(scope=scope)
        if half_lives is None:
            half_lives = await self._journal.half_lives()
        if records is None:
            records = await self._stores[scope].query(
                statuses=("created", "active", "consolidated", "archived")
            )

        for record in records:
            if record.status == "forgotten":
                continue
            report.evaluated += 1
            try:
                for _ in range(_MAX_CHAIN):
                    decision = self.evaluate(record, half_lives, now)
                    if decision.enqueue_merge:
                        queued = True
                        if not dry_run:
                            queued = await self._journal.enqueue(
                                record.id, scope, "merge", 1.0 - decision.strength, now
                            )
                        if queued:
                            report.queued.append(record.id)
                    if decision.target is None:
                        break
                    old = record.status
                    await self.transition(
                        record, decision.target, decision.reason, now, persist=not dry_run
                    )
                    report.transitions.append(
                        {"id": record.id, "from": old, "to": decision.target, "reason": decision.reason}
                    )
            except Exception as exc:
                log.warning("Lifecycle tick failed for %s in %s: %s", record.id, scope, exc)
                report.errors.append(f"{record.id}: {exc}")

        if report.transitions:
            log.info(
                "Lifecycle tick on %s: %d evaluated, %d transitions, %d queued",
                scope,
                report.evaluated,
                len(report.transitions),
                len(report.queued),
            )
        return report
