"""Promotion of memory records to broader scopes.

Knowledge that proves its worth in a session is copied up to the project;
knowledge that shows up across several projects is copied up to the user
scope.  A promotion never produces two copies of the same knowledge in the
target scope: the target partition is searched first for an earlier copy of
the same source record and then for a near-duplicate, and either is merged
into instead of inserting a new record.

After a successful promotion the source record is marked with
``metadata["promoted_to"]`` and archived.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from engrams.config import PromotionConfig, get_config
from engrams.errors import ValidationError
from engrams.journal import Journal
from engrams.lifecycle import LifecycleManager, is_legal
from engrams.records import (
    RECALLABLE_STATUSES,
    SCOPE_RANK,
    MemoryRecord,
    normalize_tags,
    to_iso,
    utcnow,
    validate_scope,
)
from engrams.store import RecordStore

log = logging.getLogger(__name__)

PROMOTABLE_TO_USER: tuple[str, ...] = ("semantic", "procedural")


@dataclass
class Eligibility:
    eligible: bool
    reasons: list[str] = field(default_factory=list)


@dataclass
class PromotionResult:
    """Outcome of :meth:`PromotionPipeline.promote`.

    Attributes
    ----------
    action:
        ``"created"`` (new record in the target scope), ``"merged"`` (folded
        into an existing target record) or ``"skipped"``.
    source_id:
        Id of the promoted record.
    target_id:
        Id of the record in the target scope, when there is one.
    reasons:
        Why the promotion was skipped, or how the target was chosen.
    record:
        The target record as it now stands (not serialised).
    """

    action: str
    source_id: str
    target_scope: str
    target_id: str | None = None
    reasons: list[str] = field(default_factory=list)
    record: MemoryRecord | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "source_id": self.source_id,
            "target_scope": self.target_scope,
            "target_id": self.target_id,
            "reasons": list(self.reasons),
        }


class PromotionPipeline:
    """Evaluates and performs scope promotions.

    Parameters
    ----------
    stores:
        Record store per scope name.
    journal:
        Source of the tuned session->project thresholds.
    lifecycle:
        Used to archive promoted sources and activate new copies.
    config:
        Project->user thresholds and the duplicate similarity cut-off.
    """

    def __init__(
        self,
        stores: Mapping[str, RecordStore],
        journal: Journal,
        lifecycle: LifecycleManager,
        config: PromotionConfig | None = None,
    ) -> None:
        self._stores = stores
        self._journal = journal
        self._lifecycle = lifecycle
        self._cfg = config or get_config().promotion

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def check_eligibility(
        self,
        record: MemoryRecord,
        target_scope: str,
        thresholds: Mapping[str, float] | None = None,
    ) -> Eligibility:
        """Decide whether *record* may be promoted to *target_scope*.

        Parameters
        ----------
        thresholds:
            ``{"importance": ..., "access_count": ...}`` for
            session->project; defaults to the configured values.
        """
        validate_scope(target_scope)
        cfg = self._cfg
        if record.kind == "working":
            return Eligibility(False, ["working memories never leave the session scope"])
        if SCOPE_RANK[target_scope] <= SCOPE_RANK[record.scope]:
            return Eligibility(False, [f"{target_scope} is not broader than {record.scope}"])
        if record.status == "forgotten":
            return Eligibility(False, ["memory has been forgotten"])

        if target_scope == "project":
            thresholds = thresholds or {
                "importance": cfg.session_importance,
                "access_count": cfg.session_access_count,
            }
            min_importance = float(thresholds["importance"])
            min_access = int(thresholds["access_count"])
            if record.importance >= min_importance or record.access_count >= min_access:
                return Eligibility(True, [])
            return Eligibility(
                False,
                [
                    f"importance {record.importance:.2f} < {min_importance:.2f} "
                    f"and access_count {record.access_count} < {min_access}"
                ],
            )

        reasons: list[str] = []
        if record.importance < cfg.user_importance:
            reasons.append(f"importance {record.importance:.2f} < {cfg.user_importance:.2f}")
        if record.access_count < cfg.user_access_count:
            reasons.append(f"access_count {record.access_count} < {cfg.user_access_count}")
        projects = record.projects
        if len(projects) < cfg.user_min_projects:
            reasons.append(f"seen in {len(projects)} project(s), need {cfg.user_min_projects}")
        if record.kind not in PROMOTABLE_TO_USER:
            reasons.append(f"kind {record.kind!r} is not promotable to user scope")
        return Eligibility(not reasons, reasons)

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    async def promote(
        self,
        record: MemoryRecord,
        target_scope: str,
        force: bool = False,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> PromotionResult:
        """Promote *record* to *target_scope*.

        Parameters
        ----------
        force:
            Skip the importance / access / project thresholds.  The kind and
            scope-direction rules always apply.
        dry_run:
            Work out the outcome and apply it to the in-memory records only.
            Nothing is written.

        Raises
        ------
        ValidationError
            For working-kind records, forgotten records, and targets that
            are not broader than the record's scope.
        """
        validate_scope(target_scope)
        now = now or utcnow()
        if record.kind == "working":
            raise ValidationError(
                "Working memories cannot be promoted out of the session scope",
                field="kind",
            )
        if SCOPE_RANK[target_scope] <= SCOPE_RANK[record.scope]:
            raise ValidationError(
                f"Cannot promote from {record.scope} to {target_scope}",
                field="target_scope",
            )
        if record.status == "forgotten":
            raise ValidationError(f"Memory {record.id} has been forgotten", field="status")

        if not force:
            thresholds = None
            if target_scope == "project":
                thresholds = await self._journal.promotion_thresholds()
            verdict = self.check_eligibility(record, target_scope, thresholds)
            if not verdict.eligible:
                return PromotionResult("skipped", record.id, target_scope, reasons=verdict.reasons)

        target = self._stores[target_scope]

        persist = not dry_run
        earlier = await self._earlier_copy(record, target)
        if earlier is not None:
            await self._finish_source(record, earlier.id, target_scope, now, persist)
            return PromotionResult(
                "skipped", record.id, target_scope, earlier.id, ["already promoted"], earlier
            )

        duplicates = [
            (other, sim)
            for other, sim in await target.find_similar(
                record, self._cfg.duplicate_similarity, statuses=RECALLABLE_STATUSES
            )
            if sim > self._cfg.duplicate_similarity
        ]
        if duplicates:
            existing, similarity = duplicates[0]
            merge_into(existing, record, now, relation="promoted")
            if persist:
                await target.update(existing)
            await self._finish_source(record, existing.id, target_scope, now, persist)
            log.info(
                "Promoted %s into existing %s memory %s (similarity %.2f)",
                record.id,
                target_scope,
                existing.id,
                similarity,
            )
            return PromotionResult(
                "merged",
                record.id,
                target_scope,
                existing.id,
                [f"near-duplicate (similarity {similarity:.2f})"],
                existing,
            )

        copy = MemoryRecord.new(
            record.content,
            record.kind,
            target_scope,
            now=now,
            tags=list(record.tags),
            embedding=list(record.embedding) if record.embedding else None,
            importance=record.importance,
            confidence=record.confidence,
            access_count=record.access_count,
            source=record.source,
            session_id=record.session_id,
            metadata=record.copy().metadata,
        )
        copy.last_accessed_at = record.last_accessed_at
        copy.metadata.pop("promoted_to", None)
        copy.metadata["promoted_from"] = record.id
        copy.metadata["projects"] = sorted(record.projects)
        copy.provenance.append(_provenance_entry(record, now, "promoted"))
        if persist:
            await target.insert(copy)
        await self._lifecycle.transition(copy, "active", "promoted", now, persist=persist)
        await self._finish_source(record, copy.id, target_scope, now, persist)
        log.info("Promoted %s from %s to %s as %s", record.id, record.scope, target_scope, copy.id)
        return PromotionResult("created", record.id, target_scope, copy.id, record=copy)

    async def _earlier_copy(self, record: MemoryRecord, target: RecordStore) -> MemoryRecord | None:
        promoted_to = record.metadata.get("promoted_to")
        if promoted_to:
            found = await target.get(promoted_to)
            if found is not None and found.status != "forgotten":
                return found
        for found in await target.find_by_metadata("promoted_from", record.id):
            if found.status != "forgotten":
                return found
        return None

    async def _finish_source(
        self,
        record: MemoryRecord,
        target_id: str,
        target_scope: str,
        now: datetime,
        persist: bool = True,
    ) -> None:
        changed = record.metadata.get("promoted_to") != target_id
        record.metadata["promoted_to"] = target_id
        record.metadata["promoted_to_scope"] = target_scope
        if is_legal(record.status, "archived"):
            await self._lifecycle.transition(
                record, "archived", f"promoted:{target_scope}", now, persist=persist
            )
        elif changed and persist:
            await self._stores[record.scope].update(record)


def _provenance_entry(record: MemoryRecord, now: datetime, relation: str) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "relation": relation,
        "from_id": record.id,
        "from_scope": record.scope,
        "at": to_iso(now),
    }
    project = record.metadata.get("project")
    if project:
        entry["project"] = project
    return entry


def merge_into(
    survivor: MemoryRecord,
    other: MemoryRecord,
    now: datetime,
    relation: str = "merged",
) -> MemoryRecord:
    """Fold *other* into *survivor* in place.

    Access counts are summed, importance and confidence take the maximum,
    tags and project labels are unioned and a provenance entry is
    appended.  *other* is left untouched.
    """
    survivor.access_count += other.access_count
    survivor.importance = max(survivor.importance, other.importance)
    survivor.confidence = max(survivor.confidence, other.confidence)
    survivor.tags = normalize_tags(set(survivor.tags) | set(other.tags))
    projects = survivor.projects | other.projects
    if projects:
        survivor.metadata["projects"] = sorted(projects)
    if other.last_accessed_at > survivor.last_accessed_at:
        survivor.last_accessed_at = other.last_accessed_at
    survivor.provenance.append(_provenance_entry(other, now, relation))
    survivor.updated_at = now
    return survivor
