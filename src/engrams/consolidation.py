"""Batch maintenance of the scope partitions.

A call to :meth:`ConsolidationScheduler.run` walks every requested scope,
narrowest first, and runs five passes over it:

1. **Lifecycle tick** -- apply the lifecycle rules (activation, archiving,
   forgetting) and queue ``merge`` tasks for weak but used records.
2. **Queue** -- process pending tasks.  ``merge`` tasks move their records
   ``active -> consolidated``, fold each group of records sharing a tag
   signature into a summary record, then archive the members.  ``decay``
   tasks archive their record.
3. **Promote** -- copy eligible records to the next broader scope.
4. **Deduplicate** -- within each tag signature, merge active records whose
   content similarity reaches the threshold.  The survivor is the record
   with the higher importance (then the older one) and absorbs the other's
   access count.
5. **Decay queue** -- queue old, idle, unimportant active records for
   archiving on a later run.

Every pass works on an in-memory snapshot of the partition.  In dry-run
mode the snapshot is changed exactly as in a real run but nothing is
written, so the report previews the real one.  An advisory lock in the
system database keeps two runs from overlapping.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from engrams.config import ConsolidationConfig, get_config
from engrams.journal import ConsolidationTask, Journal
from engrams.lifecycle import LifecycleManager
from engrams.promotion import PromotionPipeline, merge_into
from engrams.records import (
    RECALLABLE_STATUSES,
    SCOPE_RANK,
    SCOPES,
    MemoryRecord,
    clamp_unit,
    content_hash,
    hours_between,
    record_similarity,
    utcnow,
    validate_scope,
)
from engrams.store import RecordStore

log = logging.getLogger(__name__)

LOCK_NAME = "consolidation"

_SNAPSHOT_STATUSES = ("created", "active", "consolidated", "archived")


# ---------------------------------------------------------------------------
# ConsolidationReport
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationReport:
    """Summary of one consolidation run.

    Attributes
    ----------
    transitions:
        Lifecycle transitions applied by the tick pass.
    merge_queued:
        Records queued for merging by the tick pass.
    tasks_processed:
        Queue tasks handled (completed or failed).
    consolidated:
        Records folded into a summary and archived.
    summaries:
        Summary records created or extended.
    decay_archived:
        Records archived by a ``decay`` task.
    promoted:
        Records copied or merged into a broader scope.
    deduplicated:
        Duplicate records merged into a survivor.
    decay_queued:
        Records queued with reason ``decay``.
    details:
        One dict per action.
    errors:
        Per-item failures; the run continues past them.
    skipped:
        ``True`` when another run held the lock and nothing was done.
    """

    dry_run: bool = False
    scopes: list[str] = field(default_factory=list)
    transitions: int = 0
    merge_queued: int = 0
    tasks_processed: int = 0
    consolidated: int = 0
    summaries: int = 0
    decay_archived: int = 0
    promoted: int = 0
    deduplicated: int = 0
    decay_queued: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

    def counts(self) -> dict[str, int]:
        return {
            "transitions": self.transitions,
            "merge_queued": self.merge_queued,
            "tasks_processed": self.tasks_processed,
            "consolidated": self.consolidated,
            "summaries": self.summaries,
            "decay_archived": self.decay_archived,
            "promoted": self.promoted,
            "deduplicated": self.deduplicated,
            "decay_queued": self.decay_queued,
        }

    def affected_ids(self) -> list[str]:
        ids: set[str] = set()
        for detail in self.details:
            for key in ("id", "survivor", "duplicate", "summary_id", "source_id", "target_id"):
                value = detail.get(key)
                if isinstance(value, str):
                    ids.add(value)
            ids.update(detail.get("members", []))
        return sorted(ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "scopes": list(self.scopes),
            **self.counts(),
            "errors": list(self.errors),
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# ConsolidationScheduler
# ---------------------------------------------------------------------------


class ConsolidationScheduler:
    """Runs the maintenance passes over the scope partitions.

    Parameters
    ----------
    stores:
        Record store per scope name.
    journal:
        Queue, lock, tuned parameters and the consolidation log.
    lifecycle:
        Performs every status change.
    promotion:
        Used by the promote pass.
    config:
        Defaults to ``get_config().consolidation``.
    """

    def __init__(
        self,
        stores: Mapping[str, RecordStore],
        journal: Journal,
        lifecycle: LifecycleManager,
        promotion: PromotionPipeline,
        config: ConsolidationConfig | None = None,
    ) -> None:
        self._stores = stores
        self._journal = journal
        self._lifecycle = lifecycle
        self._promotion = promotion
        self._cfg = config or get_config().consolidation

    async def run(
        self,
        scope: str | None = None,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> ConsolidationReport:
        """Run one consolidation cycle.

        Parameters
        ----------
        scope:
            Process only this scope; all scopes by default.
        dry_run:
            Compute the report without writing anything.
        now:
            Evaluation time; defaults to the current time.

        Returns
        -------
        ConsolidationReport
            Counters and per-action details.  ``skipped`` is set when
            another run is in progress.
        """
        if scope is not None:
            validate_scope(scope)
        now = now or utcnow()
        scopes = [scope] if scope is not None else [s for s in SCOPES if s in self._stores]
        report = ConsolidationReport(dry_run=dry_run, scopes=scopes)

        holder = await self._journal.acquire_lock(LOCK_NAME)
        if holder is None:
            log.warning("Consolidation already in progress; skipping")
            report.skipped = True
            return report

        try:
            half_lives = await self._journal.half_lives()
            thresholds = await self._journal.promotion_thresholds()
            # Records created or changed in a scope by an earlier scope's
            # promote pass, keyed by scope then id.
            overlay: dict[str, dict[str, MemoryRecord]] = defaultdict(dict)
            for target in scopes:
                try:
                    await self._run_scope(target, report, overlay, half_lives, thresholds, now)
                except Exception as exc:
                    log.warning("Consolidation of scope %s failed: %s", target, exc)
                    report.errors.append(f"{target}: {exc}")

            if not dry_run:
                await self._journal.log_consolidation(
                    "consolidate",
                    {"scopes": scopes, **report.counts(), "errors": len(report.errors)},
                    report.affected_ids(),
                    now,
                )
        finally:
            await self._journal.release_lock(LOCK_NAME, holder)

        log.info(
            "Consolidation %scomplete: transitions=%d consolidated=%d summaries=%d "
            "promoted=%d deduplicated=%d decay_queued=%d errors=%d",
            "(dry-run) " if dry_run else "",
            report.transitions,
            report.consolidated,
            report.summaries,
            report.promoted,
            report.deduplicated,
            report.decay_queued,
            len(report.errors),
        )
        return report

    # ------------------------------------------------------------------
    # Per-scope passes
    # ------------------------------------------------------------------

    async def _run_scope(
        self,
        scope: str,
        report: ConsolidationReport,
        overlay: dict[str, dict[str, MemoryRecord]],
        half_lives: Mapping[str, float],
        thresholds: Mapping[str, float],
        now: datetime,
    ) -> None:
        store = self._stores[scope]
        snapshot = {r.id: r for r in await store.query(statuses=_SNAPSHOT_STATUSES)}
        snapshot.update(overlay.pop(scope, {}))
        records = list(snapshot.values())
        pending = await self._journal.pending_tasks(scope)
        pending_keys = {(t.memory_id, t.reason) for t in pending}

        # 1. lifecycle tick
        tick = await self._lifecycle.tick(
            scope, now, dry_run=report.dry_run, half_lives=half_lives, records=records
        )
        queued = tick.queued
        if report.dry_run:
            queued = [mid for mid in queued if (mid, "merge") not in pending_keys]
        report.transitions += len(tick.transitions)
        report.merge_queued += len(queued)
        report.errors.extend(f"{scope}: {err}" for err in tick.errors)
        for change in tick.transitions:
            report.details.append({"action": "transition", "scope": scope, **change})
        for memory_id in queued:
            report.details.append({"action": "merge_queued", "scope": scope, "id": memory_id})

        # 2. queue
        if report.dry_run:
            tasks = pending + [
                ConsolidationTask(0, mid, scope, "merge", 0.5) for mid in queued
            ]
        else:
            tasks = await self._journal.pending_tasks(scope)
        await self._process_queue(
            scope, tasks[: self._cfg.max_tasks_per_run], snapshot, report, now
        )

        # 3. promote
        await self._promote_pass(scope, records, report, overlay, thresholds, now)

        # 4. deduplicate
        await self._dedup_pass(scope, list(snapshot.values()), report, now)

        # 5. decay queue
        await self._decay_queue_pass(scope, list(snapshot.values()), pending_keys, report, now)

    # -- queue ----------------------------------------------------------

    async def _process_queue(
        self,
        scope: str,
        tasks: list[ConsolidationTask],
        snapshot: dict[str, MemoryRecord],
        report: ConsolidationReport,
        now: datetime,
    ) -> None:
        groups: dict[tuple[str, ...], list[tuple[ConsolidationTask, MemoryRecord]]] = defaultdict(list)
        for task in tasks:
            record = snapshot.get(task.memory_id)
            if task.reason == "merge" and record is not None and record.status in ("active", "consolidated"):
                groups[tuple(record.tags)].append((task, record))
                continue
            try:
                if task.reason == "decay" and record is not None and record.status == "active":
                    await self._lifecycle.transition(
                        record, "archived", "decay-queue", now, persist=not report.dry_run
                    )
                    report.decay_archived += 1
                    report.details.append(
                        {"action": "decay_archived", "scope": scope, "id": record.id}
                    )
                await self._finish_task(task, report, now)
            except Exception as exc:
                await self._fail_task(task, exc, report, now)

        for signature, members in groups.items():
            try:
                await self._summarize(scope, signature, [r for _, r in members], snapshot, report, now)
            except Exception as exc:
                for task, _ in members:
                    await self._fail_task(task, exc, report, now)
                continue
            for task, _ in members:
                await self._finish_task(task, report, now)

    async def _summarize(
        self,
        scope: str,
        signature: tuple[str, ...],
        members: list[MemoryRecord],
        snapshot: dict[str, MemoryRecord],
        report: ConsolidationReport,
        now: datetime,
    ) -> MemoryRecord:
        """Fold *members* into the summary record for *signature*."""
        persist = not report.dry_run
        store = self._stores[scope]
        for member in members:
            if member.status == "active":
                await self._lifecycle.transition(member, "consolidated", "merge-queued", now, persist=persist)

        members = sorted(members, key=lambda r: (-r.access_count, -r.importance, r.id))
        summary = self._existing_summary(signature, snapshot)
        if summary is None:
            template = members[0]
            summary = MemoryRecord.new(
                self._compose([], members),
                template.kind,
                scope,
                now=now,
                tags=list(signature),
                importance=max(m.importance for m in members),
                confidence=self._summary_confidence(len(members)),
                access_count=sum(m.access_count for m in members),
                source="consolidation",
                metadata={
                    "summary_of": [m.id for m in members],
                    "summary_signature": list(signature),
                },
            )
            if persist:
                await store.insert(summary)
            await self._lifecycle.transition(summary, "active", "summary", now, persist=persist)
            snapshot[summary.id] = summary
        else:
            covered = summary.metadata.setdefault("summary_of", [])
            fresh = [m for m in members if m.id not in covered]
            summary.content = self._compose([summary.content], fresh)
            summary.importance = max([summary.importance, *(m.importance for m in fresh)])
            summary.access_count += sum(m.access_count for m in fresh)
            covered.extend(m.id for m in fresh)
            summary.confidence = self._summary_confidence(len(covered))
            summary.updated_at = now
            if persist:
                await store.update(summary)

        for member in members:
            member.metadata["summarized_into"] = summary.id
            await self._lifecycle.transition(member, "archived", "summarized", now, persist=persist)
            if persist:
                await store.add_edge(member.id, summary.id, "part-of", now=now)

        report.summaries += 1
        report.consolidated += len(members)
        report.details.append(
            {
                "action": "summarize",
                "scope": scope,
                "summary_id": summary.id,
                "members": [m.id for m in members],
            }
        )
        return summary

    @staticmethod
    def _existing_summary(
        signature: tuple[str, ...],
        snapshot: dict[str, MemoryRecord],
    ) -> MemoryRecord | None:
        for record in snapshot.values():
            if (
                record.status in RECALLABLE_STATUSES
                and record.metadata.get("summary_signature") == list(signature)
            ):
                return record
        return None

    def _compose(self, head: list[str], members: list[MemoryRecord]) -> str:
        lines = list(head)
        seen = {content_hash(line) for line in lines}
        for member in members:
            digest = content_hash(member.content)
            if digest not in seen:
                seen.add(digest)
                lines.append(member.content.strip())
        return "\n".join(lines)[: self._cfg.summary_max_chars]

    def _summary_confidence(self, n_members: int) -> float:
        cfg = self._cfg
        return clamp_unit(
            min(
                cfg.summary_max_confidence,
                cfg.summary_base_confidence + cfg.summary_confidence_per_member * n_members,
            )
        )

    async def _finish_task(
        self,
        task: ConsolidationTask,
        report: ConsolidationReport,
        now: datetime,
    ) -> None:
        report.tasks_processed += 1
        if not report.dry_run and task.id:
            await self._journal.mark_task(task.id, "completed", now=now)

    async def _fail_task(
        self,
        task: ConsolidationTask,
        exc: Exception,
        report: ConsolidationReport,
        now: datetime,
    ) -> None:
        log.warning("Consolidation task %s (%s) failed: %s", task.id, task.reason, exc)
        report.tasks_processed += 1
        report.errors.append(f"task {task.id} ({task.memory_id}): {exc}")
        if not report.dry_run and task.id:
            await self._journal.mark_task(task.id, "failed", error=str(exc), now=now)

    # -- promote --------------------------------------------------------

    async def _promote_pass(
        self,
        scope: str,
        records: list[MemoryRecord],
        report: ConsolidationReport,
        overlay: dict[str, dict[str, MemoryRecord]],
        thresholds: Mapping[str, float],
        now: datetime,
    ) -> None:
        broader = [s for s in SCOPES if SCOPE_RANK[s] == SCOPE_RANK[scope] + 1]
        if not broader or broader[0] not in self._stores:
            return
        target = broader[0]
        for record in records:
            if record.status != "active" or record.kind == "working":
                continue
            verdict = self._promotion.check_eligibility(
                record, target, thresholds if target == "project" else None
            )
            if not verdict.eligible:
                continue
            try:
                # Eligibility was checked above against this run's thresholds.
                result = await self._promotion.promote(
                    record, target, force=True, now=now, dry_run=report.dry_run
                )
            except Exception as exc:
                log.warning("Promotion of %s to %s failed: %s", record.id, target, exc)
                report.errors.append(f"promote {record.id}: {exc}")
                continue
            if result.record is not None:
                overlay[target][result.record.id] = result.record
            if result.action != "skipped":
                report.promoted += 1
            report.details.append({"action": "promote", "scope": scope, **result.to_dict()})

    # -- deduplicate ----------------------------------------------------

    async def _dedup_pass(
        self,
        scope: str,
        records: list[MemoryRecord],
        report: ConsolidationReport,
        now: datetime,
    ) -> None:
        persist = not report.dry_run
        store = self._stores[scope]
        by_signature: dict[tuple[str, ...], list[MemoryRecord]] = defaultdict(list)
        for record in records:
            if record.status == "active":
                by_signature[tuple(record.tags)].append(record)

        for group in by_signature.values():
            if len(group) < 2:
                continue
            group.sort(key=lambda r: (-r.importance, r.created_at, r.id))
            absorbed: set[str] = set()
            for i, survivor in enumerate(group):
                if survivor.id in absorbed:
                    continue
                for other in group[i + 1:]:
                    if other.id in absorbed:
                        continue
                    similarity = record_similarity(survivor, other)
                    if similarity < self._cfg.dedup_similarity:
                        continue
                    try:
                        merge_into(survivor, other, now, relation="duplicate")
                        other.metadata["merged_into"] = survivor.id
                        if persist:
                            await store.update(survivor)
                        await self._lifecycle.transition(
                            other, "archived", "duplicate", now, persist=persist
                        )
                        if persist:
                            await store.redirect_edges(other.id, survivor.id)
                            await store.add_edge(survivor.id, other.id, "supersedes", now=now)
                    except Exception as exc:
                        log.warning("Merging %s into %s failed: %s", other.id, survivor.id, exc)
                        report.errors.append(f"dedup {other.id}: {exc}")
                        continue
                    absorbed.add(other.id)
                    report.deduplicated += 1
                    report.details.append(
                        {
                            "action": "dedup",
                            "scope": scope,
                            "survivor": survivor.id,
                            "duplicate": other.id,
                            "similarity": round(similarity, 4),
                        }
                    )

    # -- decay queue ----------------------------------------------------

    async def _decay_queue_pass(
        self,
        scope: str,
        records: list[MemoryRecord],
        pending_keys: set[tuple[str, str]],
        report: ConsolidationReport,
        now: datetime,
    ) -> None:
        cfg = self._cfg
        for record in records:
            if record.status != "active":
                continue
            age_days = hours_between(record.created_at, now) / 24.0
            idle_days = hours_between(record.last_accessed_at, now) / 24.0
            if (
                age_days <= cfg.decay_queue_age_days
                or idle_days <= cfg.decay_queue_idle_days
                or record.importance >= cfg.decay_queue_importance
            ):
                continue
            if report.dry_run:
                queued = (record.id, "decay") not in pending_keys
            else:
                try:
                    queued = await self._journal.enqueue(
                        record.id, scope, "decay", 1.0 - record.importance, now
                    )
                except Exception as exc:
                    log.warning("Queueing %s for decay failed: %s", record.id, exc)
                    report.errors.append(f"decay-queue {record.id}: {exc}")
                    continue
            if queued:
                report.decay_queued += 1
                report.details.append({"action": "decay_queued", "scope": scope, "id": record.id})
