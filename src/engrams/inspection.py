"""Statistical views over the record partitions.

These operations let a caller look at the store before querying it:

* :meth:`Inspector.peek` -- counts by kind and status, most common tags,
  creation date range and a few sample records.
* :meth:`Inspector.partition` -- split records into groups (by tag, month,
  kind, scope or importance band) and describe each group, so that large
  record sets can be queried piecewise.
* :meth:`Inspector.aggregate` -- recombine the piecewise results with
  reciprocal rank fusion.

A scope whose partition cannot be read is skipped and listed under
``skipped_scopes``.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Mapping, Sequence

from engrams.errors import StoreUnavailable, ValidationError
from engrams.fusion import DEFAULT_K, fuse
from engrams.records import SCOPES, validate_scope
from engrams.store import RecordStore

log = logging.getLogger(__name__)

PARTITION_KEYS: tuple[str, ...] = ("tag", "date", "kind", "scope", "importance_band")

_TOP_TAGS = 20


class Inspector:
    """Read-only statistics over the scope partitions."""

    def __init__(self, stores: Mapping[str, RecordStore]) -> None:
        self._stores = stores

    def _scopes(self, scope: str | None) -> list[str]:
        if scope is not None:
            validate_scope(scope)
            return [scope]
        return [s for s in SCOPES if s in self._stores]

    async def peek(
        self,
        scope: str | None = None,
        sample_n: int = 5,
        focus: str | None = None,
    ) -> dict[str, Any]:
        """Overview of what the store holds.

        Parameters
        ----------
        scope:
            Limit to one scope; all scopes by default.
        sample_n:
            Number of sample records to include.
        focus:
            When given, samples are the best BM25 matches for this text
            among active records; otherwise the most recently created active
            records.
        """
        if sample_n < 0:
            raise ValidationError(f"sample_n must be >= 0, got {sample_n}", field="sample_n")
        kinds: Counter[str] = Counter()
        statuses: Counter[str] = Counter()
        tags: Counter[str] = Counter()
        lo: str | None = None
        hi: str | None = None
        samples: list[dict[str, Any]] = []
        skipped: list[str] = []
        scopes = self._scopes(scope)

        for s in scopes:
            store = self._stores[s]
            try:
                for key, (count, _) in (await store.group_stats("kind")).items():
                    kinds[key] += count
                for key, (count, _) in (await store.group_stats("status")).items():
                    statuses[key] += count
                for key, (count, _) in (await store.group_stats("tag")).items():
                    tags[key] += count
                first, last = await store.created_range()
                if first and (lo is None or first < lo):
                    lo = first
                if last and (hi is None or last > hi):
                    hi = last
                if sample_n:
                    samples.extend(await self._samples(store, sample_n, focus))
            except StoreUnavailable as exc:
                log.warning("Skipping scope %s in peek: %s", s, exc)
                skipped.append(s)

        if focus:
            samples.sort(key=lambda d: (-d["relevance"], d["id"]))
        samples = samples[:sample_n]
        top_tags = sorted(tags.items(), key=lambda kv: (-kv[1], kv[0]))[:_TOP_TAGS]
        return {
            "scopes_queried": scopes,
            "skipped_scopes": skipped,
            "kind_counts": dict(kinds),
            "status_counts": dict(statuses),
            "top_tags": [{"tag": tag, "count": count} for tag, count in top_tags],
            "date_range": {"min": lo, "max": hi},
            "sample_count": len(samples),
            "samples": samples,
        }

    async def _samples(
        self,
        store: RecordStore,
        sample_n: int,
        focus: str | None,
    ) -> list[dict[str, Any]]:
        if focus:
            hits = await store.text_search(
                focus, limit=sample_n, statuses=("active",), match_any=True
            )
            found = await store.get_many(hits)
            return [
                {**found[mid].to_dict(), "relevance": round(score, 4)}
                for mid, score in hits.items()
                if mid in found
            ]
        recent = await store.query(
            statuses=("active",), order_by="created_at", descending=True, limit=sample_n
        )
        return [r.to_dict() for r in recent]

    async def partition(
        self,
        partition_by: str,
        scope: str | None = None,
        max_partitions: int = 4,
    ) -> dict[str, Any]:
        """Describe groups of active records.

        Parameters
        ----------
        partition_by:
            ``tag`` (most common first), ``date`` (calendar month, oldest
            first), ``kind``, ``scope`` or ``importance_band`` (quartiles of
            ``[0, 1]``).
        scope:
            Limit to one scope; all scopes by default.
        max_partitions:
            Maximum number of groups returned.
        """
        if partition_by not in PARTITION_KEYS:
            raise ValidationError(
                f"Invalid partition_by {partition_by!r}. "
                f"Must be one of: {', '.join(PARTITION_KEYS)}",
                field="partition_by",
            )
        if max_partitions < 1:
            raise ValidationError(
                f"max_partitions must be positive, got {max_partitions}",
                field="max_partitions",
            )
        scopes = self._scopes(scope)
        totals: dict[str, list[float]] = {}
        skipped: list[str] = []
        grouping = {"date": "month"}.get(partition_by, partition_by)

        for s in scopes:
            try:
                if partition_by == "scope":
                    stats = await self._stores[s].group_stats("status", statuses=("active",))
                    count = sum(c for c, _ in stats.values())
                    imp = sum(i for _, i in stats.values())
                    groups = {s: (count, imp)}
                else:
                    groups = await self._stores[s].group_stats(grouping, statuses=("active",))
            except StoreUnavailable as exc:
                log.warning("Skipping scope %s in partition: %s", s, exc)
                skipped.append(s)
                continue
            for key, (count, imp) in groups.items():
                entry = totals.setdefault(key, [0, 0.0])
                entry[0] += count
                entry[1] += imp

        partitions = [
            {
                "key": key,
                "count": int(count),
                "avg_importance": round(imp / count, 4) if count else 0.0,
            }
            for key, (count, imp) in totals.items()
        ]
        if partition_by == "tag":
            partitions.sort(key=lambda p: (-p["count"], p["key"]))
        elif partition_by == "scope":
            partitions.sort(key=lambda p: SCOPES.index(p["key"]))
        else:
            partitions.sort(key=lambda p: p["key"])

        return {
            "partition_by": partition_by,
            "scopes_queried": scopes,
            "skipped_scopes": skipped,
            "total_partitions": min(len(partitions), max_partitions),
            "partitions": partitions[:max_partitions],
        }

    def aggregate(
        self,
        result_sets: Mapping[str, Sequence[Any]] | Sequence[Sequence[Any]],
        limit: int = 10,
        k: int = DEFAULT_K,
    ) -> dict[str, Any]:
        """Fuse caller-supplied ranked lists with de-duplication."""
        fused = fuse(result_sets, k=k, limit=limit)
        return {
            "total_results": len(fused),
            "results": [item.to_dict() for item in fused],
        }
