"""Reciprocal Rank Fusion of independently ranked result lists.

Given N best-first lists, each item scores::

    score(id) = sum over lists containing id of 1 / (k + rank + 1)

with ``rank`` zero-based and ``k = 60`` by default.  RRF needs no score
calibration between lists, which is what makes it suitable for merging
results from partitions that were ranked in isolation.

Items may be plain id strings, :class:`~engrams.records.MemoryRecord`
instances, or dicts with an ``"id"`` key (and optionally ``"content"``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from engrams.errors import ValidationError
from engrams.records import content_hash

DEFAULT_K = 60


@dataclass
class FusedItem:
    """One fused result.

    Attributes
    ----------
    id:
        Item identifier.
    score:
        Summed reciprocal-rank score.
    sources:
        Labels of the input lists the item appeared in, in input order.
    item:
        The first occurrence of the item (record, dict or id).
    """

    id: str
    score: float
    sources: list[str] = field(default_factory=list)
    item: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload = self.item
        if hasattr(payload, "to_dict"):
            payload = payload.to_dict()
        return {
            "id": self.id,
            "score": round(self.score, 6),
            "sources": list(self.sources),
            "item": payload,
        }


def _item_id(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        if "id" not in item:
            raise ValidationError("Result items must carry an 'id'", field="result_sets")
        return str(item["id"])
    if hasattr(item, "id"):
        return str(item.id)
    raise ValidationError(f"Cannot determine id of result item {item!r}", field="result_sets")


def _item_content(item: Any) -> str | None:
    if isinstance(item, Mapping):
        content = item.get("content")
    else:
        content = getattr(item, "content", None)
    return content if isinstance(content, str) else None


def _labelled(
    result_sets: Mapping[str, Sequence[Any]] | Sequence[Sequence[Any]],
) -> list[tuple[str, Sequence[Any]]]:
    if isinstance(result_sets, Mapping):
        return [(str(label), items) for label, items in result_sets.items()]
    return [(f"list{i}", items) for i, items in enumerate(result_sets)]


def reciprocal_rank_fusion(
    result_sets: Mapping[str, Sequence[Any]] | Sequence[Sequence[Any]],
    k: int = DEFAULT_K,
    limit: int | None = 10,
) -> list[FusedItem]:
    """Fuse best-first lists into one ranking.

    Parameters
    ----------
    result_sets:
        Either a mapping of label to list, or a plain sequence of lists
        (labelled ``list0``, ``list1``, ...).
    k:
        Rank damping constant; must be non-negative.
    limit:
        Maximum number of items returned, ``None`` for all.

    Returns
    -------
    list[FusedItem]
        Descending by score; ties keep the order of first appearance, so
        identical inputs always produce identical output.
    """
    if k < 0:
        raise ValidationError(f"k must be non-negative, got {k}", field="k")
    fused: dict[str, FusedItem] = {}
    for label, items in _labelled(result_sets):
        seen_in_list: set[str] = set()
        for rank, item in enumerate(items):
            item_id = _item_id(item)
            # An id repeated inside one list only counts at its best rank.
            if item_id in seen_in_list:
                continue
            seen_in_list.add(item_id)
            entry = fused.get(item_id)
            if entry is None:
                entry = fused[item_id] = FusedItem(item_id, 0.0, [], item)
            entry.score += 1.0 / (k + rank + 1)
            entry.sources.append(label)

    # dicts preserve insertion order and sorted() is stable, which gives the
    # first-appearance tie-break.
    ranked = sorted(fused.values(), key=lambda f: -f.score)
    return ranked if limit is None else ranked[:limit]


def dedup_by_content(items: Iterable[FusedItem]) -> list[FusedItem]:
    """Drop items whose normalised content hash equals an earlier item's."""
    seen: set[str] = set()
    out: list[FusedItem] = []
    for fused in items:
        content = _item_content(fused.item)
        if content is not None:
            digest = content_hash(content)
            if digest in seen:
                continue
            seen.add(digest)
        out.append(fused)
    return out


def fuse(
    result_sets: Mapping[str, Sequence[Any]] | Sequence[Sequence[Any]],
    k: int = DEFAULT_K,
    limit: int = 10,
) -> list[FusedItem]:
    """RRF with content de-duplication.

    Over-fetches ``limit * 2`` fused items so that dropping duplicates
    still leaves enough to fill *limit*.
    """
    if limit < 1:
        raise ValidationError(f"limit must be positive, got {limit}", field="limit")
    ranked = reciprocal_rank_fusion(result_sets, k=k, limit=limit * 2)
    return dedup_by_content(ranked)[:limit]
