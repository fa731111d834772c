"""Memory record model for the engrams engine.

A **memory record** is the unit of storage.  Every record has a *kind*
describing what sort of knowledge it holds:

- **episodic** -- something that happened (an event, an observation).
- **semantic** -- a fact or piece of general knowledge.
- **procedural** -- how to do something.
- **working** -- short-lived scratch state; never leaves the session scope.

and a *scope* naming the partition it lives in (``session`` is the
narrowest, ``user`` the broadest).  Records move through a lifecycle
(``created`` -> ``active`` -> ``consolidated`` / ``archived`` ->
``forgotten``) managed by :mod:`engrams.lifecycle`.

This module provides the :class:`MemoryRecord` dataclass with row
conversion helpers, the allowed vocabularies, the validation helpers used
at every caller boundary, and small time and similarity utilities shared by
the rest of the engine.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from engrams.embeddings import cosine_similarity
from engrams.errors import ValidationError
from engrams.storage import deserialize_embedding, serialize_embedding

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

KINDS: tuple[str, ...] = ("episodic", "semantic", "procedural", "working")
"""Allowed values for ``memories.kind``."""

SCOPES: tuple[str, ...] = ("session", "project", "user")
"""Scopes ordered from narrowest to broadest."""

STATUSES: tuple[str, ...] = (
    "created",
    "active",
    "consolidated",
    "archived",
    "forgotten",
)
"""Lifecycle states."""

RECALLABLE_STATUSES: tuple[str, ...] = ("created", "active", "consolidated")
"""Statuses returned by a normal recall."""

TASK_REASONS: tuple[str, ...] = ("decay", "duplicate", "promotion", "merge", "scheduled")

TASK_STATUSES: tuple[str, ...] = ("pending", "processing", "completed", "failed")

SCOPE_RANK: dict[str, int] = {scope: i for i, scope in enumerate(SCOPES)}


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_iso(ts: datetime) -> str:
    """Format *ts* as a fixed-width ISO-8601 UTC string.

    Fixed width keeps lexical ordering in SQLite equal to time ordering.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def hours_between(earlier: datetime, later: datetime) -> float:
    """Non-negative number of hours from *earlier* to *later*."""
    return max(0.0, (later - earlier).total_seconds() / 3600.0)


def clamp_unit(value: float) -> float:
    """Clamp *value* into ``[0, 1]``; NaN becomes 0."""
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


# ---------------------------------------------------------------------------
# MemoryRecord dataclass
# ---------------------------------------------------------------------------


@dataclass
class MemoryRecord:
    """In-memory representation of one row of a partition's ``memories`` table.

    ``tags`` and ``metadata`` are stored as JSON strings in SQLite but
    exposed as Python objects.  Timestamps are timezone-aware
    :class:`~datetime.datetime` values in UTC.

    Parameters
    ----------
    id:
        uuid4 hex string, unique across all partitions.
    content:
        The knowledge payload.  Replaced by the tombstone marker when the
        record is forgotten.
    kind:
        One of :data:`KINDS`.
    scope:
        One of :data:`SCOPES`; always equal to the partition the row is in.
    tags:
        Sorted, de-duplicated list of tags.
    embedding:
        Optional dense vector of the configured width.
    importance:
        Priority weight in ``[0, 1]``.
    confidence:
        Belief strength in ``[0, 1]``.
    access_count:
        Number of recorded retrievals.  Never reset.
    status:
        One of :data:`STATUSES`.
    metadata:
        Free-form JSON object.  The engine reserves the keys ``signals``,
        ``provenance``, ``project``, ``promoted_from``, ``promoted_to``, ``projects``,
        ``summary_of``, ``merged_into`` and ``forget_reason``.
    """

    id: str
    content: str
    kind: str
    scope: str
    tags: list[str] = field(default_factory=list)
    embedding: list[float] | None = None
    importance: float = 0.5
    confidence: float = 1.0
    access_count: int = 0
    status: str = "created"
    source: str | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.importance = clamp_unit(float(self.importance))
        self.confidence = clamp_unit(float(self.confidence))
        self.tags = normalize_tags(self.tags)

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def new(
        cls,
        content: str,
        kind: str,
        scope: str,
        now: datetime | None = None,
        **kwargs: Any,
    ) -> MemoryRecord:
        """Build a fresh ``created`` record with a new id and timestamps."""
        now = now or utcnow()
        return cls(
            id=uuid.uuid4().hex,
            content=content,
            kind=kind,
            scope=scope,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            **kwargs,
        )

    @classmethod
    def from_row(cls, row: Any) -> MemoryRecord:
        """Create a :class:`MemoryRecord` from a :class:`sqlite3.Row`."""
        blob = row["embedding"]
        return cls(
            id=row["id"],
            content=row["content"],
            kind=row["kind"],
            scope=row["scope"],
            tags=_load_json(row["tags"], list),
            embedding=deserialize_embedding(blob) if blob else None,
            importance=row["importance"],
            confidence=row["confidence"],
            access_count=row["access_count"],
            status=row["status"],
            source=row["source"],
            session_id=row["session_id"],
            metadata=_load_json(row["metadata"], dict),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            last_accessed_at=parse_ts(row["last_accessed_at"]),
        )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_params(self) -> dict[str, Any]:
        """Named bind parameters for INSERT / UPDATE statements."""
        return {
            "id": self.id,
            "content": self.content,
            "kind": self.kind,
            "scope": self.scope,
            "tags": json.dumps(self.tags),
            "embedding": serialize_embedding(self.embedding) if self.embedding else None,
            "importance": self.importance,
            "confidence": self.confidence,
            "access_count": self.access_count,
            "status": self.status,
            "source": self.source,
            "session_id": self.session_id,
            "metadata": json.dumps(self.metadata, sort_keys=True),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "last_accessed_at": to_iso(self.last_accessed_at),
        }

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        """Serialise to a JSON-friendly dict.

        The embedding is omitted unless *include_embedding* is set; a
        boolean ``has_embedding`` is always present.
        """
        d = {
            "id": self.id,
            "content": self.content,
            "kind": self.kind,
            "scope": self.scope,
            "tags": list(self.tags),
            "importance": self.importance,
            "confidence": self.confidence,
            "access_count": self.access_count,
            "status": self.status,
            "source": self.source,
            "session_id": self.session_id,
            "metadata": dict(self.metadata),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "last_accessed_at": to_iso(self.last_accessed_at),
            "has_embedding": self.embedding is not None,
        }
        if include_embedding:
            d["embedding"] = list(self.embedding) if self.embedding else None
        return d

    def copy(self, **changes: Any) -> MemoryRecord:
        """Return a shallow copy with *changes* applied and fresh containers."""
        changes.setdefault("tags", list(self.tags))
        changes.setdefault("metadata", json.loads(json.dumps(self.metadata)))
        return replace(self, **changes)

    @property
    def provenance(self) -> list[dict[str, Any]]:
        return self.metadata.setdefault("provenance", [])

    @property
    def projects(self) -> set[str]:
        """Distinct project labels this record has been observed in."""
        found = {str(p) for p in self.metadata.get("projects", []) if p}
        if self.metadata.get("project"):
            found.add(str(self.metadata["project"]))
        for entry in self.metadata.get("provenance", []):
            if entry.get("project"):
                found.add(str(entry["project"]))
        return found


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def validate_kind(kind: str) -> None:
    """Raise :class:`ValidationError` if *kind* is not in :data:`KINDS`."""
    if kind not in KINDS:
        raise ValidationError(
            f"Invalid kind {kind!r}. Must be one of: {', '.join(KINDS)}",
            field="kind",
        )


def validate_scope(scope: str) -> None:
    """Raise :class:`ValidationError` if *scope* is not in :data:`SCOPES`."""
    if scope not in SCOPES:
        raise ValidationError(
            f"Invalid scope {scope!r}. Must be one of: {', '.join(SCOPES)}",
            field="scope",
        )


def validate_unit(value: float, name: str) -> None:
    """Raise :class:`ValidationError` if *value* is outside ``[0, 1]``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}", field=name)
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(
            f"{name.capitalize()} must be between 0.0 and 1.0, got {value}",
            field=name,
        )


def validate_content(content: str) -> None:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Memory content must not be empty", field="content")


def validate_kind_scope(kind: str, scope: str) -> None:
    """Working memory is session-local."""
    if kind == "working" and scope != "session":
        raise ValidationError(
            f"Working memories can only live in the session scope, not {scope!r}",
            field="scope",
        )


def validate_limit(limit: int, maximum: int) -> None:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError(f"limit must be a positive integer, got {limit!r}", field="limit")
    if limit > maximum:
        raise ValidationError(f"limit must be at most {maximum}, got {limit}", field="limit")


# ---------------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------------

_WS_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"[a-z0-9_]+")


def normalize_tags(tags: Any) -> list[str]:
    """Strip, drop empties, de-duplicate and sort."""
    if not tags:
        return []
    if isinstance(tags, str):
        tags = [tags]
    return sorted({str(t).strip() for t in tags if str(t).strip()})


def normalize_content(content: str) -> str:
    return _WS_RE.sub(" ", content.strip().lower())


def content_hash(content: str) -> str:
    """SHA-256 of the whitespace/case-normalised content."""
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def _trigrams(text: str) -> set[str]:
    tokens = _TOKEN_RE.findall(normalize_content(text))
    joined = " ".join(tokens)
    if len(joined) < 3:
        return {joined} if joined else set()
    return {joined[i : i + 3] for i in range(len(joined) - 2)}


def text_similarity(a: str, b: str) -> float:
    """Character-trigram Jaccard similarity of two texts in ``[0, 1]``."""
    ta, tb = _trigrams(a), _trigrams(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def record_similarity(a: MemoryRecord, b: MemoryRecord) -> float:
    """Content similarity of two records.

    Cosine similarity of the embeddings when both records carry one of the
    same width, trigram Jaccard on the content otherwise.
    """
    if a.embedding and b.embedding and len(a.embedding) == len(b.embedding):
        return clamp_unit(cosine_similarity(a.embedding, b.embedding))
    return text_similarity(a.content, b.content)


def _load_json(raw: Any, expected: type) -> Any:
    if not raw:
        return expected()
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return expected()
    return value if isinstance(value, expected) else expected()
