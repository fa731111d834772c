"""Importance and time-decayed strength of memory records.

Two numbers describe how much a record matters:

* **importance** -- a slowly-changing composite of six signals (how recent,
  how often used, relevance feedback, confidence, outcome impact, user
  feedback) plus a small bonus for procedural and semantic knowledge.
* **strength** -- importance decayed exponentially by the time since the
  record was last accessed.  Every access both resets the clock and
  lengthens the effective half-life, so memories that keep proving useful
  fade more slowly.

Everything here is a pure function of its inputs and the supplied ``now``;
strength is never cached.

Importance signals live in ``record.metadata["signals"]``.  A signal that
was never recorded counts as neutral (0.5).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from engrams.config import ScoringConfig, get_config
from engrams.errors import ComputationError
from engrams.records import MemoryRecord, clamp_unit, hours_between, utcnow

NEUTRAL_SIGNAL = 0.5


@dataclass
class Signals:
    """Optional overrides for the non-confidence importance signals.

    ``None`` means "derive it": recency and frequency are computed from
    the record's timestamps and access count; the three feedback signals
    fall back to the values stored on the record, then to neutral.
    """

    recency: float | None = None
    frequency: float | None = None
    relevance_feedback: float | None = None
    outcome_impact: float | None = None
    user_feedback: float | None = None


_STORED_SIGNALS = ("relevance_feedback", "outcome_impact", "user_feedback")


def stored_signals(record: MemoryRecord) -> dict[str, float]:
    """The feedback signals recorded on *record*, neutral where absent."""
    raw = record.metadata.get("signals") or {}
    out: dict[str, float] = {}
    for name in _STORED_SIGNALS:
        value = raw.get(name, NEUTRAL_SIGNAL)
        try:
            out[name] = clamp_unit(float(value))
        except (TypeError, ValueError):
            out[name] = NEUTRAL_SIGNAL
    return out


def set_signal(record: MemoryRecord, name: str, value: float) -> None:
    if name not in _STORED_SIGNALS:
        raise ValueError(f"Unknown signal {name!r}")
    record.metadata.setdefault("signals", {})[name] = clamp_unit(value)


def _decay(hours: float, half_life: float) -> float:
    return math.pow(2.0, -hours / half_life)


def compute_importance(
    record: MemoryRecord,
    signals: Signals | None = None,
    now: datetime | None = None,
    config: ScoringConfig | None = None,
) -> float:
    """Composite importance of *record* in ``[0, 1]``.

    Parameters
    ----------
    record:
        The record being scored.  Its ``confidence``, ``access_count``,
        ``updated_at`` and stored signals feed the formula.
    signals:
        Explicit signal values overriding the derived / stored ones.
    now:
        Evaluation time; defaults to the current UTC time.
    config:
        Weights; defaults to ``get_config().scoring``.

    Returns
    -------
    float
        ``recency*0.25 + frequency*0.20 + relevance_feedback*0.20 +
        confidence*0.15 + outcome_impact*0.10 + user_feedback*0.10`` plus
        the kind bonus, clamped to ``[0, 1]``.
    """
    cfg = config or get_config().scoring
    signals = signals or Signals()
    now = now or utcnow()
    stored = stored_signals(record)

    recency = signals.recency
    if recency is None:
        recency = _decay(hours_between(record.updated_at, now), cfg.recency_half_life_hours)

    frequency = signals.frequency
    if frequency is None:
        frequency = min(1.0, record.access_count / cfg.frequency_saturation)

    def pick(name: str) -> float:
        value = getattr(signals, name)
        return stored[name] if value is None else clamp_unit(value)

    score = (
        clamp_unit(recency) * cfg.recency
        + clamp_unit(frequency) * cfg.frequency
        + pick("relevance_feedback") * cfg.relevance_feedback
        + record.confidence * cfg.confidence
        + pick("outcome_impact") * cfg.outcome_impact
        + pick("user_feedback") * cfg.user_feedback
    )
    if record.kind == "procedural":
        score += cfg.procedural_bonus
    elif record.kind == "semantic":
        score += cfg.semantic_bonus
    return clamp_unit(score)


def validate_half_lives(half_lives: Mapping[str, float]) -> None:
    """Raise :class:`ComputationError` for non-positive or non-finite values."""
    for kind, value in half_lives.items():
        try:
            hours = float(value)
        except (TypeError, ValueError) as exc:
            raise ComputationError(f"Half-life for {kind!r} is not a number: {value!r}") from exc
        if not math.isfinite(hours) or hours <= 0:
            raise ComputationError(f"Half-life for {kind!r} must be positive, got {value!r}")


def effective_half_life(
    record: MemoryRecord,
    half_lives: Mapping[str, float] | None = None,
    config: ScoringConfig | None = None,
) -> float:
    """Base half-life for the record's kind, stretched by its access count."""
    cfg = config or get_config().scoring
    if half_lives is None:
        half_lives = get_config().decay.as_dict()
    if record.kind not in half_lives:
        raise ComputationError(f"No half-life configured for kind {record.kind!r}")
    validate_half_lives({record.kind: half_lives[record.kind]})
    base = float(half_lives[record.kind])
    return base * (1.0 + record.access_count * cfg.access_half_life_extension)


def compute_strength(
    record: MemoryRecord,
    half_lives: Mapping[str, float] | None = None,
    now: datetime | None = None,
    config: ScoringConfig | None = None,
) -> float:
    """Current strength of *record*.

    ``importance * 2^(-hours_since_last_access / effective_half_life)``.

    Raises
    ------
    ComputationError
        If the half-life for the record's kind is missing, non-positive or
        non-finite.
    """
    now = now or utcnow()
    half_life = effective_half_life(record, half_lives, config)
    elapsed = hours_between(record.last_accessed_at, now)
    return clamp_unit(record.importance * _decay(elapsed, half_life))


def strengthen_on_access(
    record: MemoryRecord,
    now: datetime | None = None,
    config: ScoringConfig | None = None,
) -> MemoryRecord:
    """Reinforce *record* for one retrieval, in place.

    Increments ``access_count``, sets ``last_accessed_at`` to *now* and
    nudges the relevance-feedback signal up by the configured increment
    (capped at 1.0).  Returns the same record for chaining.
    """
    cfg = config or get_config().scoring
    now = now or utcnow()
    record.access_count += 1
    record.last_accessed_at = now
    current = stored_signals(record)["relevance_feedback"]
    set_signal(record, "relevance_feedback", current + cfg.relevance_feedback_increment)
    return record


def apply_user_feedback(
    record: MemoryRecord,
    was_useful: bool,
    config: ScoringConfig | None = None,
) -> MemoryRecord:
    """Move the user-feedback signal one step up or down, in place.

    Importance shifts by the signal weight times the change in the signal.
    """
    cfg = config or get_config().scoring
    current = stored_signals(record)["user_feedback"]
    step = cfg.user_feedback_step if was_useful else -cfg.user_feedback_step
    set_signal(record, "user_feedback", current + step)
    moved = stored_signals(record)["user_feedback"] - current
    record.importance = clamp_unit(record.importance + moved * cfg.user_feedback)
    return record
