"""Central configuration for the engrams engine.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``ENGRAMS_`` (nested keys use
double underscores, e.g. ``ENGRAMS_RETRIEVAL__RRF_K=30``).

The values here are *factory defaults*.  Parameters that the evolution
controller is allowed to tune (scope weights, half-lives, promotion
thresholds, default strategy) are seeded from these defaults into the
``tuning_state`` table and read back from there at runtime.

Usage::

    from engrams.config import get_config

    cfg = get_config()
    print(cfg.data_dir)
    print(cfg.decay.episodic)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ScoringConfig:
    """Weights of the composite importance formula.

    The six signal weights sum to 1.0; the kind bonuses are added on top and
    the result is clamped to ``[0, 1]``.
    """

    recency: float = 0.25
    frequency: float = 0.20
    relevance_feedback: float = 0.20
    confidence: float = 0.15
    outcome_impact: float = 0.10
    user_feedback: float = 0.10

    procedural_bonus: float = 0.10
    semantic_bonus: float = 0.05

    recency_half_life_hours: float = 168.0
    """Half-life of the recency signal, measured from ``updated_at``."""

    frequency_saturation: int = 10
    """Access count at which the frequency signal reaches 1.0."""

    access_half_life_extension: float = 0.2
    """Fractional half-life extension granted per recorded access."""

    relevance_feedback_increment: float = 0.05
    """Nudge applied to the relevance-feedback signal on every access."""

    user_feedback_step: float = 0.1
    """Step applied to the user-feedback signal per useful/useless vote."""


@dataclass(frozen=True, slots=True)
class DecayConfig:
    """Base strength half-lives, in hours, per record kind."""

    working: float = 1.0
    episodic: float = 24.0
    semantic: float = 168.0
    procedural: float = 720.0

    def as_dict(self) -> dict[str, float]:
        return {
            "working": self.working,
            "episodic": self.episodic,
            "semantic": self.semantic,
            "procedural": self.procedural,
        }


@dataclass(frozen=True, slots=True)
class LifecycleConfig:
    """Thresholds that drive the record state machine."""

    grace_period_hours: float = 1.0
    """A ``created`` record becomes ``active`` after this long even unread."""

    early_archive_importance: float = 0.1
    early_archive_window_hours: float = 24.0

    consolidate_strength: float = 0.3
    consolidate_min_access: int = 2

    archive_strength: float = 0.1

    forget_strength: float = 0.01

    reactivate_strength: float = 0.3
    """Strength an archived/consolidated record must exceed on access to
    return to ``active``."""

    tombstone_marker: str = "[forgotten]"


@dataclass(frozen=True, slots=True)
class PromotionConfig:
    """Eligibility thresholds for moving records to broader scopes."""

    session_importance: float = 0.5
    session_access_count: int = 2

    user_importance: float = 0.7
    user_access_count: int = 5
    user_min_projects: int = 2

    duplicate_similarity: float = 0.8
    """Content similarity above which a promoted record merges into an
    existing record of the target scope instead of creating a new one."""


@dataclass(frozen=True, slots=True)
class ScopeWeights:
    """Multipliers applied to each scope's contribution during fan-out."""

    session: float = 1.5
    project: float = 1.0
    user: float = 0.7

    def as_dict(self) -> dict[str, float]:
        return {"session": self.session, "project": self.project, "user": self.user}


@dataclass(frozen=True, slots=True)
class RetrievalConfig:
    """Parameters that govern recall ranking."""

    default_limit: int = 10
    max_limit: int = 200
    candidate_multiplier: int = 3

    hybrid_bm25: float = 0.3
    hybrid_vector: float = 0.3
    hybrid_strength: float = 0.4

    text_bm25: float = 0.6
    text_strength: float = 0.4

    default_strategy: str = "textonly"
    rrf_k: int = 60
    scope_weights: ScopeWeights = field(default_factory=ScopeWeights)


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters for the batch consolidation cycle."""

    decay_queue_age_days: int = 30
    decay_queue_idle_days: int = 14
    decay_queue_importance: float = 0.3

    dedup_similarity: float = 0.8

    summary_max_chars: int = 2000
    summary_base_confidence: float = 0.5
    summary_confidence_per_member: float = 0.1
    summary_max_confidence: float = 0.85

    max_tasks_per_run: int = 200


@dataclass(frozen=True, slots=True)
class EvolutionConfig:
    """Bounds for feedback-driven parameter tuning."""

    min_data_points: int = 50
    max_scope_weight_delta: float = 0.2
    scope_weight_floor: float = 0.1
    scope_weight_ceiling: float = 3.0
    min_scope_weight_change: float = 0.02

    strategy_margin: float = 0.1
    strategy_min_calls: int = 10

    half_life_min_factor: float = 0.5
    half_life_max_factor: float = 2.0
    min_half_life_change: float = 0.05

    lookback_days: int = 7


@dataclass(frozen=True, slots=True)
class EmbeddingConfig:
    """Settings for the optional Ollama embedding provider."""

    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    model: str = "nomic-embed-text"
    dims: int = 768
    timeout_seconds: float = 30.0


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EngramsConfig:
    """Root configuration object for the engrams engine.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.  Each scope partition lives in
    ``data_dir / "<scope>.db"``; engine-wide tables live in
    ``data_dir / "system.db"``.
    """

    data_dir: Path = field(default_factory=lambda: Path("~/.engrams"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.engrams/backups"))
    backup_count: int = 5
    backup_on_init: bool = True

    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    decay: DecayConfig = field(default_factory=DecayConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    promotion: PromotionConfig = field(default_factory=PromotionConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)

    def __post_init__(self) -> None:
        # Expand ~ in path fields.  We use object.__setattr__ because the
        # dataclass is frozen.
        object.__setattr__(self, "data_dir", Path(self.data_dir).expanduser())
        object.__setattr__(self, "backup_dir", Path(self.backup_dir).expanduser())

    def tuning_defaults(self) -> dict[str, dict[str, Any]]:
        """Seed values for every tunable ``tuning_state`` entry."""
        return {
            "scope_weights": self.retrieval.scope_weights.as_dict(),
            "decay_half_lives": self.decay.as_dict(),
            "promotion_thresholds": {
                "importance": self.promotion.session_importance,
                "access_count": self.promotion.session_access_count,
            },
            "retrieval_strategy": {
                "default_strategy": self.retrieval.default_strategy,
            },
        }


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "ENGRAMS_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    if target_type is Path:
        return target_type(value)  # type: ignore[return-value]
    return target_type(value)  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: EngramsConfig | None = None


def get_config(*, reload: bool = False) -> EngramsConfig:
    """Return the current :class:`EngramsConfig`.

    On the first call the config is built by merging defaults with any
    ``ENGRAMS_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(EngramsConfig, _ENV_PREFIX)
    return _cached_config
