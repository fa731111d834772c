"""Feedback-driven tuning of the retrieval parameters.

The retrieval log records, for every recall, the strategy used, the ids
returned and (once the caller reports it) whether the result was useful.
This module turns that log into bounded parameter changes:

* **scope weights** move towards scopes whose records turn out useful more
  often than average, by at most ``0.2`` per cycle and never outside
  ``[0.1, 3.0]``;
* the **default strategy** switches when an alternative backed by enough
  calls beats the current default by a clear margin;
* **decay half-lives** stretch for kinds that prove useful and shrink for
  kinds that do not, by a factor between ``0.5`` and ``2.0`` per cycle.

Nothing is proposed until the window holds enough data points.  Applying a
proposal writes an absolute value, so applying the same proposal twice is
a no-op.

Usage::

    controller = EvolutionController(journal, stores)
    preview = await controller.evolve(dry_run=True)
    applied = await controller.evolve(dry_run=False)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from engrams.config import EvolutionConfig, get_config
from engrams.errors import ValidationError
from engrams.journal import Journal, RetrievalLogEntry
from engrams.records import KINDS, SCOPES, MemoryRecord, utcnow
from engrams.retrieval import STRATEGIES
from engrams.store import RecordStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass
class StrategyAnalysis:
    strategy: str
    total_calls: int = 0
    useful_count: int = 0
    useless_count: int = 0
    unknown_count: int = 0

    @property
    def effectiveness(self) -> float:
        """``useful / (useful + useless)``, NaN without any feedback."""
        rated = self.useful_count + self.useless_count
        return self.useful_count / rated if rated else math.nan

    def to_dict(self) -> dict[str, Any]:
        eff = self.effectiveness
        return {
            "strategy": self.strategy,
            "total_calls": self.total_calls,
            "useful_count": self.useful_count,
            "useless_count": self.useless_count,
            "unknown_count": self.unknown_count,
            "effectiveness": None if math.isnan(eff) else round(eff, 4),
        }


@dataclass
class UtilityAnalysis:
    """Usefulness of the retrieved records of one scope (or kind)."""

    group: str
    total_retrieved: int = 0
    useful_count: int = 0

    @property
    def effectiveness(self) -> float:
        return self.useful_count / self.total_retrieved if self.total_retrieved else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "group": self.group,
            "total_retrieved": self.total_retrieved,
            "useful_count": self.useful_count,
            "effectiveness": round(self.effectiveness, 4),
        }


def analyze_strategies(logs: Iterable[RetrievalLogEntry]) -> list[StrategyAnalysis]:
    """Per-strategy call and feedback counts, most used first."""
    by_strategy: dict[str, StrategyAnalysis] = {}
    for entry in logs:
        stats = by_strategy.setdefault(entry.strategy, StrategyAnalysis(entry.strategy))
        stats.total_calls += 1
        if entry.was_useful is True:
            stats.useful_count += 1
        elif entry.was_useful is False:
            stats.useless_count += 1
        else:
            stats.unknown_count += 1
    return sorted(by_strategy.values(), key=lambda s: (-s.total_calls, s.strategy))


def _analyze_utility(
    logs: Iterable[RetrievalLogEntry],
    records: Iterable[MemoryRecord],
    attribute: str,
) -> list[UtilityAnalysis]:
    groups = {r.id: getattr(r, attribute) for r in records}
    stats: dict[str, UtilityAnalysis] = {}
    for entry in logs:
        for memory_id in entry.result_ids:
            group = groups.get(memory_id, "unknown")
            item = stats.setdefault(group, UtilityAnalysis(group))
            item.total_retrieved += 1
            if entry.was_useful is True:
                item.useful_count += 1
    return sorted(stats.values(), key=lambda u: (-u.total_retrieved, u.group))


def analyze_scope_utility(
    logs: Iterable[RetrievalLogEntry],
    records: Iterable[MemoryRecord],
) -> list[UtilityAnalysis]:
    """Usefulness ratio of retrieved records, per owning scope.

    Ids that no longer resolve to a record are grouped under ``unknown``.
    """
    return _analyze_utility(logs, records, "scope")


def analyze_kind_utility(
    logs: Iterable[RetrievalLogEntry],
    records: Iterable[MemoryRecord],
) -> list[UtilityAnalysis]:
    """Usefulness ratio of retrieved records, per kind."""
    return _analyze_utility(logs, records, "kind")


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


@dataclass
class EvolutionProposal:
    """One proposed parameter change.

    ``key`` is dotted: ``<tuning entry>.<field>``, e.g.
    ``scope_weights.session``.
    """

    key: str
    current: Any
    proposed: Any
    reason: str
    confidence: float

    @property
    def entry(self) -> str:
        return self.key.split(".", 1)[0]

    @property
    def field_name(self) -> str:
        return self.key.split(".", 1)[1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "current": self.current,
            "proposed": self.proposed,
            "reason": self.reason,
            "confidence": round(self.confidence, 4),
        }


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def propose_evolution(
    state: Mapping[str, Mapping[str, Any]],
    strategy_analysis: list[StrategyAnalysis],
    scope_analysis: list[UtilityAnalysis],
    kind_analysis: list[UtilityAnalysis] | None = None,
    config: EvolutionConfig | None = None,
) -> list[EvolutionProposal]:
    """Bounded parameter changes justified by the analyses.

    Parameters
    ----------
    state:
        Current tuning state, as returned by :meth:`Journal.tuning_state`.
    strategy_analysis, scope_analysis:
        Output of :func:`analyze_strategies` and
        :func:`analyze_scope_utility`.
    kind_analysis:
        Output of :func:`analyze_kind_utility`; half-lives are only
        proposed when given.

    Returns
    -------
    list[EvolutionProposal]
        Empty when the analyses cover fewer than ``min_data_points`` calls.
    """
    cfg = config or get_config().evolution
    data_points = sum(s.total_calls for s in strategy_analysis)
    if data_points < cfg.min_data_points:
        log.debug("Evolution skipped: %d data points < %d", data_points, cfg.min_data_points)
        return []

    proposals: list[EvolutionProposal] = []
    proposals.extend(_propose_scope_weights(state, scope_analysis, cfg))
    proposals.extend(_propose_strategy(state, strategy_analysis, cfg))
    if kind_analysis is not None:
        proposals.extend(_propose_half_lives(state, kind_analysis, cfg))
    return proposals


def _propose_scope_weights(
    state: Mapping[str, Mapping[str, Any]],
    scope_analysis: list[UtilityAnalysis],
    cfg: EvolutionConfig,
) -> list[EvolutionProposal]:
    with_data = [a for a in scope_analysis if a.group in SCOPES and a.total_retrieved > 0]
    if len(with_data) < 2:
        return []
    weights = state.get("scope_weights", {})
    avg = sum(a.effectiveness for a in with_data) / len(with_data)
    out: list[EvolutionProposal] = []
    for analysis in with_data:
        current = float(weights.get(analysis.group, 1.0))
        delta = _clamp(
            (analysis.effectiveness - avg) * cfg.max_scope_weight_delta,
            -cfg.max_scope_weight_delta,
            cfg.max_scope_weight_delta,
        )
        proposed = round(
            _clamp(current + delta, cfg.scope_weight_floor, cfg.scope_weight_ceiling), 4
        )
        if abs(proposed - current) > cfg.min_scope_weight_change:
            out.append(
                EvolutionProposal(
                    f"scope_weights.{analysis.group}",
                    current,
                    proposed,
                    f"scope {analysis.group!r} effectiveness "
                    f"{analysis.effectiveness:.0%} vs average {avg:.0%}",
                    min(1.0, analysis.total_retrieved / cfg.min_data_points),
                )
            )
    return out


def _propose_strategy(
    state: Mapping[str, Mapping[str, Any]],
    strategy_analysis: list[StrategyAnalysis],
    cfg: EvolutionConfig,
) -> list[EvolutionProposal]:
    current = str(state.get("retrieval_strategy", {}).get("default_strategy", "textonly"))
    by_name = {s.strategy: s for s in strategy_analysis}
    # A default nobody has rated counts as useless.
    current_eff = 0.0
    if current in by_name and not math.isnan(by_name[current].effectiveness):
        current_eff = by_name[current].effectiveness

    candidates = [
        s
        for s in strategy_analysis
        if s.strategy != current
        and s.strategy in STRATEGIES
        and s.total_calls >= cfg.strategy_min_calls
        and not math.isnan(s.effectiveness)
    ]
    if not candidates:
        return []
    best = max(candidates, key=lambda s: (s.effectiveness, s.total_calls))
    if best.effectiveness <= current_eff + cfg.strategy_margin:
        return []
    return [
        EvolutionProposal(
            "retrieval_strategy.default_strategy",
            current,
            best.strategy,
            f"strategy {best.strategy!r} effectiveness {best.effectiveness:.0%} "
            f"vs current {current!r} {current_eff:.0%}",
            min(1.0, best.total_calls / 100),
        )
    ]


def _propose_half_lives(
    state: Mapping[str, Mapping[str, Any]],
    kind_analysis: list[UtilityAnalysis],
    cfg: EvolutionConfig,
) -> list[EvolutionProposal]:
    with_data = [a for a in kind_analysis if a.group in KINDS and a.total_retrieved > 0]
    if len(with_data) < 2:
        return []
    half_lives = state.get("decay_half_lives", {})
    avg = sum(a.effectiveness for a in with_data) / len(with_data)
    out: list[EvolutionProposal] = []
    for analysis in with_data:
        if analysis.group not in half_lives:
            continue
        current = float(half_lives[analysis.group])
        factor = _clamp(
            1.0 + (analysis.effectiveness - avg),
            cfg.half_life_min_factor,
            cfg.half_life_max_factor,
        )
        if abs(factor - 1.0) <= cfg.min_half_life_change:
            continue
        out.append(
            EvolutionProposal(
                f"decay_half_lives.{analysis.group}",
                current,
                round(current * factor, 4),
                f"kind {analysis.group!r} effectiveness {analysis.effectiveness:.0%} "
                f"vs average {avg:.0%} (x{factor:.2f})",
                min(1.0, analysis.total_retrieved / cfg.min_data_points),
            )
        )
    return out


# ---------------------------------------------------------------------------
# EvolutionController
# ---------------------------------------------------------------------------


@dataclass
class EvolutionResult:
    """Outcome of :meth:`EvolutionController.evolve`."""

    dry_run: bool
    data_points: int = 0
    strategies: list[StrategyAnalysis] = field(default_factory=list)
    scopes: list[UtilityAnalysis] = field(default_factory=list)
    kinds: list[UtilityAnalysis] = field(default_factory=list)
    proposals: list[EvolutionProposal] = field(default_factory=list)
    applied: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "data_points": self.data_points,
            "strategies": [s.to_dict() for s in self.strategies],
            "scopes": [s.to_dict() for s in self.scopes],
            "kinds": [k.to_dict() for k in self.kinds],
            "proposals": [p.to_dict() for p in self.proposals],
            "applied": list(self.applied),
            "errors": list(self.errors),
        }


class EvolutionController:
    """Reads the retrieval log and tunes the parameters it justifies.

    Parameters
    ----------
    journal:
        Retrieval log and tuning state.
    stores:
        Record store per scope, used to resolve logged ids to scope and kind.
    config:
        Defaults to ``get_config().evolution``.
    """

    def __init__(
        self,
        journal: Journal,
        stores: Mapping[str, RecordStore],
        config: EvolutionConfig | None = None,
    ) -> None:
        self._journal = journal
        self._stores = stores
        self._cfg = config or get_config().evolution

    async def evolve(
        self,
        dry_run: bool = True,
        lookback_days: float | None = None,
        now: datetime | None = None,
    ) -> EvolutionResult:
        """Analyse the recent log and propose (and optionally apply) changes.

        Parameters
        ----------
        dry_run:
            Only compute the proposals.  Defaults to ``True``.
        lookback_days:
            Size of the log window; defaults to the configured value.
        now:
            End of the window; defaults to the current time.
        """
        lookback = self._cfg.lookback_days if lookback_days is None else lookback_days
        if lookback <= 0:
            raise ValidationError(
                f"lookback_days must be positive, got {lookback}", field="lookback_days"
            )
        now = now or utcnow()
        result = EvolutionResult(dry_run=dry_run)

        logs = await self._journal.logs_since(now - timedelta(days=lookback))
        records = await self._resolve(logs, result)
        state = await self._journal.tuning_state()

        result.data_points = len(logs)
        result.strategies = analyze_strategies(logs)
        result.scopes = analyze_scope_utility(logs, records)
        result.kinds = analyze_kind_utility(logs, records)
        result.proposals = propose_evolution(
            state, result.strategies, result.scopes, result.kinds, self._cfg
        )
        result.applied = await self.apply(result.proposals, dry_run=dry_run, now=now)
        log.info(
            "Evolution %s: %d log entries, %d proposals, %d applied",
            "preview" if dry_run else "run",
            result.data_points,
            len(result.proposals),
            sum(1 for a in result.applied if a.get("changed")),
        )
        return result

    async def _resolve(
        self,
        logs: list[RetrievalLogEntry],
        result: EvolutionResult,
    ) -> list[MemoryRecord]:
        ids = {memory_id for entry in logs for memory_id in entry.result_ids}
        if not ids:
            return []
        records: list[MemoryRecord] = []
        for scope in SCOPES:
            store = self._stores.get(scope)
            if store is None:
                continue
            try:
                records.extend((await store.get_many(ids)).values())
            except Exception as exc:
                log.warning("Evolution could not read scope %s: %s", scope, exc)
                result.errors.append(f"{scope}: {exc}")
        return records

    async def apply(
        self,
        proposals: list[EvolutionProposal],
        dry_run: bool = True,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Write *proposals* into the tuning state.

        Each proposal is re-clamped against the value stored right now, so
        a stale or hand-made proposal can never move a parameter further
        than one cycle allows.  Writing a value that is already stored
        changes nothing and appends no history.

        Returns
        -------
        list[dict]
            Per proposal: ``key``, ``old``, ``new`` and ``changed``; or
            ``key`` and ``error`` when the proposal was rejected.
        """
        now = now or utcnow()
        state = await self._journal.tuning_state()
        outcomes: list[dict[str, Any]] = []
        for proposal in proposals:
            try:
                value = self._bounded(proposal, state)
            except (ValidationError, KeyError, TypeError, ValueError) as exc:
                log.warning("Rejected evolution proposal %s: %s", proposal.key, exc)
                outcomes.append({"key": proposal.key, "error": str(exc)})
                continue
            old = state.get(proposal.entry, {}).get(proposal.field_name)
            if dry_run:
                outcomes.append({"key": proposal.key, "old": old, "new": value, "changed": old != value})
                continue
            old, new = await self._journal.set_tuning(
                proposal.entry, proposal.field_name, value, proposal.reason, now
            )
            state.setdefault(proposal.entry, {})[proposal.field_name] = new
            outcomes.append({"key": proposal.key, "old": old, "new": new, "changed": old != new})
        return outcomes

    def _bounded(self, proposal: EvolutionProposal, state: Mapping[str, Mapping[str, Any]]) -> Any:
        cfg = self._cfg
        entry, name = proposal.entry, proposal.field_name
        stored = state.get(entry, {})
        if entry == "scope_weights":
            if name not in SCOPES:
                raise ValidationError(f"Unknown scope {name!r}", field="key")
            current = float(stored.get(name, 1.0))
            proposed = _clamp(
                float(proposal.proposed),
                current - cfg.max_scope_weight_delta,
                current + cfg.max_scope_weight_delta,
            )
            return round(_clamp(proposed, cfg.scope_weight_floor, cfg.scope_weight_ceiling), 4)
        if entry == "decay_half_lives":
            if name not in KINDS:
                raise ValidationError(f"Unknown kind {name!r}", field="key")
            current = float(stored[name])
            proposed = float(proposal.proposed)
            if not math.isfinite(proposed) or proposed <= 0:
                raise ValidationError(f"Invalid half-life {proposed!r}", field="key")
            return round(
                _clamp(
                    proposed,
                    current * cfg.half_life_min_factor,
                    current * cfg.half_life_max_factor,
                ),
                4,
            )
        if entry == "retrieval_strategy" and name == "default_strategy":
            if proposal.proposed not in STRATEGIES:
                raise ValidationError(f"Unknown strategy {proposal.proposed!r}", field="key")
            return proposal.proposed
        raise ValidationError(f"Unsupported tuning key {proposal.key!r}", field="key")
