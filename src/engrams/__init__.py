"""engrams -- scored, decaying, self-tuning memory engine.

Quick start::

    from engrams import Engine

    async def main():
        async with Engine() as engine:
            stored = await engine.store("Redis SCAN is O(N)", kind="semantic", scope="project")
            hits = await engine.recall("How does Redis SCAN work?")
            await engine.feedback(hits["log_id"], was_useful=True)

For lower-level access, import from submodules::

    from engrams.records import MemoryRecord, KINDS, SCOPES, STATUSES
    from engrams.scoring import compute_importance, compute_strength
    from engrams.fusion import reciprocal_rank_fusion
    from engrams.evolution import analyze_strategies, propose_evolution
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from engrams.engine import Engine
from engrams.errors import (
    ComputationError,
    EngramsError,
    NotFoundError,
    StaleRecordError,
    StoreUnavailable,
    ValidationError,
)
from engrams.records import KINDS, SCOPES, STATUSES, MemoryRecord

__all__ = [
    "__version__",
    "Engine",
    "MemoryRecord",
    "KINDS",
    "SCOPES",
    "STATUSES",
    "EngramsError",
    "ValidationError",
    "NotFoundError",
    "StaleRecordError",
    "StoreUnavailable",
    "ComputationError",
]
