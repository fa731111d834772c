"""Shared fixtures and helpers for the engrams test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from engrams.config import get_config
from engrams.embeddings import OllamaEmbeddingProvider
from engrams.engine import Engine
from engrams.journal import Journal
from engrams.lifecycle import LifecycleManager
from engrams.promotion import PromotionPipeline
from engrams.records import SCOPES, MemoryRecord
from engrams.storage import PARTITION_SCHEMA, SYSTEM_SCHEMA, Storage
from engrams.store import RecordStore

# Fixed evaluation time used throughout the suite.
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

DIMS = 4


def hours(n: float) -> timedelta:
    return timedelta(hours=n)


def days(n: float) -> timedelta:
    return timedelta(days=n)


# ---------------------------------------------------------------------------
# Configuration isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Any:
    """Point every configured path at ``tmp_path``.

    Tests never touch ``~/.engrams``.  Backups on init are disabled to keep
    the suite fast; the storage tests enable them explicitly.
    """
    monkeypatch.setenv("ENGRAMS_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("ENGRAMS_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("ENGRAMS_BACKUP_ON_INIT", "false")
    monkeypatch.setenv("ENGRAMS_EMBEDDING__ENABLED", "false")
    yield get_config(reload=True)
    monkeypatch.undo()
    get_config(reload=True)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """An initialised partition database in a temp directory."""
    s = Storage(tmp_path / "partition.db", PARTITION_SCHEMA, DIMS)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def system_storage(tmp_path: Path) -> Storage:
    s = Storage(tmp_path / "system.db", SYSTEM_SCHEMA)
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def journal(system_storage: Storage) -> Journal:
    j = Journal(system_storage)
    await j.initialize()
    return j


@pytest.fixture
async def stores(tmp_path: Path) -> dict[str, RecordStore]:
    """One initialised :class:`RecordStore` per scope."""
    out: dict[str, RecordStore] = {}
    for scope in SCOPES:
        s = Storage(tmp_path / f"{scope}.db", PARTITION_SCHEMA, DIMS)
        await s.initialize()
        out[scope] = RecordStore(s, scope)
    yield out  # type: ignore[misc]
    for store in out.values():
        await store.storage.close()


@pytest.fixture
def lifecycle(stores: dict[str, RecordStore], journal: Journal) -> LifecycleManager:
    return LifecycleManager(stores, journal)


@pytest.fixture
def promotion(
    stores: dict[str, RecordStore],
    journal: Journal,
    lifecycle: LifecycleManager,
) -> PromotionPipeline:
    return PromotionPipeline(stores, journal, lifecycle)


@pytest.fixture
async def engine(tmp_path: Path) -> Engine:
    """An initialised :class:`Engine` without embeddings."""
    e = Engine(data_dir=tmp_path / "engine")
    await e.initialize()
    yield e  # type: ignore[misc]
    await e.shutdown()


def fake_embedding(text: str) -> list[float]:
    """Deterministic 4-d embedding keyed on a few topic words."""
    lowered = text.lower()
    vec = [
        1.0 if "redis" in lowered else 0.0,
        1.0 if "python" in lowered else 0.0,
        1.0 if "deploy" in lowered else 0.0,
        0.1,
    ]
    return vec


@pytest.fixture
def mock_embeddings() -> MagicMock:
    """A MagicMock standing in for :class:`OllamaEmbeddingProvider`.

    ``embed`` returns :func:`fake_embedding` of its input.
    """
    provider = MagicMock(spec=OllamaEmbeddingProvider)
    provider.dims = DIMS
    provider.embed = AsyncMock(side_effect=fake_embedding)
    provider.health_check = AsyncMock(return_value=True)
    return provider


# ---------------------------------------------------------------------------
# Shared test helpers
# ---------------------------------------------------------------------------


def make_record(
    content: str = "test memory",
    kind: str = "semantic",
    scope: str = "project",
    now: datetime = T0,
    **kwargs: Any,
) -> MemoryRecord:
    """Build a record with all timestamps at *now* (``T0`` by default)."""
    return MemoryRecord.new(content, kind, scope, now=now, **kwargs)


async def insert_record(
    stores: dict[str, RecordStore],
    content: str = "test memory",
    kind: str = "semantic",
    scope: str = "project",
    now: datetime = T0,
    last_accessed_at: datetime | None = None,
    **kwargs: Any,
) -> MemoryRecord:
    """Insert a record directly through its scope's store and return it."""
    record = make_record(content, kind, scope, now, **kwargs)
    if last_accessed_at is not None:
        record.last_accessed_at = last_accessed_at
    await stores[scope].insert(record)
    return record
