"""Tests for peek, partition and aggregate."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from engrams.errors import StoreUnavailable, ValidationError
from engrams.inspection import Inspector
from engrams.store import RecordStore

from tests.conftest import T0, days, insert_record


@pytest.fixture
def inspector(stores: dict[str, RecordStore]) -> Inspector:
    return Inspector(stores)


@pytest.fixture
async def populated(stores: dict[str, RecordStore]) -> dict[str, RecordStore]:
    await insert_record(stores, "redis scan cursor", tags=["redis", "db"], importance=0.9, status="active")
    await insert_record(stores, "redis eviction", tags=["redis"], importance=0.6, status="active")
    await insert_record(
        stores, "deploy with blue green", kind="procedural", tags=["ops"], importance=0.3,
        status="active", now=T0 - days(40),
    )
    await insert_record(stores, "old trivia", tags=["misc"], importance=0.1, status="archived")
    await insert_record(
        stores, "session scratch", kind="working", scope="session", tags=["redis"], status="active"
    )
    return stores


class TestPeek:
    async def test_counts(self, inspector: Inspector, populated: dict[str, RecordStore]) -> None:
        view = await inspector.peek()
        assert view["scopes_queried"] == ["session", "project", "user"]
        assert view["skipped_scopes"] == []
        assert view["kind_counts"] == {"semantic": 3, "procedural": 1, "working": 1}
        assert view["status_counts"] == {"active": 4, "archived": 1}
        assert view["top_tags"][0] == {"tag": "redis", "count": 3}
        assert view["date_range"]["min"].startswith("2026-01")
        assert view["date_range"]["max"].startswith("2026-03-01")

    async def test_samples_are_recent_active(
        self, inspector: Inspector, populated: dict[str, RecordStore]
    ) -> None:
        view = await inspector.peek(scope="project", sample_n=2)
        assert view["sample_count"] == 2
        assert all(s["status"] == "active" for s in view["samples"])
        assert "deploy with blue green" not in {s["content"] for s in view["samples"]}

    async def test_focus_ranks_by_relevance(
        self, inspector: Inspector, populated: dict[str, RecordStore]
    ) -> None:
        view = await inspector.peek(scope="project", sample_n=5, focus="deploy")
        assert [s["content"] for s in view["samples"]] == ["deploy with blue green"]
        assert view["samples"][0]["relevance"] == pytest.approx(1.0)

    async def test_zero_samples(self, inspector: Inspector, populated: dict[str, RecordStore]) -> None:
        view = await inspector.peek(sample_n=0)
        assert view["samples"] == []

    async def test_empty_store(self, inspector: Inspector, stores: dict[str, RecordStore]) -> None:
        view = await inspector.peek()
        assert view["kind_counts"] == {}
        assert view["date_range"] == {"min": None, "max": None}

    async def test_invalid_arguments(self, inspector: Inspector) -> None:
        with pytest.raises(ValidationError):
            await inspector.peek(sample_n=-1)
        with pytest.raises(ValidationError):
            await inspector.peek(scope="galaxy")

    async def test_unreadable_scope_skipped(
        self,
        inspector: Inspector,
        populated: dict[str, RecordStore],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(
            populated["user"], "group_stats", AsyncMock(side_effect=StoreUnavailable("user"))
        )
        view = await inspector.peek()
        assert view["skipped_scopes"] == ["user"]
        assert view["kind_counts"]["semantic"] == 3


class TestPartition:
    async def test_by_tag(self, inspector: Inspector, populated: dict[str, RecordStore]) -> None:
        view = await inspector.partition("tag", max_partitions=10)
        keys = [p["key"] for p in view["partitions"]]
        assert keys == ["redis", "db", "ops"]
        redis = view["partitions"][0]
        assert redis["count"] == 3
        # archived "misc" record is not counted
        assert "misc" not in keys

    async def test_by_date(self, inspector: Inspector, populated: dict[str, RecordStore]) -> None:
        view = await inspector.partition("date", scope="project")
        assert [p["key"] for p in view["partitions"]] == ["2026-01", "2026-03"]

    async def test_by_scope(self, inspector: Inspector, populated: dict[str, RecordStore]) -> None:
        view = await inspector.partition("scope")
        assert [(p["key"], p["count"]) for p in view["partitions"]] == [
            ("session", 1),
            ("project", 3),
            ("user", 0),
        ]
        assert view["partitions"][1]["avg_importance"] == pytest.approx(0.6)

    async def test_by_importance_band(
        self, inspector: Inspector, populated: dict[str, RecordStore]
    ) -> None:
        view = await inspector.partition("importance_band", scope="project")
        assert [(p["key"], p["count"]) for p in view["partitions"]] == [
            ("0.25-0.50", 1),
            ("0.50-0.75", 1),
            ("0.75-1.00", 1),
        ]

    async def test_max_partitions(self, inspector: Inspector, populated: dict[str, RecordStore]) -> None:
        view = await inspector.partition("tag", max_partitions=1)
        assert view["total_partitions"] == 1
        assert [p["key"] for p in view["partitions"]] == ["redis"]

    async def test_invalid_arguments(self, inspector: Inspector) -> None:
        with pytest.raises(ValidationError, match="partition_by"):
            await inspector.partition("colour")
        with pytest.raises(ValidationError):
            await inspector.partition("tag", max_partitions=0)


class TestAggregate:
    def test_fuses_partition_results(self, inspector: Inspector) -> None:
        view = inspector.aggregate(
            {
                "redis": [{"id": "a", "content": "one"}, {"id": "b", "content": "two"}],
                "ops": [{"id": "b", "content": "two"}],
            },
            limit=5,
        )
        assert view["total_results"] == 2
        assert view["results"][0]["id"] == "b"
        assert view["results"][0]["sources"] == ["redis", "ops"]
