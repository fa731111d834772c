"""End-to-end tests through the :class:`Engine` facade."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from engrams.engine import Engine
from engrams.errors import NotFoundError, ValidationError

from tests.conftest import T0


# -----------------------------------------------------------------------
# 1. Initialisation
# -----------------------------------------------------------------------


class TestInitialisation:
    async def test_operations_require_initialize(self, tmp_path: Path) -> None:
        engine = Engine(data_dir=tmp_path / "cold")
        with pytest.raises(RuntimeError, match="not initialized"):
            await engine.recall("anything")
        with pytest.raises(RuntimeError):
            await engine.store("x", "semantic", "project")

    async def test_creates_partition_files(self, tmp_path: Path) -> None:
        async with Engine(data_dir=tmp_path / "fresh") as engine:
            status = await engine.status()
        for name in ("session.db", "project.db", "user.db", "system.db"):
            assert (tmp_path / "fresh" / name).exists()
        assert set(status["scopes"]) == {"session", "project", "user"}
        assert all(s["available"] for s in status["scopes"].values())
        assert status["embeddings"] == {"enabled": False}
        assert status["tuning"]["retrieval_strategy"]["default_strategy"] == "textonly"

    async def test_initialize_is_idempotent(self, engine: Engine) -> None:
        await engine.initialize()
        assert (await engine.status())["scopes"]["project"]["available"] is True


# -----------------------------------------------------------------------
# 2. store / recall / feedback
# -----------------------------------------------------------------------


class TestStoreAndRecall:
    async def test_store_computes_importance(self, engine: Engine) -> None:
        result = await engine.store("Python uses indentation", "semantic", "project", tags=["python"])
        memory = result["memory"]
        assert result["embedded"] is False
        assert memory["status"] == "created"
        assert memory["tags"] == ["python"]
        assert 0.0 < memory["importance"] <= 1.0

    async def test_store_explicit_importance(self, engine: Engine) -> None:
        result = await engine.store("pinned", "semantic", "user", importance=0.9)
        assert result["memory"]["importance"] == 0.9

    @pytest.mark.parametrize(
        "args,kwargs",
        [
            (("", "semantic", "project"), {}),
            (("x", "dream", "project"), {}),
            (("x", "semantic", "galaxy"), {}),
            (("x", "working", "project"), {}),
            (("x", "semantic", "project"), {"importance": 1.5}),
            (("x", "semantic", "project"), {"metadata": ["not", "a", "dict"]}),
        ],
    )
    async def test_store_validation(self, engine: Engine, args: tuple, kwargs: dict) -> None:
        with pytest.raises(ValidationError):
            await engine.store(*args, **kwargs)

    async def test_recall_scores_project_fact(self, engine: Engine) -> None:
        stored = await engine.store(
            "Redis SCAN is O(N) and iterates with a cursor",
            "semantic",
            "project",
            importance=0.8,
            now=T0,
        )
        result = await engine.recall("How does Redis SCAN work?", now=T0)
        assert [m["id"] for m in result["memories"]] == [stored["id"]]
        assert result["memories"][0]["score"] == pytest.approx(0.92)
        assert result["memories"][0]["status"] == "active"
        assert result["failed_scopes"] == []

    async def test_feedback_updates_records(self, engine: Engine) -> None:
        stored = await engine.store("redis cluster slots", "semantic", "project", importance=0.5)
        recalled = await engine.recall("redis")
        out = await engine.feedback(recalled["log_id"], True)
        assert out == {"log_id": recalled["log_id"], "was_useful": True, "memories_updated": 1}

        again = await engine.recall("redis")
        memory = next(m for m in again["memories"] if m["id"] == stored["id"])
        assert memory["importance"] == pytest.approx(0.51)
        assert memory["metadata"]["signals"]["user_feedback"] == pytest.approx(0.6)

    async def test_feedback_unknown_log(self, engine: Engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.feedback(9999, True)

    async def test_feedback_requires_bool(self, engine: Engine) -> None:
        with pytest.raises(ValidationError):
            await engine.feedback(1, "yes")  # type: ignore[arg-type]


# -----------------------------------------------------------------------
# 3. forget / promote
# -----------------------------------------------------------------------


class TestForgetAndPromote:
    async def test_forget(self, engine: Engine) -> None:
        stored = await engine.store("temporary password hint", "semantic", "project")
        out = await engine.forget(stored["id"], reason="privacy")
        assert out["previous_status"] == "created"
        assert out["status"] == "forgotten"
        assert (await engine.recall("password", include_archived=True))["memories"] == []
        # Forgetting twice is harmless.
        assert (await engine.forget(stored["id"]))["status"] == "forgotten"

    async def test_forget_during_recall_is_final(
        self, engine: Engine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        stored = await engine.store("redis cluster slots", "semantic", "project")
        journal = engine._journal
        log_retrieval = journal.log_retrieval

        async def _forget_first(*args: object, **kwargs: object) -> int:
            await engine.forget(stored["id"])
            return await log_retrieval(*args, **kwargs)

        monkeypatch.setattr(journal, "log_retrieval", _forget_first)
        assert (await engine.recall("redis"))["memories"] == []
        monkeypatch.undo()

        again = await engine.forget(stored["id"])
        assert again["previous_status"] == "forgotten"
        assert (await engine.recall("redis", include_archived=True))["memories"] == []

    async def test_forget_during_feedback_is_final(
        self, engine: Engine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        stored = await engine.store("redis cluster slots", "semantic", "project")
        recalled = await engine.recall("redis")
        get_many = engine._get_many

        async def _forget_after_read(ids: object) -> dict:
            found = await get_many(ids)
            await engine.forget(stored["id"])
            return found

        monkeypatch.setattr(engine, "_get_many", _forget_after_read)
        out = await engine.feedback(recalled["log_id"], True)
        assert out["memories_updated"] == 0
        monkeypatch.undo()
        assert (await engine.forget(stored["id"]))["previous_status"] == "forgotten"

    async def test_forget_unknown(self, engine: Engine) -> None:
        with pytest.raises(NotFoundError):
            await engine.forget("no-such-id")

    async def test_promote_session_to_project(self, engine: Engine) -> None:
        stored = await engine.store("prefer ruff over flake8", "semantic", "session", importance=0.7)
        out = await engine.promote(stored["id"], "project")
        assert out["action"] == "created"
        assert out["target_id"] != stored["id"]
        peek = await engine.peek(scope="project")
        assert peek["kind_counts"] == {"semantic": 1}

    async def test_working_memory_not_promotable(self, engine: Engine) -> None:
        stored = await engine.store("scratch", "working", "session", importance=1.0)
        with pytest.raises(ValidationError):
            await engine.promote(stored["id"], "project")

    async def test_promote_invalid_target(self, engine: Engine) -> None:
        stored = await engine.store("fact", "semantic", "session")
        with pytest.raises(ValidationError):
            await engine.promote(stored["id"], "galaxy")


# -----------------------------------------------------------------------
# 4. link / related
# -----------------------------------------------------------------------


class TestGraph:
    async def test_link_and_related(self, engine: Engine) -> None:
        a = await engine.store("deploy needs migrations", "procedural", "project")
        b = await engine.store("migrations live in alembic/", "semantic", "project")
        c = await engine.store("alembic config is in pyproject", "semantic", "user")

        link = await engine.link(a["id"], b["id"], "depends-on", weight=0.5)
        assert link["relation"] == "depends-on"
        await engine.link(b["id"], c["id"], "see-also")

        one_hop = await engine.related(a["id"])
        assert [r["id"] for r in one_hop["related"]] == [b["id"]]
        assert one_hop["edges"][0]["relation"] == "depends-on"

        two_hops = await engine.related(a["id"], depth=2)
        assert [(r["id"], r["hops"]) for r in two_hops["related"]] == [(b["id"], 1), (c["id"], 2)]

    async def test_link_validation(self, engine: Engine) -> None:
        a = await engine.store("one", "semantic", "project")
        with pytest.raises(NotFoundError):
            await engine.link(a["id"], "missing", "x")
        with pytest.raises(ValidationError):
            await engine.link(a["id"], a["id"], "  ")
        with pytest.raises(ValidationError):
            await engine.link(a["id"], a["id"], "x", weight=2.0)

    async def test_related_depth_bounds(self, engine: Engine) -> None:
        a = await engine.store("one", "semantic", "project")
        for depth in (0, 6):
            with pytest.raises(ValidationError):
                await engine.related(a["id"], depth=depth)


# -----------------------------------------------------------------------
# 5. maintenance and inspection
# -----------------------------------------------------------------------


class TestMaintenance:
    async def test_consolidate_dry_run(self, engine: Engine) -> None:
        await engine.store("Redis SCAN is O(N)", "semantic", "project", tags=["redis"], importance=0.6)
        await engine.store("Redis SCAN is O(N)", "semantic", "project", tags=["redis"], importance=0.6)
        out = await engine.consolidate(scope="project", dry_run=True)
        assert out["dry_run"] is True
        assert out["skipped"] is False
        assert out["scopes"] == ["project"]

    async def test_partition_and_aggregate(self, engine: Engine) -> None:
        await engine.store("a", "semantic", "project", tags=["x"])
        out = await engine.partition("kind")
        assert out["partition_by"] == "kind"
        fused = await engine.aggregate([["a", "b"], ["b"]])
        assert fused["results"][0]["id"] == "b"

    async def test_evolve_without_data(self, engine: Engine) -> None:
        out = await engine.evolve()
        assert out["dry_run"] is True
        assert out["data_points"] == 0
        assert out["proposals"] == []


# -----------------------------------------------------------------------
# 6. With an embedding provider
# -----------------------------------------------------------------------


class TestWithEmbeddings:
    @pytest.fixture
    async def embedded(self, tmp_path: Path, mock_embeddings: MagicMock) -> Engine:
        e = Engine(data_dir=tmp_path / "embedded", embeddings=mock_embeddings)
        await e.initialize()
        yield e  # type: ignore[misc]
        await e.shutdown()

    async def test_store_embeds(self, embedded: Engine, mock_embeddings: MagicMock) -> None:
        out = await embedded.store("redis streams", "semantic", "project")
        assert out["embedded"] is True
        mock_embeddings.embed.assert_awaited_with("redis streams")

    async def test_hybrid_recall(self, embedded: Engine) -> None:
        stored = await embedded.store("redis streams", "semantic", "project")
        out = await embedded.recall("redis", strategy="hybrid")
        assert out["strategy"] == "hybrid"
        assert out["memories"][0]["id"] == stored["id"]

    async def test_status_reports_health(self, embedded: Engine) -> None:
        status = await embedded.status()
        assert status["embeddings"] == {"enabled": True, "healthy": True}

    async def test_feedback_drives_strategy_switch(self, embedded: Engine) -> None:
        await embedded.store("redis streams", "semantic", "project", importance=0.9)
        for _ in range(15):
            out = await embedded.recall("redis", strategy="hybrid")
            await embedded.feedback(out["log_id"], True)
        for _ in range(45):
            out = await embedded.recall("redis", strategy="textonly")
            await embedded.feedback(out["log_id"], False)

        result = await embedded.evolve(dry_run=False)

        assert any(
            a["key"] == "retrieval_strategy.default_strategy" and a["new"] == "hybrid"
            for a in result["applied"]
        )
        assert (await embedded.recall("redis"))["strategy"] == "hybrid"
