"""Tests for the lifecycle state machine."""

from __future__ import annotations

import pytest

from engrams.errors import StaleRecordError, ValidationError
from engrams.journal import Journal
from engrams.lifecycle import LEGAL_TRANSITIONS, LifecycleManager, is_legal
from engrams.scoring import compute_strength
from engrams.store import RecordStore

from tests.conftest import T0, days, hours, insert_record, make_record

HALF_LIVES = {"working": 1.0, "episodic": 24.0, "semantic": 168.0, "procedural": 720.0}


class TestLegalEdges:
    def test_forgotten_is_terminal(self) -> None:
        assert LEGAL_TRANSITIONS["forgotten"] == frozenset()

    @pytest.mark.parametrize(
        "old,new",
        [("created", "consolidated"), ("active", "created"), ("forgotten", "active"), ("active", "forgotten")],
    )
    def test_illegal(self, old: str, new: str) -> None:
        assert not is_legal(old, new)

    @pytest.mark.parametrize(
        "old,new",
        [("created", "archived"), ("consolidated", "active"), ("archived", "forgotten")],
    )
    def test_legal(self, old: str, new: str) -> None:
        assert is_legal(old, new)


# -----------------------------------------------------------------------
# 1. evaluate()
# -----------------------------------------------------------------------


class TestEvaluate:
    def test_created_low_importance_archived_early(self, lifecycle: LifecycleManager) -> None:
        record = make_record(importance=0.05)
        decision = lifecycle.evaluate(record, HALF_LIVES, T0 + hours(0.5))
        assert (decision.target, decision.reason) == ("archived", "early-archive")

    def test_created_first_access(self, lifecycle: LifecycleManager) -> None:
        record = make_record(importance=0.5, access_count=1)
        assert lifecycle.evaluate(record, HALF_LIVES, T0).target == "active"

    def test_created_waits_for_grace_period(self, lifecycle: LifecycleManager) -> None:
        record = make_record(importance=0.5)
        assert lifecycle.evaluate(record, HALF_LIVES, T0 + hours(0.5)).target is None
        decision = lifecycle.evaluate(record, HALF_LIVES, T0 + hours(2))
        assert (decision.target, decision.reason) == ("active", "grace-period")

    def test_active_weak_unused_archived(self, lifecycle: LifecycleManager) -> None:
        record = make_record(kind="episodic", importance=0.5, status="active")
        decision = lifecycle.evaluate(record, HALF_LIVES, T0 + days(5))
        assert (decision.target, decision.reason) == ("archived", "decayed")

    def test_active_weak_used_queued_for_merge(self, lifecycle: LifecycleManager) -> None:
        record = make_record(kind="episodic", importance=0.5, access_count=2, status="active")
        decision = lifecycle.evaluate(record, HALF_LIVES, T0 + hours(48))
        assert decision.target is None
        assert decision.enqueue_merge is True
        assert 0.1 < decision.strength < 0.3

    def test_active_healthy(self, lifecycle: LifecycleManager) -> None:
        record = make_record(importance=0.8, status="active")
        decision = lifecycle.evaluate(record, HALF_LIVES, T0 + hours(1))
        assert (decision.target, decision.enqueue_merge) == (None, False)

    def test_archived_faded_forgotten(self, lifecycle: LifecycleManager) -> None:
        record = make_record(kind="working", scope="session", importance=0.5, status="archived")
        assert lifecycle.evaluate(record, HALF_LIVES, T0 + hours(10)).target == "forgotten"

    def test_forgotten_never_moves(self, lifecycle: LifecycleManager) -> None:
        record = make_record(status="forgotten")
        assert lifecycle.evaluate(record, HALF_LIVES, T0 + days(1000)).target is None


# -----------------------------------------------------------------------
# 2. transition(), forget(), on_access()
# -----------------------------------------------------------------------


class TestTransitions:
    async def test_transition_persists_and_audits(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(stores)
        await lifecycle.transition(record, "active", "manual", T0)
        loaded = await stores["project"].get(record.id)
        assert loaded is not None and loaded.status == "active"
        trail = await journal.transitions(record.id)
        assert [(t.old_status, t.new_status, t.reason) for t in trail] == [
            ("created", "active", "manual")
        ]

    async def test_transition_touches_updated_at(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore]
    ) -> None:
        record = await insert_record(stores, status="active")
        await lifecycle.transition(record, "archived", "decayed", T0 + hours(5))
        loaded = await stores["project"].get(record.id)
        assert loaded is not None
        assert loaded.updated_at == T0 + hours(5)

    async def test_transition_from_stale_copy_refused(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(stores, status="active")
        stale = await stores["project"].get(record.id)
        assert stale is not None
        await lifecycle.forget(record, "privacy", T0)

        with pytest.raises(StaleRecordError):
            await lifecycle.transition(stale, "archived", "decayed", T0)

        loaded = await stores["project"].get(record.id)
        assert loaded is not None and loaded.status == "forgotten"
        assert len(await journal.transitions(record.id)) == 2

    async def test_illegal_transition_raises(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore]
    ) -> None:
        record = await insert_record(stores)
        with pytest.raises(ValidationError, match="Illegal lifecycle transition"):
            await lifecycle.transition(record, "consolidated", "skip ahead", T0)
        loaded = await stores["project"].get(record.id)
        assert loaded is not None and loaded.status == "created"

    async def test_forget_tombstones_and_keeps_identity(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(
            stores,
            "secret api key location",
            tags=["ops"],
            status="active",
            embedding=[0.0, 0.0, 1.0, 0.0],
        )
        await lifecycle.forget(record, "user request", T0)
        loaded = await stores["project"].get(record.id)
        assert loaded is not None
        assert loaded.status == "forgotten"
        assert loaded.content == "[forgotten]"
        assert loaded.embedding is None
        assert loaded.tags == ["ops"]
        assert loaded.metadata["forget_reason"] == "user request"
        trail = [(t.old_status, t.new_status) for t in await journal.transitions(record.id)]
        assert trail == [("active", "archived"), ("archived", "forgotten")]
        assert await stores["project"].text_search("secret") == {}

    async def test_forget_is_idempotent(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(stores, status="archived")
        await lifecycle.forget(record, now=T0)
        await lifecycle.forget(record, now=T0)
        assert len(await journal.transitions(record.id)) == 1

    async def test_on_access_revives_strong_archived(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore]
    ) -> None:
        record = await insert_record(stores, importance=0.8, status="archived")
        await lifecycle.on_access(record, HALF_LIVES, T0)
        assert record.status == "active"

    async def test_on_access_keeps_weak_archived(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore]
    ) -> None:
        record = await insert_record(stores, importance=0.2, status="archived")
        await lifecycle.on_access(record, HALF_LIVES, T0)
        assert record.status == "archived"

    async def test_on_access_activates_created(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore]
    ) -> None:
        record = await insert_record(stores)
        await lifecycle.on_access(record, HALF_LIVES, T0)
        assert record.status == "active"


# -----------------------------------------------------------------------
# 3. tick()
# -----------------------------------------------------------------------


class TestTick:
    async def test_idle_record_chains_to_forgotten(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(stores, "short-lived fact", importance=0.5)
        report = await lifecycle.tick("project", T0 + days(365), half_lives=HALF_LIVES)

        assert [(t["from"], t["to"]) for t in report.transitions] == [
            ("created", "active"),
            ("active", "archived"),
            ("archived", "forgotten"),
        ]
        loaded = await stores["project"].get(record.id)
        assert loaded is not None
        assert loaded.status == "forgotten"
        assert loaded.content == "[forgotten]"
        assert len(await journal.transitions(record.id)) == 3

    async def test_idle_episode_fades_to_tombstone(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(
            stores, "standup ran long on monday", kind="episodic", importance=0.5, status="active"
        )
        later = T0 + days(60)
        assert compute_strength(record, HALF_LIVES, later) < 0.01

        report = await lifecycle.tick("project", later, half_lives=HALF_LIVES)

        assert [(t["from"], t["to"]) for t in report.transitions] == [
            ("active", "archived"),
            ("archived", "forgotten"),
        ]
        loaded = await stores["project"].get(record.id)
        assert loaded is not None
        assert (loaded.status, loaded.content, loaded.embedding) == ("forgotten", "[forgotten]", None)
        assert loaded.updated_at == later
        trail = [(t.old_status, t.new_status) for t in await journal.transitions(record.id)]
        assert trail == [("active", "archived"), ("archived", "forgotten")]

    async def test_dry_run_writes_nothing(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(stores, importance=0.5)
        report = await lifecycle.tick("project", T0 + days(365), dry_run=True, half_lives=HALF_LIVES)
        assert len(report.transitions) == 3
        loaded = await stores["project"].get(record.id)
        assert loaded is not None and loaded.status == "created"
        assert await journal.transitions() == []

    async def test_merge_candidates_queued(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        record = await insert_record(
            stores, kind="episodic", importance=0.5, access_count=2, status="active"
        )
        report = await lifecycle.tick("project", T0 + hours(48), half_lives=HALF_LIVES)
        assert report.queued == [record.id]
        tasks = await journal.pending_tasks("project")
        assert [(t.memory_id, t.reason) for t in tasks] == [(record.id, "merge")]

        again = await lifecycle.tick("project", T0 + hours(48), half_lives=HALF_LIVES)
        assert again.queued == []

    async def test_uses_tuned_half_lives(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore], journal: Journal
    ) -> None:
        await insert_record(stores, kind="episodic", importance=0.5, status="active")
        await journal.set_tuning("decay_half_lives", "episodic", 10_000.0, "test", T0)
        report = await lifecycle.tick("project", T0 + days(5))
        assert report.transitions == []

    async def test_per_record_errors_collected(
        self, lifecycle: LifecycleManager, stores: dict[str, RecordStore]
    ) -> None:
        bad = await insert_record(stores, kind="episodic", status="active")
        good = await insert_record(stores, kind="semantic", importance=0.5)
        report = await lifecycle.tick(
            "project", T0 + hours(2), half_lives={"semantic": 168.0}
        )
        assert len(report.errors) == 1
        assert bad.id in report.errors[0]
        assert [t["id"] for t in report.transitions] == [good.id]
