"""Unit tests for the consolidation engine."""

from __future__ import annotations

import pytest

from patternbank.core.config import ConsolidationConfig
from patternbank.core.result import Err, ValidationError
from patternbank.memory.consolidation import (
    ConsolidationEngine,
    skill_signature,
    weighted_confidence,
)
from patternbank.memory.embedding import NULL_MODEL
from patternbank.memory.models import ConsolidationReport, Pattern
from patternbank.memory.store import PatternStore

from tests.mocks.clock import FrozenClock


def engine_for(
    store: PatternStore, clock: FrozenClock, *, model_name: str = NULL_MODEL, **overrides
) -> ConsolidationEngine:
    return ConsolidationEngine(
        store, ConsolidationConfig(**overrides), model_name=model_name, clock=clock
    )


def add_used(store: PatternStore, namespace: str, key: str, uses: int, confidence: float = 0.8) -> Pattern:
    pattern = store.add(namespace, key, f"{key} value", confidence).unwrap()
    for _ in range(uses):
        pattern = store.touch(pattern.id).unwrap()
    return pattern


class TestHelpers:
    def test_signature_ignores_member_order(self) -> None:
        assert skill_signature("ns", ["b", "a"]) == skill_signature("ns", ["a", "b"])
        assert skill_signature("ns", ["a"]) != skill_signature("other", ["a"])

    def test_weighted_confidence(self) -> None:
        def p(confidence: float, usage: int) -> Pattern:
            return Pattern("id", "ns", "k", "v", confidence, usage, "t", "t")

        assert weighted_confidence([]) == 0.0
        assert weighted_confidence([p(1.0, 3), p(0.0, 1)]) == pytest.approx(0.75)
        assert weighted_confidence([p(0.4, 0), p(0.8, 0)]) == pytest.approx(0.6)


class TestSkillCreation:
    """Tests for promoting repeatedly used patterns to skills."""

    def test_three_frequent_patterns_become_one_skill(
        self, store: PatternStore, clock: FrozenClock
    ) -> None:
        frequent = [add_used(store, "test", f"frequent-{i}", uses=3 + i) for i in range(3)]
        for i in range(2):
            add_used(store, "test", f"rare-{i}", uses=1)

        report = engine_for(store, clock).run("test", min_uses=3, min_success_rate=0.7).unwrap()

        assert report.skills_created == 1
        assert report.patterns_pruned == 0
        (skill,) = store.list_skills("test").unwrap()
        assert sorted(skill.source_pattern_ids) == sorted(p.id for p in frequent)
        assert skill.avg_reward == pytest.approx(0.8)
        assert skill.usage_count == 3 + 4 + 5

    def test_second_run_is_a_no_op(self, store: PatternStore, clock: FrozenClock) -> None:
        for i in range(3):
            add_used(store, "test", f"p{i}", uses=3)
        engine = engine_for(store, clock)
        assert engine.run("test").unwrap().skills_created == 1
        assert engine.run("test").unwrap() == ConsolidationReport()

    def test_single_qualifier_is_not_a_skill(self, store: PatternStore, clock: FrozenClock) -> None:
        add_used(store, "test", "lonely", uses=5)
        assert engine_for(store, clock).run("test").unwrap().skills_created == 0

    def test_low_confidence_group_rejected(self, store: PatternStore, clock: FrozenClock) -> None:
        for i in range(3):
            add_used(store, "test", f"p{i}", uses=3, confidence=0.5)
        assert engine_for(store, clock).run("test", min_success_rate=0.7).unwrap().skills_created == 0

    def test_usage_outside_window_does_not_qualify(
        self, store: PatternStore, clock: FrozenClock
    ) -> None:
        for i in range(3):
            add_used(store, "test", f"p{i}", uses=3)
        clock.advance(days=31)
        report = engine_for(store, clock).run("test", lookback_days=30).unwrap()
        assert report.skills_created == 0

    def test_existing_skill_updated_in_place(self, store: PatternStore, clock: FrozenClock) -> None:
        members = [add_used(store, "test", f"p{i}", uses=3) for i in range(3)]
        engine = engine_for(store, clock)
        engine.run("test").unwrap()
        (before,) = store.list_skills("test").unwrap()

        store.touch(members[0].id).unwrap()
        report = engine.run("test").unwrap()

        assert (report.skills_created, report.skills_updated) == (0, 1)
        (after,) = store.list_skills("test").unwrap()
        assert after.id == before.id
        assert after.usage_count == before.usage_count + 1

    def test_new_member_supersedes_old_skill(self, store: PatternStore, clock: FrozenClock) -> None:
        for i in range(3):
            add_used(store, "test", f"p{i}", uses=3)
        engine = engine_for(store, clock)
        engine.run("test").unwrap()

        late = add_used(store, "test", "late", uses=3)
        report = engine.run("test").unwrap()

        assert (report.skills_created, report.skills_removed) == (1, 1)
        (skill,) = store.list_skills("test").unwrap()
        assert late.id in skill.source_pattern_ids
        assert len(skill.source_pattern_ids) == 4

    def test_embedded_patterns_cluster_by_similarity(
        self, store: PatternStore, clock: FrozenClock
    ) -> None:
        east = [add_used(store, "test", f"east-{i}", uses=3) for i in range(3)]
        north = [add_used(store, "test", f"north-{i}", uses=3) for i in range(2)]
        for pattern in east:
            store.upsert_embedding(pattern.id, [1.0, 0.0], "fake").unwrap()
        for pattern in north:
            store.upsert_embedding(pattern.id, [0.0, 1.0], "fake").unwrap()

        report = engine_for(store, clock, model_name="fake").run("test").unwrap()

        assert report.skills_created == 2
        groups = sorted(sorted(s.source_pattern_ids) for s in store.list_skills("test").unwrap())
        assert groups == sorted([sorted(p.id for p in east), sorted(p.id for p in north)])

    def test_all_namespaces_when_none_given(self, store: PatternStore, clock: FrozenClock) -> None:
        for namespace in ("a", "b"):
            for i in range(2):
                add_used(store, namespace, f"{namespace}{i}", uses=3)
        report = engine_for(store, clock).run().unwrap()
        assert report.skills_created == 2
        assert {s.namespace for s in store.list_skills().unwrap()} == {"a", "b"}


class TestOutcomesAndPruning:
    """Tests for trajectory-driven confidence and pruning."""

    def test_confidence_revised_to_success_rate(
        self, store: PatternStore, clock: FrozenClock
    ) -> None:
        pattern = store.add("test", "flaky", "sometimes works", 0.9).unwrap()
        for success in (True, False, False):
            store.record_trajectory(pattern.id, success).unwrap()

        report = engine_for(store, clock).run("test", min_uses=3).unwrap()

        assert report.confidence_revised == 1
        revised = store.get(pattern.id).unwrap().confidence
        assert revised == pytest.approx(1 / 3)
        assert 0.0 <= revised <= 1.0

    def test_too_few_outcomes_leave_confidence(self, store: PatternStore, clock: FrozenClock) -> None:
        pattern = store.add("test", "new", "barely tried", 0.9).unwrap()
        store.record_trajectory(pattern.id, False).unwrap()
        assert engine_for(store, clock).run("test", min_uses=3).unwrap().confidence_revised == 0
        assert store.get(pattern.id).unwrap().confidence == 0.9

    def test_trajectory_rate_gates_skill(self, store: PatternStore, clock: FrozenClock) -> None:
        members = [add_used(store, "test", f"p{i}", uses=3, confidence=0.9) for i in range(2)]
        for pattern in members:
            store.record_trajectory(pattern.id, False).unwrap()
        report = engine_for(store, clock).run("test", min_success_rate=0.7).unwrap()
        assert report.skills_created == 0

    def test_prunes_stale_unused_low_confidence(
        self, store: PatternStore, clock: FrozenClock
    ) -> None:
        stale = store.add("test", "stale", "never used", 0.1).unwrap()
        used = add_used(store, "test", "used-once", uses=1, confidence=0.1)
        confident = store.add("test", "confident", "never used", 0.9).unwrap()
        clock.advance(days=40)
        fresh = store.add("test", "fresh", "never used", 0.1).unwrap()

        report = engine_for(store, clock).run("test").unwrap()

        assert report.patterns_pruned == 1
        remaining = {p.id for p in store.list_by_namespace("test").unwrap()}
        assert remaining == {used.id, confident.id, fresh.id}
        assert stale.id not in remaining

    def test_pruning_removes_orphaned_skill(self, store: PatternStore, clock: FrozenClock) -> None:
        stale = store.add("test", "stale", "never used", 0.1).unwrap()
        store.create_skill("test", "manual", [stale.id], 0.5, 0).unwrap()
        clock.advance(days=40)
        report = engine_for(store, clock).run("test").unwrap()
        assert (report.patterns_pruned, report.skills_removed) == (1, 1)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_uses": 0},
            {"min_uses": True},
            {"min_success_rate": 1.5},
            {"min_success_rate": -0.1},
            {"lookback_days": 0},
        ],
    )
    def test_rejects_bad_parameters(
        self, store: PatternStore, clock: FrozenClock, kwargs: dict[str, object]
    ) -> None:
        result = engine_for(store, clock).run("test", **kwargs)
        assert isinstance(result, Err)
        assert isinstance(result.error, ValidationError)
