"""Unit tests for the lexical fallback engine."""

from __future__ import annotations

import pytest

from patternbank.core.result import Err, ValidationError
from patternbank.memory.store import LexicalFallback, PatternStore
from patternbank.memory.store.lexical import DEFAULT_LIMIT


class TestLexicalFallback:
    """Tests for substring search over the store."""

    def test_matches_key_or_value_ignoring_case(self, store: PatternStore) -> None:
        store.add("test", "goap_planner", "A* pathfinding algorithm for optimal action sequences", 0.8)
        store.add("test", "Pathfinding-Cache", "memoized routes", 0.6)
        store.add("test", "scheduler", "cron-like planning", 0.9)

        found = LexicalFallback(store).search("PATHFINDING", "test").unwrap()
        assert [p.key for p in found] == ["goap_planner", "Pathfinding-Cache"]

    def test_no_confidence_filter(self, store: PatternStore) -> None:
        """Even zero-confidence patterns are reachable through the fallback."""
        store.add("ns", "doubtful", "maybe useful", 0.0)
        assert len(LexicalFallback(store).search("doubtful", "ns").unwrap()) == 1

    def test_default_limit(self, store: PatternStore) -> None:
        for i in range(DEFAULT_LIMIT + 5):
            store.add("ns", f"entry-{i}", "shared token", 0.5)
        assert len(LexicalFallback(store).search("shared", "ns").unwrap()) == DEFAULT_LIMIT
        assert len(LexicalFallback(store, default_limit=3).search("shared", "ns").unwrap()) == 3
        assert len(LexicalFallback(store).search("shared", "ns", limit=12).unwrap()) == 12

    @pytest.mark.parametrize("limit", [0, -5])
    def test_rejects_non_positive_limit(self, store: PatternStore, limit: int) -> None:
        result = LexicalFallback(store).search("x", "ns", limit)
        assert isinstance(result, Err)
        assert isinstance(result.error, ValidationError)

    def test_namespace_isolation(self, store: PatternStore) -> None:
        store.add("a", "token", "in a", 0.5)
        store.add("b", "token", "in b", 0.5)
        engine = LexicalFallback(store)
        assert [p.namespace for p in engine.search("token", "a").unwrap()] == ["a"]
        assert len(engine.search("token").unwrap()) == 2

    def test_no_match(self, store: PatternStore) -> None:
        store.add("ns", "k", "v", 0.5)
        assert LexicalFallback(store).search("absent", "ns").unwrap() == []

    def test_without_model_skips_embedded_patterns(self, store: PatternStore) -> None:
        embedded = store.add("ns", "token", "embedded", 0.9).unwrap()
        other_model = store.add("ns", "token", "other model", 0.8).unwrap()
        bare = store.add("ns", "token", "bare", 0.7).unwrap()
        store.upsert_embedding(embedded.id, [1.0, 0.0], "model-a").unwrap()
        store.upsert_embedding(other_model.id, [1.0, 0.0, 0.0], "model-b").unwrap()

        found = LexicalFallback(store).search("token", "ns", without_model="model-a").unwrap()

        assert [p.id for p in found] == [other_model.id, bare.id]
        assert found[-1].embedding_ref is None
