"""Query coordination: semantic search raced against a deadline, lexical fallback.

State machine per query::

    STARTED -> CACHE_HIT -> RETURNED
    STARTED -> SEMANTIC_ATTEMPTED -> SEMANTIC_SUCCEEDED -> RANKED -> RETURNED
    STARTED -> SEMANTIC_ATTEMPTED -> SEMANTIC_EMPTY_OR_FAILED
            -> FALLBACK_ATTEMPTED -> RANKED -> RETURNED

The semantic branch runs under ``asyncio.wait_for``; when the deadline wins
the branch is cancelled and awaited, which abandons the provider call and
leaves no timer or half-written cache entry behind. Every failure on that
branch except a storage failure is recovered by the lexical engine.

Semantic candidates below the similarity floor are dropped, so an index with
nothing relevant counts as empty. When the semantic branch does answer,
lexical matches that have no vector for the active model yet are appended,
so a pattern is reachable by its text as soon as its write commits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from patternbank.core.console import get_logger
from patternbank.core.result import (
    Err,
    Ok,
    SemanticSearchError,
    SemanticTimeoutError,
    StorageError,
    ValidationError,
)

from .cache import MISS, TTLCache
from .index import EmbeddingIndex
from .models import MatchedVia, Pattern, QueryResult
from .retrieval import RankingWeights, mmr_rerank, score_candidates
from .store import LexicalFallback, utc_now

logger = get_logger(__name__)

QueryKey = tuple[str | None, str, int]


class QueryState(str, Enum):
    STARTED = "started"
    CACHE_HIT = "cache_hit"
    SEMANTIC_ATTEMPTED = "semantic_attempted"
    SEMANTIC_SUCCEEDED = "semantic_succeeded"
    SEMANTIC_EMPTY_OR_FAILED = "semantic_empty_or_failed"
    FALLBACK_ATTEMPTED = "fallback_attempted"
    RANKED = "ranked"
    RETURNED = "returned"


@dataclass
class QueryResponse:
    """Results plus the path the coordinator took to produce them."""

    results: list[QueryResult]
    states: list[QueryState] = field(default_factory=list)
    cached: bool = False
    fallback_reason: str | None = None

    @property
    def used_fallback(self) -> bool:
        return QueryState.FALLBACK_ATTEMPTED in self.states


def _to_result(pattern: Pattern, score: float, via: MatchedVia) -> QueryResult:
    return QueryResult(
        id=pattern.id,
        key=pattern.key,
        value=pattern.value,
        namespace=pattern.namespace,
        confidence=pattern.confidence,
        usage_count=pattern.usage_count,
        score=score,
        matched_via=via,
    )


class QueryCoordinator:
    def __init__(
        self,
        index: EmbeddingIndex,
        lexical: LexicalFallback,
        cache: TTLCache[tuple[QueryResult, ...]],
        *,
        weights: RankingWeights,
        min_confidence: float,
        semantic_timeout: float,
        min_similarity: float = 0.0,
        default_limit: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._index = index
        self._lexical = lexical
        self._cache = cache
        self._weights = weights
        self._min_confidence = min_confidence
        self._min_similarity = min_similarity
        self._semantic_timeout = semantic_timeout
        self._default_limit = default_limit
        self._clock = clock

    @property
    def cache(self) -> TTLCache[tuple[QueryResult, ...]]:
        return self._cache

    async def query(
        self, text: str, namespace: str | None = None, limit: int | None = None
    ) -> QueryResponse:
        effective_limit = self._default_limit if limit is None else limit
        if effective_limit <= 0:
            raise ValidationError("Limit must be positive", context={"limit": limit})

        states = [QueryState.STARTED]
        cache_key: QueryKey = (namespace, text, effective_limit)
        cached = self._cache.get(cache_key)
        if cached is not MISS:
            logger.debug("Query cache hit for %r in %s", text, namespace)
            states += [QueryState.CACHE_HIT, QueryState.RETURNED]
            return QueryResponse(results=list(cached), states=states, cached=True)

        states.append(QueryState.SEMANTIC_ATTEMPTED)
        results: list[QueryResult] = []
        reason: str | None = None
        try:
            results = await asyncio.wait_for(
                self._semantic(text, namespace, effective_limit),
                timeout=self._semantic_timeout,
            )
        except TimeoutError:
            err = SemanticTimeoutError(
                "Semantic search timed out",
                context={"timeout_ms": int(self._semantic_timeout * 1000)},
            )
            logger.warning("%s; falling back to lexical search", err)
            reason = "timeout"
        except StorageError:
            raise
        except SemanticSearchError as exc:
            logger.debug("Semantic search unavailable (%s); falling back to lexical search", exc)
            reason = "unavailable"
        except Exception as exc:
            logger.warning("Semantic search failed (%s); falling back to lexical search", exc)
            reason = "error"

        if results:
            states.append(QueryState.SEMANTIC_SUCCEEDED)
            results = self._with_unindexed(results, text, namespace, effective_limit)
        else:
            states += [QueryState.SEMANTIC_EMPTY_OR_FAILED, QueryState.FALLBACK_ATTEMPTED]
            reason = reason or "empty"
            results = self._lexical_results(text, namespace, effective_limit)
            logger.debug(
                "Lexical fallback (%s) returned %d results for %r", reason, len(results), text
            )

        states.append(QueryState.RANKED)
        self._cache.set(cache_key, tuple(results))
        states.append(QueryState.RETURNED)
        return QueryResponse(results=results, states=states, fallback_reason=reason)

    async def _semantic(self, text: str, namespace: str | None, limit: int) -> list[QueryResult]:
        match await self._index.embed(text):
            case Err(err):
                raise err
            case Ok(vector):
                pass

        match self._index.candidates(namespace, self._min_confidence):
            case Err(err):
                raise err
            case Ok(candidates):
                pass

        scored = score_candidates(
            vector, candidates, self._weights, self._clock(), self._min_similarity
        )
        chosen = mmr_rerank(scored, limit, self._weights.delta)
        return [_to_result(c.pattern, c.score, MatchedVia.SEMANTIC) for c in chosen]

    def _with_unindexed(
        self, semantic: list[QueryResult], text: str, namespace: str | None, limit: int
    ) -> list[QueryResult]:
        """Semantic results followed by lexical matches that have no vector yet."""
        match self._lexical.search(text, namespace, limit, without_model=self._index.model_name):
            case Err(err):
                raise err
            case Ok(patterns):
                pass

        seen = {r.id for r in semantic}
        extra = [
            _to_result(p, p.confidence, MatchedVia.LEXICAL) for p in patterns if p.id not in seen
        ]
        if not extra:
            return semantic
        logger.debug("Appending %d unindexed lexical matches for %r", len(extra), text)
        return semantic[: max(limit - len(extra), 0)] + extra

    def _lexical_results(self, text: str, namespace: str | None, limit: int) -> list[QueryResult]:
        match self._lexical.search(text, namespace, limit):
            case Err(err):
                raise err
            case Ok(patterns):
                return [_to_result(p, p.confidence, MatchedVia.LEXICAL) for p in patterns]


__all__ = ["QueryCoordinator", "QueryResponse", "QueryState"]
