"""PatternMemory: the asynchronous facade over the memory subsystem.

A PatternMemory owns one PatternStore, both TTL caches, the embedding index,
the query coordinator, the consolidation engine and the LifecycleManager
that releases all of them. Open it as an async context manager so shutdown
always runs:

    async with PatternMemory.open(config) as memory:
        pattern_id = await memory.store("test", "goap_planner", "A* pathfinding ...", 0.8)
        results = await memory.query("pathfinding", namespace="test")
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

from patternbank.core.config import AppConfig
from patternbank.core.console import get_logger
from patternbank.core.result import (
    Err,
    NotFoundError,
    Ok,
    PatternBankError,
    Result,
    SemanticSearchError,
    StorageError,
)

from .cache import TTLCache
from .consolidation import ConsolidationEngine
from .coordinator import QueryCoordinator, QueryResponse
from .embedding import build_semantic_backend
from .index import EmbeddingIndex
from .lifecycle import LifecycleManager, run_in_daemon_thread
from .models import (
    ConsolidationReport,
    MemoryStats,
    Pattern,
    QueryResult,
    SemanticBackend,
    ShutdownReport,
    TableCheck,
)
from .retrieval import RankingWeights
from .store import Clock, LexicalFallback, PatternStore, utc_now

logger = get_logger(__name__)


def _changed(report: ConsolidationReport) -> bool:
    return any(
        (
            report.skills_created,
            report.skills_updated,
            report.skills_removed,
            report.patterns_pruned,
            report.confidence_revised,
        )
    )


class PatternMemory:
    """Namespaced pattern memory with semantic retrieval and lexical fallback."""

    def __init__(
        self,
        config: AppConfig,
        *,
        backend: SemanticBackend | None = None,
        store: PatternStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self._clock: Clock = clock or utc_now
        self._store = store or PatternStore(
            config.storage.db_path,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            clock=self._clock,
        )
        self._backend = backend if backend is not None else build_semantic_backend(config)
        self._lifecycle = LifecycleManager(
            self._store, grace_period=config.storage.shutdown_grace_ms / 1000.0
        )
        timers = self._lifecycle.timers

        self._embedding_cache: TTLCache[list[float]] = TTLCache(
            "embedding",
            default_ttl=config.embedding.cache_ttl,
            max_entries=config.embedding.cache_size,
            timers=timers,
        )
        self._query_cache: TTLCache[tuple[QueryResult, ...]] = TTLCache(
            "query",
            default_ttl=config.query.cache_ttl,
            max_entries=config.query.cache_size,
            timers=timers,
        )
        self._index = EmbeddingIndex(
            self._store, self._backend, self._embedding_cache, timeout=config.embedding.timeout
        )
        ranking = config.ranking
        self._coordinator = QueryCoordinator(
            self._index,
            LexicalFallback(self._store, config.query.default_limit),
            self._query_cache,
            weights=RankingWeights(
                alpha=ranking.alpha,
                beta=ranking.beta,
                gamma=ranking.gamma,
                delta=ranking.delta,
                half_life_days=ranking.recency_half_life_days,
            ),
            min_confidence=ranking.min_confidence,
            min_similarity=ranking.min_similarity,
            semantic_timeout=config.query.semantic_timeout_ms / 1000.0,
            default_limit=config.query.default_limit,
            clock=self._clock,
        )
        self._consolidation = ConsolidationEngine(
            self._store,
            config.consolidation,
            model_name=self._backend.model_name,
            clock=self._clock,
        )
        self._started = False

    @classmethod
    @asynccontextmanager
    async def open(cls, config: AppConfig, **kwargs: Any) -> AsyncIterator[PatternMemory]:
        """Construct, start, and always shut down a PatternMemory."""
        memory = cls(config, **kwargs)
        try:
            memory.start()
            yield memory
        finally:
            await memory.shutdown()

    def start(self) -> None:
        """Begin periodic consolidation when configured. Needs a running event loop."""
        self._lifecycle.ensure_open()
        if self._started:
            return
        self._started = True
        interval = self.config.consolidation.interval_seconds
        if interval is not None:
            self._lifecycle.spawn(self._consolidate_periodically(interval), name="consolidation")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._lifecycle.closed

    @property
    def lifecycle(self) -> LifecycleManager:
        return self._lifecycle

    @property
    def query_cache(self) -> TTLCache[tuple[QueryResult, ...]]:
        return self._query_cache

    @property
    def embedding_cache(self) -> TTLCache[list[float]]:
        return self._embedding_cache

    @property
    def semantic_model(self) -> str:
        return self._backend.model_name

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store(
        self,
        namespace: str | None,
        key: str,
        value: str,
        confidence: float | None = None,
    ) -> str:
        """Persist a pattern and return its id.

        The write is committed before this returns; indexing its embedding
        happens in the background and never delays the caller.

        Raises:
            InvalidConfidenceError: confidence outside [0, 1].
            StorageError: the write could not be made durable.
        """
        self._lifecycle.ensure_open()
        ns = namespace or self.config.storage.default_namespace
        conf = self.config.storage.default_confidence if confidence is None else confidence
        match self._store.add(ns, key, value, conf):
            case Err(err):
                raise err
            case Ok(pattern):
                pass

        self._query_cache.clear()
        if self._index.available():
            self._lifecycle.spawn(
                self._index_pattern(pattern), name=f"index-{pattern.id}", flush_on_shutdown=True
            )
        return pattern.id

    async def _index_pattern(self, pattern: Pattern) -> None:
        match await self._index.index_pattern(pattern):
            case Ok(_):
                # A new vector can change semantic answers already cached.
                self._query_cache.clear()
            case Err(NotFoundError()):
                logger.debug("Pattern %s was deleted before it could be indexed", pattern.id)
            case Err(SemanticSearchError() as err):
                logger.debug("Pattern %s left unindexed: %s", pattern.id, err)
            case Err(err):
                raise err

    async def delete(self, pattern_id: str) -> bool:
        self._lifecycle.ensure_open()
        match self._store.delete(pattern_id):
            case Err(err):
                raise err
            case Ok(deleted):
                pass
        if deleted:
            self._query_cache.clear()
        return deleted

    async def touch(self, pattern_id: str) -> Result[Pattern, PatternBankError]:
        """Record one use of a pattern. ``Err(NotFoundError)`` for unknown ids."""
        self._lifecycle.ensure_open()
        match self._store.touch(pattern_id):
            case Err(StorageError() as err):
                raise err
            case result:
                return result

    async def record_outcome(
        self, pattern_id: str, success: bool, task_id: str | None = None
    ) -> Result[Pattern, PatternBankError]:
        """Log a task outcome for a pattern and count it as a use."""
        self._lifecycle.ensure_open()
        match self._store.record_trajectory(pattern_id, success, task_id):
            case Err(StorageError() as err):
                raise err
            case Err(err):
                return Err(err)
            case Ok(_):
                pass
        return await self.touch(pattern_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query_detailed(
        self,
        text: str,
        namespace: str | None = None,
        limit: int | None = None,
        *,
        track_usage: bool = False,
    ) -> QueryResponse:
        """Ranked results together with the coordinator's state trace.

        ``usage_count`` is the value when the answer was computed, which may be
        a cached answer. With ``track_usage`` every result is touched and
        reports its count after the touch.
        """
        self._lifecycle.ensure_open()
        response = await self._coordinator.query(text, namespace, limit)
        if track_usage:
            response.results = [self._touch_result(r) for r in response.results]
        return response

    def _touch_result(self, result: QueryResult) -> QueryResult:
        match self._store.touch(result.id):
            case Ok(pattern):
                return replace(result, usage_count=pattern.usage_count)
            case Err(StorageError() as err):
                raise err
            case Err(_):
                # Deleted since the answer was cached.
                return result

    async def query(
        self,
        text: str,
        namespace: str | None = None,
        limit: int | None = None,
        *,
        track_usage: bool = False,
    ) -> list[QueryResult]:
        response = await self.query_detailed(text, namespace, limit, track_usage=track_usage)
        return response.results

    async def get(self, pattern_id: str) -> Result[Pattern, PatternBankError]:
        self._lifecycle.ensure_open()
        match self._store.get(pattern_id):
            case Err(StorageError() as err):
                raise err
            case result:
                return result

    async def list_patterns(
        self, namespace: str | None = None, limit: int | None = None
    ) -> list[Pattern]:
        self._lifecycle.ensure_open()
        return self._store.list_by_namespace(namespace, limit).unwrap()

    async def stats(self, namespace: str | None = None) -> MemoryStats:
        self._lifecycle.ensure_open()
        return self._store.stats(namespace).unwrap()

    async def check_schema(self) -> TableCheck:
        self._lifecycle.ensure_open()
        return self._store.check_tables().unwrap()

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def consolidate(
        self,
        namespace: str | None = None,
        *,
        min_uses: int | None = None,
        min_success_rate: float | None = None,
        lookback_days: float | None = None,
    ) -> ConsolidationReport:
        self._lifecycle.ensure_open()
        report = self._consolidation.run(
            namespace,
            min_uses=min_uses,
            min_success_rate=min_success_rate,
            lookback_days=lookback_days,
        ).unwrap()
        if _changed(report):
            self._query_cache.clear()
        return report

    async def _consolidate_periodically(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            result = await run_in_daemon_thread(self._consolidation.run)
            match result:
                case Ok(report):
                    if _changed(report):
                        self._query_cache.clear()
                case Err(err):
                    logger.warning("Periodic consolidation failed: %s", err)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_for_indexing(self, timeout: float | None = None) -> bool:
        """Wait until background embedding writes finish. True if none remain."""
        return await self._lifecycle.drain(timeout)

    async def shutdown(self) -> ShutdownReport:
        """Cancel timers and background work, flush, and close storage. Idempotent."""
        return await self._lifecycle.shutdown()


__all__ = ["PatternMemory"]
