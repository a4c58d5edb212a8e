"""Public synchronous API for memory operations.

This module provides the entry points collaborators call without managing
an event loop:
- store_pattern: Persist a pattern
- query_patterns: Retrieve ranked patterns
- list_patterns: Patterns in canonical order
- memory_stats: Counters for a namespace
- consolidate_memory: Promote skills and prune stale patterns

Each call opens a PatternMemory inside a runtime context, runs one
operation, and shuts everything down before returning, so no timer or
thread it created outlives the call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from patternbank.core.config import AppConfig, ConfigError
from patternbank.core.console import setup_logging
from patternbank.core.runtime import runtime_context

from .models import ConsolidationReport, MemoryStats, Pattern, QueryResult
from .service import PatternMemory

T = TypeVar("T")


def _run(config: AppConfig | None, operation: Callable[[PatternMemory], Awaitable[T]]) -> T:
    if config is None:
        raise ConfigError("AppConfig is required for memory operations.")

    async def _main() -> T:
        async with PatternMemory.open(config) as memory:
            return await operation(memory)

    setup_logging(config.log_level)
    with runtime_context(config):
        return asyncio.run(_main())


def store_pattern(
    namespace: str | None,
    key: str,
    value: str,
    confidence: float | None = None,
    *,
    config: AppConfig | None = None,
) -> str:
    """Persist a pattern for later recall.

    Args:
        namespace: Partition to store into (configured default when None).
        key: Short label.
        value: Remembered content.
        confidence: Belief in [0, 1]; configured default when None.
        config: Application configuration.

    Returns:
        The new pattern id.

    Raises:
        ConfigError: If config is not provided.
        InvalidConfidenceError: If confidence is outside [0, 1].
        StorageError: If the write could not be made durable.
    """

    async def _store(memory: PatternMemory) -> str:
        pattern_id = await memory.store(namespace, key, value, confidence)
        # The embedding write has to land before shutdown cancels it.
        await memory.wait_for_indexing(memory.config.embedding.timeout)
        return pattern_id

    return _run(config, _store)


def query_patterns(
    text: str,
    namespace: str | None = None,
    limit: int | None = None,
    *,
    config: AppConfig | None = None,
    track_usage: bool = False,
) -> list[QueryResult]:
    """Retrieve patterns relevant to ``text``, semantic first, lexical as fallback."""
    return _run(
        config, lambda memory: memory.query(text, namespace, limit, track_usage=track_usage)
    )


def list_patterns(
    namespace: str | None = None,
    limit: int | None = None,
    *,
    config: AppConfig | None = None,
) -> list[Pattern]:
    return _run(config, lambda memory: memory.list_patterns(namespace, limit))


def memory_stats(
    namespace: str | None = None,
    *,
    config: AppConfig | None = None,
) -> MemoryStats:
    return _run(config, lambda memory: memory.stats(namespace))


def consolidate_memory(
    namespace: str | None = None,
    *,
    min_uses: int | None = None,
    min_success_rate: float | None = None,
    lookback_days: float | None = None,
    config: AppConfig | None = None,
) -> ConsolidationReport:
    """Run one consolidation pass and report what changed."""
    return _run(
        config,
        lambda memory: memory.consolidate(
            namespace,
            min_uses=min_uses,
            min_success_rate=min_success_rate,
            lookback_days=lookback_days,
        ),
    )


__all__ = [
    "consolidate_memory",
    "list_patterns",
    "memory_stats",
    "query_patterns",
    "store_pattern",
]
