"""Memory subsystem for patternbank.

This package provides pattern storage and retrieval capabilities including:
- Durable namespaced pattern storage (SQLite, WAL)
- Semantic search using embeddings, raced against a deadline
- Lexical substring fallback with a deterministic order
- TTL caches whose invalidation timers are owned by a lifecycle manager
- Consolidation of repeatedly successful patterns into skills

Public API (synchronous):
- store_pattern: Persist a pattern
- query_patterns: Retrieve ranked patterns
- list_patterns: Patterns in canonical order
- memory_stats: Counters for a namespace
- consolidate_memory: Promote skills and prune stale patterns

The asynchronous facade is ``patternbank.memory.service.PatternMemory``.
"""

from __future__ import annotations

from .api import (
    consolidate_memory,
    list_patterns,
    memory_stats,
    query_patterns,
    store_pattern,
)

__all__ = [
    "consolidate_memory",
    "list_patterns",
    "memory_stats",
    "query_patterns",
    "store_pattern",
]
