"""patternbank - hybrid pattern memory for agent orchestration.

This package provides a persistent, namespaced memory of task patterns with
semantic retrieval, deterministic lexical fallback, TTL caching, and periodic
consolidation of successful patterns into skills.

Exports:
    __version__: Package version string.
    PatternMemory: Async facade owning storage, caches, timers and background work.
"""

from __future__ import annotations

from patternbank.memory.service import PatternMemory

__all__ = ["PatternMemory", "__version__"]

__version__ = "0.3.0"
