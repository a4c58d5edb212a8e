"""TTL caches for embeddings and query results.

Expiry is enforced when an entry is read, so a stale value is never served
even if its invalidation timer has not fired (or could not be scheduled).
The timer only reclaims memory; its handle lives in a TimerRegistry owned by
the lifecycle manager and is cancelled on overwrite, eviction, clear and
shutdown.

Usage:
    cache = TTLCache("query", default_ttl=60.0, max_entries=100, timers=registry)
    cache.set(("ns", "text", 10), results)
    hit = cache.get(("ns", "text", 10))
    if hit is MISS:
        ...
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Final, Generic, TypeVar

from patternbank.core.console import get_logger

from .lifecycle import TimerHandle, TimerRegistry

logger = get_logger(__name__)

V = TypeVar("V")


class _Miss:
    """Sentinel for "never set" and "expired" alike."""

    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS: Final = _Miss()


@dataclass
class CacheEntry(Generic[V]):
    key: Hashable
    value: V
    expires_at: float
    handle: TimerHandle | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0


class TTLCache(Generic[V]):
    """Bounded LRU map with per-entry TTL. Thread-safe."""

    def __init__(
        self,
        name: str,
        *,
        default_ttl: float,
        max_entries: int,
        timers: TimerRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.name = name
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._timers = timers
        self._clock = clock
        self._entries: OrderedDict[Hashable, CacheEntry[V]] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def get(self, key: Hashable) -> V | _Miss:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return MISS
            if entry.is_expired(self._clock()):
                self._drop(key, entry)
                self._stats.expirations += 1
                self._stats.misses += 1
                return MISS
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return entry.value

    def set(self, key: Hashable, value: V, ttl: float | None = None) -> None:
        effective_ttl = self._default_ttl if ttl is None else ttl
        if effective_ttl <= 0:
            raise ValueError(f"ttl must be positive, got {effective_ttl}")

        entry: CacheEntry[V] = CacheEntry(
            key=key, value=value, expires_at=self._clock() + effective_ttl
        )
        with self._lock:
            previous = self._entries.pop(key, None)
            if previous is not None:
                self._cancel(previous)
            while len(self._entries) >= self._max_entries:
                _, evicted = self._entries.popitem(last=False)
                self._cancel(evicted)
                self._stats.evictions += 1
            self._entries[key] = entry
            if self._timers is not None:
                entry.handle = self._timers.schedule(effective_ttl, self._expire, key, entry)

    def _expire(self, key: Hashable, entry: CacheEntry[V]) -> None:
        with self._lock:
            current = self._entries.get(key)
            if current is entry:
                del self._entries[key]
                self._stats.expirations += 1

    def _cancel(self, entry: CacheEntry[V]) -> None:
        if entry.handle is not None:
            entry.handle.cancel()
            entry.handle = None

    def _drop(self, key: Hashable, entry: CacheEntry[V]) -> None:
        self._entries.pop(key, None)
        self._cancel(entry)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            self._drop(key, entry)
            return True

    def clear(self) -> int:
        """Remove every entry and cancel its timer. Returns the number removed."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            self._cancel(entry)
        if entries:
            logger.debug("Cleared %d entries from %s cache", len(entries), self.name)
        return len(entries)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [(k, e) for k, e in self._entries.items() if e.is_expired(now)]
            for key, entry in expired:
                self._drop(key, entry)
            self._stats.expirations += len(expired)
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                evictions=self._stats.evictions,
                expirations=self._stats.expirations,
                size=len(self._entries),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not MISS


__all__ = ["MISS", "CacheEntry", "CacheStats", "TTLCache"]
