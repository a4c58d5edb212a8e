"""Memory data models and protocol definitions.

This module contains the core dataclasses and protocols used throughout
the memory subsystem.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Protocol


class MatchedVia(str, Enum):
    """Which retrieval path produced a query result."""

    SEMANTIC = "semantic"
    LEXICAL = "lexical"


# -----------------------------------------------------------------------------
# Core Data Models
# -----------------------------------------------------------------------------


@dataclass
class Pattern:
    """A remembered task pattern; the system-of-record row.

    Timestamps are ISO-8601 UTC strings with microsecond precision so that
    lexical comparison matches chronological order.
    """

    id: str
    namespace: str
    key: str
    value: str
    confidence: float
    usage_count: int
    created_at: str
    updated_at: str
    embedding_ref: str | None = None


@dataclass
class Embedding:
    """A stored vector for one pattern."""

    pattern_id: str
    vector: list[float]
    dims: int
    model: str


@dataclass
class Skill:
    """A consolidated group of patterns. Derived data, recomputable at any time."""

    id: str
    namespace: str
    signature: str
    source_pattern_ids: list[str]
    avg_reward: float
    usage_count: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class QueryResult:
    """One ranked entry returned by ``query``."""

    id: str
    key: str
    value: str
    namespace: str
    confidence: float
    usage_count: int
    score: float
    matched_via: MatchedVia

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["matched_via"] = self.matched_via.value
        return data


@dataclass
class MemoryStats:
    count: int = 0
    avg_confidence: float = 0.0
    embedding_count: int = 0
    skill_count: int = 0
    trajectory_count: int = 0
    link_count: int = 0
    namespace_count: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class ConsolidationReport:
    """Outcome counters of one consolidation run."""

    skills_created: int = 0
    patterns_pruned: int = 0
    skills_updated: int = 0
    skills_removed: int = 0
    confidence_revised: int = 0

    def merge(self, other: ConsolidationReport) -> None:
        self.skills_created += other.skills_created
        self.patterns_pruned += other.patterns_pruned
        self.skills_updated += other.skills_updated
        self.skills_removed += other.skills_removed
        self.confidence_revised += other.confidence_revised

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class ShutdownReport:
    timers_cancelled: int = 0
    tasks_flushed: int = 0
    tasks_cancelled: int = 0
    elapsed: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class TableCheck:
    """Which required tables exist in the database."""

    existing: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing


# -----------------------------------------------------------------------------
# Provider Protocols
# -----------------------------------------------------------------------------


class EmbeddingClientProtocol(Protocol):
    """Protocol for blocking embedding client implementations."""

    @property
    def dimension(self) -> int | None: ...

    def available(self) -> bool: ...

    def embed(self, texts: list[str]) -> list[list[float]] | None: ...


class SemanticBackend(Protocol):
    """Capability interface the index uses to turn text into vectors.

    ``embed`` returns ``None`` when the provider is unavailable or exceeded
    ``timeout``; it never blocks the caller past that budget.
    """

    @property
    def model_name(self) -> str: ...

    def available(self) -> bool: ...

    async def embed(self, text: str, timeout: float) -> list[float] | None: ...


__all__ = [
    "ConsolidationReport",
    "Embedding",
    "EmbeddingClientProtocol",
    "MatchedVia",
    "MemoryStats",
    "Pattern",
    "QueryResult",
    "SemanticBackend",
    "ShutdownReport",
    "Skill",
    "TableCheck",
]
