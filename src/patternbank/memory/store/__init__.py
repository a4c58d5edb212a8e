"""Durable pattern storage.

This package provides the SQLite-backed system of record and the lexical
fallback engine that reads from it:
- PatternStore: patterns, embeddings, skills, links and trajectories
- LexicalFallback: case-insensitive substring search in canonical order

Shared helpers (timestamps, vector codec, row mapping) live here so the
store and the engines built on it agree on formats.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path

import numpy as np

from patternbank.core.config import IN_MEMORY_DB
from patternbank.memory.models import Pattern, Skill

# Canonical ranking used wherever a deterministic order is required.
CANONICAL_ORDER = "p.confidence DESC, p.usage_count DESC, p.created_at ASC, p.id ASC"

PATTERN_COLUMNS = (
    "p.id, p.namespace, p.key, p.value, p.confidence, p.usage_count, "
    "p.created_at, p.updated_at, e.pattern_id AS embedding_ref"
)
PATTERN_SOURCE = "patterns p LEFT JOIN pattern_embeddings e ON e.pattern_id = p.id"

Clock = Callable[[], datetime]


# -----------------------------------------------------------------------------
# Utility Functions
# -----------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(moment: datetime) -> str:
    """Render a timestamp so string order equals chronological order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def resolve_db_path(db_path: Path | str) -> str:
    """Return the sqlite3 connect target for a configured path."""
    raw = str(db_path)
    if raw == IN_MEMORY_DB:
        return raw
    path = Path(raw).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return str(path)


def encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def decode_vector(blob: bytes) -> list[float]:
    return np.frombuffer(blob, dtype=np.float32).astype(float).tolist()


def canonical_sort_key(pattern: Pattern) -> tuple[float, int, str, str]:
    """Python mirror of CANONICAL_ORDER."""
    return (-pattern.confidence, -pattern.usage_count, pattern.created_at, pattern.id)


def row_to_pattern(row: sqlite3.Row) -> Pattern:
    keys = row.keys()
    return Pattern(
        id=row["id"],
        namespace=row["namespace"],
        key=row["key"],
        value=row["value"],
        confidence=float(row["confidence"]),
        usage_count=int(row["usage_count"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        embedding_ref=row["embedding_ref"] if "embedding_ref" in keys else None,
    )


def row_to_skill(row: sqlite3.Row, source_pattern_ids: Sequence[str]) -> Skill:
    return Skill(
        id=row["id"],
        namespace=row["namespace"],
        signature=row["signature"],
        source_pattern_ids=sorted(source_pattern_ids),
        avg_reward=float(row["avg_reward"]),
        usage_count=int(row["usage_count"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# Re-export store classes
from patternbank.memory.store.lexical import LexicalFallback  # noqa: E402
from patternbank.memory.store.sqlite import PatternStore  # noqa: E402

__all__ = [
    "CANONICAL_ORDER",
    "PATTERN_COLUMNS",
    "PATTERN_SOURCE",
    "Clock",
    "LexicalFallback",
    "PatternStore",
    "canonical_sort_key",
    "decode_vector",
    "encode_vector",
    "format_timestamp",
    "parse_timestamp",
    "resolve_db_path",
    "row_to_pattern",
    "row_to_skill",
    "utc_now",
]
