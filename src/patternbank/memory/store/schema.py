"""SQLite schema for the pattern store.

Tables:
    patterns            system of record
    pattern_embeddings  0..1 vector per pattern, removed with its pattern
    skills              consolidated pattern groups
    pattern_links       skill <-> pattern membership
    task_trajectories   audit trail of pattern outcomes per task
    schema_version      applied migrations
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from patternbank.core.console import get_logger
from patternbank.memory.models import TableCheck

logger = get_logger(__name__)

SCHEMA_VERSION = 2

REQUIRED_TABLES = (
    "patterns",
    "pattern_embeddings",
    "pattern_links",
    "task_trajectories",
    "skills",
)

_SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS patterns (
    id TEXT PRIMARY KEY,
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    confidence REAL NOT NULL CHECK (confidence >= 0.0 AND confidence <= 1.0),
    usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL CHECK (updated_at >= created_at)
);

CREATE INDEX IF NOT EXISTS idx_patterns_namespace ON patterns(namespace);
CREATE INDEX IF NOT EXISTS idx_patterns_ranking
    ON patterns(namespace, confidence DESC, usage_count DESC);

CREATE TABLE IF NOT EXISTS pattern_embeddings (
    pattern_id TEXT PRIMARY KEY REFERENCES patterns(id) ON DELETE CASCADE,
    model TEXT NOT NULL,
    dims INTEGER NOT NULL CHECK (dims > 0),
    vector BLOB NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_embeddings_model ON pattern_embeddings(model);

CREATE TABLE IF NOT EXISTS skills (
    id TEXT PRIMARY KEY,
    namespace TEXT NOT NULL,
    signature TEXT NOT NULL UNIQUE,
    avg_reward REAL NOT NULL CHECK (avg_reward >= 0.0 AND avg_reward <= 1.0),
    usage_count INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_skills_namespace ON skills(namespace);

CREATE TABLE IF NOT EXISTS pattern_links (
    skill_id TEXT NOT NULL REFERENCES skills(id) ON DELETE CASCADE,
    pattern_id TEXT NOT NULL REFERENCES patterns(id) ON DELETE CASCADE,
    PRIMARY KEY (skill_id, pattern_id)
);

CREATE INDEX IF NOT EXISTS idx_links_pattern ON pattern_links(pattern_id);
"""

# v2: outcome audit trail used for consolidation success rates
_SCHEMA_V2 = """
CREATE TABLE IF NOT EXISTS task_trajectories (
    id TEXT PRIMARY KEY,
    pattern_id TEXT NOT NULL REFERENCES patterns(id) ON DELETE CASCADE,
    namespace TEXT NOT NULL,
    task_id TEXT,
    success INTEGER NOT NULL CHECK (success IN (0, 1)),
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_trajectories_pattern ON task_trajectories(pattern_id, created_at);
"""

_MIGRATIONS: dict[int, str] = {1: _SCHEMA_V1, 2: _SCHEMA_V2}


def _current_version(db: sqlite3.Connection) -> int:
    exists = db.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ).fetchone()
    if exists is None:
        return 0
    row = db.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return int(row[0]) if row and row[0] is not None else 0


def migrate(db: sqlite3.Connection) -> int:
    """Apply pending migrations. Safe to call on every open.

    Returns the schema version after migration.
    """
    current = _current_version(db)
    for version in sorted(_MIGRATIONS):
        if version <= current:
            continue
        db.executescript(_MIGRATIONS[version])
        db.execute(
            "INSERT OR REPLACE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, datetime.now(UTC).isoformat(timespec="seconds")),
        )
        db.commit()
        logger.debug("Applied schema migration v%d", version)
        current = version
    return current


def check_tables(db: sqlite3.Connection) -> TableCheck:
    rows = db.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    present = {row[0] for row in rows}
    return TableCheck(
        existing=[name for name in REQUIRED_TABLES if name in present],
        missing=[name for name in REQUIRED_TABLES if name not in present],
    )


__all__ = ["REQUIRED_TABLES", "SCHEMA_VERSION", "check_tables", "migrate"]
