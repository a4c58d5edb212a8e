"""SQLite pattern store: the system of record.

One connection is shared by every caller in the process. It runs in WAL
mode with foreign keys on, and a re-entrant lock serializes access so that
statements from the event loop and from worker threads never interleave.
Every mutation commits before the method returns.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from patternbank.core.config import IN_MEMORY_DB
from patternbank.core.console import get_logger
from patternbank.core.result import (
    Err,
    InvalidConfidenceError,
    NotFoundError,
    Ok,
    PatternBankError,
    Result,
    StorageError,
    ValidationError,
)
from patternbank.memory.models import Embedding, MemoryStats, Pattern, Skill, TableCheck

from . import (
    CANONICAL_ORDER,
    PATTERN_COLUMNS,
    PATTERN_SOURCE,
    Clock,
    decode_vector,
    encode_vector,
    format_timestamp,
    resolve_db_path,
    row_to_pattern,
    row_to_skill,
    utc_now,
)
from .schema import check_tables, migrate

logger = get_logger(__name__)


def _contains(haystack: str | None, needle: str | None) -> int:
    """Case-insensitive substring test registered as the SQL function pb_contains."""
    if haystack is None or needle is None:
        return 0
    return int(needle.lower() in haystack.lower())


def validate_confidence(confidence: object) -> Result[float, InvalidConfidenceError]:
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        return Err(
            InvalidConfidenceError(
                "Confidence must be a number", context={"confidence": repr(confidence)}
            )
        )
    value = float(confidence)
    if not 0.0 <= value <= 1.0:
        return Err(
            InvalidConfidenceError(
                "Confidence must be within [0, 1]", context={"confidence": value}
            )
        )
    return Ok(value)


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class PatternStore:
    """Durable, namespaced storage for patterns and everything derived from them."""

    def __init__(
        self,
        db_path: Path | str,
        *,
        busy_timeout_ms: int = 5000,
        clock: Clock | None = None,
    ) -> None:
        self._db_path = resolve_db_path(db_path)
        self._clock: Clock = clock or utc_now
        self._lock = threading.RLock()
        self._closed = False
        try:
            db = sqlite3.connect(
                self._db_path,
                check_same_thread=False,
                timeout=busy_timeout_ms / 1000.0,
            )
            db.row_factory = sqlite3.Row
            if self._db_path != IN_MEMORY_DB:
                db.execute("PRAGMA journal_mode=WAL")
            db.execute("PRAGMA foreign_keys=ON")
            db.execute("PRAGMA synchronous=FULL")
            db.create_function("pb_contains", 2, _contains, deterministic=True)
            version = migrate(db)
        except sqlite3.Error as exc:
            raise StorageError(
                "Failed to open pattern store", context={"path": self._db_path, "error": str(exc)}
            ) from exc
        self._db = db
        logger.info("Opened pattern store %s (schema v%d)", self._db_path, version)

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def closed(self) -> bool:
        return self._closed

    def _now(self) -> str:
        return format_timestamp(self._clock())

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock for one unit of work; commit on success, roll back on error."""
        with self._lock:
            if self._closed:
                raise sqlite3.ProgrammingError("Cannot operate on a closed pattern store.")
            try:
                yield self._db
                self._db.commit()
            except BaseException:
                self._db.rollback()
                raise

    def _storage_error(self, action: str, exc: Exception) -> StorageError:
        return StorageError(
            f"Failed to {action}", context={"path": self._db_path, "error": str(exc)}
        )

    def _fetch_pattern(self, db: sqlite3.Connection, pattern_id: str) -> Pattern | None:
        row = db.execute(
            f"SELECT {PATTERN_COLUMNS} FROM {PATTERN_SOURCE} WHERE p.id = ?", (pattern_id,)
        ).fetchone()
        return row_to_pattern(row) if row is not None else None

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def add(
        self, namespace: str, key: str, value: str, confidence: float
    ) -> Result[Pattern, PatternBankError]:
        """Insert a new pattern. Durable once ``Ok`` is returned."""
        match validate_confidence(confidence):
            case Err(err):
                return Err(err)
            case Ok(checked):
                pass

        now = self._now()
        pattern = Pattern(
            id=uuid4().hex,
            namespace=namespace,
            key=key,
            value=value,
            confidence=checked,
            usage_count=0,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._transaction() as db:
                db.execute(
                    """
                    INSERT INTO patterns
                        (id, namespace, key, value, confidence, usage_count, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pattern.id,
                        pattern.namespace,
                        pattern.key,
                        pattern.value,
                        pattern.confidence,
                        pattern.usage_count,
                        pattern.created_at,
                        pattern.updated_at,
                    ),
                )
        except sqlite3.Error as exc:
            return Err(self._storage_error("store pattern", exc))
        return Ok(pattern)

    def get(self, pattern_id: str) -> Result[Pattern, PatternBankError]:
        try:
            with self._transaction() as db:
                pattern = self._fetch_pattern(db, pattern_id)
        except sqlite3.Error as exc:
            return Err(self._storage_error("read pattern", exc))
        if pattern is None:
            return Err(NotFoundError("Pattern not found", context={"id": pattern_id}))
        return Ok(pattern)

    def touch(self, pattern_id: str) -> Result[Pattern, PatternBankError]:
        """Increment usage_count by one and refresh updated_at in a single statement."""
        try:
            with self._transaction() as db:
                cursor = db.execute(
                    """
                    UPDATE patterns
                    SET usage_count = usage_count + 1,
                        updated_at = MAX(?, created_at, updated_at)
                    WHERE id = ?
                    """,
                    (self._now(), pattern_id),
                )
                pattern = self._fetch_pattern(db, pattern_id) if cursor.rowcount else None
        except sqlite3.Error as exc:
            return Err(self._storage_error("touch pattern", exc))
        if pattern is None:
            return Err(NotFoundError("Pattern not found", context={"id": pattern_id}))
        return Ok(pattern)

    def list_by_namespace(
        self, namespace: str | None, limit: int | None = None
    ) -> Result[list[Pattern], PatternBankError]:
        """Patterns in canonical order. ``namespace=None`` spans every namespace."""
        if limit is not None and limit <= 0:
            return Err(ValidationError("Limit must be positive", context={"limit": limit}))

        clauses: list[str] = []
        params: list[object] = []
        if namespace is not None:
            clauses.append("p.namespace = ?")
            params.append(namespace)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_sql = "LIMIT ?" if limit is not None else ""
        if limit is not None:
            params.append(limit)

        try:
            with self._transaction() as db:
                rows = db.execute(
                    f"SELECT {PATTERN_COLUMNS} FROM {PATTERN_SOURCE} {where} "
                    f"ORDER BY {CANONICAL_ORDER} {limit_sql}",
                    params,
                ).fetchall()
        except sqlite3.Error as exc:
            return Err(self._storage_error("list patterns", exc))
        return Ok([row_to_pattern(row) for row in rows])

    def search_text(
        self,
        query: str,
        namespace: str | None,
        limit: int,
        *,
        without_model: str | None = None,
    ) -> Result[list[Pattern], PatternBankError]:
        """Case-insensitive substring match over key or value, in canonical order.

        With ``without_model``, only patterns that have no vector for that model.
        """
        clauses = ["(pb_contains(p.key, ?) OR pb_contains(p.value, ?))"]
        params: list[object] = [query, query]
        if without_model is not None:
            clauses.append("(e.pattern_id IS NULL OR e.model != ?)")
            params.append(without_model)
        if namespace is not None:
            clauses.append("p.namespace = ?")
            params.append(namespace)
        params.append(limit)

        try:
            with self._transaction() as db:
                rows = db.execute(
                    f"SELECT {PATTERN_COLUMNS} FROM {PATTERN_SOURCE} "
                    f"WHERE {' AND '.join(clauses)} ORDER BY {CANONICAL_ORDER} LIMIT ?",
                    params,
                ).fetchall()
        except sqlite3.Error as exc:
            return Err(self._storage_error("search patterns", exc))
        return Ok([row_to_pattern(row) for row in rows])

    def update_confidence(
        self, pattern_id: str, confidence: float
    ) -> Result[Pattern, PatternBankError]:
        match validate_confidence(confidence):
            case Err(err):
                return Err(err)
            case Ok(checked):
                pass

        try:
            with self._transaction() as db:
                cursor = db.execute(
                    """
                    UPDATE patterns
                    SET confidence = ?, updated_at = MAX(?, created_at, updated_at)
                    WHERE id = ?
                    """,
                    (checked, self._now(), pattern_id),
                )
                pattern = self._fetch_pattern(db, pattern_id) if cursor.rowcount else None
        except sqlite3.Error as exc:
            return Err(self._storage_error("update confidence", exc))
        if pattern is None:
            return Err(NotFoundError("Pattern not found", context={"id": pattern_id}))
        return Ok(pattern)

    def delete(self, pattern_id: str) -> Result[bool, PatternBankError]:
        """Remove a pattern with its embedding, links and trajectories."""
        match self.delete_many([pattern_id]):
            case Err(err):
                return Err(err)
            case Ok((deleted, _)):
                return Ok(deleted > 0)

    def delete_many(self, pattern_ids: Sequence[str]) -> Result[tuple[int, int], PatternBankError]:
        """Delete patterns in one transaction.

        Skills left without any member are deleted too. Returns
        ``(patterns_deleted, skills_deleted)``.
        """
        ids = list(dict.fromkeys(pattern_ids))
        if not ids:
            return Ok((0, 0))
        marks = _placeholders(len(ids))

        try:
            with self._transaction() as db:
                skill_ids = [
                    row[0]
                    for row in db.execute(
                        f"SELECT DISTINCT skill_id FROM pattern_links WHERE pattern_id IN ({marks})",
                        ids,
                    ).fetchall()
                ]
                deleted = db.execute(f"DELETE FROM patterns WHERE id IN ({marks})", ids).rowcount
                orphaned = 0
                if skill_ids:
                    orphaned = db.execute(
                        f"""
                        DELETE FROM skills
                        WHERE id IN ({_placeholders(len(skill_ids))})
                          AND NOT EXISTS (
                              SELECT 1 FROM pattern_links l WHERE l.skill_id = skills.id
                          )
                        """,
                        skill_ids,
                    ).rowcount
        except sqlite3.Error as exc:
            return Err(self._storage_error("delete patterns", exc))
        return Ok((deleted, orphaned))

    def namespaces(self) -> Result[list[str], PatternBankError]:
        try:
            with self._transaction() as db:
                rows = db.execute(
                    "SELECT DISTINCT namespace FROM patterns ORDER BY namespace"
                ).fetchall()
        except sqlite3.Error as exc:
            return Err(self._storage_error("list namespaces", exc))
        return Ok([row[0] for row in rows])

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def upsert_embedding(
        self, pattern_id: str, vector: Sequence[float], model: str
    ) -> Result[Embedding, PatternBankError]:
        """Attach or replace the vector for a pattern.

        All rows sharing a model must share a dimensionality.
        """
        dims = len(vector)
        if dims == 0:
            return Err(ValidationError("Embedding vector is empty", context={"id": pattern_id}))

        try:
            with self._transaction() as db:
                if db.execute("SELECT 1 FROM patterns WHERE id = ?", (pattern_id,)).fetchone() is None:
                    return Err(NotFoundError("Pattern not found", context={"id": pattern_id}))
                row = db.execute(
                    "SELECT dims FROM pattern_embeddings WHERE model = ? AND pattern_id != ? LIMIT 1",
                    (model, pattern_id),
                ).fetchone()
                if row is not None and int(row[0]) != dims:
                    return Err(
                        ValidationError(
                            "Embedding dimensionality does not match model",
                            context={"model": model, "expected": int(row[0]), "actual": dims},
                        )
                    )
                db.execute(
                    """
                    INSERT INTO pattern_embeddings (pattern_id, model, dims, vector, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(pattern_id) DO UPDATE SET
                        model = excluded.model,
                        dims = excluded.dims,
                        vector = excluded.vector,
                        created_at = excluded.created_at
                    """,
                    (pattern_id, model, dims, encode_vector(vector), self._now()),
                )
        except sqlite3.Error as exc:
            return Err(self._storage_error("store embedding", exc))
        return Ok(Embedding(pattern_id=pattern_id, vector=list(vector), dims=dims, model=model))

    def get_embedding(self, pattern_id: str) -> Result[Embedding, PatternBankError]:
        try:
            with self._transaction() as db:
                row = db.execute(
                    "SELECT pattern_id, model, dims, vector FROM pattern_embeddings WHERE pattern_id = ?",
                    (pattern_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            return Err(self._storage_error("read embedding", exc))
        if row is None:
            return Err(NotFoundError("Embedding not found", context={"id": pattern_id}))
        return Ok(
            Embedding(
                pattern_id=row["pattern_id"],
                vector=decode_vector(row["vector"]),
                dims=int(row["dims"]),
                model=row["model"],
            )
        )

    def embedding_candidates(
        self, namespace: str | None, model: str, min_confidence: float = 0.0
    ) -> Result[list[tuple[Pattern, list[float]]], PatternBankError]:
        """Patterns with a vector for ``model``, in canonical order."""
        clauses = ["e.model = ?", "p.confidence >= ?"]
        params: list[object] = [model, min_confidence]
        if namespace is not None:
            clauses.append("p.namespace = ?")
            params.append(namespace)

        try:
            with self._transaction() as db:
                rows = db.execute(
                    f"""
                    SELECT {PATTERN_COLUMNS}, e.vector AS vector
                    FROM patterns p JOIN pattern_embeddings e ON e.pattern_id = p.id
                    WHERE {' AND '.join(clauses)}
                    ORDER BY {CANONICAL_ORDER}
                    """,
                    params,
                ).fetchall()
        except sqlite3.Error as exc:
            return Err(self._storage_error("load embeddings", exc))
        return Ok([(row_to_pattern(row), decode_vector(row["vector"])) for row in rows])

    # ------------------------------------------------------------------
    # Skills
    # ------------------------------------------------------------------

    def _load_skill(self, db: sqlite3.Connection, row: sqlite3.Row) -> Skill:
        members = [
            link[0]
            for link in db.execute(
                "SELECT pattern_id FROM pattern_links WHERE skill_id = ?", (row["id"],)
            ).fetchall()
        ]
        return row_to_skill(row, members)

    def list_skills(self, namespace: str | None = None) -> Result[list[Skill], PatternBankError]:
        where = "WHERE namespace = ?" if namespace is not None else ""
        params = [namespace] if namespace is not None else []
        try:
            with self._transaction() as db:
                rows = db.execute(
                    f"SELECT * FROM skills {where} ORDER BY created_at, id", params
                ).fetchall()
                skills = [self._load_skill(db, row) for row in rows]
        except sqlite3.Error as exc:
            return Err(self._storage_error("list skills", exc))
        return Ok(skills)

    def get_skill_by_signature(self, signature: str) -> Result[Skill, PatternBankError]:
        try:
            with self._transaction() as db:
                row = db.execute("SELECT * FROM skills WHERE signature = ?", (signature,)).fetchone()
                skill = self._load_skill(db, row) if row is not None else None
        except sqlite3.Error as exc:
            return Err(self._storage_error("read skill", exc))
        if skill is None:
            return Err(NotFoundError("Skill not found", context={"signature": signature}))
        return Ok(skill)

    def skills_overlapping(
        self, namespace: str, pattern_ids: Sequence[str]
    ) -> Result[list[Skill], PatternBankError]:
        """Skills in ``namespace`` sharing at least one member with ``pattern_ids``."""
        ids = list(pattern_ids)
        if not ids:
            return Ok([])
        try:
            with self._transaction() as db:
                rows = db.execute(
                    f"""
                    SELECT DISTINCT s.* FROM skills s
                    JOIN pattern_links l ON l.skill_id = s.id
                    WHERE s.namespace = ? AND l.pattern_id IN ({_placeholders(len(ids))})
                    ORDER BY s.created_at, s.id
                    """,
                    [namespace, *ids],
                ).fetchall()
                skills = [self._load_skill(db, row) for row in rows]
        except sqlite3.Error as exc:
            return Err(self._storage_error("find overlapping skills", exc))
        return Ok(skills)

    def create_skill(
        self,
        namespace: str,
        signature: str,
        pattern_ids: Sequence[str],
        avg_reward: float,
        usage_count: int,
    ) -> Result[Skill, PatternBankError]:
        members = sorted(set(pattern_ids))
        if not members:
            return Err(ValidationError("A skill needs at least one pattern"))
        now = self._now()
        skill = Skill(
            id=uuid4().hex,
            namespace=namespace,
            signature=signature,
            source_pattern_ids=members,
            avg_reward=min(max(avg_reward, 0.0), 1.0),
            usage_count=max(usage_count, 0),
            created_at=now,
            updated_at=now,
        )
        try:
            with self._transaction() as db:
                db.execute(
                    """
                    INSERT INTO skills
                        (id, namespace, signature, avg_reward, usage_count, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        skill.id,
                        skill.namespace,
                        skill.signature,
                        skill.avg_reward,
                        skill.usage_count,
                        skill.created_at,
                        skill.updated_at,
                    ),
                )
                db.executemany(
                    "INSERT INTO pattern_links (skill_id, pattern_id) VALUES (?, ?)",
                    [(skill.id, pattern_id) for pattern_id in members],
                )
        except sqlite3.IntegrityError as exc:
            return Err(
                NotFoundError(
                    "Skill references a missing pattern or duplicate signature",
                    context={"signature": signature, "error": str(exc)},
                )
            )
        except sqlite3.Error as exc:
            return Err(self._storage_error("create skill", exc))
        return Ok(skill)

    def update_skill(
        self, skill_id: str, avg_reward: float, usage_count: int
    ) -> Result[None, PatternBankError]:
        try:
            with self._transaction() as db:
                db.execute(
                    "UPDATE skills SET avg_reward = ?, usage_count = ?, updated_at = ? WHERE id = ?",
                    (min(max(avg_reward, 0.0), 1.0), max(usage_count, 0), self._now(), skill_id),
                )
        except sqlite3.Error as exc:
            return Err(self._storage_error("update skill", exc))
        return Ok(None)

    def delete_skills(self, skill_ids: Sequence[str]) -> Result[int, PatternBankError]:
        ids = list(skill_ids)
        if not ids:
            return Ok(0)
        try:
            with self._transaction() as db:
                removed = db.execute(
                    f"DELETE FROM skills WHERE id IN ({_placeholders(len(ids))})", ids
                ).rowcount
        except sqlite3.Error as exc:
            return Err(self._storage_error("delete skills", exc))
        return Ok(removed)

    # ------------------------------------------------------------------
    # Trajectories
    # ------------------------------------------------------------------

    def record_trajectory(
        self, pattern_id: str, success: bool, task_id: str | None = None
    ) -> Result[str, PatternBankError]:
        trajectory_id = uuid4().hex
        try:
            with self._transaction() as db:
                row = db.execute(
                    "SELECT namespace FROM patterns WHERE id = ?", (pattern_id,)
                ).fetchone()
                if row is None:
                    return Err(NotFoundError("Pattern not found", context={"id": pattern_id}))
                db.execute(
                    """
                    INSERT INTO task_trajectories
                        (id, pattern_id, namespace, task_id, success, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (trajectory_id, pattern_id, row[0], task_id, int(bool(success)), self._now()),
                )
        except sqlite3.Error as exc:
            return Err(self._storage_error("record trajectory", exc))
        return Ok(trajectory_id)

    def trajectory_stats(
        self, namespace: str, since: datetime
    ) -> Result[dict[str, tuple[int, int]], PatternBankError]:
        """Map pattern id to ``(successes, outcomes)`` recorded at or after ``since``."""
        try:
            with self._transaction() as db:
                rows = db.execute(
                    """
                    SELECT pattern_id, SUM(success) AS successes, COUNT(*) AS total
                    FROM task_trajectories
                    WHERE namespace = ? AND created_at >= ?
                    GROUP BY pattern_id
                    """,
                    (namespace, format_timestamp(since)),
                ).fetchall()
        except sqlite3.Error as exc:
            return Err(self._storage_error("read trajectories", exc))
        return Ok({row[0]: (int(row[1] or 0), int(row[2])) for row in rows})

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def stats(self, namespace: str | None = None) -> Result[MemoryStats, PatternBankError]:
        scoped = namespace is not None
        p_where = "WHERE namespace = ?" if scoped else ""
        params: list[object] = [namespace] if scoped else []
        try:
            with self._transaction() as db:
                count, avg_conf = db.execute(
                    f"SELECT COUNT(*), AVG(confidence) FROM patterns {p_where}", params
                ).fetchone()
                embedding_count = db.execute(
                    "SELECT COUNT(*) FROM pattern_embeddings e JOIN patterns p ON p.id = e.pattern_id "
                    + ("WHERE p.namespace = ?" if scoped else ""),
                    params,
                ).fetchone()[0]
                skill_count = db.execute(
                    f"SELECT COUNT(*) FROM skills {p_where}", params
                ).fetchone()[0]
                trajectory_count = db.execute(
                    f"SELECT COUNT(*) FROM task_trajectories {p_where}", params
                ).fetchone()[0]
                link_count = db.execute(
                    "SELECT COUNT(*) FROM pattern_links l JOIN skills s ON s.id = l.skill_id "
                    + ("WHERE s.namespace = ?" if scoped else ""),
                    params,
                ).fetchone()[0]
                namespace_count = db.execute(
                    f"SELECT COUNT(DISTINCT namespace) FROM patterns {p_where}", params
                ).fetchone()[0]
        except sqlite3.Error as exc:
            return Err(self._storage_error("compute stats", exc))
        return Ok(
            MemoryStats(
                count=int(count),
                avg_confidence=float(avg_conf) if avg_conf is not None else 0.0,
                embedding_count=int(embedding_count),
                skill_count=int(skill_count),
                trajectory_count=int(trajectory_count),
                link_count=int(link_count),
                namespace_count=int(namespace_count),
            )
        )

    def check_tables(self) -> Result[TableCheck, PatternBankError]:
        try:
            with self._transaction() as db:
                result = check_tables(db)
        except sqlite3.Error as exc:
            return Err(self._storage_error("inspect schema", exc))
        return Ok(result)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def flush(self) -> Result[None, PatternBankError]:
        """Commit anything pending and checkpoint the WAL without blocking readers."""
        try:
            with self._transaction() as db:
                if self._db_path != IN_MEMORY_DB:
                    db.execute("PRAGMA wal_checkpoint(PASSIVE)").fetchone()
        except sqlite3.Error as exc:
            return Err(self._storage_error("flush pattern store", exc))
        return Ok(None)

    def close(self) -> None:
        """Close the connection. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._db.commit()
            finally:
                self._db.close()
        logger.info("Closed pattern store %s", self._db_path)


__all__ = ["PatternStore", "validate_confidence"]
