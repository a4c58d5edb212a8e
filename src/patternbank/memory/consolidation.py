"""Consolidation of repeatedly successful patterns into skills.

One run, per namespace:

1. Revise confidence to the observed success rate for patterns with at
   least ``min_uses`` recorded outcomes inside the lookback window.
2. Prune patterns below the confidence floor that were never used and have
   not been updated inside the window. Skills left empty go with them.
3. Group qualifying patterns (``usage_count >= min_uses``, updated inside the
   window): embedded ones by cosine similarity, the rest as one group.
4. For each group of at least ``min_group_size`` with success rate
   ``>= min_success_rate``, create the skill, or update it in place when a
   skill with the same member signature exists. Skills overlapping a new
   group are superseded.

Every step only writes when something differs, so a second run over
unchanged data reports all zeros.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from patternbank.core.config import ConsolidationConfig
from patternbank.core.console import get_logger
from patternbank.core.result import (
    Err,
    NotFoundError,
    Ok,
    PatternBankError,
    Result,
    ValidationError,
)

from .embedding import NULL_MODEL
from .models import ConsolidationReport, Pattern
from .retrieval import cluster_by_similarity
from .store import PatternStore, format_timestamp, utc_now

logger = get_logger(__name__)

_EPSILON = 1e-9


def skill_signature(namespace: str, pattern_ids: Sequence[str]) -> str:
    """Stable identity of a skill: its namespace and sorted member ids."""
    material = "\0".join([namespace, *sorted(pattern_ids)])
    return hashlib.sha1(material.encode("utf-8")).hexdigest()


def weighted_confidence(patterns: Sequence[Pattern]) -> float:
    """Usage-weighted mean confidence, plain mean when nothing has been used."""
    if not patterns:
        return 0.0
    total_usage = sum(p.usage_count for p in patterns)
    if total_usage > 0:
        mean = sum(p.confidence * p.usage_count for p in patterns) / total_usage
    else:
        mean = sum(p.confidence for p in patterns) / len(patterns)
    return min(max(mean, 0.0), 1.0)


class ConsolidationEngine:
    def __init__(
        self,
        store: PatternStore,
        config: ConsolidationConfig,
        *,
        model_name: str = NULL_MODEL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._config = config
        self._model_name = model_name
        self._clock = clock

    def run(
        self,
        namespace: str | None = None,
        *,
        min_uses: int | None = None,
        min_success_rate: float | None = None,
        lookback_days: float | None = None,
    ) -> Result[ConsolidationReport, PatternBankError]:
        """Consolidate one namespace, or every namespace when none is given."""
        uses = self._config.min_uses if min_uses is None else min_uses
        rate = self._config.min_success_rate if min_success_rate is None else min_success_rate
        days = self._config.lookback_days if lookback_days is None else lookback_days

        if isinstance(uses, bool) or not isinstance(uses, int) or uses < 1:
            return Err(ValidationError("min_uses must be a positive integer", context={"min_uses": uses}))
        if not 0.0 <= rate <= 1.0:
            return Err(
                ValidationError("min_success_rate must be within [0, 1]", context={"rate": rate})
            )
        if not days > 0:
            return Err(ValidationError("lookback_days must be positive", context={"days": days}))

        report = ConsolidationReport()
        try:
            if namespace is not None:
                namespaces = [namespace]
            else:
                namespaces = self._store.namespaces().unwrap()
            for ns in namespaces:
                report.merge(self._run_namespace(ns, uses, rate, days))
        except PatternBankError as exc:
            return Err(exc)

        logger.info(
            "Consolidation: %d skills created, %d updated, %d removed, %d patterns pruned, "
            "%d confidences revised",
            report.skills_created,
            report.skills_updated,
            report.skills_removed,
            report.patterns_pruned,
            report.confidence_revised,
        )
        return Ok(report)

    def _run_namespace(
        self, namespace: str, min_uses: int, min_success_rate: float, lookback_days: float
    ) -> ConsolidationReport:
        report = ConsolidationReport()
        cutoff = self._clock() - timedelta(days=lookback_days)
        cutoff_ts = format_timestamp(cutoff)
        outcomes = self._store.trajectory_stats(namespace, cutoff).unwrap()

        for pattern_id, (successes, total) in sorted(outcomes.items()):
            if total < min_uses:
                continue
            observed = min(max(successes / total, 0.0), 1.0)
            current = self._store.get(pattern_id).unwrap()
            if abs(current.confidence - observed) > _EPSILON:
                self._store.update_confidence(pattern_id, observed).unwrap()
                report.confidence_revised += 1

        patterns = self._store.list_by_namespace(namespace).unwrap()

        stale = [
            p
            for p in patterns
            if p.confidence < self._config.prune_confidence_floor
            and p.usage_count == 0
            and p.updated_at < cutoff_ts
        ]
        if stale:
            deleted, orphaned = self._store.delete_many([p.id for p in stale]).unwrap()
            report.patterns_pruned += deleted
            report.skills_removed += orphaned
            stale_ids = {p.id for p in stale}
            patterns = [p for p in patterns if p.id not in stale_ids]

        qualifying = [
            p for p in patterns if p.usage_count >= min_uses and p.updated_at >= cutoff_ts
        ]
        for group in self._group(namespace, qualifying):
            if len(group) < self._config.min_group_size:
                continue
            if self._success_rate(group, outcomes) < min_success_rate:
                continue
            self._save_skill(namespace, group, report)

        return report

    def _group(self, namespace: str, patterns: list[Pattern]) -> list[list[Pattern]]:
        if not patterns:
            return []
        vectors: dict[str, list[float]] = {}
        if self._model_name != NULL_MODEL:
            candidates = self._store.embedding_candidates(namespace, self._model_name).unwrap()
            vectors = {p.id: vector for p, vector in candidates}

        embedded = [(p, vectors[p.id]) for p in patterns if p.id in vectors]
        plain = sorted((p for p in patterns if p.id not in vectors), key=lambda p: p.id)

        groups = cluster_by_similarity(embedded, self._config.similarity_threshold) if embedded else []
        if plain:
            groups.append(plain)
        return groups

    @staticmethod
    def _success_rate(group: Sequence[Pattern], outcomes: dict[str, tuple[int, int]]) -> float:
        successes = sum(outcomes.get(p.id, (0, 0))[0] for p in group)
        total = sum(outcomes.get(p.id, (0, 0))[1] for p in group)
        if total > 0:
            return successes / total
        return weighted_confidence(group)

    def _save_skill(
        self, namespace: str, group: Sequence[Pattern], report: ConsolidationReport
    ) -> None:
        member_ids = sorted(p.id for p in group)
        signature = skill_signature(namespace, member_ids)
        avg_reward = weighted_confidence(group)
        usage = sum(p.usage_count for p in group)

        match self._store.get_skill_by_signature(signature):
            case Ok(skill):
                if abs(skill.avg_reward - avg_reward) > _EPSILON or skill.usage_count != usage:
                    self._store.update_skill(skill.id, avg_reward, usage).unwrap()
                    report.skills_updated += 1
                return
            case Err(NotFoundError()):
                pass
            case Err(err):
                raise err

        superseded = self._store.skills_overlapping(namespace, member_ids).unwrap()
        if superseded:
            report.skills_removed += self._store.delete_skills([s.id for s in superseded]).unwrap()
        self._store.create_skill(namespace, signature, member_ids, avg_reward, usage).unwrap()
        report.skills_created += 1


__all__ = ["ConsolidationEngine", "skill_signature", "weighted_confidence"]
