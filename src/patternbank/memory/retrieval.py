"""Semantic ranking and clustering.

This module provides functions for:
- Cosine similarity of a query vector against stored vectors, vectorized
- Weighted scoring: alpha*similarity + beta*recency + gamma*confidence
- Maximal-marginal-relevance re-ranking for diversity
- Clustering patterns by embedding similarity (consolidation grouping)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from patternbank.memory.models import Pattern

from .store import canonical_sort_key, parse_timestamp

_SECONDS_PER_DAY = 86_400.0


def normalize_similarity(similarity: float) -> float:
    """Map cosine similarity from [-1, 1] onto [0, 1]."""
    return min(max((similarity + 1.0) / 2.0, 0.0), 1.0)


def recency_weight(created_at: str, now: datetime, half_life_days: float) -> float:
    """Exponential decay by age: 1.0 when new, 0.5 after one half-life."""
    age_days = max((now - parse_timestamp(created_at)).total_seconds(), 0.0) / _SECONDS_PER_DAY
    return float(0.5 ** (age_days / half_life_days))


@dataclass(frozen=True)
class ScoredCandidate:
    pattern: Pattern
    vector: np.ndarray
    similarity: float
    recency: float
    score: float


@dataclass(frozen=True)
class RankingWeights:
    alpha: float = 0.7
    beta: float = 0.2
    gamma: float = 0.1
    delta: float = 0.3
    half_life_days: float = 45.0


def _unit_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # Avoid division by zero
    return matrix / norms


def score_candidates(
    query_vector: Sequence[float],
    candidates: Sequence[tuple[Pattern, Sequence[float]]],
    weights: RankingWeights,
    now: datetime,
    min_similarity: float = 0.0,
) -> list[ScoredCandidate]:
    """Score candidates whose vectors share the query's dimensionality.

    Candidates whose normalized similarity falls below ``min_similarity`` are
    dropped. Result order is descending score, ties broken by canonical order.
    """
    query = np.asarray(query_vector, dtype=np.float64)
    usable = [(p, v) for p, v in candidates if len(v) == query.shape[0]]
    if not usable or query.size == 0:
        return []

    matrix = np.asarray([v for _, v in usable], dtype=np.float64)
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        cosines = np.zeros(len(usable))
    else:
        cosines = _unit_rows(matrix) @ (query / query_norm)

    scored: list[ScoredCandidate] = []
    for (pattern, _), row, cosine in zip(usable, matrix, cosines, strict=True):
        similarity = normalize_similarity(float(cosine))
        if similarity < min_similarity:
            continue
        recency = recency_weight(pattern.created_at, now, weights.half_life_days)
        score = (
            weights.alpha * similarity
            + weights.beta * recency
            + weights.gamma * pattern.confidence
        )
        scored.append(
            ScoredCandidate(
                pattern=pattern, vector=row, similarity=similarity, recency=recency, score=score
            )
        )

    scored.sort(key=lambda c: (-c.score, canonical_sort_key(c.pattern)))
    return scored


def mmr_rerank(
    scored: Sequence[ScoredCandidate], k: int, delta: float
) -> list[ScoredCandidate]:
    """Pick ``k`` candidates trading relevance against redundancy.

    At each step the candidate maximizing
    ``(1 - delta) * score - delta * max_similarity_to_selected`` is chosen,
    with inter-candidate similarity normalized to [0, 1]. ``delta == 0``
    keeps pure score order. Ties keep the incoming order.
    """
    if k <= 0 or not scored:
        return []
    pool = list(scored)
    if delta <= 0 or len(pool) == 1:
        return pool[:k]

    unit = _unit_rows(np.vstack([c.vector for c in pool]))
    pairwise = np.clip((unit @ unit.T + 1.0) / 2.0, 0.0, 1.0)
    relevance = np.asarray([c.score for c in pool])

    selected: list[int] = []
    redundancy = np.zeros(len(pool))
    remaining = list(range(len(pool)))
    while remaining and len(selected) < k:
        best = max(
            remaining,
            key=lambda i: ((1.0 - delta) * relevance[i] - delta * redundancy[i], -i),
        )
        selected.append(best)
        remaining.remove(best)
        redundancy = np.maximum(redundancy, pairwise[best])

    return [pool[i] for i in selected]


def cluster_by_similarity(
    items: Sequence[tuple[Pattern, Sequence[float]]],
    similarity_threshold: float,
) -> list[list[Pattern]]:
    """Group patterns whose vectors are transitively within the threshold.

    Uses Union-Find over one vectorized similarity matrix. Every pattern
    lands in exactly one group (singletons included); groups and their
    members come back sorted by id so the output is deterministic.
    """
    n = len(items)
    if n == 0:
        return []

    dims = {len(v) for _, v in items}
    if len(dims) != 1:
        raise ValueError(f"Cannot cluster vectors of mixed dimensionality: {sorted(dims)}")

    normalized = _unit_rows(np.asarray([v for _, v in items], dtype=np.float64))
    similarity_matrix = normalized @ normalized.T

    parent = list(range(n))

    def find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    def union(x: int, y: int) -> None:
        px, py = find(x), find(y)
        if px != py:
            parent[max(px, py)] = min(px, py)

    rows, cols = np.nonzero(np.triu(similarity_matrix >= similarity_threshold, k=1))
    for i, j in zip(rows.tolist(), cols.tolist(), strict=True):
        union(i, j)

    cluster_map: dict[int, list[Pattern]] = {}
    for i, (pattern, _) in enumerate(items):
        cluster_map.setdefault(find(i), []).append(pattern)

    clusters = [sorted(members, key=lambda p: p.id) for members in cluster_map.values()]
    clusters.sort(key=lambda members: members[0].id)
    return clusters


__all__ = [
    "RankingWeights",
    "ScoredCandidate",
    "cluster_by_similarity",
    "mmr_rerank",
    "normalize_similarity",
    "recency_weight",
    "score_candidates",
]
