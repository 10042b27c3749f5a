# affinity_engine/domain/services/similarity.py
"""
Similarity Index.

- cosine for user-user and content (feature-vector) similarity, range [0, 1]
- Pearson for item-item similarity over co-rating users, range [-1, 1]

Vectors are sparse mappings (key -> weight). Missing keys count as 0 for cosine;
Pearson only looks at keys present on both sides.
Degenerate inputs (zero magnitude, < 2 paired observations, zero variance) give 0.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from affinity_engine.core.errors import DegenerateInputError, TrainingBudgetExceeded, ValidationError

logger = logging.getLogger(__name__)

SparseVector = Mapping[str, float]
NeighbourTable = Dict[str, Dict[str, float]]


# ---------- Pairwise measures ------------------------------------------------

def _dense_pair(vec_a: SparseVector, vec_b: SparseVector) -> Tuple[np.ndarray, np.ndarray]:
    keys = sorted(set(vec_a) | set(vec_b))
    a = np.fromiter((float(vec_a.get(k, 0.0)) for k in keys), dtype=float, count=len(keys))
    b = np.fromiter((float(vec_b.get(k, 0.0)) for k in keys), dtype=float, count=len(keys))
    return a, b


def cosine_similarity(vec_a: SparseVector, vec_b: SparseVector) -> float:
    if not vec_a or not vec_b:
        return 0.0
    a, b = _dense_pair(vec_a, vec_b)
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    sim = float(np.dot(a, b)) / denom
    return min(1.0, max(0.0, sim))


def _pearson_strict(xs: Sequence[float], ys: Sequence[float]) -> float:
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if x.shape != y.shape:
        raise ValidationError(f"Pearson needs paired series, got {x.size} vs {y.size} observations")
    if x.size < 2:
        raise DegenerateInputError("fewer than two paired observations")
    dx = x - x.mean()
    dy = y - y.mean()
    sxx = float(np.dot(dx, dx))
    syy = float(np.dot(dy, dy))
    if sxx == 0.0 or syy == 0.0:
        raise DegenerateInputError("zero variance")
    r = float(np.dot(dx, dy)) / float(np.sqrt(sxx * syy))
    return min(1.0, max(-1.0, r))


def pearson_correlation(xs: Sequence[float], ys: Sequence[float]) -> float:
    try:
        return _pearson_strict(xs, ys)
    except DegenerateInputError as e:
        logger.debug("pearson degenerate input n=%s reason=%s", len(xs), e)
        return 0.0


def paired_ratings(ratings_a: SparseVector, ratings_b: SparseVector) -> Tuple[List[float], List[float]]:
    """Restrict two rating maps to the keys both sides have, in a stable order."""
    common = sorted(set(ratings_a) & set(ratings_b))
    return [float(ratings_a[k]) for k in common], [float(ratings_b[k]) for k in common]


def _check_deadline(deadline: Optional[float], job: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise TrainingBudgetExceeded(f"{job} exceeded its training budget")


# ---------- Batch jobs -------------------------------------------------------

def compute_product_similarities(
    user_vectors: Mapping[str, SparseVector],
    *,
    min_common_raters: int = 2,
    min_similarity: float = 0.3,
    deadline: Optional[float] = None,
) -> NeighbourTable:
    """
    Item-item Pearson correlation over users who rated both products.

    Only pairs with at least `min_common_raters` co-raters are scored and only
    correlations above `min_similarity` are kept. Each direction is computed and
    stored on its own row.
    """
    t0 = time.perf_counter()

    raters: Dict[str, Dict[str, float]] = defaultdict(dict)
    co_rated: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for user_id, ratings in user_vectors.items():
        products = list(ratings)
        for pid in products:
            raters[pid][user_id] = float(ratings[pid])
        for a in products:
            row = co_rated[a]
            for b in products:
                if a != b:
                    row[b] += 1

    index: NeighbourTable = {}
    scored = 0
    for product_a in sorted(co_rated):
        _check_deadline(deadline, "compute_product_similarities")
        row: Dict[str, float] = {}
        for product_b, n_common in co_rated[product_a].items():
            if n_common < min_common_raters:
                continue
            xs, ys = paired_ratings(raters[product_a], raters[product_b])
            sim = pearson_correlation(xs, ys)
            scored += 1
            if sim > min_similarity:
                row[product_b] = sim
        if row:
            index[product_a] = row

    logger.info(
        "item similarities done products=%s scored_pairs=%s kept_rows=%s time=%.3fs",
        len(raters), scored, len(index), time.perf_counter() - t0,
    )
    return index


def compute_user_similarities(
    user_vectors: Mapping[str, SparseVector],
    *,
    top_k: int = 20,
    deadline: Optional[float] = None,
) -> NeighbourTable:
    """
    Cosine similarity between customers, keeping the `top_k` positive neighbours.
    Users sharing no product have similarity 0 and are never compared.
    """
    t0 = time.perf_counter()

    owners: Dict[str, List[str]] = defaultdict(list)
    for user_id, ratings in user_vectors.items():
        for pid in ratings:
            owners[pid].append(user_id)

    table: NeighbourTable = {}
    for user_id in sorted(user_vectors):
        _check_deadline(deadline, "compute_user_similarities")
        candidates = {other for pid in user_vectors[user_id] for other in owners[pid] if other != user_id}
        scored = []
        for other in candidates:
            sim = cosine_similarity(user_vectors[user_id], user_vectors[other])
            if sim > 0:
                scored.append((other, sim))
        scored.sort(key=lambda x: (-x[1], x[0]))
        if scored:
            table[user_id] = dict(scored[:top_k])

    logger.info(
        "user similarities done users=%s rows=%s time=%.3fs",
        len(user_vectors), len(table), time.perf_counter() - t0,
    )
    return table


def top_neighbours(row: Optional[Mapping[str, float]], k: int) -> List[Tuple[str, float]]:
    if not row:
        return []
    return sorted(row.items(), key=lambda x: (-x[1], x[0]))[:k]


@dataclass(frozen=True)
class SimilarityIndex:
    """Derived neighbour tables; replaced as a whole whenever the rating vectors change."""
    items: NeighbourTable = field(default_factory=dict)
    users: NeighbourTable = field(default_factory=dict)

    def similar_products(self, product_id: str, k: int = 10) -> List[Tuple[str, float]]:
        return top_neighbours(self.items.get(product_id), k)

    def similar_users(self, customer_id: str, k: int = 20) -> List[Tuple[str, float]]:
        return top_neighbours(self.users.get(customer_id), k)

    @property
    def pair_count(self) -> int:
        return sum(len(r) for r in self.items.values())


def build_similarity_index(
    user_vectors: Mapping[str, SparseVector],
    *,
    min_common_raters: int = 2,
    min_similarity: float = 0.3,
    user_top_k: int = 20,
    deadline: Optional[float] = None,
) -> SimilarityIndex:
    items = compute_product_similarities(
        user_vectors,
        min_common_raters=min_common_raters,
        min_similarity=min_similarity,
        deadline=deadline,
    )
    users = compute_user_similarities(user_vectors, top_k=user_top_k, deadline=deadline)
    return SimilarityIndex(items=items, users=users)
