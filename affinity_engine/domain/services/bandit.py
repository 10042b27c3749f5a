# affinity_engine/domain/services/bandit.py
"""
Thompson-sampling bandit over per-product performance counters.

Posterior per product: Beta(conversions + 1, impressions - conversions + 1).
Products are ranked by one sampled value each, not by the posterior mean, so
under-exposed products surface from time to time.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from affinity_engine.core.errors import ValidationError
from affinity_engine.domain.models.recommendation import ModelMetrics, PerformanceEvent, PerformanceMetrics

logger = logging.getLogger(__name__)


class PerformanceTracker:
    """Impressions/clicks/conversions/revenue per product. Increments are lock-protected."""

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"impressions": 0, "clicks": 0, "conversions": 0, "revenue": 0.0}
        )

    def track(self, product_id: str, event: PerformanceEvent) -> PerformanceMetrics:
        if not product_id:
            raise ValidationError("product_id is required")
        with self._lock:
            m = self._metrics[product_id]
            if event.type == "impression":
                m["impressions"] += 1
            elif event.type == "click":
                m["clicks"] += 1
            else:
                m["conversions"] += 1
                m["revenue"] += event.revenue
            snapshot = PerformanceMetrics(**m)
        logger.debug("perf track product_id=%s type=%s", product_id, event.type)
        return snapshot

    def get(self, product_id: str) -> PerformanceMetrics:
        with self._lock:
            m = self._metrics.get(product_id)
            return PerformanceMetrics(**m) if m else PerformanceMetrics()

    def set(self, product_id: str, metrics: PerformanceMetrics) -> None:
        """Seed counters (imports, tests)."""
        with self._lock:
            self._metrics[product_id] = metrics.model_dump()

    def totals(self) -> ModelMetrics:
        with self._lock:
            rows = [dict(m) for m in self._metrics.values()]
        impressions = sum(int(r["impressions"]) for r in rows)
        clicks = sum(int(r["clicks"]) for r in rows)
        conversions = sum(int(r["conversions"]) for r in rows)
        revenue = sum(float(r["revenue"]) for r in rows)
        return ModelMetrics(
            impressions=impressions,
            clicks=clicks,
            conversions=conversions,
            revenue=round(revenue, 2),
            ctr=clicks / impressions if impressions else 0.0,
            conversion_rate=conversions / clicks if clicks else 0.0,
            avg_revenue_per_conversion=revenue / conversions if conversions else 0.0,
        )


def beta_parameters(metrics: PerformanceMetrics) -> Tuple[float, float]:
    conversions = max(0, metrics.conversions)
    failures = max(0, metrics.impressions - conversions)
    return conversions + 1.0, failures + 1.0


def thompson_sampling(
    product_ids: Sequence[str],
    tracker: PerformanceTracker,
    num_samples: Optional[int] = 5,
    rng: Optional[np.random.Generator] = None,
) -> List[Tuple[str, float]]:
    """
    Draw once from each product's Beta posterior and rank by the drawn value.
    Returns the top `num_samples` (product_id, sampled_value) pairs, or all of them when None.
    """
    if not product_ids:
        return []
    rng = rng or np.random.default_rng()

    sampled = []
    for pid in dict.fromkeys(product_ids):
        alpha, beta = beta_parameters(tracker.get(pid))
        sampled.append((pid, float(rng.beta(alpha, beta))))
    sampled.sort(key=lambda x: -x[1])
    return sampled if num_samples is None else sampled[:num_samples]
