# affinity_engine/domain/services/state.py
"""
Engine state: every table the per-request paths read, held as one immutable snapshot.

Training jobs build new tables off to the side and publish them with
`EngineStateStore.swap(...)`; readers grab `store.current` once per request and
keep using that snapshot even if a swap happens mid-request.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from affinity_engine.domain.models.affinity import (
    AffinityRule,
    CategoryAffinity,
    ProductBundle,
    ProductStats,
    SequentialPattern,
)
from affinity_engine.domain.models.order import Order
from affinity_engine.domain.models.product import Product
from affinity_engine.domain.services.similarity import SimilarityIndex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AffinitySnapshot:
    orders: Tuple[Order, ...] = ()
    total_orders: int = 0
    co_occurrence: Dict[str, Dict[str, int]] = field(default_factory=dict)
    product_stats: Dict[str, ProductStats] = field(default_factory=dict)
    rules: Tuple[AffinityRule, ...] = ()
    rules_by_antecedent: Dict[str, Tuple[AffinityRule, ...]] = field(default_factory=dict)
    rules_by_pair: Dict[Tuple[str, str], AffinityRule] = field(default_factory=dict)
    sequential_patterns: Dict[str, Dict[str, SequentialPattern]] = field(default_factory=dict)
    category_affinity: Dict[str, Dict[str, CategoryAffinity]] = field(default_factory=dict)
    bundles: Tuple[ProductBundle, ...] = ()
    recent_order_counts: Dict[str, int] = field(default_factory=dict)
    min_support: float = 0.0
    min_confidence: float = 0.0
    computed_at: Optional[datetime] = None


@dataclass(frozen=True)
class EngineState:
    version: int = 0
    built_at: Optional[datetime] = None
    user_vectors: Dict[str, Dict[str, float]] = field(default_factory=dict)
    products: Dict[str, Product] = field(default_factory=dict)          # catalog order preserved
    product_features: Dict[str, Dict[str, float]] = field(default_factory=dict)
    similarity: SimilarityIndex = field(default_factory=SimilarityIndex)
    affinity: AffinitySnapshot = field(default_factory=AffinitySnapshot)

    def purchase_history(self, customer_id: Optional[str]) -> list:
        if not customer_id:
            return []
        return list(self.user_vectors.get(customer_id, {}))

    def price_of(self, product_id: str) -> Optional[float]:
        p = self.products.get(product_id)
        return p.current_price if p else None


class EngineStateStore:
    """Holds the live snapshot. Writers are serialised; readers never block."""

    def __init__(self, initial: Optional[EngineState] = None):
        self._state = initial or EngineState()
        self._write_lock = threading.Lock()

    @property
    def current(self) -> EngineState:
        return self._state

    def swap(self, **changes) -> EngineState:
        """Publish a new snapshot made of the current one plus `changes`."""
        with self._write_lock:
            new = replace(self._state, version=self._state.version + 1, built_at=utcnow(), **changes)
            self._state = new
        return new
