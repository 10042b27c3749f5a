# affinity_engine/domain/services/affinity_svc.py
"""
Affinity Analyzer: market-basket and sequential-pattern mining over order history.

All functions are pure. They tolerate empty order sets (zeroed / empty results)
and never divide by a zero order or basket count. `build_affinity_snapshot`
runs the whole batch and returns one immutable `AffinitySnapshot`.
"""
from __future__ import annotations

import logging
import math
import time
from collections import defaultdict
from datetime import datetime, timedelta
from itertools import combinations
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from affinity_engine.core.errors import TrainingBudgetExceeded
from affinity_engine.domain.models.affinity import (
    AffinityMatrix,
    AffinityRule,
    AffinityScore,
    CategoryAffinity,
    ComplementaryProduct,
    CrossCategory,
    NextPurchase,
    PairMetrics,
    ProductBundle,
    ProductStats,
    RuleSummary,
    SequentialPattern,
)
from affinity_engine.domain.models.order import Order
from affinity_engine.domain.models.product import Product
from affinity_engine.domain.services.state import AffinitySnapshot, utcnow

logger = logging.getLogger(__name__)

CoOccurrence = Dict[str, Dict[str, int]]


# ---------- Market basket ----------------------------------------------------

def build_co_occurrence_matrix(orders: Iterable[Order]) -> CoOccurrence:
    """Directional counts A -> B for every pair of distinct products sharing an order."""
    matrix: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for order in orders:
        products = order.product_ids
        for a in products:
            row = matrix[a]
            for b in products:
                if a != b:
                    row[b] += 1
    return {a: dict(row) for a, row in matrix.items() if row}


def calculate_product_stats(orders: Sequence[Order]) -> Dict[str, ProductStats]:
    total = len(orders)
    if total == 0:
        return {}

    order_counts: Dict[str, int] = defaultdict(int)
    revenue: Dict[str, float] = defaultdict(float)
    basket_sizes: Dict[str, List[int]] = defaultdict(list)

    for order in orders:
        basket_size = len(order.items)
        for pid in order.product_ids:
            order_counts[pid] += 1
            basket_sizes[pid].append(basket_size)
        for item in order.items:
            revenue[item.product_id] += item.price * item.quantity

    return {
        pid: ProductStats(
            total_orders=n,
            support=n / total,
            revenue=round(revenue[pid], 2),
            avg_basket_size=float(np.mean(basket_sizes[pid])) if basket_sizes[pid] else 0.0,
        )
        for pid, n in order_counts.items()
    }


def compute_pair_metrics(
    co_occurrence: CoOccurrence,
    stats: Mapping[str, ProductStats],
    total_orders: int,
    product_a: str,
    product_b: str,
) -> Optional[PairMetrics]:
    """support = P(A and B), confidence = P(B|A), lift = confidence / P(B). No thresholds."""
    count = co_occurrence.get(product_a, {}).get(product_b, 0)
    stats_a = stats.get(product_a)
    stats_b = stats.get(product_b)
    if total_orders <= 0 or not stats_a or not stats_b or stats_a.total_orders == 0:
        return None
    support = count / total_orders
    confidence = count / stats_a.total_orders
    lift = confidence / stats_b.support if stats_b.support > 0 else 0.0
    return PairMetrics(
        product_a=product_a,
        product_b=product_b,
        co_occurrences=count,
        support=support,
        confidence=confidence,
        lift=lift,
    )


def generate_association_rules(
    co_occurrence: CoOccurrence,
    stats: Mapping[str, ProductStats],
    total_orders: int,
    min_support: float,
    min_confidence: float,
    computed_at: Optional[datetime] = None,
) -> List[AffinityRule]:
    """Pairwise Apriori rules A -> B, keeping only positive correlation (lift > 1)."""
    computed_at = computed_at or utcnow()
    rules: List[AffinityRule] = []
    for product_a, row in co_occurrence.items():
        for product_b in row:
            m = compute_pair_metrics(co_occurrence, stats, total_orders, product_a, product_b)
            if m is None or m.co_occurrences < 1:
                continue
            if m.support < min_support:
                continue
            if m.confidence < min_confidence:
                continue
            if m.lift <= 1.0:
                continue
            rules.append(AffinityRule(
                product_a=product_a,
                product_b=product_b,
                support=m.support,
                confidence=m.confidence,
                lift=m.lift,
                co_occurrences=m.co_occurrences,
                computed_at=computed_at,
            ))
    rules.sort(key=lambda r: (-r.lift, r.product_a, r.product_b))
    return rules


def get_complementary_products(snapshot: AffinitySnapshot, product_id: str, max_results: int = 10) -> List[ComplementaryProduct]:
    rules = snapshot.rules_by_antecedent.get(product_id, ())
    return [
        ComplementaryProduct(
            product_id=r.product_b,
            affinity_score=r.lift,
            confidence=r.confidence,
            support=r.support,
            reasoning=f"{r.confidence * 100:.1f}% of customers who bought this also bought that",
        )
        for r in rules[:max_results]
    ]


def calculate_affinity_score(snapshot: AffinitySnapshot, product_a: str, product_b: str) -> Optional[AffinityScore]:
    """Rule A -> B if mined, otherwise B -> A, otherwise None."""
    rule = snapshot.rules_by_pair.get((product_a, product_b)) or snapshot.rules_by_pair.get((product_b, product_a))
    if rule is None:
        return None
    return AffinityScore(score=rule.lift, confidence=rule.confidence, support=rule.support, type=rule.type)


def get_affinity_matrix(snapshot: AffinitySnapshot, product_ids: Sequence[str]) -> AffinityMatrix:
    matrix = []
    for a in product_ids:
        row = []
        for b in product_ids:
            if a == b:
                row.append(AffinityScore(score=1.0, is_self=True))
            else:
                row.append(calculate_affinity_score(snapshot, a, b) or AffinityScore(score=0.0))
        matrix.append(row)
    return AffinityMatrix(product_ids=list(product_ids), matrix=matrix)


def get_all_affinity_rules(
    snapshot: AffinitySnapshot,
    *,
    min_lift: Optional[float] = None,
    min_confidence: Optional[float] = None,
    min_support: Optional[float] = None,
    product_id: Optional[str] = None,
) -> List[AffinityRule]:
    rules = list(snapshot.rules)
    if min_lift is not None:
        rules = [r for r in rules if r.lift >= min_lift]
    if min_confidence is not None:
        rules = [r for r in rules if r.confidence >= min_confidence]
    if min_support is not None:
        rules = [r for r in rules if r.support >= min_support]
    if product_id:
        rules = [r for r in rules if product_id in (r.product_a, r.product_b)]
    return rules


# ---------- Sequential patterns ---------------------------------------------

def analyze_sequential_patterns(orders: Iterable[Order]) -> Dict[str, Dict[str, SequentialPattern]]:
    """
    For each customer, walk consecutive orders chronologically and record
    (product in earlier order) -> (product in later order) with the gap in days.
    Pairs inside one order are never counted. Orders without customer or date are skipped.
    """
    by_customer: Dict[str, List[Order]] = defaultdict(list)
    for order in orders:
        if order.customer_id and order.created_at:
            by_customer[order.customer_id].append(order)

    deltas: Dict[str, Dict[str, List[float]]] = defaultdict(lambda: defaultdict(list))
    for customer_orders in by_customer.values():
        customer_orders.sort(key=lambda o: o.created_at)
        for current, nxt in zip(customer_orders, customer_orders[1:]):
            days = (nxt.created_at - current.created_at).total_seconds() / 86400.0
            for a in current.product_ids:
                for b in nxt.product_ids:
                    if a != b:
                        deltas[a][b].append(days)

    patterns: Dict[str, Dict[str, SequentialPattern]] = {}
    for a, row in deltas.items():
        patterns[a] = {
            b: SequentialPattern(
                count=len(days),
                avg_time_delta=float(np.mean(days)),
                median_time_delta=float(np.median(days)),
                occurrences=list(days),
            )
            for b, days in row.items()
        }
    return patterns


def predict_next_purchase(snapshot: AffinitySnapshot, product_id: str, max_results: int = 10) -> List[NextPurchase]:
    """Likely next purchases after `product_id`, ranked by how often the transition was seen."""
    row = snapshot.sequential_patterns.get(product_id)
    if not row:
        return []
    total = sum(p.count for p in row.values())
    ranked = sorted(row.items(), key=lambda kv: (-kv[1].count, kv[0]))
    return [
        NextPurchase(
            product_id=pid,
            probability=p.count / total if total else 0.0,
            avg_days_until_purchase=p.avg_time_delta,
            median_days_until_purchase=p.median_time_delta,
            occurrences=p.count,
        )
        for pid, p in ranked[:max_results]
    ]


# ---------- Category affinity ------------------------------------------------

def analyze_category_affinity(orders: Sequence[Order], catalog: Mapping[str, Product]) -> Dict[str, Dict[str, CategoryAffinity]]:
    """PMI = log2(P(A and B) / (P(A) P(B))) per ordered category pair. Negative means anti-correlated."""
    total = len(orders)
    if total == 0:
        return {}

    category_counts: Dict[str, int] = defaultdict(int)
    pair_counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for order in orders:
        categories = list(dict.fromkeys(
            catalog[pid].category_id
            for pid in order.product_ids
            if pid in catalog and catalog[pid].category_id
        ))
        for c in categories:
            category_counts[c] += 1
        for a in categories:
            for b in categories:
                if a != b:
                    pair_counts[a][b] += 1

    table: Dict[str, Dict[str, CategoryAffinity]] = {}
    for a, row in pair_counts.items():
        p_a = category_counts[a] / total
        table[a] = {}
        for b, count in row.items():
            p_b = category_counts[b] / total
            p_ab = count / total
            table[a][b] = CategoryAffinity(score=math.log2(p_ab / (p_a * p_b)), co_occurrences=count, support=p_ab)
    return table


def get_cross_category_recommendations(snapshot: AffinitySnapshot, category_id: str, max_results: int = 5) -> List[CrossCategory]:
    row = snapshot.category_affinity.get(category_id)
    if not row:
        return []
    ranked = sorted(row.items(), key=lambda kv: (-kv[1].score, kv[0]))
    return [
        CrossCategory(category=c, affinity_score=a.score, support=a.support, co_occurrences=a.co_occurrences)
        for c, a in ranked[:max_results]
    ]


# ---------- Bundles (frequent itemsets) --------------------------------------

def calculate_itemset_support(transactions: Sequence[FrozenSet[str]], itemset: FrozenSet[str]) -> float:
    if not transactions:
        return 0.0
    return sum(1 for t in transactions if itemset <= t) / len(transactions)


def find_product_bundles(
    transactions: Sequence[FrozenSet[str]],
    min_support: float = 0.02,
    min_products: int = 2,
    max_products: int = 4,
    *,
    max_candidates: int = 5000,
    deadline: Optional[float] = None,
) -> List[ProductBundle]:
    """
    Level-wise (Apriori) frequent itemset search.

    Level 2 is every pair meeting `min_support`. Each further level joins two
    itemsets of the level below that differ by exactly one product, prunes
    candidates with an infrequent subset, and re-checks support against the
    transactions. Stops when a level is empty or `max_products` is reached.
    Candidate generation per level is capped at `max_candidates`.
    """
    total = len(transactions)
    if total == 0 or max_products < 2:
        return []

    pair_counts: Dict[FrozenSet[str], int] = defaultdict(int)
    for t in transactions:
        for a, b in combinations(sorted(t), 2):
            pair_counts[frozenset((a, b))] += 1

    level: Dict[FrozenSet[str], float] = {
        s: n / total for s, n in pair_counts.items() if n / total >= min_support
    }
    found: Dict[FrozenSet[str], float] = dict(level)

    k = 2
    while level and k < max_products:
        if deadline is not None and time.monotonic() > deadline:
            raise TrainingBudgetExceeded("find_product_bundles exceeded its training budget")
        ordered = sorted(level, key=lambda s: tuple(sorted(s)))
        candidates = set()
        capped = False
        for i, a in enumerate(ordered):
            for b in ordered[i + 1:]:
                union = a | b
                if len(union) != k + 1 or union in candidates:
                    continue
                if all((union - {x}) in level for x in union):
                    candidates.add(union)
                    if len(candidates) >= max_candidates:
                        capped = True
                        break
            if capped:
                logger.warning("bundles candidate cap reached level=%s cap=%s", k + 1, max_candidates)
                break

        level = {}
        for c in candidates:
            support = calculate_itemset_support(transactions, c)
            if support >= min_support:
                level[c] = support
        found.update(level)
        k += 1

    bundles = [
        ProductBundle(products=sorted(s), support=support, size=len(s))
        for s, support in found.items()
        if min_products <= len(s) <= max_products
    ]
    bundles.sort(key=lambda b: (-b.support, b.products))
    return bundles


# ---------- Whole batch -------------------------------------------------------

def count_recent_orders(orders: Iterable[Order], now: datetime, window_days: int) -> Dict[str, int]:
    since = now - timedelta(days=window_days)
    counts: Dict[str, int] = defaultdict(int)
    for order in orders:
        if order.created_at and since <= order.created_at <= now:
            for pid in order.product_ids:
                counts[pid] += 1
    return dict(counts)


def build_affinity_snapshot(
    orders: Sequence[Order],
    catalog: Mapping[str, Product],
    *,
    min_support: float = 0.01,
    min_confidence: float = 0.3,
    bundle_min_support: float = 0.02,
    bundle_min_products: int = 2,
    bundle_max_products: int = 4,
    bundle_max_candidates: int = 5000,
    trending_window_days: int = 7,
    now: Optional[datetime] = None,
    deadline: Optional[float] = None,
) -> AffinitySnapshot:
    t0 = time.perf_counter()
    now = now or utcnow()
    orders = tuple(orders)
    total = len(orders)

    co = build_co_occurrence_matrix(orders)
    stats = calculate_product_stats(orders)
    rules = generate_association_rules(co, stats, total, min_support, min_confidence, computed_at=now)

    by_antecedent: Dict[str, List[AffinityRule]] = defaultdict(list)
    for r in rules:
        by_antecedent[r.product_a].append(r)  # already sorted by lift

    transactions = [frozenset(o.product_ids) for o in orders if o.items]
    bundles = find_product_bundles(
        transactions,
        bundle_min_support,
        bundle_min_products,
        bundle_max_products,
        max_candidates=bundle_max_candidates,
        deadline=deadline,
    )

    snapshot = AffinitySnapshot(
        orders=orders,
        total_orders=total,
        co_occurrence=co,
        product_stats=stats,
        rules=tuple(rules),
        rules_by_antecedent={a: tuple(rs) for a, rs in by_antecedent.items()},
        rules_by_pair={(r.product_a, r.product_b): r for r in rules},
        sequential_patterns=analyze_sequential_patterns(orders),
        category_affinity=analyze_category_affinity(orders, catalog),
        bundles=tuple(bundles),
        recent_order_counts=count_recent_orders(orders, now, trending_window_days),
        min_support=min_support,
        min_confidence=min_confidence,
        computed_at=now,
    )
    logger.info(
        "affinity snapshot done orders=%s rules=%s bundles=%s time=%.3fs",
        total, len(rules), len(bundles), time.perf_counter() - t0,
    )
    return snapshot


def summarize_rules(snapshot: AffinitySnapshot) -> RuleSummary:
    rules = snapshot.rules
    n = len(rules)
    return RuleSummary(
        total_rules=n,
        avg_support=sum(r.support for r in rules) / n if n else 0.0,
        avg_confidence=sum(r.confidence for r in rules) / n if n else 0.0,
        avg_lift=sum(r.lift for r in rules) / n if n else 0.0,
        total_orders=snapshot.total_orders,
        sequential_patterns=sum(len(r) for r in snapshot.sequential_patterns.values()),
        category_affinities=sum(len(r) for r in snapshot.category_affinity.values()),
        bundles=len(snapshot.bundles),
    )
