# affinity_engine/domain/services/recommendation_svc.py
"""
Recommendation Engine.

Strategies are plain functions over one `EngineState` snapshot and return
`Recommendation` records tagged with the producing model. Every strategy
filters before truncating. `generate_recommendations` is the async entry
point: it runs the chosen strategy in a worker thread under a timeout,
falls back to popularity when the budget is exceeded, and logs the result
with a TTL.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from affinity_engine.core.config import get_settings
from affinity_engine.core.errors import ValidationError
from affinity_engine.core.logging import json_preview
from affinity_engine.domain.models.order import SessionEvent
from affinity_engine.domain.models.product import Product
from affinity_engine.domain.models.recommendation import (
    ModelMetrics,
    PerformanceEvent,
    PerformanceMetrics,
    RecoContext,
    RecoFilters,
    Recommendation,
    RecommendationRequest,
    RecommendationResult,
    Strategy,
)
from affinity_engine.domain.services import constants as C
from affinity_engine.domain.services.affinity_svc import predict_next_purchase
from affinity_engine.domain.services.bandit import PerformanceTracker, thompson_sampling
from affinity_engine.domain.services.filters import apply_filters
from affinity_engine.domain.services.similarity import cosine_similarity
from affinity_engine.domain.services.state import EngineState, utcnow

logger = logging.getLogger(__name__)

SESSION_VIEW_TYPES = {"view", "product_view"}


# --- helpers ---------------------------------------------------------------

def extract_product_features(product: Product) -> Dict[str, float]:
    """Sparse one-hot features: category, brand, price bucket of 50, tags, color, size."""
    features: Dict[str, float] = {}
    if product.category_id:
        features[f"category_{product.category_id}"] = 1.0
    if product.brand:
        features[f"brand_{product.brand}"] = 1.0
    if product.current_price:
        bucket = int(product.current_price // C.PRICE_BUCKET_SIZE) * C.PRICE_BUCKET_SIZE
        features[f"price_{bucket}"] = 1.0
    for tag in product.tags:
        features[f"tag_{tag}"] = 1.0
    if product.color:
        features[f"color_{product.color}"] = 1.0
    if product.size:
        features[f"size_{product.size}"] = 1.0
    return features


def content_similarity(state: EngineState, product_a: str, product_b: str) -> float:
    fa = state.product_features.get(product_a)
    fb = state.product_features.get(product_b)
    if not fa or not fb:
        return 0.0
    return cosine_similarity(fa, fb)


def build_user_preference_profile(state: EngineState, customer_id: Optional[str]) -> Dict[str, float]:
    """Feature weights summed over the customer's history, normalised to sum to 1."""
    prefs: Dict[str, float] = defaultdict(float)
    for pid in state.purchase_history(customer_id):
        for feature, value in state.product_features.get(pid, {}).items():
            prefs[feature] += value
    total = sum(prefs.values())
    if total > 0:
        return {f: v / total for f, v in prefs.items()}
    return dict(prefs)


def calculate_preference_boost(features: Mapping[str, float], prefs: Mapping[str, float]) -> float:
    if not features or not prefs:
        return 0.0
    boost = sum(value * prefs.get(feature, 0.0) for feature, value in features.items())
    return min(C.MAX_PREFERENCE_BOOST, boost)


def _known_products(state: EngineState) -> List[str]:
    """Catalog order first, then anything only seen in orders or ratings."""
    ids = list(state.products)
    ids += list(state.affinity.product_stats)
    for ratings in state.user_vectors.values():
        ids += list(ratings)
    return list(dict.fromkeys(ids))


def _rank(scores: Mapping[str, float]) -> List[str]:
    return [pid for pid, _ in sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))]


# --- cold start / catalog strategies ----------------------------------------

def get_popular_products(
    state: EngineState,
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
    exclude: Iterable[str] = (),
) -> List[Recommendation]:
    """Order count, then number of raters, then catalog position. Score normalised to [0, 1]."""
    raters: Dict[str, int] = defaultdict(int)
    for ratings in state.user_vectors.values():
        for pid in ratings:
            raters[pid] += 1

    stats = state.affinity.product_stats
    known = _known_products(state)
    position = {pid: i for i, pid in enumerate(known)}

    def order_count(pid: str) -> int:
        s = stats.get(pid)
        return s.total_orders if s else 0

    ranked = sorted(known, key=lambda pid: (-order_count(pid), -raters[pid], position[pid]))
    top = max((order_count(pid) or raters[pid] for pid in ranked), default=0)

    recs = []
    for pid in ranked:
        count = order_count(pid) or raters[pid]
        score = count / top if top else 0.0
        recs.append(Recommendation(
            product_id=pid,
            score=score,
            confidence=min(0.7, score),
            reasoning="Popular product",
            model="popularity",
        ))
    return apply_filters(recs, state.products, filters, exclude)[:max_recommendations]


def get_trending_products(
    state: EngineState,
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
    exclude: Iterable[str] = (),
) -> List[Recommendation]:
    counts = state.affinity.recent_order_counts
    if not counts:
        return get_popular_products(state, max_recommendations, filters, exclude)

    top = max(counts.values())
    recs = [
        Recommendation(
            product_id=pid,
            score=counts[pid] / top,
            confidence=min(0.6, counts[pid] / top),
            reasoning="Trending now",
            model="trending",
        )
        for pid in _rank(counts)
    ]
    return apply_filters(recs, state.products, filters, exclude)[:max_recommendations]


def get_new_arrivals(
    state: EngineState,
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
    exclude: Iterable[str] = (),
) -> List[Recommendation]:
    products = list(state.products.values())
    dated = sorted((p for p in products if p.created_at), key=lambda p: (p.created_at, p.product_id), reverse=True)
    undated = [p for p in products if not p.created_at]
    ordered = dated + undated

    n = len(ordered)
    recs = [
        Recommendation(
            product_id=p.product_id,
            score=(n - i) / n,
            confidence=0.55,
            reasoning="New arrival",
            model="new_arrivals",
        )
        for i, p in enumerate(ordered)
    ]
    return apply_filters(recs, state.products, filters, exclude)[:max_recommendations]


# --- personalised strategies -------------------------------------------------

def collaborative_filtering(
    state: EngineState,
    customer_id: Optional[str],
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
    *,
    user_k: int = 20,
    item_k: int = 10,
) -> List[Recommendation]:
    owned = set(state.purchase_history(customer_id))
    if not owned:
        # cold start
        return get_popular_products(state, max_recommendations, filters)

    # ---- 1) user-based: what similar customers bought ----
    user_scores: Dict[str, float] = defaultdict(float)
    for other, sim in state.similarity.similar_users(customer_id, user_k):
        for pid in state.user_vectors.get(other, {}):
            if pid not in owned:
                user_scores[pid] += sim

    # ---- 2) item-based: neighbours of owned products ----
    item_scores: Dict[str, float] = defaultdict(float)
    for owned_pid in sorted(owned):
        for pid, sim in state.similarity.similar_products(owned_pid, item_k):
            if pid not in owned:
                item_scores[pid] += sim

    # ---- 3) blend ----
    combined: Dict[str, float] = {}
    for pid, score in user_scores.items():
        combined[pid] = score * C.CF_USER_WEIGHT + item_scores.get(pid, 0.0) * C.CF_ITEM_WEIGHT
    for pid, score in item_scores.items():
        if pid not in combined:
            combined[pid] = score * C.CF_ITEM_WEIGHT

    recs = [
        Recommendation(
            product_id=pid,
            score=combined[pid],
            confidence=min(C.CF_MAX_CONFIDENCE, combined[pid] / C.CF_CONFIDENCE_SCALE),
            reasoning="Customers like you also purchased",
            model="collaborative_filtering",
        )
        for pid in _rank(combined)
    ]
    return apply_filters(recs, state.products, filters, owned)[:max_recommendations]


def content_based_filtering(
    state: EngineState,
    customer_id: Optional[str],
    context: Optional[RecoContext],
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
) -> List[Recommendation]:
    context = context or RecoContext()
    history = state.purchase_history(customer_id)
    in_context = context.in_context_products
    references = list(dict.fromkeys(history + in_context))
    if not references:
        return get_popular_products(state, max_recommendations, filters)

    weights = {pid: C.HISTORY_PRODUCT_WEIGHT for pid in history}
    for pid in in_context:
        weights[pid] = C.CONTEXT_PRODUCT_WEIGHT
    prefs = build_user_preference_profile(state, customer_id)
    weight_sum = sum(weights[r] for r in references)
    ref_set = set(references)

    scores: Dict[str, float] = {}
    for candidate, features in state.product_features.items():
        if candidate in ref_set:
            continue
        total = sum(content_similarity(state, ref, candidate) * weights[ref] for ref in references)
        avg = total / weight_sum
        if avg <= 0:
            continue
        scores[candidate] = avg * (1 + calculate_preference_boost(features, prefs))

    recs = [
        Recommendation(
            product_id=pid,
            score=scores[pid],
            confidence=min(C.CONTENT_MAX_CONFIDENCE, scores[pid]),
            reasoning="Similar to products you liked",
            model="content_based",
        )
        for pid in _rank(scores)
    ]
    return apply_filters(recs, state.products, filters, ref_set)[:max_recommendations]


def hybrid_recommendations(
    state: EngineState,
    customer_id: Optional[str],
    context: Optional[RecoContext],
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
    *,
    user_k: int = 20,
    item_k: int = 10,
) -> List[Recommendation]:
    """Weighted ensemble; a source missing a candidate simply contributes nothing for it."""
    pool = max_recommendations * C.HYBRID_HEADROOM
    sources = {
        "collaborative": collaborative_filtering(state, customer_id, pool, filters, user_k=user_k, item_k=item_k),
        "content": content_based_filtering(state, customer_id, context, pool, filters),
        "trending": get_trending_products(state, pool, filters),
    }

    combined: Dict[str, Dict] = {}
    for source, recs in sources.items():
        weight = C.HYBRID_WEIGHTS[source]
        for rec in recs:
            entry = combined.get(rec.product_id)
            if entry is None:
                combined[rec.product_id] = {"score": rec.score * weight, "sources": [source], "reasoning": rec.reasoning}
            else:
                entry["score"] += rec.score * weight
                entry["sources"].append(source)

    if not combined:
        return []
    top = max(e["score"] for e in combined.values())
    ranked = sorted(combined.items(), key=lambda kv: (-kv[1]["score"], kv[0]))
    out = [
        Recommendation(
            product_id=pid,
            score=e["score"],
            confidence=min(C.CF_MAX_CONFIDENCE, e["score"] / top) if top > 0 else 0.0,
            reasoning=e["reasoning"],
            model="hybrid",
            sources=e["sources"],
        )
        for pid, e in ranked
    ]
    return apply_filters(out, state.products, filters)[:max_recommendations]


def thompson_recommendations(
    state: EngineState,
    tracker: PerformanceTracker,
    customer_id: Optional[str],
    context: Optional[RecoContext],
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
    rng: Optional[np.random.Generator] = None,
) -> List[Recommendation]:
    """Re-rank the hybrid candidate pool by one posterior draw per product."""
    pool = hybrid_recommendations(state, customer_id, context, max_recommendations * C.HYBRID_HEADROOM, filters)
    if not pool:
        pool = get_popular_products(state, max_recommendations * C.HYBRID_HEADROOM, filters)
    by_id = {r.product_id: r for r in pool}

    sampled = thompson_sampling(list(by_id), tracker, num_samples=max_recommendations, rng=rng)
    return [
        Recommendation(
            product_id=pid,
            score=value,
            confidence=min(1.0, value),
            reasoning=by_id[pid].reasoning,
            model="thompson_sampling",
            sources=by_id[pid].sources or [by_id[pid].model],
        )
        for pid, value in sampled
    ]


def predict_next_products(state: EngineState, viewed_products: Sequence[str], max_results: Optional[int] = None) -> List[Dict]:
    """Average next-purchase probability over the viewed products that have sequential data."""
    viewed = list(dict.fromkeys(viewed_products))
    totals: Dict[str, float] = defaultdict(float)
    contributing = 0
    for pid in viewed:
        row = state.affinity.sequential_patterns.get(pid, {})
        predictions = predict_next_purchase(state.affinity, pid, max_results=len(row))
        if predictions:
            contributing += 1
        for p in predictions:
            totals[p.product_id] += p.probability

    seen = set(viewed)
    scores = {pid: s / contributing for pid, s in totals.items() if pid not in seen} if contributing else {}
    return [{"product_id": pid, "probability": scores[pid]} for pid in _rank(scores)[:max_results]]


def session_based_recommendations(
    state: EngineState,
    events: Sequence[SessionEvent],
    max_recommendations: int,
    filters: Optional[RecoFilters] = None,
) -> List[Recommendation]:
    viewed = [e.product_id for e in events if e.type in SESSION_VIEW_TYPES and e.product_id]
    if not viewed:
        return get_popular_products(state, max_recommendations, filters)

    predictions = predict_next_products(state, viewed)
    recs = [
        Recommendation(
            product_id=p["product_id"],
            score=p["probability"],
            confidence=min(1.0, p["probability"]),
            reasoning="Based on your browsing session",
            model="session_based",
        )
        for p in predictions
    ]
    return apply_filters(recs, state.products, filters, viewed)[:max_recommendations]


def run_strategy(
    strategy: Strategy,
    state: EngineState,
    tracker: PerformanceTracker,
    request: RecommendationRequest,
    events: Sequence[SessionEvent] = (),
) -> List[Recommendation]:
    s = get_settings()
    n = request.max_recommendations
    if strategy == Strategy.COLLABORATIVE:
        return collaborative_filtering(
            state, request.customer_id, n, request.filters,
            user_k=s.user_neighbours_k, item_k=s.item_neighbours_k,
        )
    if strategy == Strategy.CONTENT_BASED:
        return content_based_filtering(state, request.customer_id, request.context, n, request.filters)
    if strategy == Strategy.TRENDING:
        return get_trending_products(state, n, request.filters)
    if strategy == Strategy.NEW_ARRIVALS:
        return get_new_arrivals(state, n, request.filters)
    if strategy == Strategy.SESSION_BASED:
        return session_based_recommendations(state, events, n, request.filters)
    if strategy == Strategy.THOMPSON_SAMPLING:
        return thompson_recommendations(state, tracker, request.customer_id, request.context, n, request.filters)
    return hybrid_recommendations(
        state, request.customer_id, request.context, n, request.filters,
        user_k=s.user_neighbours_k, item_k=s.item_neighbours_k,
    )


# --- entry points -------------------------------------------------------------

async def generate_recommendations(engine, request: RecommendationRequest) -> RecommendationResult:
    t0 = time.perf_counter()
    settings = get_settings()
    strategy = Strategy.parse(request.strategy)  # unknown strategy -> ValidationError
    state = engine.store.current                  # one snapshot for the whole request
    logger.info(
        "reco start strategy=%s customer_id=%s session_id=%s n=%s version=%s",
        strategy.value, request.customer_id, request.session_id, request.max_recommendations, state.version,
    )

    events: List[SessionEvent] = []
    if strategy == Strategy.SESSION_BASED and request.session_id:
        try:
            events = await engine.events.get_session_events(request.session_id)
        except Exception as e:
            logger.warning("reco session events error session_id=%s err=%s", request.session_id, e)

    degraded = False
    try:
        recs = await asyncio.wait_for(
            asyncio.to_thread(run_strategy, strategy, state, engine.tracker, request, events),
            timeout=settings.recommendation_timeout_s,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "reco timeout strategy=%s budget=%.2fs -> popularity fallback",
            strategy.value, settings.recommendation_timeout_s,
        )
        recs = get_popular_products(state, request.max_recommendations, request.filters)
        degraded = True

    now = utcnow()
    result = RecommendationResult(
        id=f"rec_{uuid.uuid4().hex[:16]}",
        customer_id=request.customer_id,
        session_id=request.session_id,
        strategy=strategy,
        recommendations=recs,
        context=request.context,
        timestamp=now,
        expires_at=now + timedelta(seconds=settings.recommendation_ttl),
        degraded=degraded,
    )
    logger.debug("reco result=%s", json_preview(result.model_dump(mode="json")))

    try:
        await engine.recommendation_log.store(result)
    except Exception as e:
        logger.warning("reco log store error id=%s err=%s", result.id, e)

    logger.info(
        "reco done id=%s items=%s degraded=%s total_time=%.3fs",
        result.id, len(recs), degraded, time.perf_counter() - t0,
    )
    return result


async def get_recommendation(engine, recommendation_id: str) -> Optional[RecommendationResult]:
    return await engine.recommendation_log.get(recommendation_id)


def track_recommendation_performance(engine, product_id: str, event: PerformanceEvent) -> PerformanceMetrics:
    if not product_id:
        raise ValidationError("product_id is required")
    return engine.tracker.track(product_id, event)


def get_model_metrics(engine) -> ModelMetrics:
    return engine.tracker.totals()
