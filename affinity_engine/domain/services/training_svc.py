# affinity_engine/domain/services/training_svc.py
"""
Batch training jobs. Each one is a full rebuild: new tables are computed off to
the side and published with a single `EngineStateStore.swap`, so readers never
see a half-built index. Jobs are serialised by the engine's training lock and
bounded by `training_budget_s`; past the budget the previous snapshot stays live.
Malformed input records are logged and skipped.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from affinity_engine.core.config import get_settings
from affinity_engine.core.errors import TrainingBudgetExceeded, TrainingInProgress, ValidationError
from affinity_engine.domain.models.affinity import RuleSummary
from affinity_engine.domain.models.order import Order, Purchase
from affinity_engine.domain.models.product import Product
from affinity_engine.domain.services.affinity_svc import (
    analyze_category_affinity,
    build_affinity_snapshot,
    summarize_rules,
)
from affinity_engine.domain.services.recommendation_svc import extract_product_features
from affinity_engine.domain.services.similarity import build_similarity_index
from affinity_engine.utils.locks import RedisLock

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _deadline() -> float:
    return time.monotonic() + get_settings().training_budget_s


def parse_records(records: Iterable[Any], model: Type[M], label: str) -> Tuple[List[M], int]:
    """Validate raw records, skipping (and logging) the malformed ones."""
    parsed: List[M] = []
    skipped = 0
    for i, rec in enumerate(records):
        if isinstance(rec, model):
            parsed.append(rec)
            continue
        try:
            parsed.append(model.model_validate(rec))
        except PydanticValidationError as e:
            skipped += 1
            logger.warning("%s skip malformed record index=%s errors=%s", label, i, e.error_count())
    return parsed, skipped


# --- jobs -------------------------------------------------------------------

def train_collaborative_model(engine, purchases: Iterable[Any]) -> Dict[str, Any]:
    """Rebuild the user-product matrix, then the item/user similarity index."""
    t0 = time.perf_counter()
    settings = get_settings()
    rows, skipped = parse_records(purchases, Purchase, "train_collaborative")

    vectors: Dict[str, Dict[str, float]] = defaultdict(dict)
    for p in rows:
        vectors[p.customer_id][p.product_id] = p.rating
    vectors = dict(vectors)

    with engine.training_lock:
        similarity = build_similarity_index(
            vectors,
            min_common_raters=settings.min_common_raters,
            min_similarity=settings.min_item_similarity,
            user_top_k=settings.user_neighbours_k,
            deadline=_deadline(),
        )
        state = engine.store.swap(user_vectors=vectors, similarity=similarity)

    logger.info(
        "train_collaborative done users=%s pairs=%s skipped=%s version=%s total_time=%.3fs",
        len(vectors), similarity.pair_count, skipped, state.version, time.perf_counter() - t0,
    )
    return {
        "status": "success",
        "user_count": len(vectors),
        "similar_pairs": similarity.pair_count,
        "skipped": skipped,
        "version": state.version,
    }


def train_content_model(engine, products: Iterable[Any]) -> Dict[str, Any]:
    """Rebuild the catalog and its feature vectors (catalog order preserved)."""
    t0 = time.perf_counter()
    rows, skipped = parse_records(products, Product, "train_content")

    catalog: Dict[str, Product] = {}
    features: Dict[str, Dict[str, float]] = {}
    for p in rows:
        catalog[p.product_id] = p
        features[p.product_id] = extract_product_features(p)

    with engine.training_lock:
        current = engine.store.current
        # category affinity reads the catalog, keep it in step
        affinity = replace(
            current.affinity,
            category_affinity=analyze_category_affinity(current.affinity.orders, catalog),
        )
        state = engine.store.swap(products=catalog, product_features=features, affinity=affinity)

    logger.info(
        "train_content done products=%s skipped=%s version=%s total_time=%.3fs",
        len(catalog), skipped, state.version, time.perf_counter() - t0,
    )
    return {"status": "success", "product_count": len(catalog), "skipped": skipped, "version": state.version}


def _rebuild_affinity(engine, orders: List[Order], min_support: float, min_confidence: float) -> RuleSummary:
    settings = get_settings()
    current = engine.store.current
    snapshot = build_affinity_snapshot(
        orders,
        current.products,
        min_support=min_support,
        min_confidence=min_confidence,
        bundle_min_support=settings.bundle_min_support,
        bundle_min_products=settings.bundle_min_products,
        bundle_max_products=settings.bundle_max_products,
        bundle_max_candidates=settings.bundle_max_candidates,
        trending_window_days=settings.trending_window_days,
        deadline=_deadline(),
    )
    engine.store.swap(affinity=snapshot)
    return summarize_rules(snapshot)


def analyze_frequently_bought_together(
    engine,
    orders: Iterable[Any],
    min_support: Optional[float] = None,
    min_confidence: Optional[float] = None,
) -> RuleSummary:
    settings = get_settings()
    parsed, skipped = parse_records(orders, Order, "affinity")
    parsed = [o for o in parsed if o.items]
    if not parsed:
        raise ValidationError("At least one order with items is required to mine affinity rules")

    min_support = settings.min_affinity_support if min_support is None else min_support
    min_confidence = settings.min_affinity_confidence if min_confidence is None else min_confidence
    with engine.training_lock:
        summary = _rebuild_affinity(engine, parsed, min_support, min_confidence)
    logger.info("affinity rebuilt orders=%s skipped=%s rules=%s", len(parsed), skipped, summary.total_rules)
    return summary


def update_affinity_with_order(engine, order: Any) -> RuleSummary:
    """Append one order to the retained history and rebuild everything from it."""
    settings = get_settings()
    parsed = order if isinstance(order, Order) else Order.model_validate(order)
    if not parsed.items:
        raise ValidationError("Order has no items")

    with engine.training_lock:
        current = engine.store.current.affinity
        min_support = current.min_support if current.computed_at else settings.min_affinity_support
        min_confidence = current.min_confidence if current.computed_at else settings.min_affinity_confidence
        return _rebuild_affinity(engine, list(current.orders) + [parsed], min_support, min_confidence)


def purchases_from_orders(orders: Iterable[Order]) -> List[Purchase]:
    """Implicit ratings: how many orders of the customer contained the product."""
    counts: Dict[Tuple[str, str], int] = defaultdict(int)
    for o in orders:
        if not o.customer_id:
            continue
        for pid in o.product_ids:
            counts[(o.customer_id, pid)] += 1
    return [Purchase(customer_id=c, product_id=p, rating=float(n)) for (c, p), n in counts.items()]


# --- async wrappers -----------------------------------------------------------

async def run_training_job(engine, name: str, fn: Callable, *args, **kwargs):
    """
    Run a training job in a worker thread. With Redis configured, a cross-worker
    lock is taken first (SET NX EX); a held lock means another job is running.
    """
    settings = get_settings()
    lock = RedisLock(engine.redis, "training", ttl=settings.training_lock_ttl) if engine.redis is not None else None
    if lock is not None and not await lock.acquire():
        raise TrainingInProgress("A training job is already running")

    t0 = time.perf_counter()
    logger.info("training start job=%s", name)
    try:
        return await asyncio.to_thread(fn, engine, *args, **kwargs)
    except TrainingBudgetExceeded:
        logger.error("training budget exceeded job=%s budget=%.1fs, previous model kept", name, settings.training_budget_s)
        raise
    finally:
        if lock is not None:
            try:
                await lock.release()
            except Exception as e:
                logger.warning("training lock release error job=%s err=%s", name, e)
        logger.info("training end job=%s total_time=%.3fs", name, time.perf_counter() - t0)


async def retrain_from_sources(engine) -> Dict[str, Any]:
    """Pull catalog and order history from the configured stores and rebuild every model."""
    if engine.catalog is None or engine.orders is None:
        raise ValidationError("No catalog/order source configured (MONGO_URI is not set)")

    t0 = time.perf_counter()
    products = await engine.catalog.list_products()
    orders = await engine.orders.list_orders({})
    logger.info("retrain fetched products=%s orders=%s db_time=%.3fs", len(products), len(orders), time.perf_counter() - t0)

    content = await run_training_job(engine, "content", train_content_model, products)
    collaborative = await run_training_job(engine, "collaborative", train_collaborative_model, purchases_from_orders(orders))
    affinity = None
    if any(o.items for o in orders):
        affinity = await run_training_job(engine, "affinity", analyze_frequently_bought_together, orders)

    return {
        "content": content,
        "collaborative": collaborative,
        "affinity": affinity.model_dump() if affinity else None,
    }
