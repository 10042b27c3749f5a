# affinity_engine/api/v1/routers/affinity.py
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Any, Dict, Optional
import time
import logging

from affinity_engine.api.deps import engine_dep, http_error
from affinity_engine.api.v1.schemas.requests import AnalyzeRequest, MatrixRequest
from affinity_engine.core.errors import EngineError
from affinity_engine.domain.services.affinity_svc import (
    calculate_affinity_score,
    get_affinity_matrix,
    get_all_affinity_rules,
    get_complementary_products,
    get_cross_category_recommendations,
    predict_next_purchase,
    summarize_rules,
)
from affinity_engine.domain.services.training_svc import (
    analyze_frequently_bought_together,
    run_training_job,
    update_affinity_with_order,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/affinity", tags=["affinity"])


@router.post("/analyze")
async def analyze(body: AnalyzeRequest, engine=Depends(engine_dep)):
    """
    Mine frequently-bought-together rules, sequential patterns, category affinity
    and bundles from a full order history (replaces the current tables).
    """
    logger.info(
        "Request: affinity analyze orders=%s min_support=%s min_confidence=%s",
        len(body.orders), body.min_support, body.min_confidence,
    )
    start_time = time.perf_counter()
    try:
        summary = await run_training_job(
            engine, "affinity", analyze_frequently_bought_together,
            body.orders, body.min_support, body.min_confidence,
        )
    except EngineError as e:
        raise http_error(e) from e
    logger.info("Response: affinity analyze rules=%s elapsed_time=%.4fs", summary.total_rules, time.perf_counter() - start_time)
    return summary.model_dump()


@router.post("/orders")
async def add_order(order: Dict[str, Any], engine=Depends(engine_dep)):
    """Append one order to the history and rebuild the affinity tables."""
    try:
        summary = await run_training_job(engine, "affinity_order", update_affinity_with_order, order)
    except EngineError as e:
        raise http_error(e) from e
    except ValueError as e:  # pydantic rejects the order shape
        raise HTTPException(status_code=400, detail=str(e)) from e
    return summary.model_dump()


@router.get("/summary")
async def summary(engine=Depends(engine_dep)):
    return summarize_rules(engine.store.current.affinity).model_dump()


@router.get("/complementary/{product_id}")
async def complementary(product_id: str, limit: int = Query(10, ge=1, le=100), engine=Depends(engine_dep)):
    items = get_complementary_products(engine.store.current.affinity, product_id, max_results=limit)
    return {"product_id": product_id, "items": [i.model_dump() for i in items], "count": len(items)}


@router.get("/next/{product_id}")
async def next_purchase(product_id: str, limit: int = Query(10, ge=1, le=100), engine=Depends(engine_dep)):
    items = predict_next_purchase(engine.store.current.affinity, product_id, max_results=limit)
    return {"product_id": product_id, "items": [i.model_dump() for i in items], "count": len(items)}


@router.get("/category/{category_id}")
async def cross_category(category_id: str, limit: int = Query(5, ge=1, le=50), engine=Depends(engine_dep)):
    items = get_cross_category_recommendations(engine.store.current.affinity, category_id, max_results=limit)
    return {"category_id": category_id, "items": [i.model_dump() for i in items], "count": len(items)}


@router.get("/score")
async def score(
    product_a: str = Query(..., min_length=1),
    product_b: str = Query(..., min_length=1),
    engine=Depends(engine_dep),
):
    res = calculate_affinity_score(engine.store.current.affinity, product_a, product_b)
    if res is None:
        raise HTTPException(status_code=404, detail="No affinity rule between these products.")
    return res.model_dump()


@router.post("/matrix")
async def matrix(body: MatrixRequest, engine=Depends(engine_dep)):
    return get_affinity_matrix(engine.store.current.affinity, body.product_ids).model_dump()


@router.get("/rules")
async def rules(
    min_lift: Optional[float] = Query(None, ge=0),
    min_confidence: Optional[float] = Query(None, ge=0, le=1),
    min_support: Optional[float] = Query(None, ge=0, le=1),
    product_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=5000),
    engine=Depends(engine_dep),
):
    items = get_all_affinity_rules(
        engine.store.current.affinity,
        min_lift=min_lift,
        min_confidence=min_confidence,
        min_support=min_support,
        product_id=product_id,
    )
    return {"items": [r.model_dump(mode="json") for r in items[:limit]], "count": len(items)}


@router.get("/bundles")
async def bundles(
    product_id: Optional[str] = Query(None),
    min_size: int = Query(2, ge=2),
    limit: int = Query(20, ge=1, le=500),
    engine=Depends(engine_dep),
):
    items = [
        b for b in engine.store.current.affinity.bundles
        if b.size >= min_size and (product_id is None or product_id in b.products)
    ]
    return {"items": [b.model_dump() for b in items[:limit]], "count": len(items)}
