# affinity_engine/api/v1/routers/recommendations.py
from fastapi import APIRouter, Depends, HTTPException
import time
import logging

from affinity_engine.api.deps import engine_dep, http_error
from affinity_engine.api.v1.schemas.requests import (
    SessionEventsRequest,
    ThompsonItemOut,
    ThompsonRequest,
    ThompsonResultOut,
)
from affinity_engine.core.errors import EngineError
from affinity_engine.domain.models.recommendation import PerformanceEvent, RecommendationRequest
from affinity_engine.domain.services.bandit import thompson_sampling
from affinity_engine.domain.services.recommendation_svc import (
    generate_recommendations,
    get_recommendation,
    track_recommendation_performance,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recommendations", tags=["recommendations"])


@router.post("")
async def recommend(body: RecommendationRequest, engine=Depends(engine_dep)):
    """
    Personalised recommendations.
    Strategies: collaborative, content-based, hybrid (default), trending,
    new-arrivals, session-based, thompson-sampling.
    Past the per-request budget the popularity list is served with degraded=true.
    """
    logger.info(
        "Request: recommend strategy=%s customer_id=%s session_id=%s max=%s",
        body.strategy, body.customer_id, body.session_id, body.max_recommendations,
    )
    start_time = time.perf_counter()
    try:
        res = await generate_recommendations(engine, body)
    except EngineError as e:
        raise http_error(e) from e

    logger.info(
        "Response: recommend id=%s count=%s elapsed_time=%.4fs",
        res.id, len(res.recommendations), time.perf_counter() - start_time,
    )
    return res.model_dump(mode="json")


@router.get("/{recommendation_id}")
async def recommendation_by_id(recommendation_id: str, engine=Depends(engine_dep)):
    res = await get_recommendation(engine, recommendation_id)
    if res is None:
        raise HTTPException(status_code=404, detail="Recommendation not found or expired.")
    return res.model_dump(mode="json")


@router.post("/track/{product_id}")
async def track(product_id: str, event: PerformanceEvent, engine=Depends(engine_dep)):
    """Record an impression / click / conversion for the bandit counters."""
    try:
        metrics = track_recommendation_performance(engine, product_id, event)
    except EngineError as e:
        raise http_error(e) from e
    return {"product_id": product_id, **metrics.model_dump()}


@router.post("/sessions/{session_id}/events")
async def add_session_events(session_id: str, body: SessionEventsRequest, engine=Depends(engine_dep)):
    added = await engine.events.add_events(session_id, body.events)
    logger.info("session events session_id=%s added=%s", session_id, added)
    return {"session_id": session_id, "added": added}


@router.post("/thompson", response_model=ThompsonResultOut)
async def thompson(body: ThompsonRequest, engine=Depends(engine_dep)):
    """Draw one Beta sample per product and return the top `num_samples`."""
    ranked = thompson_sampling(body.product_ids, engine.tracker, num_samples=body.num_samples)
    items = [ThompsonItemOut(product_id=pid, sample=sample) for pid, sample in ranked]
    return ThompsonResultOut(items=items, count=len(items))
