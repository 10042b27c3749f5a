# affinity_engine/api/v1/routers/training.py
from fastapi import APIRouter, Depends
import logging

from affinity_engine.api.deps import engine_dep, http_error
from affinity_engine.api.v1.schemas.requests import TrainCollaborativeRequest, TrainContentRequest
from affinity_engine.core.errors import EngineError
from affinity_engine.domain.services.recommendation_svc import get_model_metrics
from affinity_engine.domain.services.training_svc import (
    retrain_from_sources,
    run_training_job,
    train_collaborative_model,
    train_content_model,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ml", tags=["training"])


@router.post("/train/collaborative")
async def train_collaborative(body: TrainCollaborativeRequest, engine=Depends(engine_dep)):
    """Rebuild the user-product matrix and similarity index from purchase rows."""
    logger.info("Request: train collaborative purchases=%s", len(body.purchases))
    try:
        return await run_training_job(engine, "collaborative", train_collaborative_model, body.purchases)
    except EngineError as e:
        raise http_error(e) from e


@router.post("/train/content")
async def train_content(body: TrainContentRequest, engine=Depends(engine_dep)):
    """Replace the catalog and its feature vectors."""
    logger.info("Request: train content products=%s", len(body.products))
    try:
        return await run_training_job(engine, "content", train_content_model, body.products)
    except EngineError as e:
        raise http_error(e) from e


@router.post("/retrain")
async def retrain(engine=Depends(engine_dep)):
    """Rebuild every model from the Mongo catalog and order history."""
    try:
        return await retrain_from_sources(engine)
    except EngineError as e:
        raise http_error(e) from e


@router.get("/metrics")
async def metrics(engine=Depends(engine_dep)):
    state = engine.store.current
    return {
        "model_version": state.version,
        "built_at": state.built_at.isoformat() if state.built_at else None,
        "users": len(state.user_vectors),
        "products": len(state.products),
        "similar_pairs": state.similarity.pair_count,
        "performance": get_model_metrics(engine).model_dump(),
    }
