# affinity_engine/core/lifespan.py
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from affinity_engine.db import mongo, redis as r
from affinity_engine.core.config import get_settings
from affinity_engine.core.errors import EngineError
from affinity_engine.domain.services.engine import get_engine
from affinity_engine.domain.services.training_svc import retrain_from_sources

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # --- Startup ---
    # Mongo optional: without it the engine is fed through the training endpoints
    if settings.MONGO_URI:
        await mongo.connect()
    else:
        logger.warning("No MONGO_URI provided, skipping Mongo connection")

    # Redis optional
    if settings.REDIS_URL:
        try:
            await r.connect()
        except Exception as e:
            logger.warning("Redis connection failed (ignored): %s", e)
    else:
        logger.warning("No REDIS_URL provided, skipping Redis connection")

    engine = get_engine()
    engine.attach_stores(mongo.get_db(), r.get_redis())

    if settings.TRAIN_ON_STARTUP:
        try:
            result = await retrain_from_sources(engine)
            logger.info("startup training done content=%s", result["content"])
        except EngineError as e:
            logger.error("startup training failed, serving empty models: %s", e)

    # Application runs
    yield

    # --- Shutdown ---
    try:
        if settings.REDIS_URL:
            await r.disconnect()
    except Exception as e:
        logger.warning("Redis disconnect error: %s", e)

    try:
        if settings.MONGO_URI:
            await mongo.disconnect()
            logger.info("Mongo disconnected")
    except Exception as e:
        logger.warning("Mongo disconnect error: %s", e)
