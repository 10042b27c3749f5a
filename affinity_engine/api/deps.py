# affinity_engine/api/deps.py
from fastapi import HTTPException
from affinity_engine.core.errors import (
    EngineError,
    NotFoundError,
    TrainingBudgetExceeded,
    TrainingInProgress,
    ValidationError,
)
from affinity_engine.db.mongo import get_db
from affinity_engine.db.redis import get_redis
from affinity_engine.domain.services.engine import Engine, get_engine


# Dependency for injecting the process engine (snapshot + per-process state)
def engine_dep() -> Engine:
    return get_engine()


# Dependency for injecting the MongoDB database (None when not configured)
async def mongo_db():
    return get_db()


# Dependency for injecting the Redis client (None when not configured)
def redis_dep():
    return get_redis()


_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (TrainingInProgress, 409),
    (TrainingBudgetExceeded, 503),
)


def http_error(e: EngineError) -> HTTPException:
    """Map a domain error to the HTTP response the routers send back."""
    for cls, code in _STATUS:
        if isinstance(e, cls):
            return HTTPException(status_code=code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
