# affinity_engine/api/v1/routers/health.py
import time
import subprocess
from fastapi import APIRouter, Depends
from affinity_engine.api.deps import engine_dep
from affinity_engine.core.config import get_settings
from affinity_engine.db import mongo
from affinity_engine.db.redis import get_redis  # returns Redis instance or None

router = APIRouter(tags=["health"])
START_TIME = time.time()


def _git_sha(short: bool = True) -> str:
    try:
        cmd = ["git", "rev-parse", "--short" if short else "HEAD"]
        return subprocess.check_output(cmd, stderr=subprocess.DEVNULL).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


@router.get("/health")
async def health(engine=Depends(engine_dep)):
    """
    Tolerant health check:
    - ping Mongo via Motor (async), 'skipped' if not configured
    - ping Redis, 'skipped' if not configured
    - expose the live model version and basic app info
    """
    settings = get_settings()
    state = engine.store.current
    checks: dict[str, object] = {
        "app_name": settings.APP_NAME,
        "env": settings.APP_ENV,
        "debug": settings.DEBUG,
        "version": settings.GIT_SHA if settings.GIT_SHA != "unknown" else _git_sha(),
        "uptime_seconds": int(time.time() - START_TIME),
        "model_version": state.version,
        "model_built_at": state.built_at.isoformat() if state.built_at else None,
    }

    # --- Mongo ---
    try:
        db = mongo.get_db()
        if db is not None:
            await db.command("ping")
            checks["mongodb"] = "ok"
        else:
            checks["mongodb"] = "skipped"
    except Exception as e:
        checks["mongodb"] = f"error: {e}"

    # --- Redis (tolerant) ---
    try:
        r = get_redis()
        if r:
            await r.ping()
            checks["redis"] = "ok"
        else:
            checks["redis"] = "skipped"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    # --- Global status: only the real health checks count
    def _is_ok(v):
        return v in ("ok", "skipped")

    health_keys = ("mongodb", "redis")
    status = "ok" if all(_is_ok(checks.get(k)) for k in health_keys) else "error"

    return {"status": status, "checks": checks, "timestamp": int(time.time())}


@router.get("/config")
async def config():
    """Tunables in effect (no connection strings)."""
    settings = get_settings()
    return settings.model_dump(exclude={"MONGO_URI", "REDIS_URL"})
