from fastapi import FastAPI
from affinity_engine.core.config import get_settings
from affinity_engine.core.lifespan import lifespan
from affinity_engine.api.v1.routers.health import router as health_router
from affinity_engine.api.v1.routers.recommendations import router as recommendations_router
from affinity_engine.api.v1.routers.affinity import router as affinity_router
from affinity_engine.api.v1.routers.cart import router as cart_router
from affinity_engine.api.v1.routers.training import router as training_router
from affinity_engine.api.v1.routers.analytics import router as analytics_router
from affinity_engine.core.logging import configure_logging

from fastapi.middleware.cors import CORSMiddleware
import logging, os

settings = get_settings()
configure_logging(level=logging.DEBUG if settings.DEBUG else logging.INFO)

app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# ------- CORS -------
# ALLOWED_ORIGINS is a CSV, e.g. "https://shop.example.com,https://admin.example.com"
allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "")
allowed_origins = [o.strip() for o in allowed_origins_env.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False,                        # keeps preflight simple
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)

# ------- Routes -------
app.include_router(health_router)
app.include_router(recommendations_router, prefix=settings.api_prefix)
app.include_router(affinity_router, prefix=settings.api_prefix)
app.include_router(cart_router, prefix=settings.api_prefix)
app.include_router(training_router, prefix=settings.api_prefix)
app.include_router(analytics_router, prefix=settings.api_prefix)
