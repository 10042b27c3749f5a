from functools import lru_cache
from typing import Literal, Optional
import os
from pydantic_settings import BaseSettings, SettingsConfigDict

EnvName = Literal["development", "production"]

def _env_file_for(app_env: EnvName) -> str:
    return ".env.development" if app_env == "development" else ".env.production"

class Settings(BaseSettings):

    # Core
    APP_ENV: EnvName = "development"
    APP_NAME: str = "AffinityEngine"
    DEBUG: bool = False
    GIT_SHA: str = "unknown"

    # Mongo (optional: the engine runs in-process without it)
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "affinity"

    # Redis (optional: recommendation log + training lock)
    REDIS_URL: Optional[str] = None

    # Startup
    TRAIN_ON_STARTUP: bool = False             # rebuild models from Mongo at boot

    # Recommendation log
    recommendation_ttl: int = 3600             # 1 hour
    recommendation_log_prefix: str = "reco"    # redis key namespace

    # Per-request budget
    recommendation_timeout_s: float = 2.0      # degrade to popularity past this
    default_max_recommendations: int = 10

    # Training
    training_budget_s: float = 120.0           # wall-clock cap per batch job
    training_lock_ttl: int = 300               # seconds
    min_common_raters: int = 2
    min_item_similarity: float = 0.3
    user_neighbours_k: int = 20
    item_neighbours_k: int = 10

    # Affinity mining
    min_affinity_support: float = 0.01
    min_affinity_confidence: float = 0.3
    bundle_min_support: float = 0.02
    bundle_min_products: int = 2
    bundle_max_products: int = 4
    bundle_max_candidates: int = 5000          # per Apriori level
    trending_window_days: int = 7

    # Cart optimizer
    free_shipping_threshold: float = 75.0
    free_shipping_window: float = 25.0         # nudge only when this close
    shipping_cost: float = 8.99
    value_bonus_min: float = 50.0
    value_bonus_threshold: float = 100.0
    bundle_discount_pct: float = 10.0
    dynamic_bundle_discount_pct: float = 5.0
    low_stock_threshold: int = 10
    abandonment_minutes: int = 30

    # API
    api_prefix: str = "/api"

    # pydantic-settings config will be set dynamically in the factory below
    model_config = SettingsConfigDict(env_file=None, case_sensitive=True)

@lru_cache
def get_settings() -> Settings:
    """
    Factory that chooses the right .env file based on APP_ENV.
    Cache makes it cheap to inject via FastAPI dependencies.
    """
    app_env: EnvName = os.getenv("APP_ENV", "development")  # earliest switch
    env_file = _env_file_for(app_env)
    return Settings(
                _env_file=env_file,  # load .env.development or .env.production
                _env_file_encoding="utf-8"
    )
