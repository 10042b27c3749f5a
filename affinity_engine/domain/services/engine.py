# affinity_engine/domain/services/engine.py
"""
Engine: one service instance owning the live snapshot and the per-process
collaborators (performance counters, acceptance history, carts, rules, stores).
"""
from __future__ import annotations

import logging
import threading
from typing import Optional

from affinity_engine.core.config import get_settings
from affinity_engine.domain.repositories.cart_repo import CartRepo
from affinity_engine.domain.repositories.event_repo import EventRepo, InMemoryEventRepo
from affinity_engine.domain.repositories.order_repo import OrderRepo
from affinity_engine.domain.repositories.product_repo import ProductRepo
from affinity_engine.domain.repositories.recommendation_log_repo import RecommendationLogRepo
from affinity_engine.domain.services.bandit import PerformanceTracker
from affinity_engine.domain.services.cart_optimizer_svc import AcceptanceHistory
from affinity_engine.domain.services.rules import RuleEvaluator
from affinity_engine.domain.services.state import EngineStateStore

logger = logging.getLogger(__name__)


class Engine:
    def __init__(self, db=None, redis=None):
        self.store = EngineStateStore()
        self.tracker = PerformanceTracker()
        self.acceptance = AcceptanceHistory()
        self.carts = CartRepo()
        self.rules = RuleEvaluator()
        self.training_lock = threading.Lock()
        self.attach_stores(db, redis)

    def attach_stores(self, db=None, redis=None) -> None:
        """Wire Mongo / Redis adapters; either may be None (in-process mode)."""
        settings = get_settings()
        self.redis = redis
        self.recommendation_log = RecommendationLogRepo(redis, settings.recommendation_log_prefix, settings.recommendation_ttl)
        if db is not None:
            self.catalog: Optional[ProductRepo] = ProductRepo(db)
            self.orders: Optional[OrderRepo] = OrderRepo(db)
            self.events = EventRepo(db)
        else:
            self.catalog = None
            self.orders = None
            self.events = InMemoryEventRepo()
        logger.info("engine stores mongo=%s redis=%s", db is not None, redis is not None)


_engine: Optional[Engine] = None
_engine_lock = threading.Lock()


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = Engine()
    return _engine


def reset_engine() -> Engine:
    """Drop the process engine and start from an empty snapshot."""
    global _engine
    with _engine_lock:
        _engine = Engine()
    return _engine
