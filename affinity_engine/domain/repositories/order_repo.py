# affinity_engine/domain/repositories/order_repo.py
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError as PydanticValidationError

from affinity_engine.core.logging import json_preview
from affinity_engine.domain.models.order import Order

logger = logging.getLogger(__name__)


class OrderRepo:
    """
    Order history source derived from 'purchase' events.

    One order = all purchase events sharing `metadata.order_id` (fallback
    `session_id`). Line quantity comes from `metadata.quantity` (default 1) and
    the unit price from `metadata.price` (default 0).
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str = "events"):
        self.col = db[collection_name]

    def _pipeline(self, filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        filters = filters or {}
        match: Dict[str, Any] = {"event_type": "purchase"}
        if filters.get("customer_id"):
            match["user_id"] = filters["customer_id"]
        since: Optional[datetime] = filters.get("since")
        if since:
            match["timestamp"] = {"$gte": since}

        pipeline: List[Dict[str, Any]] = [
            {"$match": match},
            {"$addFields": {
                "ok": {"$ifNull": ["$metadata.order_id", "$session_id"]},
                "q": {"$ifNull": ["$metadata.quantity", 1]},
                "px": {"$ifNull": ["$metadata.price", 0]},
                "ts": {"$toDate": "$timestamp"},
            }},
            {"$match": {"ok": {"$ne": None}}},
            {"$group": {
                "_id": "$ok",
                "customer_id": {"$first": "$user_id"},
                "created_at": {"$min": "$ts"},
                "items": {"$push": {"product_id": "$product_id", "quantity": "$q", "price": "$px"}},
            }},
            {"$sort": {"created_at": 1}},
            {"$project": {"_id": 0, "id": {"$toString": "$_id"}, "customer_id": 1, "created_at": 1, "items": 1}},
        ]
        if filters.get("limit"):
            pipeline.append({"$limit": int(filters["limit"])})
        return pipeline

    async def list_orders(self, filters: Optional[Dict[str, Any]] = None) -> List[Order]:
        pipeline = self._pipeline(filters)
        logger.debug("orders pipeline=%s", json_preview(pipeline, limit=2000))

        t0 = time.perf_counter()
        docs = await self.col.aggregate(pipeline).to_list(length=None)
        orders: List[Order] = []
        for doc in docs:
            try:
                orders.append(Order.model_validate(doc))
            except PydanticValidationError as e:
                logger.warning("orders skip malformed order id=%s errors=%s", doc.get("id"), e.error_count())
        logger.info("orders db_ok n=%s kept=%s db_time=%.3fs", len(docs), len(orders), time.perf_counter() - t0)
        return orders
