# affinity_engine/domain/repositories/event_repo.py
import logging
import threading
import time
from collections import defaultdict
from typing import Dict, Iterable, List

from motor.motor_asyncio import AsyncIOMotorDatabase

from affinity_engine.domain.models.order import SessionEvent

logger = logging.getLogger(__name__)


class EventRepo:
    """
    Session event source backed by the 'events' collection.
    Documents carry `session_id`, `event_type`, `product_id` and `timestamp`.
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection_name: str = "events"):
        self.col = db[collection_name]

    async def get_session_events(self, session_id: str, limit: int = 200) -> List[SessionEvent]:
        """
        Most recent events of a session, returned oldest first.

        Args:
            session_id: Session whose events are read
            limit: Keep only the newest `limit` events
        """
        t0 = time.perf_counter()
        cursor = self.col.find(
            {"session_id": session_id},
            {"_id": 0, "event_type": 1, "product_id": 1, "timestamp": 1},
        ).sort("timestamp", -1).limit(limit)
        events = [SessionEvent.model_validate(doc) async for doc in cursor]
        events.reverse()
        logger.info("session events session_id=%s n=%s db_time=%.3fs", session_id, len(events), time.perf_counter() - t0)
        return events

    async def add_events(self, session_id: str, events: Iterable[SessionEvent]) -> int:
        """Append events to a session; returns how many were written."""
        docs = [
            {"session_id": session_id, "event_type": e.type, "product_id": e.product_id, "timestamp": e.timestamp}
            for e in events
        ]
        if docs:
            await self.col.insert_many(docs)
        return len(docs)


class InMemoryEventRepo:
    """
    Process-local session events, used when no Mongo URI is configured.
    Same contract as `EventRepo`: newest `limit` events, oldest first.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, List[SessionEvent]] = defaultdict(list)

    async def get_session_events(self, session_id: str, limit: int = 200) -> List[SessionEvent]:
        with self._lock:
            return list(self._events.get(session_id, []))[-limit:]

    async def add_events(self, session_id: str, events: Iterable[SessionEvent]) -> int:
        events = list(events)
        with self._lock:
            self._events[session_id].extend(events)
        return len(events)
