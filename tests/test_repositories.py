from datetime import timedelta

from affinity_engine.domain.models.order import SessionEvent
from affinity_engine.domain.repositories.event_repo import EventRepo, InMemoryEventRepo

from tests.sample_data import NOW


class _FakeCursor:
    def __init__(self, docs):
        self.docs = list(docs)

    def sort(self, key, direction):
        self.docs.sort(key=lambda d: d[key], reverse=direction < 0)
        return self

    def limit(self, n):
        self.docs = self.docs[:n]
        return self

    def __aiter__(self):
        self._it = iter(self.docs)
        return self

    async def __anext__(self):
        try:
            return next(self._it)
        except StopIteration:
            raise StopAsyncIteration


class _FakeCollection:
    def __init__(self, docs):
        self.docs = docs

    def find(self, query, projection=None):
        return _FakeCursor(d for d in self.docs if d["session_id"] == query["session_id"])


def _docs(n):
    return [
        {"session_id": "s1", "event_type": "view", "product_id": f"p{i}", "timestamp": NOW + timedelta(minutes=i)}
        for i in range(n)
    ]


async def test_mongo_events_keep_most_recent_in_order():
    repo = EventRepo({"events": _FakeCollection(_docs(5))})
    events = await repo.get_session_events("s1", limit=3)
    assert [e.product_id for e in events] == ["p2", "p3", "p4"]


async def test_in_memory_events_match_mongo_contract():
    repo = InMemoryEventRepo()
    await repo.add_events("s1", [SessionEvent.model_validate(d) for d in _docs(5)])
    events = await repo.get_session_events("s1", limit=3)
    assert [e.product_id for e in events] == ["p2", "p3", "p4"]
    assert await repo.get_session_events("other") == []
