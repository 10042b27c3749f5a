import json
import threading
import time
from typing import Any, Dict, Optional, Tuple

from redis.asyncio import Redis

async def cache_get(redis: Redis, key: str):
    if val := await redis.get(key):
        return json.loads(val)
    return None

async def cache_set(redis: Redis, key: str, value, ex: int = 60):
    await redis.set(key, json.dumps(value, default=str), ex=ex)

async def cache_delete(redis: Redis, key: str):
    await redis.delete(key)


class TTLCache:
    """Process-local key/value store with per-entry expiry. Expired entries are purged on write."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[float, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            expires, value = item
            if expires <= time.monotonic():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ex: int) -> None:
        now = time.monotonic()
        with self._lock:
            for k in [k for k, (exp, _) in self._data.items() if exp <= now]:
                del self._data[k]
            self._data[key] = (now + ex, value)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
