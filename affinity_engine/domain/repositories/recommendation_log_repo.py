from typing import Optional
from affinity_engine.domain.models.recommendation import RecommendationResult
from affinity_engine.utils.cache import TTLCache, cache_get, cache_set


class RecommendationLogRepo:
    """
    Analytics log of `generate_recommendations` results, each kept for `ttl` seconds.
    Uses Redis when a client is given, otherwise a process-local TTL store.
    """
    def __init__(self, redis, key_prefix: str, ttl: int):
        """
        Args:
            redis: Redis client instance, or None for the in-process store
            key_prefix: Prefix for log keys (e.g., "reco")
            ttl: Seconds each result stays retrievable
        """
        self.cache = redis
        self.prefix = key_prefix
        self.ttl = ttl
        self._local = TTLCache()

    def key(self, recommendation_id: str) -> str:
        return f"{self.prefix}:{recommendation_id}"

    async def store(self, result: RecommendationResult) -> None:
        payload = result.model_dump(mode="json")
        if self.cache is not None:
            await cache_set(self.cache, self.key(result.id), payload, ex=self.ttl)
        else:
            self._local.set(self.key(result.id), payload, ex=self.ttl)

    async def get(self, recommendation_id: str) -> Optional[RecommendationResult]:
        key = self.key(recommendation_id)
        data = await cache_get(self.cache, key) if self.cache is not None else self._local.get(key)
        return RecommendationResult.model_validate(data) if data else None
