import json
import logging
import time
from typing import Optional

import redis.asyncio as redis
from pydantic import TypeAdapter
from redis.exceptions import RedisError

from payrouter.domain.models import ProviderConfig

logger = logging.getLogger(__name__)

PROVIDER_SNAPSHOT_KEY = "cache:providers"

_providers_adapter = TypeAdapter(list[ProviderConfig])


class InMemoryProviderConfigCache:
    """Process-local provider snapshot with TTL."""

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self.providers: Optional[list[ProviderConfig]] = None
        self.expires_at = 0.0

    async def get(self) -> Optional[list[ProviderConfig]]:
        """Get the cached snapshot unless it has expired."""
        if self.providers is None:
            return None
        if self.clock() > self.expires_at:
            self.providers = None
            return None
        return list(self.providers)

    async def set(self, providers: list[ProviderConfig], ttl_seconds: int) -> None:
        self.providers = list(providers)
        self.expires_at = self.clock() + ttl_seconds

    async def invalidate(self) -> None:
        self.providers = None
        self.expires_at = 0.0


class RedisProviderConfigCache:
    """Shared provider snapshot in Redis so every process sees the same invalidation."""

    def __init__(self, redis_client=None, redis_url: str = "redis://localhost:6379"):
        self.redis = redis_client or redis.from_url(redis_url, decode_responses=True)

    async def get(self) -> Optional[list[ProviderConfig]]:
        try:
            data = await self.redis.get(PROVIDER_SNAPSHOT_KEY)
        except RedisError as e:
            logger.warning(f"Provider cache read failed, falling back to store: {e}")
            return None
        if data is None:
            return None
        return _providers_adapter.validate_json(data)

    async def set(self, providers: list[ProviderConfig], ttl_seconds: int) -> None:
        data = json.dumps([p.model_dump(mode="json") for p in providers])
        try:
            await self.redis.setex(PROVIDER_SNAPSHOT_KEY, ttl_seconds, data)
        except RedisError as e:
            logger.warning(f"Provider cache write failed: {e}")

    async def invalidate(self) -> None:
        try:
            await self.redis.delete(PROVIDER_SNAPSHOT_KEY)
        except RedisError as e:
            # The snapshot TTL bounds how long a stale copy can live
            logger.warning(f"Provider cache invalidation failed, relying on TTL: {e}")


class CacheProxy:
    """Local cache in front of the shared Redis cache; invalidation clears both."""

    def __init__(self, redis_cache: RedisProviderConfigCache, memory_cache: InMemoryProviderConfigCache):
        self.redis_cache = redis_cache
        self.memory_cache = memory_cache

    async def get(self) -> Optional[list[ProviderConfig]]:
        result = await self.memory_cache.get()
        if result is not None:
            return result
        return await self.redis_cache.get()

    async def set(self, providers: list[ProviderConfig], ttl_seconds: int) -> None:
        await self.redis_cache.set(providers, ttl_seconds)
        await self.memory_cache.set(providers, ttl_seconds)

    async def invalidate(self) -> None:
        await self.memory_cache.invalidate()
        await self.redis_cache.invalidate()
