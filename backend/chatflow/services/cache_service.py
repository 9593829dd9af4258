# /chatflow/services/cache_service.py

import logging
from typing import Optional
import redis.asyncio as redis

from chatflow.config.settings import settings
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import database_operations_counter

# Redis-backed fast path for duplicate webhook detection. The durable
# dedupe record is the session's processed message ids; this cache only
# lets the scheduler drop obvious redeliveries before taking a lock.
# Cache failures are logged and treated as misses.

logger = logging.getLogger(__name__)

PROCESSED_KEY_PREFIX = "chatflow:processed"


class CacheService:
    def __init__(self, redis_url: Optional[str]):
        self.redis = None
        if not redis_url:
            return
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker("redis")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None

    @staticmethod
    def _processed_key(tenant_id: str, conversation_id: str, dedupe_key: str) -> str:
        return f"{PROCESSED_KEY_PREFIX}:{tenant_id}:{conversation_id}:{dedupe_key}"

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            database_operations_counter.labels(operation="cache_get", status="hit" if result else "miss").inc()
            return result.decode("utf-8") if result else None
        except Exception as e:
            database_operations_counter.labels(operation="cache_get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            database_operations_counter.labels(operation="cache_set", status="success").inc()
        except Exception as e:
            database_operations_counter.labels(operation="cache_set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def was_processed(self, tenant_id: str, conversation_id: str, dedupe_key: str) -> bool:
        return await self.get(self._processed_key(tenant_id, conversation_id, dedupe_key)) is not None

    async def mark_processed(self, tenant_id: str, conversation_id: str, dedupe_key: str, ttl: int = 86400):
        await self.set(self._processed_key(tenant_id, conversation_id, dedupe_key), "1", ttl)

    async def close(self):
        if self.redis:
            await self.redis.aclose()


# Globally accessible instance
cache_service = CacheService(settings.redis_url)
