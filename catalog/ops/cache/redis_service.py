import asyncio
import logging
import time

import redis.asyncio as redis
from redis.exceptions import RedisError

from catalog.ops.cache.store import CacheStore, MemoryCacheStore, RedisCacheStore

logger = logging.getLogger(__name__)


class RedisService:
    """
    Owns the optional redis connection and hands out the cache store built on it.

    Without ``url`` the service stays disabled and ``cache_store`` falls back
    to a process-local store, so the tree cache and the debounce locks keep
    working in a single process.
    """

    def __init__(self, url: str | None, key_prefix: str = ""):
        self.url = url
        self.key_prefix = key_prefix
        self.client: redis.Redis | None = None
        self.enabled = bool(url)
        self.connected = False

    async def connect(self, retry_count: int = 5, retry_delay: float = 1.0) -> bool:
        """
        Connect to redis if configured.

        Returns True when connected or when redis is not configured at all.
        Raises RuntimeError when redis is configured but still unreachable
        after ``retry_count`` attempts.
        """
        if not self.enabled:
            return True

        for attempt in range(1, retry_count + 1):
            try:
                self.client = redis.from_url(self.url)
                await self.client.ping()
            except (RedisError, OSError) as e:
                self.client = None
                if attempt == retry_count:
                    raise RuntimeError(f"Failed to connect to Redis after {retry_count} attempts: {e}") from e
                logger.warning(f"Redis connection attempt {attempt}/{retry_count} failed: {e}")
                await asyncio.sleep(retry_delay)
            else:
                self.connected = True
                logger.info(f"Connected to Redis, cache keys prefixed with {self.key_prefix!r}")
                return True
        return False

    def cache_store(self) -> CacheStore:
        """Shared store when connected, otherwise an in-process one."""
        if self.connected:
            return RedisCacheStore(self.client, prefix=self.key_prefix)
        logger.warning("Redis not connected, using in-process cache store (locks are not shared across processes)")
        return MemoryCacheStore()

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
        self.client = None
        self.connected = False

    async def health_check(self) -> dict:
        """Redis section of the health endpoint; empty when redis is not configured."""
        if not self.enabled:
            return {}
        if not self.client:
            return {"redis": {"connected": False, "status": "disconnected"}}

        start = time.perf_counter()
        try:
            await self.client.ping()
        except (RedisError, OSError) as e:
            return {"redis": {"connected": False, "status": "unhealthy", "error": str(e)}}
        return {
            "redis": {
                "connected": True,
                "status": "healthy",
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            }
        }
