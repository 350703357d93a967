"""
Shared key-value stores behind the tree cache and the debounce locks.

Two backends implement the same contract:

- ``RedisCacheStore``: redis via ``redis.asyncio``, shared by every process.
  Tag groups are native redis sets and ``create_if_absent`` is a single
  ``SET key value NX PX ttl``.
- ``MemoryCacheStore``: process-local ``cachetools.TLRUCache``, used when no
  redis is configured and in tests. It does not group keys by tag, so the tree
  cache keeps its own key registry on top of it.
"""
import fnmatch
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import redis.asyncio as redis
from cachetools import TLRUCache
from redis.exceptions import RedisError

from catalog.ops.errors import CacheBackendUnavailableError


class CacheStore(ABC):
    backend: str = "abstract"
    supports_tags: bool = False

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl: float) -> None: ...

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def create_if_absent(self, key: str, ttl: float, value: str = "1") -> bool:
        """Atomically create ``key`` unless it exists. True when this call created it."""

    @abstractmethod
    async def keys(self, pattern: str = "*") -> list[str]: ...

    async def delete_prefix(self, prefix: str) -> int:
        keys = await self.keys(f"{prefix}*")
        return await self.delete(*keys) if keys else 0

    async def tag(self, tag: str, key: str, ttl: float) -> None:
        raise NotImplementedError(f"{self.backend} store does not support tags")

    async def forget_tag(self, tag: str) -> int:
        raise NotImplementedError(f"{self.backend} store does not support tags")


class MemoryCacheStore(CacheStore):
    """
    Single-process store on a ``cachetools.TLRUCache``.

    Every item carries its own time-to-use, so debounce locks and cache
    entries expire independently. Operations never await, so each one is
    atomic on the event loop.
    """

    backend = "memory"

    def __init__(
        self, clock: Callable[[], float] = time.monotonic, supports_tags: bool = False, maxsize: int = 100_000
    ):
        self.clock = clock
        self.supports_tags = supports_tags
        # Items are (value, ttl) pairs
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=clock)
        self._tags: dict[str, set[str]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._cache.get(key)
        return entry[0] if entry is not None else None

    async def set(self, key: str, value: str, ttl: float) -> None:
        if ttl <= 0:
            self._cache.pop(key, None)
            return
        self._cache[key] = (value, ttl)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._cache.pop(key, None) is not None)

    async def create_if_absent(self, key: str, ttl: float, value: str = "1") -> bool:
        if key in self._cache:
            return False
        self._cache[key] = (value, ttl)
        return True

    async def keys(self, pattern: str = "*") -> list[str]:
        self._cache.expire()
        return [key for key in list(self._cache.keys()) if fnmatch.fnmatchcase(key, pattern)]

    async def tag(self, tag: str, key: str, ttl: float) -> None:
        if not self.supports_tags:
            await super().tag(tag, key, ttl)
        self._tags.setdefault(tag, set()).add(key)

    async def forget_tag(self, tag: str) -> int:
        if not self.supports_tags:
            return await super().forget_tag(tag)
        members = self._tags.pop(tag, set())
        return await self.delete(*members) if members else 0


def _expires_at(_key: str, entry: tuple[str, float], now: float) -> float:
    return now + entry[1]


@contextmanager
def _backend_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError) as e:
        raise CacheBackendUnavailableError(f"redis {operation} failed: {e}") from e


class RedisCacheStore(CacheStore):
    """Store shared by every process through redis. All keys get ``prefix`` prepended."""

    backend = "redis"
    supports_tags = True

    def __init__(self, client: redis.Redis, prefix: str = ""):
        self.client = client
        self.prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return self._k(tag)

    @staticmethod
    def _decode(value) -> str | None:
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else value

    async def get(self, key: str) -> str | None:
        with _backend_errors("get"):
            return self._decode(await self.client.get(self._k(key)))

    async def set(self, key: str, value: str, ttl: float) -> None:
        with _backend_errors("set"):
            await self.client.set(self._k(key), value, px=max(1, int(ttl * 1000)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _backend_errors("delete"):
            return await self.client.delete(*(self._k(key) for key in keys))

    async def create_if_absent(self, key: str, ttl: float, value: str = "1") -> bool:
        with _backend_errors("set nx"):
            return bool(await self.client.set(self._k(key), value, nx=True, px=max(1, int(ttl * 1000))))

    async def keys(self, pattern: str = "*") -> list[str]:
        found = []
        with _backend_errors("scan"):
            async for key in self.client.scan_iter(match=self._k(pattern)):
                found.append(self._decode(key)[len(self.prefix) :])
        return found

    async def tag(self, tag: str, key: str, ttl: float) -> None:
        tag_key = self._tag_key(tag)
        with _backend_errors("sadd"):
            pipeline = self.client.pipeline()
            pipeline.sadd(tag_key, self._k(key))
            # Outlive the newest member so the set never forgets a live key
            pipeline.expire(tag_key, max(1, int(ttl) + 1))
            await pipeline.execute()

    async def forget_tag(self, tag: str) -> int:
        tag_key = self._tag_key(tag)
        with _backend_errors("forget tag"):
            members = await self.client.smembers(tag_key)
            deleted = await self.client.delete(*members) if members else 0
            await self.client.delete(tag_key)
            return deleted
