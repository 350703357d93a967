import asyncio

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog.ops.cache.redis_service import RedisService
from catalog.ops.cache.store import MemoryCacheStore, RedisCacheStore
from catalog.ops.cache.tree_cache import TreeCache
from catalog.ops.errors import CacheBackendUnavailableError
from catalog.ops.services.node_store import NodeStore
from catalog.ops.services.tree_query import TreeQueryEngine
from tests.factories.category_node import CategoryNodeFactory


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server)
    yield client
    await client.aclose()


@pytest.fixture
def store(redis_client) -> RedisCacheStore:
    return RedisCacheStore(redis_client, prefix="catalog:")


async def test_values_live_under_the_prefix(store: RedisCacheStore, redis_client):
    await store.set("cache:tree:active=false", "[]", 60)

    assert await store.get("cache:tree:active=false") == "[]"
    assert await redis_client.get("catalog:cache:tree:active=false") == b"[]"
    assert await store.keys("cache:*") == ["cache:tree:active=false"]


async def test_create_if_absent_is_first_caller_wins(store: RedisCacheStore):
    assert await store.create_if_absent("lock:root_shard:1", 0.1)
    assert not await store.create_if_absent("lock:root_shard:1", 0.1)
    assert await store.create_if_absent("lock:root_shard:2", 0.1)

    await asyncio.sleep(0.2)
    assert await store.create_if_absent("lock:root_shard:1", 0.1)


async def test_delete_prefix_leaves_other_namespaces(store: RedisCacheStore, redis_client):
    other = RedisCacheStore(redis_client, prefix="other:")
    await store.set("cache:a", "1", 60)
    await store.set("cache:b", "2", 60)
    await store.set("lock:full:all", "1", 60)
    await other.set("cache:a", "3", 60)

    assert await store.delete_prefix("cache:") == 2
    assert await store.get("lock:full:all") == "1"
    assert await other.get("cache:a") == "3"


async def test_tag_groups_are_redis_sets(store: RedisCacheStore, redis_client):
    await store.set("cache:x", "1", 60)
    await store.set("cache:y", "2", 60)
    await store.tag("cache:tags:1", "cache:x", 60)
    await store.tag("cache:tags:1", "cache:y", 60)

    assert await redis_client.scard("catalog:cache:tags:1") == 2
    assert 0 < await redis_client.ttl("catalog:cache:tags:1") <= 61

    assert await store.forget_tag("cache:tags:1") == 2
    assert await store.get("cache:x") is None
    assert not await redis_client.exists("catalog:cache:tags:1")


async def test_connection_errors_become_backend_unavailable(redis_server, store: RedisCacheStore):
    redis_server.connected = False

    with pytest.raises(CacheBackendUnavailableError):
        await store.get("cache:tree:active=false")
    with pytest.raises(CacheBackendUnavailableError):
        await store.create_if_absent("lock:full:all", 1)


async def test_tree_cache_shards_on_redis(
    store: RedisCacheStore, session_maker: async_sessionmaker[AsyncSession], db_session: AsyncSession, metrics
):
    electronics = CategoryNodeFactory.root(id=1, name="Electronics", position=1)
    phones = CategoryNodeFactory.child_of(electronics, id=2, name="Phones", position=1)
    books = CategoryNodeFactory.root(id=10, name="Books", position=2)
    await CategoryNodeFactory.persist(db_session, electronics, phones, books)

    cache = TreeCache(store, TreeQueryEngine(NodeStore(session_maker)), metrics)
    await cache.get_tree()
    await cache.get_breadcrumbs(2)
    await cache.get_tree_shard(10)

    await cache.forget_root_shard(1)
    assert await cache.cached_keys() == [cache.shard_key(10, False)]

    await cache.forget_all()
    # Tag sets live in the cache namespace and go with it
    assert await store.keys("*") == []


async def test_unconfigured_service_falls_back_to_memory():
    service = RedisService(None)

    assert await service.connect() is True
    assert isinstance(service.cache_store(), MemoryCacheStore)
    assert await service.health_check() == {}


async def test_connected_service_builds_prefixed_store(redis_server, redis_client):
    service = RedisService("redis://fake", key_prefix="catalog:")
    service.client = redis_client
    service.connected = True

    store = service.cache_store()
    assert isinstance(store, RedisCacheStore) and store.prefix == "catalog:"

    health = await service.health_check()
    assert health["redis"]["status"] == "healthy"

    redis_server.connected = False
    assert (await service.health_check())["redis"]["status"] == "unhealthy"
