import pytest

from catalog.ops.cache.store import MemoryCacheStore


async def test_entries_and_locks_expire_on_their_own_ttl(memory_store: MemoryCacheStore, clock):
    await memory_store.set("cache:tree:active=false", "[]", 3600)
    assert await memory_store.create_if_absent("lock:root_shard:1", 2)

    clock.advance(2)
    assert await memory_store.get("cache:tree:active=false") == "[]"
    assert await memory_store.keys("lock:*") == []
    assert await memory_store.create_if_absent("lock:root_shard:1", 2)

    clock.advance(3600)
    assert await memory_store.get("cache:tree:active=false") is None


async def test_create_if_absent_is_first_caller_wins(memory_store: MemoryCacheStore):
    assert await memory_store.create_if_absent("lock:root_shard:1", 2, value="job-1")
    assert not await memory_store.create_if_absent("lock:root_shard:1", 2, value="job-2")
    assert await memory_store.get("lock:root_shard:1") == "job-1"


async def test_delete_counts_only_live_keys(memory_store: MemoryCacheStore, clock):
    await memory_store.set("cache:a", "1", 10)
    await memory_store.set("cache:b", "2", 1)
    clock.advance(1)

    assert await memory_store.delete("cache:a", "cache:b", "cache:c") == 1
    assert await memory_store.keys() == []


async def test_keys_match_glob_patterns(memory_store: MemoryCacheStore):
    await memory_store.set("cache:breadcrumbs:1", "[]", 60)
    await memory_store.set("cache:tree:active=true", "[]", 60)
    await memory_store.set("lock:full:all", "1", 60)

    assert sorted(await memory_store.keys("cache:*")) == ["cache:breadcrumbs:1", "cache:tree:active=true"]
    assert await memory_store.delete_prefix("cache:") == 2
    assert await memory_store.keys() == ["lock:full:all"]


async def test_non_positive_ttl_drops_the_key(memory_store: MemoryCacheStore):
    await memory_store.set("cache:a", "1", 60)
    await memory_store.set("cache:a", "2", 0)
    assert await memory_store.get("cache:a") is None


async def test_oldest_entries_are_evicted_past_maxsize(clock):
    store = MemoryCacheStore(clock=clock, maxsize=2)
    for key in ("cache:a", "cache:b", "cache:c"):
        await store.set(key, "1", 60)

    assert len(await store.keys()) == 2
    assert await store.get("cache:c") == "1"


async def test_tags_require_support(clock):
    with pytest.raises(NotImplementedError):
        await MemoryCacheStore(clock=clock).tag("1", "cache:a", 60)

    tagged = MemoryCacheStore(clock=clock, supports_tags=True)
    await tagged.set("cache:a", "1", 60)
    await tagged.tag("1", "cache:a", 60)
    assert await tagged.forget_tag("1") == 1
    assert await tagged.get("cache:a") is None
