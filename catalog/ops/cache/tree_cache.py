"""
Read-through cache in front of the tree query engine.

Keys are a query name plus its parameters under the ``cache:`` namespace:

    cache:tree:active=true
    cache:tree_shard:1:active=false
    cache:breadcrumbs:42
    cache:descendants:7:active=true
    cache:children:7:active=false
    cache:depth_stats

Every entry is tagged with the root ids it was computed from, so a mutation
under root 1 evicts the root 1 shard and nothing tagged only with root 2.
Entries that span the whole forest also carry the ``*`` tag, which is evicted
together with any root shard.

When the store groups keys natively (redis sets) tags are delegated to it.
Otherwise a registry key per tag (``cache:registry:<tag>``) lists the raw keys
written under that tag and is walked on eviction.
"""
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from catalog.ops.cache.store import CacheStore
from catalog.ops.errors import CacheBackendUnavailableError
from catalog.ops.services.tree_model import DepthStatistics, NodeSnapshot, TreeNodeView
from catalog.ops.services.tree_query import TreeQueryEngine
from catalog.ops.stats.registry import MetricsRegistry

logger = logging.getLogger(__name__)

ALL_ROOTS = "*"
NAMESPACE = "cache"


@dataclass(frozen=True)
class CacheRead:
    key: str
    hit: bool


def _flag(active_only: bool) -> str:
    return "true" if active_only else "false"


def _encode_nodes(nodes: list[NodeSnapshot]) -> list[dict]:
    return [node.to_dict() for node in nodes]


def _decode_nodes(data: list[dict]) -> list[NodeSnapshot]:
    return [NodeSnapshot.from_dict(item) for item in data]


def _encode_forest(forest: list[TreeNodeView]) -> list[dict]:
    return [tree.to_dict() for tree in forest]


def _decode_forest(data: list[dict]) -> list[TreeNodeView]:
    return [TreeNodeView.from_dict(item) for item in data]


class TreeCache:
    def __init__(
        self,
        store: CacheStore,
        engine: TreeQueryEngine,
        metrics: MetricsRegistry,
        ttl_seconds: float = 3600,
    ):
        self.store = store
        self.engine = engine
        self.metrics = metrics
        self.ttl_seconds = ttl_seconds

    # ---------------------------------------------------------------- keys

    @staticmethod
    def key(*parts: Any) -> str:
        return ":".join([NAMESPACE, *(str(part) for part in parts)])

    def tree_key(self, active_only: bool) -> str:
        return self.key("tree", f"active={_flag(active_only)}")

    def shard_key(self, root_id: int, active_only: bool) -> str:
        return self.key("tree_shard", root_id, f"active={_flag(active_only)}")

    def breadcrumbs_key(self, node_id: int) -> str:
        return self.key("breadcrumbs", node_id)

    def descendants_key(self, node_id: int, active_only: bool) -> str:
        return self.key("descendants", node_id, f"active={_flag(active_only)}")

    def children_key(self, node_id: int, active_only: bool) -> str:
        return self.key("children", node_id, f"active={_flag(active_only)}")

    def depth_stats_key(self) -> str:
        return self.key("depth_stats")

    def node_keys(self, node_id: int) -> list[str]:
        """Every entry that describes a single node."""
        return [
            self.breadcrumbs_key(node_id),
            *(self.descendants_key(node_id, flag) for flag in (True, False)),
            *(self.children_key(node_id, flag) for flag in (True, False)),
        ]

    # --------------------------------------------------------------- reads

    async def _remember(
        self,
        query: str,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        encode: Callable[[Any], Any],
        decode: Callable[[Any], Any],
        tags: Callable[[Any], Awaitable[Iterable[int | str]]],
        reads: list[CacheRead] | None = None,
    ) -> Any:
        """
        Return the cached value for ``key`` or compute, store and tag it.

        ``None`` results (unknown node) are returned but never stored. Backend
        failures degrade to direct computation; errors raised by ``compute``
        propagate to the caller.
        """
        start_time = time.perf_counter()
        result = "miss"
        try:
            try:
                raw = await self.store.get(key)
            except CacheBackendUnavailableError as e:
                result = "bypass"
                logger.warning(f"Cache backend unavailable on read of {key}, computing directly: {e}")
                self.metrics.increment("cache_backend_unavailable_total", {"operation": "read"})
                return await compute()

            if raw is not None:
                try:
                    value = decode(json.loads(raw))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Discarding undecodable cache entry {key}: {e}")
                else:
                    result = "hit"
                    self.metrics.increment("cache_hit_total", {"query": query})
                    return value

            self.metrics.increment("cache_miss_total", {"query": query})
            logger.info(f"Cache miss for {key}, querying node store")
            value = await compute()
            if value is not None:
                await self._store(key, json.dumps(encode(value), ensure_ascii=False), await tags(value))
            return value
        finally:
            if reads is not None:
                reads.append(CacheRead(key=key, hit=result == "hit"))
            self.metrics.observe(
                "query_duration_seconds", time.perf_counter() - start_time, {"query": query, "result": result}
            )

    async def _store(self, key: str, payload: str, tags: Iterable[int | str]) -> None:
        try:
            await self.store.set(key, payload, self.ttl_seconds)
            for tag in {str(tag) for tag in tags}:
                await self._tag(tag, key)
        except CacheBackendUnavailableError as e:
            logger.warning(f"Cache backend unavailable on write of {key}: {e}")
            self.metrics.increment("cache_backend_unavailable_total", {"operation": "write"})

    async def _root_tags(self, node_id: int) -> list[int | str]:
        # Unplaceable nodes go under the forest-wide tag so any shard flush evicts them
        root_id = await self.engine.resolve_root_id(node_id)
        return [root_id] if root_id is not None else [ALL_ROOTS]

    async def get_tree(self, active_only: bool = False, reads: list[CacheRead] | None = None) -> list[TreeNodeView]:
        async def tags(forest: list[TreeNodeView]) -> list[int | str]:
            return [ALL_ROOTS, *(tree.id for tree in forest)]

        return await self._remember(
            "tree",
            self.tree_key(active_only),
            lambda: self.engine.build_tree(active_only),
            _encode_forest,
            _decode_forest,
            tags,
            reads,
        )

    async def get_tree_shard(
        self, root_id: int, active_only: bool = False, reads: list[CacheRead] | None = None
    ) -> TreeNodeView | None:
        async def tags(tree: TreeNodeView) -> list[int]:
            return [tree.id]

        return await self._remember(
            "tree_shard",
            self.shard_key(root_id, active_only),
            lambda: self.engine.build_subtree(root_id, active_only),
            lambda tree: tree.to_dict(),
            TreeNodeView.from_dict,
            tags,
            reads,
        )

    async def get_breadcrumbs(self, node_id: int, reads: list[CacheRead] | None = None) -> list[NodeSnapshot] | None:
        async def tags(trail: list[NodeSnapshot]) -> list[int]:
            return [trail[0].id]

        return await self._remember(
            "breadcrumbs",
            self.breadcrumbs_key(node_id),
            lambda: self.engine.breadcrumbs(node_id),
            _encode_nodes,
            _decode_nodes,
            tags,
            reads,
        )

    async def get_ancestors(self, node_id: int, reads: list[CacheRead] | None = None) -> list[NodeSnapshot] | None:
        """Served from the breadcrumbs entry of the same node."""
        trail = await self.get_breadcrumbs(node_id, reads)
        return trail[:-1] if trail is not None else None

    async def get_descendants(
        self, node_id: int, active_only: bool = False, reads: list[CacheRead] | None = None
    ) -> list[NodeSnapshot] | None:
        async def tags(_nodes: list[NodeSnapshot]) -> list[int | str]:
            return await self._root_tags(node_id)

        return await self._remember(
            "descendants",
            self.descendants_key(node_id, active_only),
            lambda: self.engine.descendants(node_id, active_only),
            _encode_nodes,
            _decode_nodes,
            tags,
            reads,
        )

    async def get_children(
        self, node_id: int, active_only: bool = False, reads: list[CacheRead] | None = None
    ) -> list[NodeSnapshot] | None:
        async def tags(_nodes: list[NodeSnapshot]) -> list[int | str]:
            return await self._root_tags(node_id)

        return await self._remember(
            "children",
            self.children_key(node_id, active_only),
            lambda: self.engine.children(node_id, active_only),
            _encode_nodes,
            _decode_nodes,
            tags,
            reads,
        )

    async def get_depth_statistics(self, reads: list[CacheRead] | None = None) -> DepthStatistics:
        async def tags(_stats: DepthStatistics) -> list[str]:
            return [ALL_ROOTS]

        return await self._remember(
            "depth_stats",
            self.depth_stats_key(),
            self.engine.depth_statistics,
            lambda stats: stats.to_dict(),
            DepthStatistics.from_dict,
            tags,
            reads,
        )

    # ------------------------------------------------------------- tagging

    def _registry_key(self, tag: str) -> str:
        return self.key("registry", tag)

    async def _tag(self, tag: str, key: str) -> None:
        if self.store.supports_tags:
            await self.store.tag(self.key("tags", tag), key, self.ttl_seconds)
            return

        # Read-modify-write: a concurrent writer may drop a key from the
        # registry, leaving that entry to expire by TTL instead
        registry_key = self._registry_key(tag)
        raw = await self.store.get(registry_key)
        keys = set(json.loads(raw)) if raw else set()
        if key not in keys:
            keys.add(key)
            await self.store.set(registry_key, json.dumps(sorted(keys)), self.ttl_seconds + 1)

    async def _forget_tag(self, tag: str) -> int:
        if self.store.supports_tags:
            return await self.store.forget_tag(self.key("tags", tag))

        registry_key = self._registry_key(tag)
        raw = await self.store.get(registry_key)
        keys = json.loads(raw) if raw else []
        deleted = await self.store.delete(*keys) if keys else 0
        await self.store.delete(registry_key)
        return deleted

    # ------------------------------------------------------------ eviction

    async def _timed_eviction(self, mode: str, evict: Callable[[], Awaitable[int]]) -> int:
        start_time = time.perf_counter()
        try:
            removed = await evict()
        finally:
            self.metrics.observe("cache_eviction_duration_seconds", time.perf_counter() - start_time, {"mode": mode})
        self.metrics.increment("cache_eviction_total", {"mode": mode})
        return removed

    async def forget_root_shard(self, root_id: int) -> int:
        """Evict entries tagged with ``root_id`` plus the forest-wide entries."""

        async def evict() -> int:
            return await self._forget_tag(str(root_id)) + await self._forget_tag(ALL_ROOTS)

        removed = await self._timed_eviction("root_shard", evict)
        logger.info(f"Evicted root shard {root_id} ({removed} entries)")
        return removed

    async def forget_key(self, node_id: int) -> int:
        """Evict the single-node entries of ``node_id`` (breadcrumbs, children, descendants)."""

        async def evict() -> int:
            return await self.store.delete(*self.node_keys(node_id))

        removed = await self._timed_eviction("single_key", evict)
        logger.info(f"Evicted entries of node {node_id} ({removed} entries)")
        return removed

    async def forget_all(self) -> int:
        async def evict() -> int:
            return await self.store.delete_prefix(f"{NAMESPACE}:")

        removed = await self._timed_eviction("full", evict)
        logger.info(f"Evicted whole tree cache ({removed} entries)")
        return removed

    async def cached_keys(self) -> list[str]:
        """Data entries currently cached, tag bookkeeping excluded."""
        keys = await self.store.keys(f"{NAMESPACE}:*")
        bookkeeping = (self.key("registry", ""), self.key("tags", ""))
        return sorted(key for key in keys if not key.startswith(bookkeeping))

    def info(self) -> dict:
        return {
            "namespace": NAMESPACE,
            "ttl_seconds": self.ttl_seconds,
            "backend": self.store.backend,
            "supports_tags": self.store.supports_tags,
        }
