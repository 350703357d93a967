import logging
import time
from dataclasses import asdict, dataclass

from catalog.ops.cache.tree_cache import CacheRead, TreeCache
from catalog.ops.invalidation.mutations import MutationKind
from catalog.ops.invalidation.notifier import ChangeNotifier
from catalog.ops.invalidation.scope import InvalidationScope
from catalog.ops.invalidation.worker import FlushJob, FlushWorker
from catalog.ops.services.tree_model import DepthStatistics, NodeSnapshot, TreeNodeView, count_nodes
from catalog.ops.stats.registry import MetricsRegistry

logger = logging.getLogger(__name__)

# breadcrumbs, descendants and children
ENTRIES_PER_NODE = 3


@dataclass
class WarmCacheReport:
    active_only: bool
    dry_run: bool
    elapsed_seconds: float
    node_count: int
    root_count: int
    entry_count: int
    force: bool = False
    flushed: int = 0
    hits: int = 0
    misses: int = 0

    @property
    def hit_ratio(self) -> float:
        reads = self.hits + self.misses
        return self.hits / reads if reads else 0.0

    def to_dict(self) -> dict:
        return {**asdict(self), "hit_ratio": self.hit_ratio}


class CatalogService:
    """
    Entry point of the read path and of administrative cache operations.

    All queries go through the tree cache; mutations reach the cache only
    through ``notify_mutation`` and the debounced flush pipeline behind it.
    """

    def __init__(self, cache: TreeCache, notifier: ChangeNotifier, worker: FlushWorker, metrics: MetricsRegistry):
        self.cache = cache
        self.notifier = notifier
        self.worker = worker
        self.metrics = metrics

    async def query_tree(self, active_only: bool = False) -> list[TreeNodeView]:
        return await self.cache.get_tree(active_only)

    async def query_tree_shard(self, root_id: int, active_only: bool = False) -> TreeNodeView | None:
        return await self.cache.get_tree_shard(root_id, active_only)

    async def query_breadcrumbs(self, node_id: int) -> list[NodeSnapshot] | None:
        return await self.cache.get_breadcrumbs(node_id)

    async def query_ancestors(self, node_id: int) -> list[NodeSnapshot] | None:
        return await self.cache.get_ancestors(node_id)

    async def query_descendants(self, node_id: int, active_only: bool = False) -> list[NodeSnapshot] | None:
        return await self.cache.get_descendants(node_id, active_only)

    async def query_children(self, node_id: int, active_only: bool = False) -> list[NodeSnapshot] | None:
        return await self.cache.get_children(node_id, active_only)

    async def query_depth_statistics(self) -> DepthStatistics:
        return await self.cache.get_depth_statistics()

    async def notify_mutation(
        self, node: NodeSnapshot, previous: NodeSnapshot | None = None, kind: MutationKind = MutationKind.UPDATED
    ) -> InvalidationScope | None:
        return await self.notifier.notify_mutation(node, previous, kind)

    async def flush(self, root_ids: list[int] | None = None, node_ids: list[int] | None = None) -> FlushJob:
        """
        Administrative flush, queued immediately without debouncing.

        ``node_ids`` evicts only the single-node entries of those nodes,
        ``root_ids`` their root shards, and neither evicts everything.
        """
        if node_ids:
            scope = InvalidationScope.single_keys(node_ids)
        elif root_ids:
            scope = InvalidationScope.root_shards(root_ids)
        else:
            scope = InvalidationScope.full()
        job = self.worker.new_job(scope)
        await self.worker.enqueue(job)
        logger.info(f"Manual flush job {job.id} queued for {scope.to_dict()}")
        return job

    async def warm_cache(
        self, active_only: bool = False, dry_run: bool = False, force: bool = False
    ) -> WarmCacheReport:
        """
        Pre-populate every cache entry the read path can ask for.

        Existing entries are read, not replaced, so warming twice without an
        intervening mutation leaves the cache unchanged and the second run
        sees only hits. ``force`` evicts every entry first so the whole cache is
        recomputed. With ``dry_run`` nothing is written or evicted: the report
        carries the number of entries a real run would produce.
        """
        start_time = time.perf_counter()
        mode = "active" if active_only else "all"

        with self.metrics.span("cache.warm", active_only=active_only, dry_run=dry_run, force=force) as span:
            if dry_run:
                forest = await self.cache.engine.build_tree(active_only)
                node_count = count_nodes(forest)
                report = WarmCacheReport(
                    active_only=active_only,
                    dry_run=True,
                    force=force,
                    elapsed_seconds=time.perf_counter() - start_time,
                    node_count=node_count,
                    root_count=len(forest),
                    entry_count=2 + len(forest) + node_count * ENTRIES_PER_NODE,
                )
                logger.info(f"Dry run: warming {mode} nodes would write {report.entry_count} cache entries")
                return report

            flushed = 0
            if force:
                flushed = await self.cache.forget_all()
                logger.info(f"Forced warm-up evicted {flushed} cache entries")

            reads: list[CacheRead] = []
            forest = await self.cache.get_tree(active_only, reads)
            for tree in forest:
                await self.cache.get_tree_shard(tree.id, active_only, reads)
                for node in tree.walk():
                    await self.cache.get_breadcrumbs(node.id, reads)
                    await self.cache.get_descendants(node.id, active_only, reads)
                    await self.cache.get_children(node.id, active_only, reads)
            await self.cache.get_depth_statistics(reads)

            hits = sum(1 for read in reads if read.hit)
            report = WarmCacheReport(
                active_only=active_only,
                dry_run=False,
                force=force,
                flushed=flushed,
                elapsed_seconds=time.perf_counter() - start_time,
                node_count=count_nodes(forest),
                root_count=len(forest),
                entry_count=len({read.key for read in reads}),
                hits=hits,
                misses=len(reads) - hits,
            )
            span.set_attributes(entries=report.entry_count, hits=report.hits, misses=report.misses)

        logger.info(
            f"Warmed {report.entry_count} cache entries for {mode} nodes in {report.elapsed_seconds:.3f}s "
            f"({report.hits} hits, {report.misses} misses)"
        )
        return report
