from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog.config import Settings
from catalog.ops.cache.store import CacheStore
from catalog.ops.cache.tree_cache import TreeCache
from catalog.ops.invalidation.notifier import ChangeNotifier
from catalog.ops.invalidation.scheduler import DebounceScheduler
from catalog.ops.invalidation.worker import FlushWorker
from catalog.ops.services.catalog_service import CatalogService
from catalog.ops.services.node_store import NodeStore
from catalog.ops.services.tree_query import TreeQueryEngine
from catalog.ops.stats.registry import MetricsRegistry


@dataclass
class CatalogComponents:
    settings: Settings
    metrics: MetricsRegistry
    store: CacheStore
    node_store: NodeStore
    engine: TreeQueryEngine
    cache: TreeCache
    worker: FlushWorker
    scheduler: DebounceScheduler
    notifier: ChangeNotifier
    catalog_service: CatalogService


def build_components(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    store: CacheStore,
    lock_store: CacheStore | None = None,
    metrics: MetricsRegistry | None = None,
) -> CatalogComponents:
    """
    Wire the read path and the invalidation pipeline together.

    ``store`` holds cache entries; debounce locks go to ``lock_store``, which
    defaults to the same store.
    """
    metrics = metrics or MetricsRegistry()
    node_store = NodeStore(session_maker)
    engine = TreeQueryEngine(node_store)
    cache = TreeCache(store, engine, metrics, ttl_seconds=settings.cache_ttl_seconds)
    worker = FlushWorker(
        cache,
        metrics,
        concurrency=settings.flush_worker_concurrency,
        max_attempts=settings.flush_max_attempts,
        backoff_seconds=tuple(settings.flush_backoff_seconds),
        timeout_seconds=settings.flush_timeout_seconds,
    )
    scheduler = DebounceScheduler(
        lock_store or store, worker, metrics, window_seconds=settings.debounce_window_seconds
    )
    notifier = ChangeNotifier(engine, scheduler, metrics)
    return CatalogComponents(
        settings=settings,
        metrics=metrics,
        store=store,
        node_store=node_store,
        engine=engine,
        cache=cache,
        worker=worker,
        scheduler=scheduler,
        notifier=notifier,
        catalog_service=CatalogService(cache, notifier, worker, metrics),
    )
