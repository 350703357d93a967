import logging
from typing import Protocol

from catalog.ops.errors import MalformedPathError
from catalog.ops.invalidation.mutations import (
    BulkChanged,
    Created,
    Deleted,
    ForceDeleted,
    Moved,
    Mutation,
    MutationKind,
    Reordered,
    Restored,
    Updated,
    mutation_for,
)
from catalog.ops.invalidation.scope import InvalidationScope
from catalog.ops.invalidation.scheduler import DebounceScheduler
from catalog.ops.services.tree_model import NodeSnapshot, root_id_of
from catalog.ops.stats.registry import MetricsRegistry

logger = logging.getLogger(__name__)


class RootResolver(Protocol):
    async def resolve_root_id(self, node_id: int) -> int | None: ...


class ChangeNotifier:
    """
    Turns one committed node mutation into an invalidation scope and hands it
    to the debounce scheduler.

    The write path calls ``notify`` after every commit. Nothing raised in here
    reaches the caller: a failed scope computation or scheduling attempt is
    logged and the cache is left to expire on its own TTL.
    """

    def __init__(self, resolver: RootResolver, scheduler: DebounceScheduler, metrics: MetricsRegistry):
        self.resolver = resolver
        self.scheduler = scheduler
        self.metrics = metrics

    async def root_of(self, node: NodeSnapshot) -> int | None:
        """
        Root ancestor from the first path segment, falling back to the stored
        parent chain when the snapshot's path cannot be parsed.
        """
        try:
            return root_id_of(node.path)
        except MalformedPathError:
            if node.parent_id is None:
                return node.id
            return await self.resolver.resolve_root_id(node.parent_id)

    async def _shard_scope(self, nodes: list[NodeSnapshot]) -> InvalidationScope:
        roots = set()
        for node in nodes:
            root_id = await self.root_of(node)
            if root_id is None:
                logger.warning(f"Root ancestor of node {node.id} unresolved, falling back to full flush")
                return InvalidationScope.full(node.id for node in nodes)
            roots.add(root_id)
        return InvalidationScope.root_shards(roots, {node.id for node in nodes})

    async def scope_for(self, mutation: Mutation) -> InvalidationScope:
        if isinstance(mutation, Moved):
            # Both the shard the node left and the one it joined are stale
            return await self._shard_scope([mutation.previous, mutation.node])

        if isinstance(mutation, (Deleted, ForceDeleted)):
            if mutation.node.is_root:
                return InvalidationScope.full([mutation.node.id])
            return await self._shard_scope([mutation.node])

        if isinstance(mutation, (Created, Updated, Restored)):
            return await self._shard_scope([mutation.node])

        if isinstance(mutation, Reordered):
            if not mutation.nodes:
                return InvalidationScope.full()
            return await self._shard_scope(list(mutation.nodes))

        if isinstance(mutation, BulkChanged):
            if mutation.root_ids is None:
                return InvalidationScope.full(mutation.node_ids)
            return InvalidationScope.root_shards(mutation.root_ids, mutation.node_ids)

        raise TypeError(f"Unsupported mutation {type(mutation).__name__}")

    async def notify(self, mutation: Mutation) -> InvalidationScope | None:
        """Compute the scope and schedule its flush. Returns None if that failed."""
        kind = type(mutation).__name__
        try:
            scope = await self.scope_for(mutation)
            await self.scheduler.schedule(scope)
        except Exception:
            logger.exception(f"Cache invalidation for {kind} mutation failed; entries will expire by TTL")
            self.metrics.increment("notifier_error_total", {"mutation": kind})
            return None

        self.metrics.increment("mutation_total", {"mutation": kind, "mode": scope.mode.value})
        logger.debug(f"{kind} mutation scoped to {scope.to_dict()}")
        return scope

    async def notify_mutation(
        self, node: NodeSnapshot, previous: NodeSnapshot | None = None, kind: MutationKind = MutationKind.UPDATED
    ) -> InvalidationScope | None:
        """Single entry point for callers that only know the kind of change."""
        try:
            mutation = mutation_for(kind, node, previous)
        except ValueError:
            logger.exception(f"Cannot classify {kind.value} mutation of node {node.id}; flushing everything")
            return await self.notify(BulkChanged(frozenset([node.id])))
        return await self.notify(mutation)
