import logging
from collections.abc import Iterable

from catalog.ops.errors import MalformedPathError
from catalog.ops.services.node_store import NodeStore
from catalog.ops.services.tree_model import (
    DepthStatistics,
    NodeSnapshot,
    TreeNodeView,
    descendant_prefix,
    root_id_of,
)

logger = logging.getLogger(__name__)

# Upper bound on parent hops when a path cannot be trusted
MAX_PARENT_WALK = 64


def assemble_forest(nodes: Iterable[NodeSnapshot]) -> list[TreeNodeView]:
    """
    Attach children to parents in position order.

    Algorithm:
    1. Sort by (depth, position, id), which puts every parent before its
       children and siblings in display order: O(n log n)
    2. Walk the sorted list once, appending each node to its parent's
       children: O(n)

    Nodes whose parent is not part of the input (filtered out as inactive)
    are dropped along with their own descendants.
    """
    ordered = sorted(nodes, key=lambda n: (n.depth, n.position, n.id))
    views: dict[int, TreeNodeView] = {}
    forest: list[TreeNodeView] = []

    for node in ordered:
        view = TreeNodeView(node=node)
        if node.parent_id is None:
            forest.append(view)
        elif node.parent_id in views:
            views[node.parent_id].children.append(view)
        else:
            # Detached: its parent was filtered out
            continue
        views[node.id] = view

    return forest


class TreeQueryEngine:
    """Read-only tree views computed from the node store."""

    def __init__(self, store: NodeStore):
        self.store = store

    async def build_tree(self, active_only: bool = False) -> list[TreeNodeView]:
        """Whole forest, roots and siblings in position order. Empty store gives []."""
        nodes = await self.store.load_all(active_only=active_only)
        forest = assemble_forest(nodes)
        logger.debug(f"Built forest of {len(forest)} trees from {len(nodes)} nodes (active_only={active_only})")
        return forest

    async def build_subtree(self, root_id: int, active_only: bool = False) -> TreeNodeView | None:
        """
        One root's tree. None when the id is unknown, not a root, deleted, or
        (with ``active_only``) inactive.
        """
        root = await self.store.get_by_id(root_id)
        if root is None or root.deleted or not root.is_root:
            return None
        if active_only and not root.active:
            return None

        descendants = await self.store.get_by_path_prefix(descendant_prefix(root.path), active_only=active_only)
        forest = assemble_forest([root, *descendants])
        return forest[0] if forest else None

    async def breadcrumbs(self, node_id: int) -> list[NodeSnapshot] | None:
        """
        Root-to-node chain, resolved from the node's path in one batched lookup.

        Returns None for an unknown id. A path that is malformed or references
        missing ancestors raises MalformedPathError: a wrong trail must not be
        silently shown.
        """
        node = await self.store.get_by_id(node_id)
        if node is None:
            return None

        path_ids = node.path_ids
        if path_ids[-1] != node.id:
            raise MalformedPathError(node.path, f"not ending with node id {node.id}")

        ancestor_ids = path_ids[:-1]
        found = await self.store.get_many(ancestor_ids)
        missing = [ancestor_id for ancestor_id in ancestor_ids if ancestor_id not in found]
        if missing:
            raise MalformedPathError(node.path, f"referencing missing ancestors {missing}")

        return [found[ancestor_id] for ancestor_id in ancestor_ids] + [node]

    async def ancestors(self, node_id: int) -> list[NodeSnapshot] | None:
        """Ancestors root first, excluding the node itself."""
        trail = await self.breadcrumbs(node_id)
        return trail[:-1] if trail is not None else None

    async def descendants(self, node_id: int, active_only: bool = False) -> list[NodeSnapshot] | None:
        """All live nodes below ``node_id``, shallowest first."""
        node = await self.store.get_by_id(node_id)
        if node is None:
            return None
        return await self.store.get_by_path_prefix(descendant_prefix(node.path), active_only=active_only)

    async def children(self, parent_id: int, active_only: bool = False) -> list[NodeSnapshot] | None:
        parent = await self.store.get_by_id(parent_id)
        if parent is None:
            return None
        return await self.store.get_children(parent_id, active_only=active_only)

    async def depth_statistics(self) -> DepthStatistics:
        count_by_depth: dict[int, int] = {}
        total = active = 0
        for depth, is_active, count in await self.store.depth_histogram():
            count_by_depth[depth] = count_by_depth.get(depth, 0) + count
            total += count
            if is_active:
                active += count

        return DepthStatistics(
            max_depth=max(count_by_depth) if count_by_depth else 0,
            count_by_depth=count_by_depth,
            total=total,
            active=active,
            root_count=count_by_depth.get(0, 0),
        )

    async def resolve_root_id(self, node_id: int) -> int | None:
        """
        Root ancestor of a stored node.

        The path's first segment is authoritative; if the path cannot be parsed
        the stored parent chain is walked instead. Returns None when the node
        or a link of its chain is missing.
        """
        node = await self.store.get_by_id(node_id)
        if node is None:
            return None
        try:
            return root_id_of(node.path)
        except MalformedPathError:
            logger.warning(f"Node {node_id} has malformed path {node.path!r}, walking parent chain")

        current = node
        for _ in range(MAX_PARENT_WALK):
            if current.parent_id is None:
                return current.id
            parent = await self.store.get_by_id(current.parent_id)
            if parent is None:
                return None
            current = parent
        return None
