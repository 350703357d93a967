from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.ops.entities.category_node import CategoryNode
from catalog.ops.errors import (
    InvalidPositionsError,
    MalformedPathError,
    MaxDepthExceededError,
    NodeHasChildrenError,
    NodeNotFoundError,
    ParentDeletedError,
    ParentNotFoundError,
)
from catalog.ops.invalidation.mutations import (
    BulkChanged,
    Created,
    Deleted,
    ForceDeleted,
    Moved,
    Mutation,
    Reordered,
    Restored,
    Updated,
)
from catalog.ops.invalidation.notifier import ChangeNotifier
from catalog.ops.services.tree_model import (
    NodeSnapshot,
    build_path,
    dense_positions,
    depth_of,
    descendant_prefix,
    ensure_not_descendant,
    rebase_path,
    root_id_of,
)


@dataclass
class CreateNodeCommand:
    name: str
    parent_id: int | None = None
    active: bool = True


class TreeService:
    """
    Write path for category nodes.

    Every public method commits its own transaction and then reports exactly
    one mutation to the change notifier. Rejected operations raise before
    anything is written, so they never reach the notifier.
    """

    def __init__(self, session: AsyncSession, notifier: ChangeNotifier | None = None, max_depth: int = 10):
        self.session = session
        self.notifier = notifier
        self.max_depth = max_depth

    async def _notify(self, mutation: Mutation) -> None:
        if self.notifier is not None:
            await self.notifier.notify(mutation)

    async def _get(self, node_id: int, include_deleted: bool = False) -> CategoryNode:
        node = await self.session.get(CategoryNode, node_id)
        if node is None or (node.deleted_at is not None and not include_deleted):
            raise NodeNotFoundError(node_id)
        return node

    async def _get_parent(self, parent_id: int) -> CategoryNode:
        parent = await self.session.get(CategoryNode, parent_id)
        if parent is None:
            raise ParentNotFoundError(parent_id)
        return parent

    def _live_siblings_stmt(self, parent_id: int | None):
        stmt = select(CategoryNode).where(CategoryNode.deleted_at.is_(None))
        if parent_id is None:
            return stmt.where(CategoryNode.parent_id.is_(None))
        return stmt.where(CategoryNode.parent_id == parent_id)

    async def _live_siblings(self, parent_id: int | None) -> list[CategoryNode]:
        stmt = self._live_siblings_stmt(parent_id).order_by(CategoryNode.position, CategoryNode.id)
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def _get_next_position(self, parent_id: int | None) -> int:
        """Positions are dense, so the next one is the live sibling count plus one."""
        stmt = select(func.count()).select_from(self._live_siblings_stmt(parent_id).subquery())
        result = await self.session.execute(stmt)
        return result.scalar_one() + 1

    async def _resequence(self, parent_id: int | None) -> None:
        siblings = await self._live_siblings(parent_id)
        positions = dense_positions(s.id for s in siblings)
        for node in siblings:
            node.position = positions[node.id]

    async def _child_count(self, node_id: int, include_deleted: bool = False) -> int:
        stmt = select(func.count()).select_from(CategoryNode).where(CategoryNode.parent_id == node_id)
        if not include_deleted:
            stmt = stmt.where(CategoryNode.deleted_at.is_(None))
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def _subtree(self, path: str) -> list[CategoryNode]:
        stmt = select(CategoryNode).where(CategoryNode.path.startswith(descendant_prefix(path), autoescape=True))
        result = await self.session.execute(stmt)
        return list(result.scalars())

    def _check_depth(self, depth: int) -> None:
        if depth > self.max_depth:
            raise MaxDepthExceededError(depth, self.max_depth)

    async def create_node(self, command: CreateNodeCommand) -> NodeSnapshot:
        """Append a node as the last child of its parent (or the last root)."""
        async with self.session.begin():
            parent = None
            if command.parent_id is not None:
                parent = await self._get_parent(command.parent_id)
                if parent.deleted_at is not None:
                    raise ParentDeletedError(None, parent.id)
                self._check_depth(parent.depth + 1)

            node = CategoryNode(
                name=command.name,
                parent_id=command.parent_id,
                position=await self._get_next_position(command.parent_id),
                depth=parent.depth + 1 if parent else 0,
                path="",
                active=command.active,
            )
            self.session.add(node)
            # The path embeds the node's own id, known only after the insert
            await self.session.flush()
            node.path = build_path(parent.path if parent else None, node.id)

        created = NodeSnapshot.from_entity(node)
        await self._notify(Created(created))
        return created

    async def update_node(self, node_id: int, name: str | None = None, active: bool | None = None) -> NodeSnapshot:
        """Content or status edit. Re-parenting goes through ``move_node``."""
        async with self.session.begin():
            node = await self._get(node_id)
            previous = NodeSnapshot.from_entity(node)
            if name is not None:
                node.name = name
            if active is not None:
                node.active = active

        updated = NodeSnapshot.from_entity(node)
        if updated != previous:
            await self._notify(Updated(updated, previous))
        return updated

    async def move_node(self, node_id: int, new_parent_id: int | None) -> NodeSnapshot:
        """
        Re-parent a node with its whole subtree.

        The node is appended after the new parent's last child, its old
        siblings are re-sequenced, and every descendant path (soft-deleted
        ones included) is rebased onto the new path.
        """
        async with self.session.begin():
            node = await self._get(node_id)
            previous = NodeSnapshot.from_entity(node)
            if previous.parent_id == new_parent_id:
                return previous

            target = None
            if new_parent_id is not None:
                target = await self._get_parent(new_parent_id)
                if target.deleted_at is not None:
                    raise ParentDeletedError(node_id, new_parent_id)
            ensure_not_descendant(previous, NodeSnapshot.from_entity(target) if target else None)

            descendants = await self._subtree(node.path)
            new_depth = target.depth + 1 if target else 0
            deepest = max((d.depth for d in descendants), default=node.depth)
            self._check_depth(new_depth + deepest - node.depth)

            old_path = node.path
            new_path = build_path(target.path if target else None, node.id)
            for descendant in descendants:
                descendant.path = rebase_path(descendant.path, old_path, new_path)
                descendant.depth = depth_of(descendant.path)

            node.position = await self._get_next_position(new_parent_id)
            node.parent_id = new_parent_id
            node.path = new_path
            node.depth = new_depth
            await self.session.flush()
            await self._resequence(previous.parent_id)

        moved = NodeSnapshot.from_entity(node)
        await self._notify(Moved(moved, previous))
        return moved

    async def reorder(self, parent_id: int | None, ordered_ids: list[int]) -> list[NodeSnapshot]:
        """Rewrite sibling positions to 1..n following ``ordered_ids``."""
        async with self.session.begin():
            if parent_id is not None:
                await self._get(parent_id)
            siblings = await self._live_siblings(parent_id)
            if sorted(ordered_ids) != sorted(s.id for s in siblings) or len(set(ordered_ids)) != len(ordered_ids):
                raise InvalidPositionsError(
                    f"Reorder of children of {parent_id} must list each live child exactly once"
                )

            positions = dense_positions(ordered_ids)
            for sibling in siblings:
                sibling.position = positions[sibling.id]

        reordered = sorted((NodeSnapshot.from_entity(s) for s in siblings), key=lambda n: n.position)
        await self._notify(Reordered(parent_id, tuple(reordered)))
        return reordered

    async def delete_node(self, node_id: int) -> NodeSnapshot:
        """Soft delete. Rejected while the node has live children."""
        async with self.session.begin():
            node = await self._get(node_id)
            child_count = await self._child_count(node_id)
            if child_count:
                raise NodeHasChildrenError(node_id, child_count)

            node.deleted_at = datetime.now(timezone.utc)
            await self.session.flush()
            await self._resequence(node.parent_id)

        deleted = NodeSnapshot.from_entity(node)
        await self._notify(Deleted(deleted))
        return deleted

    async def restore_node(self, node_id: int) -> NodeSnapshot:
        """Bring a soft-deleted node back as the last child of its parent."""
        async with self.session.begin():
            node = await self._get(node_id, include_deleted=True)
            if node.deleted_at is None:
                return NodeSnapshot.from_entity(node)
            if node.parent_id is not None:
                parent = await self._get_parent(node.parent_id)
                if parent.deleted_at is not None:
                    raise ParentDeletedError(node_id, parent.id)

            node.position = await self._get_next_position(node.parent_id)
            node.deleted_at = None

        restored = NodeSnapshot.from_entity(node)
        await self._notify(Restored(restored))
        return restored

    async def force_delete_node(self, node_id: int) -> NodeSnapshot:
        """Remove the row. Rejected while any child row, deleted or not, references it."""
        async with self.session.begin():
            node = await self._get(node_id, include_deleted=True)
            child_count = await self._child_count(node_id, include_deleted=True)
            if child_count:
                raise NodeHasChildrenError(node_id, child_count)

            snapshot = NodeSnapshot.from_entity(node)
            await self.session.delete(node)
            await self.session.flush()
            if not snapshot.deleted:
                await self._resequence(snapshot.parent_id)

        await self._notify(ForceDeleted(snapshot))
        return snapshot

    async def batch_update_status(self, node_ids: list[int], active: bool) -> int:
        """
        Set ``active`` on many nodes at once.

        Affected roots are read from the nodes' paths; if any of them cannot
        be determined the change is reported without roots, forcing a full
        flush.
        """
        async with self.session.begin():
            result = await self.session.execute(
                select(CategoryNode).where(CategoryNode.id.in_(node_ids), CategoryNode.deleted_at.is_(None))
            )
            nodes = list(result.scalars())
            changed = [node for node in nodes if node.active != active]
            for node in changed:
                node.active = active

            root_ids: frozenset[int] | None
            try:
                root_ids = frozenset(root_id_of(node.path) for node in changed)
            except MalformedPathError:
                root_ids = None

        if changed:
            await self._notify(BulkChanged(frozenset(node.id for node in changed), root_ids))
        return len(changed)
