from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog.ops.entities.category_node import CategoryNode
from catalog.ops.services.tree_model import NodeSnapshot


class NodeStore:
    """
    Read side of the node table.

    Every call opens its own short-lived session so the store can be shared by
    request handlers, cache warmers and background workers alike. Results are
    returned as immutable snapshots, never as attached ORM instances.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get_by_id(self, node_id: int) -> NodeSnapshot | None:
        """Any stored node, soft-deleted ones included (they stay addressable for audit)."""
        async with self.session_maker() as session:
            node = await session.get(CategoryNode, node_id)
            return NodeSnapshot.from_entity(node) if node else None

    async def get_many(self, node_ids: Iterable[int]) -> dict[int, NodeSnapshot]:
        """Batched lookup keyed by id; unknown ids are simply absent from the result."""
        ids = set(node_ids)
        if not ids:
            return {}
        async with self.session_maker() as session:
            result = await session.execute(select(CategoryNode).where(CategoryNode.id.in_(ids)))
            return {node.id: NodeSnapshot.from_entity(node) for node in result.scalars()}

    async def get_children(self, parent_id: int | None, active_only: bool = False) -> list[NodeSnapshot]:
        stmt = select(CategoryNode).where(CategoryNode.deleted_at.is_(None))
        if parent_id is None:
            stmt = stmt.where(CategoryNode.parent_id.is_(None))
        else:
            stmt = stmt.where(CategoryNode.parent_id == parent_id)
        if active_only:
            stmt = stmt.where(CategoryNode.active.is_(True))
        stmt = stmt.order_by(CategoryNode.position, CategoryNode.id)

        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return [NodeSnapshot.from_entity(node) for node in result.scalars()]

    async def get_by_path_prefix(self, prefix: str, active_only: bool = False) -> list[NodeSnapshot]:
        """Live nodes whose path starts with ``prefix``, parents before children."""
        stmt = select(CategoryNode).where(
            CategoryNode.path.startswith(prefix, autoescape=True), CategoryNode.deleted_at.is_(None)
        )
        if active_only:
            stmt = stmt.where(CategoryNode.active.is_(True))
        stmt = stmt.order_by(CategoryNode.depth, CategoryNode.position, CategoryNode.id)

        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return [NodeSnapshot.from_entity(node) for node in result.scalars()]

    async def load_all(self, active_only: bool = False) -> list[NodeSnapshot]:
        """Every live node in one query; ordering is left to the caller."""
        stmt = select(CategoryNode).where(CategoryNode.deleted_at.is_(None))
        if active_only:
            stmt = stmt.where(CategoryNode.active.is_(True))

        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return [NodeSnapshot.from_entity(node) for node in result.scalars()]

    async def depth_histogram(self) -> list[tuple[int, bool, int]]:
        """(depth, active, count) rows over live nodes, one aggregation query."""
        stmt = (
            select(CategoryNode.depth, CategoryNode.active, func.count())
            .where(CategoryNode.deleted_at.is_(None))
            .group_by(CategoryNode.depth, CategoryNode.active)
        )
        async with self.session_maker() as session:
            result = await session.execute(stmt)
            return [(int(depth), bool(active), int(count)) for depth, active, count in result.all()]
