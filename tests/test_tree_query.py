from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog.ops.entities.category_node import CategoryNode
from catalog.ops.errors import MalformedPathError
from catalog.ops.services.node_store import NodeStore
from catalog.ops.services.tree_query import TreeQueryEngine
from tests.factories.category_node import CategoryNodeFactory


@pytest.fixture
def engine(session_maker: async_sessionmaker[AsyncSession]) -> TreeQueryEngine:
    return TreeQueryEngine(NodeStore(session_maker))


@pytest.fixture
async def catalog_tree(db_session: AsyncSession) -> dict[str, CategoryNode]:
    """
    Electronics (1)            Books (5, inactive)
      ├── Phones (2)             └── Novels (6)
      │     └── Cases (4)
      └── Laptops (3, inactive)
    and Phones' soft-deleted sibling Retired (7).
    """
    electronics = CategoryNodeFactory.root(id=1, name="Electronics", position=1)
    books = CategoryNodeFactory.root(id=5, name="Books", position=2, active=False)
    phones = CategoryNodeFactory.child_of(electronics, id=2, name="Phones", position=1)
    laptops = CategoryNodeFactory.child_of(electronics, id=3, name="Laptops", position=2, active=False)
    cases = CategoryNodeFactory.child_of(phones, id=4, name="Cases", position=1)
    novels = CategoryNodeFactory.child_of(books, id=6, name="Novels", position=1)
    retired = CategoryNodeFactory.child_of(
        electronics, id=7, name="Retired", position=3, deleted_at=datetime.now(timezone.utc)
    )
    nodes = [electronics, books, phones, laptops, cases, novels, retired]
    await CategoryNodeFactory.persist(db_session, *nodes)
    return {node.name: node for node in nodes}


async def test_empty_forest(engine: TreeQueryEngine):
    assert await engine.build_tree() == []
    assert await engine.build_tree(active_only=True) == []
    stats = await engine.depth_statistics()
    assert stats.max_depth == 0 and stats.count_by_depth == {} and stats.total == 0


async def test_build_tree_orders_by_position(engine: TreeQueryEngine, catalog_tree):
    forest = await engine.build_tree()

    assert [tree.id for tree in forest] == [1, 5]
    electronics = forest[0]
    assert [child.id for child in electronics.children] == [2, 3]
    assert [child.id for child in electronics.children[0].children] == [4]


async def test_build_tree_excludes_deleted_and_inactive(engine: TreeQueryEngine, catalog_tree):
    everything = [node.id for tree in await engine.build_tree() for node in tree.walk()]
    assert 7 not in everything

    active = await engine.build_tree(active_only=True)
    assert [tree.id for tree in active] == [1]
    assert [node.id for node in active[0].walk()] == [1, 2, 4]


async def test_build_tree_keeps_sibling_order_after_reorder(
    engine: TreeQueryEngine, db_session: AsyncSession, catalog_tree
):
    catalog_tree["Phones"].position = 2
    catalog_tree["Laptops"].position = 1
    await db_session.commit()

    forest = await engine.build_tree()
    assert [child.node.name for child in forest[0].children] == ["Laptops", "Phones"]


async def test_subtree_of_a_single_root(engine: TreeQueryEngine, catalog_tree):
    shard = await engine.build_subtree(1)
    assert [node.id for node in shard.walk()] == [1, 2, 4, 3]

    assert await engine.build_subtree(2) is None  # not a root
    assert await engine.build_subtree(999) is None
    assert await engine.build_subtree(5, active_only=True) is None


async def test_breadcrumbs_root_to_target(engine: TreeQueryEngine, catalog_tree):
    trail = await engine.breadcrumbs(4)
    assert [node.name for node in trail] == ["Electronics", "Phones", "Cases"]

    assert [node.id for node in await engine.ancestors(4)] == [1, 2]
    assert await engine.ancestors(1) == []


async def test_unknown_node_is_absent_not_an_error(engine: TreeQueryEngine, catalog_tree):
    assert await engine.breadcrumbs(999) is None
    assert await engine.ancestors(999) is None
    assert await engine.descendants(999) is None
    assert await engine.children(999) is None
    assert await engine.resolve_root_id(999) is None


async def test_breadcrumbs_with_corrupt_path_raise(engine: TreeQueryEngine, db_session: AsyncSession, catalog_tree):
    catalog_tree["Cases"].path = "/1/99/4"
    await db_session.commit()

    with pytest.raises(MalformedPathError):
        await engine.breadcrumbs(4)

    catalog_tree["Cases"].path = "1-2-4"
    await db_session.commit()

    with pytest.raises(MalformedPathError):
        await engine.breadcrumbs(4)


async def test_descendants_match_whole_segments(engine: TreeQueryEngine, db_session: AsyncSession, catalog_tree):
    # /10 shares the "/1" text prefix with root 1 but is not under it
    await CategoryNodeFactory.create_root(db_session, id=10, name="Garden", position=3, commit=True)

    descendants = await engine.descendants(1)
    assert [node.id for node in descendants] == [2, 3, 4]
    assert [node.id for node in await engine.descendants(1, active_only=True)] == [2, 4]
    assert await engine.descendants(4) == []


async def test_children_are_ordered_and_live(engine: TreeQueryEngine, catalog_tree):
    assert [node.id for node in await engine.children(1)] == [2, 3]
    assert [node.id for node in await engine.children(1, active_only=True)] == [2]


async def test_depth_statistics(engine: TreeQueryEngine, catalog_tree):
    stats = await engine.depth_statistics()

    assert stats.max_depth == 2
    assert stats.count_by_depth == {0: 2, 1: 3, 2: 1}
    assert stats.total == 6
    assert stats.active == 4
    assert stats.root_count == 2


async def test_resolve_root_walks_parents_when_path_is_corrupt(
    engine: TreeQueryEngine, db_session: AsyncSession, catalog_tree
):
    assert await engine.resolve_root_id(4) == 1

    catalog_tree["Cases"].path = "garbage"
    await db_session.commit()
    assert await engine.resolve_root_id(4) == 1
