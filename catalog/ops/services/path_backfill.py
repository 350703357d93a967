import logging
import time
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog.ops.cache.tree_cache import TreeCache
from catalog.ops.entities.category_node import CategoryNode
from catalog.ops.services.tree_model import depth_of, rebuild_paths
from catalog.ops.stats.registry import MetricsRegistry

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 10_000


@dataclass(frozen=True)
class PathRepair:
    node_id: int
    old_path: str
    new_path: str
    old_depth: int
    new_depth: int


@dataclass
class BackfillReport:
    dry_run: bool
    chunk_size: int
    scanned: int
    elapsed_seconds: float
    repairs: list[PathRepair] = field(default_factory=list)
    unresolved: list[int] = field(default_factory=list)
    chunks: int = 0
    flushed: int = 0

    @property
    def repaired(self) -> int:
        return len(self.repairs)


class PathBackfill:
    """
    Rewrite stored ``path`` and ``depth`` from the ``parent_id`` links.

    Soft-deleted rows are repaired too, since restoring one must put it back
    at a correct path. Rows whose chain never reaches a root are reported and
    left untouched. Writes go out in chunks, one transaction each, and a real
    run that changed anything ends with a full cache flush.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], cache: TreeCache, metrics: MetricsRegistry):
        self.session_maker = session_maker
        self.cache = cache
        self.metrics = metrics

    async def plan(self) -> tuple[int, list[PathRepair], list[int]]:
        """Rows scanned, the repairs they need in id order, and the rows that cannot be placed."""
        stmt = select(CategoryNode.id, CategoryNode.parent_id, CategoryNode.path, CategoryNode.depth).order_by(
            CategoryNode.id
        )
        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).all()

        paths, unresolved = rebuild_paths((row.id, row.parent_id) for row in rows)
        repairs = []
        for row in rows:
            new_path = paths.get(row.id)
            if new_path is None:
                continue
            new_depth = depth_of(new_path)
            if row.path != new_path or row.depth != new_depth:
                repairs.append(PathRepair(row.id, row.path, new_path, row.depth, new_depth))
        return len(rows), repairs, unresolved

    async def _apply(self, chunk: list[PathRepair]) -> None:
        async with self.session_maker() as session:
            for repair in chunk:
                await session.execute(
                    update(CategoryNode)
                    .where(CategoryNode.id == repair.node_id)
                    .values(path=repair.new_path, depth=repair.new_depth)
                )
            await session.commit()

    async def run(self, chunk_size: int = 1000, dry_run: bool = False) -> BackfillReport:
        if not 1 <= chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(f"chunk size must be between 1 and {MAX_CHUNK_SIZE}, got {chunk_size}")

        start_time = time.perf_counter()
        with self.metrics.span("paths.backfill", chunk_size=chunk_size, dry_run=dry_run) as span:
            scanned, repairs, unresolved = await self.plan()
            report = BackfillReport(
                dry_run=dry_run,
                chunk_size=chunk_size,
                scanned=scanned,
                elapsed_seconds=0.0,
                repairs=repairs,
                unresolved=unresolved,
            )
            if unresolved:
                logger.warning(f"{len(unresolved)} node(s) have no parent chain to a root: {unresolved[:10]}")

            if not dry_run and repairs:
                for offset in range(0, len(repairs), chunk_size):
                    chunk = repairs[offset : offset + chunk_size]
                    await self._apply(chunk)
                    report.chunks += 1
                    logger.info(f"Repaired paths of {offset + len(chunk)}/{len(repairs)} node(s)")
                report.flushed = await self.cache.forget_all()

            report.elapsed_seconds = time.perf_counter() - start_time
            span.set_attributes(scanned=scanned, repaired=report.repaired, unresolved=len(unresolved))

        self.metrics.increment("path_repair_total", {"dry_run": str(dry_run).lower()}, report.repaired)
        verb = "would repair" if dry_run else "repaired"
        logger.info(
            f"Path backfill {verb} {report.repaired} of {scanned} node(s) in {report.elapsed_seconds:.3f}s"
        )
        return report
