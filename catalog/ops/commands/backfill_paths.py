"""Rebuild stored category paths and depths from the parent links."""

import argparse
import asyncio

from rich.console import Console
from rich.table import Table

from catalog.config import get_settings
from catalog.lib.db.session import async_session_maker, engine
from catalog.ops.cache.redis_service import RedisService
from catalog.ops.services.path_backfill import MAX_CHUNK_SIZE, BackfillReport, PathBackfill
from catalog.ops.wiring import build_components

SAMPLE_SIZE = 8


def chunk_size(value: str) -> int:
    size = int(value)
    if not 1 <= size <= MAX_CHUNK_SIZE:
        raise argparse.ArgumentTypeError(f"must be between 1 and {MAX_CHUNK_SIZE}")
    return size


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="catalog-backfill-paths", description=__doc__)
    parser.add_argument("--chunk", type=chunk_size, default=1000, help="rows updated per transaction")
    parser.add_argument("--dry-run", action="store_true", help="list the repairs without writing them")
    return parser.parse_args(argv)


def render_report(report: BackfillReport) -> Table:
    table = Table(title="Path Backfill" + (" (dry run)" if report.dry_run else ""))

    table.add_column("Scanned", justify="right")
    table.add_column("Repaired", justify="right")
    table.add_column("Unresolved", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Evicted", justify="right")
    table.add_column("Elapsed", justify="right")

    unresolved_style = "red" if report.unresolved else "green"
    table.add_row(
        str(report.scanned),
        str(report.repaired),
        f"[{unresolved_style}]{len(report.unresolved)}[/{unresolved_style}]",
        "-" if report.dry_run else str(report.chunks),
        "-" if report.dry_run else str(report.flushed),
        f"{report.elapsed_seconds * 1000:.1f}ms",
    )
    return table


def render_repairs(report: BackfillReport) -> Table:
    table = Table(title=f"First {min(SAMPLE_SIZE, report.repaired)} of {report.repaired} repairs")

    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Path")
    table.add_column("Depth", justify="right")

    for repair in report.repairs[:SAMPLE_SIZE]:
        table.add_row(
            str(repair.node_id),
            f"{repair.old_path or '(empty)'} -> {repair.new_path}",
            f"{repair.old_depth} -> {repair.new_depth}",
        )
    return table


async def run(chunk: int, dry_run: bool, console: Console) -> BackfillReport:
    settings = get_settings()
    redis_service = RedisService(settings.redis_url, settings.redis_key_prefix)
    await redis_service.connect()
    try:
        components = build_components(settings, async_session_maker, redis_service.cache_store())
        backfill = PathBackfill(async_session_maker, components.cache, components.metrics)
        report = await backfill.run(chunk_size=chunk, dry_run=dry_run)

        console.print(render_report(report))
        if report.repairs:
            console.print(render_repairs(report))
        if report.unresolved:
            console.print(f"[red]No path to a root for nodes {report.unresolved[:SAMPLE_SIZE]}[/red]")
        return report
    finally:
        await redis_service.close()
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    report = asyncio.run(run(args.chunk, args.dry_run, Console()))
    if report.unresolved:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
