"""Warm the category tree cache from the command line."""

import argparse
import asyncio

from rich.console import Console
from rich.table import Table

from catalog.config import get_settings
from catalog.lib.db.session import async_session_maker, engine
from catalog.ops.cache.redis_service import RedisService
from catalog.ops.services.catalog_service import WarmCacheReport
from catalog.ops.wiring import build_components


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="catalog-warm-cache", description=__doc__)
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--active", dest="active_only", action="store_true", help="warm active nodes only")
    scope.add_argument("--all", dest="active_only", action="store_false", help="warm every node (default)")
    parser.add_argument("--dry-run", action="store_true", help="report what would be cached without writing")
    parser.add_argument("--force", action="store_true", help="evict the whole tree cache before warming")
    parser.set_defaults(active_only=False)
    return parser.parse_args(argv)


def render_report(report: WarmCacheReport, backend: str) -> Table:
    title = "Cache Warm-up" + (" (forced)" if report.force else "") + (" (dry run)" if report.dry_run else "")
    table = Table(title=title)

    table.add_column("Mode", style="cyan")
    table.add_column("Backend")
    table.add_column("Roots", justify="right")
    table.add_column("Nodes", justify="right")
    table.add_column("Evicted", justify="right")
    table.add_column("Entries", justify="right")
    table.add_column("Hits", justify="right")
    table.add_column("Misses", justify="right")
    table.add_column("Elapsed", justify="right")

    hit_style = "green" if report.hit_ratio >= 0.9 else "yellow" if report.hit_ratio > 0 else "white"
    table.add_row(
        "active" if report.active_only else "all",
        backend,
        str(report.root_count),
        str(report.node_count),
        "-" if report.dry_run else str(report.flushed),
        str(report.entry_count),
        "-" if report.dry_run else f"[{hit_style}]{report.hits}[/{hit_style}]",
        "-" if report.dry_run else str(report.misses),
        f"{report.elapsed_seconds * 1000:.1f}ms",
    )
    return table


async def run(active_only: bool, dry_run: bool, console: Console, force: bool = False) -> WarmCacheReport:
    settings = get_settings()
    redis_service = RedisService(settings.redis_url, settings.redis_key_prefix)
    await redis_service.connect()
    try:
        if not redis_service.connected:
            console.print("[yellow]REDIS_URL not set: warming a throwaway in-process cache[/yellow]")
        store = redis_service.cache_store()

        components = build_components(settings, async_session_maker, store)
        report = await components.catalog_service.warm_cache(active_only=active_only, dry_run=dry_run, force=force)
        console.print(render_report(report, store.backend))
        return report
    finally:
        await redis_service.close()
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    asyncio.run(run(args.active_only, args.dry_run, Console(), force=args.force))


if __name__ == "__main__":
    main()
