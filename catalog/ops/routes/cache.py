from fastapi import APIRouter, Depends, HTTPException, Request, status

from catalog.ops.dependencies import get_catalog_service
from catalog.ops.errors import CacheBackendUnavailableError
from catalog.ops.schemas import FlushRequest, WarmCacheRequest
from catalog.ops.services.catalog_service import CatalogService

router = APIRouter()


@router.post("/warm")
async def warm_cache(request: WarmCacheRequest | None = None, service: CatalogService = Depends(get_catalog_service)):
    """Pre-populate the tree cache. With dryRun only the entry count is reported."""
    request = request or WarmCacheRequest()
    report = await service.warm_cache(active_only=request.activeOnly, dry_run=request.dryRun, force=request.force)
    return report.to_dict()


@router.post("/flush", status_code=status.HTTP_202_ACCEPTED)
async def flush_cache(request: FlushRequest | None = None, service: CatalogService = Depends(get_catalog_service)):
    """Queue an immediate flush of single-node entries, root shards, or everything."""
    request = request or FlushRequest()
    if request.rootIds and request.nodeIds:
        raise HTTPException(status_code=422, detail="Pass either rootIds or nodeIds, not both")
    job = await service.flush(request.rootIds, request.nodeIds)
    return job.to_dict()


@router.get("/info")
async def cache_info(request: Request, service: CatalogService = Depends(get_catalog_service)):
    settings = request.app.state.settings
    try:
        cached_entries = len(await service.cache.cached_keys())
    except CacheBackendUnavailableError:
        cached_entries = None
    return {
        **service.cache.info(),
        "key_prefix": settings.redis_key_prefix,
        "debounce_window_seconds": settings.debounce_window_seconds,
        "cached_entries": cached_entries,
        "worker_running": service.worker.running,
    }


@router.get("/jobs")
async def list_flush_jobs(service: CatalogService = Depends(get_catalog_service)):
    """Most recent flush jobs, newest first."""
    return [job.to_dict() for job in reversed(service.worker.recent_jobs)]
