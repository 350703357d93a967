from fastapi import APIRouter, HTTPException, Request

from catalog.ops.cache.redis_service import RedisService
from catalog.ops.stats.collector import MetricsSession, compute_statistics
from catalog.ops.stats.registry import MetricsRegistry

router = APIRouter()


def _redis(request: Request) -> RedisService:
    redis_service: RedisService = request.app.state.redis_service
    if not redis_service.connected:
        raise HTTPException(status_code=503, detail="Redis not available")
    return redis_service


@router.post("/start")
async def start_stats_session(request: Request):
    """Start a new metrics collection session."""
    redis_service = _redis(request)
    metrics_registry: MetricsRegistry = request.app.state.metrics

    # Clear previous session if exists
    if metrics_registry.current_session:
        await metrics_registry.current_session.clear()

    metrics_registry.current_session = MetricsSession(redis_client=redis_service.client)

    return {
        "session_id": metrics_registry.current_session.id,
        "status": "started",
    }


@router.post("/stop")
async def stop_stats_session(request: Request):
    """Stop the current metrics collection session."""
    metrics_registry: MetricsRegistry = request.app.state.metrics
    if not metrics_registry.current_session:
        raise HTTPException(status_code=400, detail="No active session")

    session_id = metrics_registry.current_session.id
    metrics_registry.current_session = None
    metrics_registry.drain_pending()

    return {
        "session_id": session_id,
        "status": "stopped",
    }


@router.get("/results/{session_id}")
async def get_stats_results(session_id: str, request: Request):
    """Get results for a specific session."""
    redis_service = _redis(request)

    session = MetricsSession(session_id=session_id, redis_client=redis_service.client)
    metrics = await session.get_metrics()

    if not metrics:
        raise HTTPException(status_code=404, detail="Session not found or no data")

    return {
        "session_id": session_id,
        "metrics": metrics,
        "statistics": compute_statistics(metrics),
        "total_metrics": len(metrics),
    }


@router.delete("/session/{session_id}")
async def clear_session(session_id: str, request: Request):
    """Clear all data for a session."""
    redis_service = _redis(request)

    session = MetricsSession(session_id=session_id, redis_client=redis_service.client)
    deleted = await session.clear()

    return {
        "session_id": session_id,
        "deleted_keys": deleted,
    }


@router.get("/metrics")
async def get_metrics_snapshot(request: Request):
    """In-process counters, histogram percentiles and the latest spans."""
    return request.app.state.metrics.snapshot()
