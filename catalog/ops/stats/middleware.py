import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


class MetricsMiddleware(BaseHTTPMiddleware):
    """Ship request, process and buffered cache metrics to the active session."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        metrics_registry = request.app.state.metrics
        session = metrics_registry.current_session
        if not session:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        metrics = [
            metrics_registry.collector.create_request_metric(
                endpoint=request.url.path, method=request.method, duration_seconds=duration, status=response.status_code
            ),
            *metrics_registry.collector.collect_process_metrics(),
            *metrics_registry.drain_pending(),
        ]

        await session.record_batch(metrics)

        return response
