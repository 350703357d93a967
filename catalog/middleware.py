import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


def _trace_id_from(traceparent: str | None) -> str | None:
    """Trace id of an inbound W3C ``traceparent`` header, if well formed."""
    if not traceparent:
        return None
    parts = traceparent.split("-")
    if len(parts) != 4 or len(parts[1]) != 32:
        return None
    return parts[1]


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Use W3C Trace Context format, continuing the caller's trace if any
        trace_id = _trace_id_from(request.headers.get("traceparent")) or uuid.uuid4().hex
        span_id = uuid.uuid4().hex[:16]
        traceparent = f"00-{trace_id}-{span_id}-01"

        request.state.trace_id = trace_id
        request.state.span_id = span_id

        response = await call_next(request)
        response.headers["traceparent"] = traceparent
        return response


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        response = await call_next(request)

        # Use Server-Timing header (RFC 8673)
        process_time_ms = (time.perf_counter() - start_time) * 1000
        response.headers["server-timing"] = f"total;dur={process_time_ms:.2f}"
        return response
