"""
Request timing middleware.

Assigns a request id, records request duration and logs slow or failing
requests. Adds X-Request-ID and X-Request-Duration-Ms headers to responses.
"""

import logging
import time
import uuid

from fastapi import FastAPI, Request

from .config import settings

logger = logging.getLogger(__name__)

# Endpoints excluded from timing logs (high frequency, low value)
_SKIP_LOG = frozenset({"/api/v1/system/health"})


def init_request_timing(app: FastAPI) -> None:
    """Register the timing middleware on the app."""

    @app.middleware("http")
    async def _time_request(request: Request, call_next):
        request.state.request_start = time.perf_counter()
        request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

        response = await call_next(request)

        duration_ms = (time.perf_counter() - request.state.request_start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = request.state.request_id

        if request.url.path not in _SKIP_LOG:
            extra = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "request_id": request.state.request_id,
            }
            if duration_ms > settings.SLOW_REQUEST_THRESHOLD_MS:
                logger.warning("Slow request: %s %s %d (%.0fms)",
                               request.method, request.url.path,
                               response.status_code, duration_ms, extra=extra)
            elif response.status_code >= 500:
                logger.error("Server error: %s %s %d (%.0fms)",
                             request.method, request.url.path,
                             response.status_code, duration_ms, extra=extra)
            else:
                logger.debug("Request: %s %s %d (%.0fms)",
                             request.method, request.url.path,
                             response.status_code, duration_ms, extra=extra)
        return response
