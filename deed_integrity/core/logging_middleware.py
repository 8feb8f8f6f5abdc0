"""
Request Logging Middleware for Deed Integrity.

Logs each API request with its request ID and duration, and echoes the
request ID back so error bodies and logs can be correlated.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("deed_integrity.requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Structured request/response logging. Probe endpoints are skipped."""

    EXCLUDE_PATHS = {"/healthz", "/readyz"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in self.EXCLUDE_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        start_time = time.perf_counter()
        log_data = {"request_id": request_id, "method": request.method, "path": path}

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        log_data.update({"status_code": response.status_code, "duration_ms": round(duration_ms, 2)})

        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "Request completed: %s %s -> %d (%.2fms)",
            request.method, path, response.status_code, duration_ms,
            extra=log_data,
        )

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response
