"""
FastAPI middleware for request ID injection.

Sets request_id in a contextvar so structlog processors include it in
every log entry, and echoes it back in the X-Request-Id response header.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from repartilo.core.structured_logging import request_id_var

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = request_id_var.set(req_id)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            logger.info(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": response.status_code if response else None,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            request_id_var.reset(token)

        response.headers["x-request-id"] = req_id
        return response
