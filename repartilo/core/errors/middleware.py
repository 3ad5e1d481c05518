"""
Error handler — renders RepartiloError as the JSON error body the dashboard
shows.

The body comes from the registry entry: its message template is filled from
the error's public context ("You have used 10 of 10 optimizations ...") and
only those public fields are returned. The internal ``detail`` and every
other context key are logged, never sent. Codes missing from the registry
become a generic 500.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from repartilo.core.errors import LimitExceeded, RepartiloError
from repartilo.core.errors.registry import error_registry

logger = logging.getLogger(__name__)

UNREGISTERED_BODY = {
    "title": "Internal error",
    "message": "An unexpected error occurred.",
    "retryable": False,
    "user_action_required": False,
    "remediation": [],
}


async def repartilo_error_handler(request: Request, exc: RepartiloError) -> JSONResponse:
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error(
            "unregistered_error_code",
            extra={"error.code": exc.code, "error.message": exc.detail, "http.path": request.url.path},
        )
        return JSONResponse(status_code=500, content={"error": {"code": exc.code, **UNREGISTERED_BODY}})

    log_extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message": exc.detail,
        "http.path": request.url.path,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }
    if isinstance(exc, LimitExceeded):
        log_extra["quota.reason"] = exc.reason
    logger.log(entry.log_level, entry.title, extra=log_extra)

    return JSONResponse(status_code=entry.http_status, content={"error": entry.to_body(exc.context)})
