"""Exception handlers returning the shared ``{"error": {...}}`` body.

Domain errors map to 400 (validation), 429 (rate limited) or 500
(configuration). Anything else is answered with a generic 500 that does not
expose the exception text.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from throttleguard.core.errors import (
    AppError,
    ConfigurationAppError,
    RateLimitedAppError,
)
from throttleguard.core.logging import get_request_id

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[AppError], int], ...] = (
    (RateLimitedAppError, 429),
    (ConfigurationAppError, 500),
)


def error_status_code(exc: AppError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def build_error_content(exc: AppError) -> dict:
    """Build the ``error`` object used by handlers and the throttle middleware."""
    content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        content["details"] = exc.details
    return content


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    status_code = error_status_code(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    headers = None
    if isinstance(exc, RateLimitedAppError) and exc.details and "retry_after" in exc.details:
        headers = {"Retry-After": str(int(exc.details["retry_after"]))}

    return JSONResponse(
        status_code=status_code,
        content={"error": build_error_content(exc)},
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for unexpected errors; details go to the log, not the client."""
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register the domain handler and the generic fallback on ``app``."""
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
