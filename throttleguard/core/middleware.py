"""HTTP middleware for request correlation and throttling.

Two middlewares live here:

- ``request_id_middleware`` accepts an incoming X-Request-ID header (or
  generates a UUID), stores it in contextvars for log correlation and echoes
  it back together with the request duration.
- ``create_throttle_middleware`` builds a middleware bound to a ``Throttle``.
  It evaluates the safelist and track rules for each request, records the
  match on ``request.state`` and answers 429 when a blocking rule trips.

Usage:
    app.middleware("http")(create_throttle_middleware(throttle))
    app.middleware("http")(request_id_middleware)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from throttleguard.core.config import settings
from throttleguard.core.errors import RateLimitedAppError
from throttleguard.core.exception_handlers import build_error_content
from throttleguard.core.logging import clear_request_id, set_request_id
from throttleguard.core.throttle import Throttle, ThrottleDecision, ThrottleRequest

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    If the client provides an X-Request-ID header (configurable via
    LOG_REQUEST_ID_HEADER), that value is used. Otherwise, a new UUID is
    generated. The ID is propagated back in the response headers and stored
    in contextvars for log correlation.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The response from the next handler with request_id and
            duration headers added.
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


def _record_decision(request: Request, decision: ThrottleDecision) -> None:
    request.state.throttle_safelisted = decision.safelisted
    if decision.matches:
        first = decision.matches[0]
        request.state.throttle_matched = first.rule
        request.state.throttle_match_discriminator = first.discriminator


def _rate_limited_response(decision: ThrottleDecision) -> JSONResponse:
    first = decision.matches[0]
    retry_after = decision.retry_after or 0
    error = RateLimitedAppError(
        code="rate_limited",
        message="Too many requests. Try again later.",
        details={"rule": first.rule, "retry_after": retry_after},
    )
    return JSONResponse(
        status_code=429,
        content={"error": build_error_content(error)},
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(first.result.limit),
            "X-RateLimit-Remaining": str(first.result.remaining),
            "X-RateLimit-Reset": str(first.result.reset_at),
        },
    )


def create_throttle_middleware(throttle: Throttle) -> Callable[[Request, CallNext], Awaitable[Response]]:
    """Build an HTTP middleware that applies throttle rules.

    Request bodies are only read for protected paths, and only when a
    params discriminator is configured.

    Args:
        throttle: Configured Throttle instance.

    Returns:
        Middleware coroutine suitable for ``app.middleware("http")``.
    """

    async def throttle_middleware(request: Request, call_next: CallNext) -> Response:
        if not throttle.enabled:
            return await call_next(request)

        throttle_request = await ThrottleRequest.from_request(request)
        if throttle.needs_params and throttle.is_protected_path(throttle_request):
            throttle_request = await ThrottleRequest.from_request(request, include_body=True)

        decision = throttle.check(throttle_request)
        _record_decision(request, decision)

        if decision.blocked:
            logger.warning(
                "throttle.blocked",
                extra={
                    "rules": [m.rule for m in decision.matches],
                    "ip": throttle_request.ip,
                    "path": throttle_request.path,
                    "retry_after_s": decision.retry_after,
                },
            )
            return _rate_limited_response(decision)

        return await call_next(request)

    return throttle_middleware
