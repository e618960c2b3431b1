"""Application-level exception types.

This module defines domain errors used across the throttle configuration,
storage adapters and HTTP layer, enabling consistent error handling,
logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep the shape flexible while encouraging
    consistent keys across the codebase.
    """

    code: str
    message: str
    hint: str
    path: str
    key: str
    cache_class: str
    rule: str
    limit: int
    period: int
    retry_after: float
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when request input validation fails."""


class ConfigurationAppError(AppError):
    """Raised when the throttle configuration cannot be loaded or applied."""


class RateLimitedAppError(AppError):
    """Raised when a request exceeds a blocking throttle rule."""
