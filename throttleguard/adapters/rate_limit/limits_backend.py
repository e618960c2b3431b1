"""Rate limiter backed by the ``limits`` library.

Counting and expiry are handled by ``limits`` strategies on top of a
``limits.storage.Storage``. Memory storage is per-process; use a shared
backend (e.g. Redis) when running several workers.
"""

from __future__ import annotations

import math
import time
from typing import Callable

from limits import RateLimitItemPerSecond
from limits.storage import Storage
from limits.strategies import STRATEGIES

from throttleguard.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult


class LimitsRateLimiter(AbstractRateLimiter):
    """Allow ``limit`` units per ``period_seconds`` for each key."""

    def __init__(
        self,
        *,
        storage: Storage,
        limit: int,
        period_seconds: int,
        strategy: str = "fixed-window",
        namespace: str = "throttleguard",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            storage: Counter storage instance.
            limit: Maximum number of allowed units per window.
            period_seconds: Size of the window in seconds.
            strategy: Name of a ``limits`` strategy.
            namespace: Prefix for storage keys.
            clock: Time source used to compute Retry-After.

        Raises:
            ValueError: If limit, period_seconds or strategy are invalid.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if period_seconds < 1:
            raise ValueError("period_seconds must be >= 1")
        if strategy not in STRATEGIES:
            raise ValueError(
                f"unknown strategy {strategy!r}; expected one of {sorted(STRATEGIES)}"
            )

        self._storage = storage
        self._limit = limit
        self._period_seconds = period_seconds
        self._item = RateLimitItemPerSecond(limit, period_seconds, namespace=namespace)
        self._strategy = STRATEGIES[strategy](storage)
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def period_seconds(self) -> int:
        return self._period_seconds

    @property
    def storage(self) -> Storage:
        return self._storage

    def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Record a hit for key and report the window state.

        Raises:
            ValueError: If key is empty or cost is invalid.
        """
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if not key:
            raise ValueError("key must be a non-empty string")

        allowed = self._strategy.hit(self._item, key, cost=cost)
        stats = self._strategy.get_window_stats(self._item, key)
        reset_at = int(math.ceil(stats.reset_time))

        retry_after = None
        if not allowed:
            retry_after = max(0, int(math.ceil(stats.reset_time - self._clock())))

        return RateLimitResult(
            allowed=allowed,
            limit=self._limit,
            remaining=max(0, stats.remaining),
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    def reset(self) -> None:
        self._storage.reset()
