"""Factory functions for counter storage and rate limiter instances."""

from __future__ import annotations

import logging
from importlib import import_module

import limits.storage
from limits.storage import MemoryStorage, Storage

from throttleguard.adapters.rate_limit.limits_backend import LimitsRateLimiter
from throttleguard.core.errors import ConfigurationAppError
from throttleguard.core.throttle_config import CacheConfig, ThrottleConfig

logger = logging.getLogger(__name__)


def resolve_storage_class(class_name: str) -> type:
    """Import a storage class by name.

    Accepts a dotted path (``limits.storage.RedisStorage``, ``pkg.mod:Cls``)
    or a bare class name exported by ``limits.storage``.

    Raises:
        ConfigurationAppError: If the class cannot be imported.
    """
    if ":" in class_name:
        module_path, _, attr = class_name.partition(":")
    elif "." in class_name:
        module_path, _, attr = class_name.rpartition(".")
    else:
        module_path, attr = limits.storage.__name__, class_name

    try:
        module = import_module(module_path)
        storage_class = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationAppError(
            code="cache_class_not_found",
            message=f"Cannot resolve cache class '{class_name}'",
            details={"cache_class": class_name},
        ) from exc

    if not isinstance(storage_class, type):
        raise ConfigurationAppError(
            code="cache_class_invalid",
            message=f"Cache class '{class_name}' is not a class",
            details={"cache_class": class_name},
        )
    return storage_class


def create_cache_store(cache_config: CacheConfig | None) -> Storage:
    """Build the counter storage described by the ``cache`` section.

    Args:
        cache_config: Parsed cache section, or None for in-process memory.

    Returns:
        A ``limits`` storage instance.

    Raises:
        ConfigurationAppError: If the class is unknown or not a storage.
    """
    if cache_config is None:
        return MemoryStorage()

    storage_class = resolve_storage_class(cache_config.class_name)

    # Keyword arguments are only passed when configured.
    if cache_config.named_params:
        store = storage_class(*cache_config.params, **cache_config.named_params)
    else:
        store = storage_class(*cache_config.params)

    if not isinstance(store, Storage):
        raise ConfigurationAppError(
            code="cache_class_invalid",
            message=f"Cache class '{cache_config.class_name}' is not a limits storage",
            details={"cache_class": cache_config.class_name},
        )

    logger.info(
        "throttle.cache_configured",
        extra={
            "cache_class": cache_config.class_name,
            "positional_count": len(cache_config.params),
            "keyword_names": sorted(cache_config.named_params),
        },
    )
    return store


def create_rate_limiter(config: ThrottleConfig, storage: Storage) -> LimitsRateLimiter | None:
    """Build the limiter shared by all throttle rules.

    Returns:
        The limiter, or None when no limit/period is configured.

    Raises:
        ConfigurationAppError: If the strategy name is unknown.
    """
    if config.limit is None or config.period is None:
        return None

    try:
        return LimitsRateLimiter(
            storage=storage,
            limit=config.limit,
            period_seconds=config.period,
            strategy=config.strategy,
        )
    except ValueError as exc:
        raise ConfigurationAppError(
            code="throttle_strategy_invalid",
            message=str(exc),
            details={"limit": config.limit, "period": config.period},
        ) from exc
