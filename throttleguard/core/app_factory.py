"""Application factory for FastAPI app.

Centralizes app construction (logging, throttle, middleware, handlers,
routers) so tests and host applications can build instances with their own
throttle configuration.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from throttleguard.api.routes import health_router
from throttleguard.core.config import AppSettings, settings
from throttleguard.core.exception_handlers import setup_exception_handlers
from throttleguard.core.logging import configure_logging
from throttleguard.core.middleware import create_throttle_middleware, request_id_middleware
from throttleguard.core.throttle import Throttle
from throttleguard.core.throttle_config import ThrottleConfig, load_throttle_config

logger = logging.getLogger(__name__)


def install_throttle(
    app: FastAPI,
    config: ThrottleConfig | None = None,
    *,
    app_settings: AppSettings | None = None,
) -> Throttle:
    """Register the throttle middleware (and proxy trust) on an app.

    Middleware added later wraps earlier middleware, so the request id is
    set before throttling runs and proxy headers are resolved before both.

    Args:
        app: FastAPI application to protect.
        config: Throttle config; loaded from YAML when omitted.
        app_settings: Overrides the global app settings (mostly for tests).

    Returns:
        The Throttle instance, also stored on ``app.state.throttle``.
    """
    cfg = app_settings or settings.app
    throttle_config = config or load_throttle_config(cfg.throttle_config)
    throttle = Throttle.from_config(throttle_config, url_root=cfg.relative_url_root)

    app.middleware("http")(create_throttle_middleware(throttle))
    app.middleware("http")(request_id_middleware)

    trusted_proxies = cfg.trusted_proxy_list
    if trusted_proxies:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=trusted_proxies)
        logger.info("proxy_headers.enabled", extra={"trusted_proxies": trusted_proxies})

    app.state.throttle = throttle
    return throttle


def create_app(
    throttle_config: ThrottleConfig | None = None,
    *,
    app_settings: AppSettings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        throttle_config: Optional pre-built throttle config.
        app_settings: Optional app settings override.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    cfg = app_settings or settings.app
    app = FastAPI(
        title="Throttleguard",
        description=(
            "Request throttling and IP safelisting driven by a YAML file: "
            "protected paths, request attribute and parameter discriminators, "
            "a shared limit/period and trusted IPs."
        ),
        version="0.1.0",
        debug=cfg.debug,
    )

    install_throttle(app, throttle_config, app_settings=cfg)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)

    return app
