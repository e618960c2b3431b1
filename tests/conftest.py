"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets TESTING so no .env file is loaded, and provides helpers for
building throttle configs and small FastAPI apps around them.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"
os.environ.pop("THROTTLE_CONFIG", None)
os.environ.pop("TRUSTED_PROXIES", None)

from typing import Any, Callable

import pytest
import yaml
from fastapi import FastAPI, Request

from throttleguard.core.config import AppSettings
from throttleguard.core.exception_handlers import setup_exception_handlers
from throttleguard.core.throttle_config import ThrottleConfig, parse_throttle_config


class FixedClientMiddleware:
    """ASGI middleware that pins the peer address seen by inner layers."""

    def __init__(self, app, host: str) -> None:
        self.app = app
        self.host = host

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            scope["client"] = (self.host, 50000)
        await self.app(scope, receive, send)


BASE_THROTTLE: dict[str, Any] = {
    "enabled": True,
    "limit": 2,
    "period": 60,
    "protected_paths": ["/signin", {"path": "/signup", "methods": ["post", "put"]}],
    "discriminators": [{"name": "ip", "property": [["ip"]]}],
    "params_discriminators": [
        {
            "name": "email",
            "property": [
                {"paths": ["/signin"], "property": ["session", "email"]},
                {"paths": ["/signup"], "property": ["user", "email"]},
            ],
        }
    ],
    "trusted_ips": ["192.0.2.10", "10.20.0.0/16"],
    "tracks_log_level": "info",
    "safelist_log_level": "debug",
}


@pytest.fixture
def throttle_dict() -> dict[str, Any]:
    """A fresh copy of the base throttle mapping for each test."""
    return yaml.safe_load(yaml.safe_dump(BASE_THROTTLE))


@pytest.fixture
def make_config() -> Callable[..., ThrottleConfig]:
    def _make(**overrides: Any) -> ThrottleConfig:
        data = yaml.safe_load(yaml.safe_dump(BASE_THROTTLE))
        data.update(overrides)
        return parse_throttle_config({"throttle": data})

    return _make


@pytest.fixture
def write_config(tmp_path) -> Callable[[dict[str, Any]], str]:
    """Write a throttle mapping to a YAML file and return its path."""

    def _write(throttle: dict[str, Any]) -> str:
        path = tmp_path / "throttle.yml"
        path.write_text(yaml.safe_dump({"throttle": throttle}), encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def make_app() -> Callable[..., FastAPI]:
    """Build a FastAPI app with sign-in style routes behind the throttle."""

    from throttleguard.core.app_factory import install_throttle

    def _make(
        config: ThrottleConfig,
        *,
        client_host: str = "203.0.113.5",
        **settings_overrides: Any,
    ) -> FastAPI:
        app = FastAPI()

        @app.post("/signin")
        async def signin(request: Request) -> dict:
            return {
                "ok": True,
                "matched": getattr(request.state, "throttle_matched", None),
                "discriminator": getattr(request.state, "throttle_match_discriminator", None),
            }

        @app.post("/signup")
        async def signup() -> dict:
            return {"ok": True}

        @app.get("/signin")
        async def signin_form() -> dict:
            return {"ok": True}

        @app.get("/whoami")
        async def whoami(request: Request) -> dict:
            return {"ip": request.client.host if request.client else None}

        setup_exception_handlers(app)
        install_throttle(app, config, app_settings=AppSettings(**settings_overrides))
        app.add_middleware(FixedClientMiddleware, host=client_host)
        return app

    return _make
