from __future__ import annotations

from throttleguard.api.routes.health import router as health_router

__all__ = ["health_router"]
