from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    Used by load balancers and monitoring systems to determine service health.
    Also reports whether throttling is active and how many rules are loaded.

    Returns:
        dict: ``status`` set to "ok" plus a ``throttle`` summary.
    """

    throttle = getattr(request.app.state, "throttle", None)
    if throttle is None:
        return {"status": "ok", "throttle": {"enabled": False, "rules": 0}}

    return {
        "status": "ok",
        "throttle": {"enabled": throttle.enabled, "rules": len(throttle.rules)},
    }
