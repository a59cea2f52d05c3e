from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import APIRouter
from fastapi.responses import JSONResponse

_log = logging.getLogger(__name__)


def _check_redis(container: Any) -> dict:
    redis_client = getattr(container, "redis_client", None)
    if redis_client is None:
        return {"status": "skipped", "reason": "no_client"}
    try:
        redis_client.ping()
        return {"status": "ok"}
    except Exception as exc:
        _log.warning("health: Redis ping failed", exc_info=True)
        return {"status": "error", "detail": str(exc)}


def _check_queue(container: Any) -> dict:
    try:
        backend = container.queue()
        return {"status": "ok" if backend.healthy() else "error", "backend": backend.name}
    except Exception as exc:
        _log.warning("health: queue backend check failed", exc_info=True)
        return {"status": "error", "detail": str(exc)}


def _check_model(container: Any) -> dict:
    if getattr(container, "model_client", None) is None:
        # Assessments still answer, but only with fallback results.
        return {"status": "degraded", "reason": "no_api_key"}
    return {"status": "ok"}


def register_health_routes(router: APIRouter, get_container: Callable[[], Any]) -> None:
    @router.get("/health")
    async def health():
        container = get_container()
        checks = {
            "redis": _check_redis(container),
            "queue": _check_queue(container),
            "model": _check_model(container),
        }
        failed = any(c.get("status") == "error" for c in checks.values())
        degraded = failed or any(c.get("status") == "degraded" for c in checks.values())
        payload = {
            "status": "degraded" if degraded else "ok",
            "checks": checks,
            "assessmentTypes": sorted(container.profiles),
        }
        return JSONResponse(content=payload, status_code=503 if failed else 200)
