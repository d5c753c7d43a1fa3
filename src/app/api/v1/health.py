"""Health check endpoints.

Liveness (/health) touches nothing external. Readiness (/health/ready)
and startup (/health/startup) also check the database, Redis and the
pricebook sync subsystem (registry built, scheduler running).

These are process health checks. Pricebook data health lives under
/pricebook/health.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness: the process is up."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_database() -> str | None:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return str(exc)
    return None


async def _check_redis() -> str | None:
    try:
        if not await get_redis_pool().ping():
            return "PING did not return PONG"
    except Exception as exc:
        return str(exc)
    return None


def _check_pricebook(request: Request) -> str | None:
    if getattr(request.app.state, "pricebook_registry", None) is None:
        return "pricebook sync not initialized"
    scheduler = getattr(request.app.state, "pricebook_scheduler", None)
    if get_settings().SCHEDULER_ENABLED and (scheduler is None or not scheduler.running):
        return "sync scheduler not running"
    return None


async def _check_dependencies(request: Request) -> tuple[bool, dict[str, Any]]:
    """Run every check. Returns (healthy, checks)."""
    errors = {
        "database": await _check_database(),
        "redis": await _check_redis(),
        "pricebook": _check_pricebook(request),
    }
    checks: dict[str, Any] = {}
    for name, error in errors.items():
        checks[name] = "ok" if error is None else "error"
        if error is not None:
            checks[f"{name}_error"] = error
            logger.warning("health.check_failed", check=name, error=error)
    return all(e is None for e in errors.values()), checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness: 200 when every check passes, 503 otherwise."""
    healthy, checks = await _check_dependencies(request)
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )


@router.get("/health/startup")
async def startup_check(request: Request):
    """Startup: same checks as readiness, polled with a longer deadline at boot."""
    healthy, checks = await _check_dependencies(request)
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "started" if healthy else "starting", "checks": checks},
    )
