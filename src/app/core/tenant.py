"""Tenant context propagation via Python contextvars.

The TenantContext is set by middleware at the start of each request and is
accessible anywhere in the call stack via get_current_tenant(). Tenant
sessions, tenant-prefixed Redis keys and metric labels are all scoped
through it. Scheduled work runs outside any request and passes its
TenantContext explicitly instead.
"""

from __future__ import annotations

import contextvars
import json
from dataclasses import asdict, dataclass

import redis.asyncio as aioredis
import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = structlog.get_logger(__name__)

TENANT_CACHE_TTL_SECONDS = 300

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str
    tenant_slug: str
    schema_name: str  # e.g., "tenant_acme"


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    _tenant_context.reset(token)


# ── Tenant Middleware ───────────────────────────────────────────────────────

# Path prefixes served without a tenant.
SKIP_TENANT_PATHS = ("/health", "/metrics", "/docs", "/openapi.json", "/redoc")

_LOOKUP_SQL = "SELECT id, slug, schema_name FROM shared.tenants WHERE id::text = :tid AND is_active = true"


def _lookup_key(tenant_id: str) -> str:
    return f"tenant:lookup:{tenant_id}"


class TenantMiddleware(BaseHTTPMiddleware):
    """Resolve X-Tenant-ID to a TenantContext for the duration of the request.

    Lookups hit Redis first and fall back to shared.tenants. Only active
    tenants resolve. A missing header is answered with 400 and an unknown
    tenant with 404, before any router runs.
    """

    def __init__(self, app, redis_client: aioredis.Redis | None = None):
        super().__init__(app)
        self._redis = redis_client

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path.startswith(SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_id = request.headers.get("X-Tenant-ID")
        if not tenant_id:
            return JSONResponse(status_code=400, content={"detail": "Missing X-Tenant-ID header"})

        ctx = await self._cached(tenant_id) or await self._load(tenant_id)
        if ctx is None:
            return JSONResponse(status_code=404, content={"detail": f"Tenant not found: {tenant_id}"})

        token = set_tenant_context(ctx)
        try:
            return await call_next(request)
        finally:
            reset_tenant_context(token)

    async def _cached(self, tenant_id: str) -> TenantContext | None:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(_lookup_key(tenant_id))
            return TenantContext(**json.loads(raw)) if raw else None
        except (aioredis.RedisError, ValueError, TypeError) as exc:
            logger.warning("tenant.cache_lookup_failed", tenant_id=tenant_id, error=str(exc))
            return None

    async def _load(self, tenant_id: str) -> TenantContext | None:
        # Deferred: core.database imports this module's context helpers.
        from sqlalchemy import text

        from src.app.core.database import get_engine

        async with get_engine().connect() as conn:
            row = (await conn.execute(text(_LOOKUP_SQL), {"tid": tenant_id})).first()
        if row is None:
            return None

        ctx = TenantContext(tenant_id=str(row.id), tenant_slug=row.slug, schema_name=row.schema_name)
        if self._redis is not None:
            try:
                await self._redis.set(_lookup_key(tenant_id), json.dumps(asdict(ctx)), ex=TENANT_CACHE_TTL_SECONDS)
            except aioredis.RedisError as exc:
                logger.warning("tenant.cache_set_failed", tenant_id=tenant_id, error=str(exc))
        return ctx
