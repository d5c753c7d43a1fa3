"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events for database and pricebook sync initialization,
and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.database import close_db, init_db, tenant_session_factory
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis, get_redis_pool
from src.app.core.tenant import TenantContext, TenantMiddleware
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.pricebook.repository import PostgresPricebookStore, list_active_tenants
from src.app.pricebook.scheduler import PricebookSyncScheduler
from src.app.pricebook.service import PricebookServiceRegistry

log = structlog.get_logger(__name__)


def _tenant_store(ctx: TenantContext) -> PostgresPricebookStore:
    return PostgresPricebookStore(tenant_session_factory(ctx))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and pricebook sync on startup."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Pricebook sync ──────────────────────────────────────────────────
    # A failure here leaves the API up; pricebook routes answer 503.
    app.state.pricebook_registry = None
    app.state.pricebook_scheduler = None
    try:
        registry = PricebookServiceRegistry(
            settings,
            store_factory=_tenant_store,
            tenant_source=list_active_tenants,
            redis_client=get_redis_pool(),
        )
        app.state.pricebook_registry = registry

        for ctx in await registry.active_tenants():
            recovered = await registry.get(ctx).recover_interrupted()
            if recovered:
                log.warning(
                    "pricebook.startup_recovered_jobs",
                    tenant_id=ctx.tenant_id,
                    count=len(recovered),
                )

        scheduler = PricebookSyncScheduler(registry, settings)
        scheduler.start()
        app.state.pricebook_scheduler = scheduler
        log.info("pricebook.initialized", provider=settings.PRICEBOOK_PROVIDER)
    except Exception as exc:
        log.warning("pricebook.init_failed", error=str(exc))

    yield

    # ── Shutdown ────────────────────────────────────────────────────────
    scheduler = getattr(app.state, "pricebook_scheduler", None)
    if scheduler is not None:
        scheduler.stop()

    registry = getattr(app.state, "pricebook_registry", None)
    if registry is not None:
        try:
            await registry.close()
        except Exception:
            log.warning("pricebook.registry_close_failed", exc_info=True)

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Pricebook Sync API",
        version="0.1.0",
        description="Multi-tenant CRM pricebook synchronization",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves tenant context from X-Tenant-ID)
    app.add_middleware(TenantMiddleware, redis_client=get_redis_pool())

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
