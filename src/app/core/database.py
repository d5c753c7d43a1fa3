"""Async SQLAlchemy engine with per-tenant schema isolation.

Pricebook tables live in one schema per tenant. Models declare the
placeholder schema "tenant", and every tenant session remaps it with
schema_translate_map and sets ``app.current_tenant_id`` for the RLS
policies created by the migrations.

Provides:
- SharedBase / TenantBase declarative bases
- get_shared_session(): session on the shared schema (tenant registry)
- get_tenant_session(): tenant-scoped session
- tenant_session_factory(): zero-argument session factory bound to one
  tenant, for stores used by scheduled work outside any request
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

from sqlalchemy import MetaData, event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings
from src.app.core.tenant import TenantContext, get_current_tenant

SHARED_SCHEMA = "shared"
TENANT_SCHEMA_PLACEHOLDER = "tenant"

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
        )

        # Session variables (the RLS tenant id in particular) must not
        # survive into the next checkout.
        @event.listens_for(_engine.sync_engine, "checkout")
        def reset_session_state(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("RESET ALL")
            cursor.close()

    return _engine


# ── Declarative Bases ───────────────────────────────────────────────────────


class SharedBase(DeclarativeBase):
    """Base for the shared tenant registry."""

    metadata = MetaData(schema=SHARED_SCHEMA)


class TenantBase(DeclarativeBase):
    """Base for pricebook tables, remapped per tenant at connection time."""

    metadata = MetaData(schema=TENANT_SCHEMA_PLACEHOLDER)


# ── Session Factories ───────────────────────────────────────────────────────


async def get_shared_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


async def get_tenant_session(tenant: TenantContext | None = None) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session scoped to one tenant's schema and RLS context.

    Args:
        tenant: Tenant to scope to. Defaults to the request's tenant
            context; scheduled jobs have none and must pass it.
    """
    tenant = tenant or get_current_tenant()

    async with get_engine().connect() as conn:
        conn = await conn.execution_options(
            schema_translate_map={TENANT_SCHEMA_PLACEHOLDER: tenant.schema_name}
        )
        await conn.execute(
            text("SELECT set_config('app.current_tenant_id', :tenant_id, false)"),
            {"tenant_id": tenant.tenant_id},
        )
        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            yield session


def tenant_session_factory(tenant: TenantContext) -> Callable[[], AsyncGenerator[AsyncSession, None]]:
    """Bind get_tenant_session to a tenant for PostgresPricebookStore."""

    def factory() -> AsyncGenerator[AsyncSession, None]:
        return get_tenant_session(tenant)

    return factory


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create the shared schema and tenant registry if missing.

    Tenant schemas are created by ``alembic -x schema=<name>`` instead.
    """
    # Registers shared.tenants on SharedBase.metadata
    import src.app.models.shared  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {SHARED_SCHEMA}"))
        await conn.run_sync(SharedBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
