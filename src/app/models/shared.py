"""Shared schema models.

Only the tenant registry lives in the shared schema. Request middleware
resolves X-Tenant-ID against it, and the sync scheduler enumerates the
active rows to fan out scheduled runs.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, String, func, text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import SharedBase

# Key in Tenant.config that opts a tenant out of scheduled pricebook syncs.
PRICEBOOK_SYNC_CONFIG_KEY = "pricebook_sync_enabled"


class Tenant(SharedBase):
    """A tenant whose pricebook is mirrored into its own schema.

    ``schema_name`` is substituted for the "tenant" placeholder schema via
    schema_translate_map. Inactive tenants, and tenants whose config sets
    ``pricebook_sync_enabled`` to false, are skipped by scheduled syncs;
    the latter can still be synced on demand through the API.
    """

    __tablename__ = "tenants"
    __table_args__ = (
        Index("ix_tenants_active_slug", "slug", postgresql_where=text("is_active")),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    schema_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )

    @property
    def pricebook_sync_enabled(self) -> bool:
        return bool((self.config or {}).get(PRICEBOOK_SYNC_CONFIG_KEY, True))
