"""Pricebook sync persistence models -- tenant-scoped tables.

Six SQLAlchemy models using TenantBase for schema_translate_map isolation:
- MasterRecordModel: Canonical pricebook entity (MASTER)
- OverrideEntryModel: User-set field values pulls must not overwrite
- SyncJobModel: One row per sync run, doubles as the running-job lock
- SyncCursorModel: Last successful full/incremental run per entity type
- PendingSyncModel: Per-entity sync failures awaiting retry
- DuplicateDismissalModel: Duplicate pairs an operator marked as distinct

Referential integrity between records and their overrides is kept at the
application level (no FK constraint), matching the rest of the tenant schema.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import TenantBase


class MasterRecordModel(TenantBase):
    """Canonical local pricebook entity.

    ``external_id`` is unique per (tenant, entity_type) when set; PostgreSQL
    treats NULLs as distinct, so any number of local-only records may coexist.
    ``version`` backs optimistic concurrency for single-row writes.
    """

    __tablename__ = "pricebook_records"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "external_id",
            name="uq_pricebook_records_external",
        ),
        Index("ix_pricebook_records_type", "tenant_id", "entity_type"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fields: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    visible: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    overridden_fields: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json")
    )
    source: Mapped[str] = mapped_column(
        String(16), default="external", server_default=text("'external'")
    )
    version: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OverrideEntryModel(TenantBase):
    """User-set field value on a MasterRecord. One row per (record, field)."""

    __tablename__ = "pricebook_overrides"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_id",
            "field",
            name="uq_pricebook_overrides_field",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    field: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    set_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    set_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncJobModel(TenantBase):
    """One sync run.

    The partial unique index on (tenant_id, entity_type, scope_class) WHERE
    status = 'running' is the job-level lock: a second running job of the
    same class fails to insert.
    """

    __tablename__ = "pricebook_sync_jobs"
    __table_args__ = (
        Index(
            "uq_pricebook_sync_jobs_running",
            "tenant_id",
            "entity_type",
            "scope_class",
            unique=True,
            postgresql_where=text("status = 'running'"),
        ),
        Index("ix_pricebook_sync_jobs_started", "tenant_id", "started_at"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    scope: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_class: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default="queued", server_default=text("'queued'")
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    created: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    updated: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    unchanged: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    failed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))


class SyncCursorModel(TenantBase):
    """Watermarks for the incremental "modified since" filter."""

    __tablename__ = "pricebook_sync_cursors"
    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_type", name="uq_pricebook_sync_cursors_type"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    last_full_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_incremental_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class PendingSyncModel(TenantBase):
    """Per-entity sync failure: pending -> retrying -> resolved | dead_letter."""

    __tablename__ = "pricebook_pending_sync"
    __table_args__ = (
        Index("ix_pricebook_pending_due", "tenant_id", "status", "next_retry_at"),
        Index("ix_pricebook_pending_entity", "tenant_id", "entity_type", "action"),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    action: Mapped[str] = mapped_column(String(8), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default="pending", server_default=text("'pending'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DuplicateDismissalModel(TenantBase):
    """Candidate duplicate pair an operator reviewed and kept as distinct."""

    __tablename__ = "pricebook_duplicate_dismissals"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "first_id",
            "second_id",
            name="uq_pricebook_duplicate_dismissals_pair",
        ),
        {"schema": "tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    first_id: Mapped[str] = mapped_column(String(64), nullable=False)
    second_id: Mapped[str] = mapped_column(String(64), nullable=False)
    dismissed_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    dismissed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
