"""PostgreSQL pricebook store -- async persistence for MASTER, jobs and the
pending-sync queue.

Provides PostgresPricebookStore with the session_factory callable pattern:
each method opens a session, does one unit of work and commits. MASTER
writes are single-row and version-checked; there are no cross-entity
transactions. All methods take tenant_id as first argument.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import get_shared_session
from src.app.core.tenant import TenantContext
from src.app.models.shared import Tenant
from src.app.pricebook.errors import ConflictError, EntityNotFound, JobAlreadyRunning
from src.app.pricebook.models import (
    DuplicateDismissalModel,
    MasterRecordModel,
    OverrideEntryModel,
    PendingSyncModel,
    SyncCursorModel,
    SyncJobModel,
)
from src.app.pricebook.schemas import (
    EntityType,
    JobStatus,
    MasterRecord,
    OverrideEntry,
    PendingAction,
    PendingCounts,
    PendingFilter,
    PendingStatus,
    PendingSyncEntry,
    RecordSource,
    SyncCursor,
    SyncJob,
    SyncScope,
    scope_class_for,
    utcnow,
)
from src.app.pricebook.store import PricebookStore

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


# ── Serialization Helpers ───────────────────────────────────────────────────


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _model_to_record(model: MasterRecordModel) -> MasterRecord:
    """Convert MasterRecordModel to MasterRecord schema."""
    return MasterRecord(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        entity_type=EntityType(model.entity_type),
        external_id=model.external_id,
        fields=model.fields or {},
        visible=model.visible,
        overridden_fields=set(model.overridden_fields or []),
        source=RecordSource(model.source),
        version=model.version,
        created_at=model.created_at,
        updated_at=model.updated_at,
        deleted_at=model.deleted_at,
    )


def _model_to_override(model: OverrideEntryModel) -> OverrideEntry:
    return OverrideEntry(
        entity_id=str(model.entity_id),
        field=model.field,
        value=model.value,
        set_by=model.set_by,
        set_at=model.set_at,
    )


def _model_to_job(model: SyncJobModel) -> SyncJob:
    """Convert SyncJobModel to SyncJob schema."""
    return SyncJob(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        entity_type=EntityType(model.entity_type),
        scope=SyncScope(model.scope),
        status=JobStatus(model.status),
        started_at=model.started_at,
        finished_at=model.finished_at,
        error_summary=model.error_summary,
        processed=model.processed or 0,
        created=model.created or 0,
        updated=model.updated or 0,
        unchanged=model.unchanged or 0,
        failed=model.failed or 0,
    )


def _model_to_pending(model: PendingSyncModel) -> PendingSyncEntry:
    """Convert PendingSyncModel to PendingSyncEntry schema."""
    return PendingSyncEntry(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        entity_type=EntityType(model.entity_type),
        entity_id=model.entity_id,
        external_id=model.external_id,
        action=PendingAction(model.action),
        attempts=model.attempts,
        last_error=model.last_error,
        next_retry_at=model.next_retry_at,
        status=PendingStatus(model.status),
        created_at=model.created_at,
        updated_at=model.updated_at,
        resolved_at=model.resolved_at,
    )


def _pair(first_id: str, second_id: str) -> tuple[str, str]:
    return (first_id, second_id) if first_id <= second_id else (second_id, first_id)


# ── Store ───────────────────────────────────────────────────────────────────


class PostgresPricebookStore(PricebookStore):
    """PricebookStore backed by the tenant's PostgreSQL schema.

    Args:
        session_factory: Async callable that yields tenant-scoped AsyncSession
            instances (schema_translate_map already applied).
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Records ─────────────────────────────────────────────────────────

    async def get_record(self, tenant_id: str, record_id: str) -> MasterRecord | None:
        record_uuid = _as_uuid(record_id)
        if record_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(MasterRecordModel).where(
                MasterRecordModel.tenant_id == uuid.UUID(tenant_id),
                MasterRecordModel.id == record_uuid,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_record(model) if model else None

    async def get_record_by_external_id(
        self,
        tenant_id: str,
        entity_type: EntityType,
        external_id: str,
    ) -> MasterRecord | None:
        async for session in self._session_factory():
            stmt = select(MasterRecordModel).where(
                MasterRecordModel.tenant_id == uuid.UUID(tenant_id),
                MasterRecordModel.entity_type == entity_type.value,
                MasterRecordModel.external_id == external_id,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_record(model) if model else None

    async def list_records(
        self,
        tenant_id: str,
        entity_type: EntityType | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[MasterRecord]:
        async for session in self._session_factory():
            stmt = select(MasterRecordModel).where(
                MasterRecordModel.tenant_id == uuid.UUID(tenant_id),
            )
            if entity_type is not None:
                stmt = stmt.where(MasterRecordModel.entity_type == entity_type.value)
            if not include_deleted:
                stmt = stmt.where(MasterRecordModel.deleted_at.is_(None))
            result = await session.execute(stmt.order_by(MasterRecordModel.created_at))
            return [_model_to_record(m) for m in result.scalars().all()]

    async def create_record(
        self,
        tenant_id: str,
        entity_type: EntityType,
        fields: dict[str, Any],
        *,
        external_id: str | None = None,
        source: RecordSource = RecordSource.EXTERNAL,
    ) -> MasterRecord:
        async for session in self._session_factory():
            now = utcnow()
            model = MasterRecordModel(
                tenant_id=uuid.UUID(tenant_id),
                entity_type=entity_type.value,
                external_id=external_id,
                fields=fields,
                visible=True,
                overridden_fields=[],
                source=source.value,
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(f"{entity_type.value}:{external_id}", 0) from exc
            await session.refresh(model)
            return _model_to_record(model)

    async def update_record(
        self,
        tenant_id: str,
        record: MasterRecord,
        *,
        expected_version: int,
    ) -> MasterRecord:
        record_uuid = _as_uuid(record.id)
        if record_uuid is None:
            raise EntityNotFound(record.id)

        async for session in self._session_factory():
            stmt = (
                update(MasterRecordModel)
                .where(
                    MasterRecordModel.tenant_id == uuid.UUID(tenant_id),
                    MasterRecordModel.id == record_uuid,
                    MasterRecordModel.version == expected_version,
                )
                .values(
                    external_id=record.external_id,
                    fields=record.fields,
                    visible=record.visible,
                    overridden_fields=sorted(record.overridden_fields),
                    source=record.source.value,
                    deleted_at=record.deleted_at,
                    version=expected_version + 1,
                    updated_at=utcnow(),
                )
                .returning(MasterRecordModel)
                .execution_options(synchronize_session=False)
            )
            try:
                model = (await session.execute(stmt)).scalar_one_or_none()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(record.id, expected_version) from exc

            if model is None:
                await session.rollback()
                current = await session.execute(
                    select(MasterRecordModel.version).where(
                        MasterRecordModel.tenant_id == uuid.UUID(tenant_id),
                        MasterRecordModel.id == record_uuid,
                    )
                )
                actual = current.scalar_one_or_none()
                if actual is None:
                    raise EntityNotFound(record.id)
                raise ConflictError(record.id, expected_version, actual)

            await session.commit()
            return _model_to_record(model)

    # ── Overrides ───────────────────────────────────────────────────────

    async def upsert_override(self, tenant_id: str, entry: OverrideEntry) -> OverrideEntry:
        async for session in self._session_factory():
            stmt = pg_insert(OverrideEntryModel).values(
                tenant_id=uuid.UUID(tenant_id),
                entity_id=uuid.UUID(entry.entity_id),
                field=entry.field,
                value=entry.value,
                set_by=entry.set_by,
                set_at=entry.set_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "entity_id", "field"],
                set_={
                    "value": stmt.excluded.value,
                    "set_by": stmt.excluded.set_by,
                    "set_at": stmt.excluded.set_at,
                },
            )
            await session.execute(stmt)
            await session.commit()
            return entry

    async def delete_override(self, tenant_id: str, entity_id: str, field: str) -> bool:
        entity_uuid = _as_uuid(entity_id)
        if entity_uuid is None:
            return False
        async for session in self._session_factory():
            stmt = select(OverrideEntryModel).where(
                OverrideEntryModel.tenant_id == uuid.UUID(tenant_id),
                OverrideEntryModel.entity_id == entity_uuid,
                OverrideEntryModel.field == field,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return False
            await session.delete(model)
            await session.commit()
            return True

    async def list_overrides(self, tenant_id: str, entity_id: str) -> list[OverrideEntry]:
        entity_uuid = _as_uuid(entity_id)
        if entity_uuid is None:
            return []
        async for session in self._session_factory():
            stmt = select(OverrideEntryModel).where(
                OverrideEntryModel.tenant_id == uuid.UUID(tenant_id),
                OverrideEntryModel.entity_id == entity_uuid,
            )
            result = await session.execute(stmt.order_by(OverrideEntryModel.field))
            return [_model_to_override(m) for m in result.scalars().all()]

    # ── Jobs ────────────────────────────────────────────────────────────

    async def start_job(self, tenant_id: str, entity_type: EntityType, scope: SyncScope) -> SyncJob:
        scope_class = scope_class_for(scope)
        async for session in self._session_factory():
            model = SyncJobModel(
                tenant_id=uuid.UUID(tenant_id),
                entity_type=entity_type.value,
                scope=scope.value,
                scope_class=scope_class.value,
                status=JobStatus.RUNNING.value,
                started_at=utcnow(),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                running = await session.execute(
                    select(SyncJobModel.id).where(
                        SyncJobModel.tenant_id == uuid.UUID(tenant_id),
                        SyncJobModel.entity_type == entity_type.value,
                        SyncJobModel.scope_class == scope_class.value,
                        SyncJobModel.status == JobStatus.RUNNING.value,
                    )
                )
                job_id = running.scalar_one_or_none()
                raise JobAlreadyRunning(
                    entity_type.value,
                    scope_class.value,
                    str(job_id) if job_id else None,
                ) from exc
            await session.refresh(model)
            return _model_to_job(model)

    async def finish_job(
        self,
        tenant_id: str,
        job_id: str,
        status: JobStatus,
        *,
        error_summary: str | None = None,
        counts: dict[str, int] | None = None,
    ) -> SyncJob:
        async for session in self._session_factory():
            stmt = select(SyncJobModel).where(
                SyncJobModel.tenant_id == uuid.UUID(tenant_id),
                SyncJobModel.id == uuid.UUID(job_id),
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                raise EntityNotFound(job_id)
            model.status = status.value
            model.finished_at = utcnow()
            model.error_summary = error_summary
            for key, value in (counts or {}).items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_job(model)

    async def get_job(self, tenant_id: str, job_id: str) -> SyncJob | None:
        job_uuid = _as_uuid(job_id)
        if job_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(SyncJobModel).where(
                SyncJobModel.tenant_id == uuid.UUID(tenant_id),
                SyncJobModel.id == job_uuid,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_job(model) if model else None

    async def list_jobs(
        self,
        tenant_id: str,
        entity_type: EntityType | None = None,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        async for session in self._session_factory():
            stmt = select(SyncJobModel).where(SyncJobModel.tenant_id == uuid.UUID(tenant_id))
            if entity_type is not None:
                stmt = stmt.where(SyncJobModel.entity_type == entity_type.value)
            if status is not None:
                stmt = stmt.where(SyncJobModel.status == status.value)
            stmt = stmt.order_by(SyncJobModel.started_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_job(m) for m in result.scalars().all()]

    async def get_cursor(self, tenant_id: str, entity_type: EntityType) -> SyncCursor:
        async for session in self._session_factory():
            stmt = select(SyncCursorModel).where(
                SyncCursorModel.tenant_id == uuid.UUID(tenant_id),
                SyncCursorModel.entity_type == entity_type.value,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return SyncCursor(entity_type=entity_type)
            return SyncCursor(
                entity_type=entity_type,
                last_full_sync_at=model.last_full_sync_at,
                last_incremental_sync_at=model.last_incremental_sync_at,
            )

    async def save_cursor(self, tenant_id: str, cursor: SyncCursor) -> None:
        async for session in self._session_factory():
            stmt = pg_insert(SyncCursorModel).values(
                tenant_id=uuid.UUID(tenant_id),
                entity_type=cursor.entity_type.value,
                last_full_sync_at=cursor.last_full_sync_at,
                last_incremental_sync_at=cursor.last_incremental_sync_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["tenant_id", "entity_type"],
                set_={
                    "last_full_sync_at": stmt.excluded.last_full_sync_at,
                    "last_incremental_sync_at": stmt.excluded.last_incremental_sync_at,
                },
            )
            await session.execute(stmt)
            await session.commit()

    # ── Pending-Sync Queue ──────────────────────────────────────────────

    async def get_pending(self, tenant_id: str, entry_id: str) -> PendingSyncEntry | None:
        entry_uuid = _as_uuid(entry_id)
        if entry_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(PendingSyncModel).where(
                PendingSyncModel.tenant_id == uuid.UUID(tenant_id),
                PendingSyncModel.id == entry_uuid,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_pending(model) if model else None

    async def find_open_pending(
        self,
        tenant_id: str,
        entity_type: EntityType,
        action: PendingAction,
        *,
        entity_id: str | None = None,
        external_id: str | None = None,
    ) -> PendingSyncEntry | None:
        if entity_id is None and external_id is None:
            return None
        async for session in self._session_factory():
            stmt = select(PendingSyncModel).where(
                PendingSyncModel.tenant_id == uuid.UUID(tenant_id),
                PendingSyncModel.entity_type == entity_type.value,
                PendingSyncModel.action == action.value,
                PendingSyncModel.status != PendingStatus.RESOLVED.value,
            )
            if entity_id is not None:
                stmt = stmt.where(PendingSyncModel.entity_id == entity_id)
            else:
                stmt = stmt.where(PendingSyncModel.external_id == external_id)
            stmt = stmt.order_by(PendingSyncModel.created_at.desc()).limit(1)
            model = (await session.execute(stmt)).scalar_one_or_none()
            return _model_to_pending(model) if model else None

    async def save_pending(self, tenant_id: str, entry: PendingSyncEntry) -> PendingSyncEntry:
        async for session in self._session_factory():
            model = await session.get(PendingSyncModel, uuid.UUID(entry.id))
            if model is None:
                model = PendingSyncModel(
                    id=uuid.UUID(entry.id),
                    tenant_id=uuid.UUID(tenant_id),
                    created_at=entry.created_at,
                )
                session.add(model)
            model.entity_type = entry.entity_type.value
            model.entity_id = entry.entity_id
            model.external_id = entry.external_id
            model.action = entry.action.value
            model.attempts = entry.attempts
            model.last_error = entry.last_error
            model.next_retry_at = entry.next_retry_at
            model.status = entry.status.value
            model.updated_at = entry.updated_at
            model.resolved_at = entry.resolved_at
            await session.commit()
            return entry

    async def list_pending(self, tenant_id: str, filters: PendingFilter) -> list[PendingSyncEntry]:
        async for session in self._session_factory():
            stmt = select(PendingSyncModel).where(PendingSyncModel.tenant_id == uuid.UUID(tenant_id))
            if filters.entity_type is not None:
                stmt = stmt.where(PendingSyncModel.entity_type == filters.entity_type.value)
            if filters.action is not None:
                stmt = stmt.where(PendingSyncModel.action == filters.action.value)
            if filters.statuses:
                stmt = stmt.where(PendingSyncModel.status.in_([s.value for s in filters.statuses]))
            stmt = stmt.order_by(PendingSyncModel.created_at.desc()).limit(filters.limit)
            result = await session.execute(stmt)
            return [_model_to_pending(m) for m in result.scalars().all()]

    async def list_due_pending(self, tenant_id: str, now: datetime, limit: int) -> list[PendingSyncEntry]:
        async for session in self._session_factory():
            stmt = (
                select(PendingSyncModel)
                .where(
                    PendingSyncModel.tenant_id == uuid.UUID(tenant_id),
                    PendingSyncModel.status.in_(
                        [PendingStatus.PENDING.value, PendingStatus.RETRYING.value]
                    ),
                    PendingSyncModel.next_retry_at <= now,
                )
                .order_by(PendingSyncModel.next_retry_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_pending(m) for m in result.scalars().all()]

    async def count_pending(self, tenant_id: str, resolved_since: datetime) -> PendingCounts:
        async for session in self._session_factory():
            stmt = (
                select(PendingSyncModel.status, func.count())
                .where(
                    PendingSyncModel.tenant_id == uuid.UUID(tenant_id),
                    PendingSyncModel.status != PendingStatus.RESOLVED.value,
                )
                .group_by(PendingSyncModel.status)
            )
            by_status = {row[0]: row[1] for row in (await session.execute(stmt)).all()}

            resolved_stmt = select(func.count()).where(
                PendingSyncModel.tenant_id == uuid.UUID(tenant_id),
                PendingSyncModel.status == PendingStatus.RESOLVED.value,
                PendingSyncModel.resolved_at >= resolved_since,
            )
            resolved_today = (await session.execute(resolved_stmt)).scalar_one()

            return PendingCounts(
                pending=by_status.get(PendingStatus.PENDING.value, 0),
                retrying=by_status.get(PendingStatus.RETRYING.value, 0),
                dead_letter=by_status.get(PendingStatus.DEAD_LETTER.value, 0),
                resolved_today=resolved_today,
            )

    # ── Duplicate dismissals ────────────────────────────────────────────

    async def add_dismissal(
        self,
        tenant_id: str,
        entity_type: EntityType,
        first_id: str,
        second_id: str,
        dismissed_by: str | None = None,
    ) -> None:
        low, high = _pair(first_id, second_id)
        async for session in self._session_factory():
            stmt = pg_insert(DuplicateDismissalModel).values(
                tenant_id=uuid.UUID(tenant_id),
                entity_type=entity_type.value,
                first_id=low,
                second_id=high,
                dismissed_by=dismissed_by,
            )
            await session.execute(stmt.on_conflict_do_nothing())
            await session.commit()

    async def list_dismissals(self, tenant_id: str) -> set[tuple[str, str]]:
        async for session in self._session_factory():
            stmt = select(DuplicateDismissalModel.first_id, DuplicateDismissalModel.second_id).where(
                DuplicateDismissalModel.tenant_id == uuid.UUID(tenant_id),
            )
            return {(row[0], row[1]) for row in (await session.execute(stmt)).all()}


# ── Tenant enumeration ──────────────────────────────────────────────────────


async def list_active_tenants() -> list[TenantContext]:
    """Active tenants with scheduled pricebook sync enabled, by slug."""
    async for session in get_shared_session():
        result = await session.execute(
            select(Tenant).where(Tenant.is_active.is_(True)).order_by(Tenant.slug)
        )
        return [
            TenantContext(
                tenant_id=str(t.id),
                tenant_slug=t.slug,
                schema_name=t.schema_name,
            )
            for t in result.scalars().all()
            if t.pricebook_sync_enabled
        ]
    return []
