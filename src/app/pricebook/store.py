"""Pricebook store abstract base class -- persistence interface used by the
sync engine, pending-sync queue, job runner and service facade.

PostgresPricebookStore (repository.py) is the production implementation.
All methods take tenant_id as first argument for tenant-scoped queries.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from src.app.pricebook.schemas import (
    EntityType,
    JobStatus,
    MasterRecord,
    OverrideEntry,
    PendingAction,
    PendingCounts,
    PendingFilter,
    PendingSyncEntry,
    RecordSource,
    SyncCursor,
    SyncJob,
    SyncScope,
)


class PricebookStore(ABC):
    """Abstract interface for MASTER, job and pending-queue persistence.

    Contract highlights:
        update_record: single-row write guarded by ``expected_version``;
            raises ConflictError on mismatch and bumps ``version`` on success.
        start_job: persists a ``running`` job; raises JobAlreadyRunning if
            one of the same (entity_type, scope class) is already running.
        find_open_pending: the non-resolved entry (pending, retrying or
            dead_letter) for an entity and action, if any.
    """

    # ── Records ─────────────────────────────────────────────────────────

    @abstractmethod
    async def get_record(self, tenant_id: str, record_id: str) -> MasterRecord | None:
        ...

    @abstractmethod
    async def get_record_by_external_id(
        self,
        tenant_id: str,
        entity_type: EntityType,
        external_id: str,
    ) -> MasterRecord | None:
        ...

    @abstractmethod
    async def list_records(
        self,
        tenant_id: str,
        entity_type: EntityType | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[MasterRecord]:
        ...

    @abstractmethod
    async def create_record(
        self,
        tenant_id: str,
        entity_type: EntityType,
        fields: dict[str, Any],
        *,
        external_id: str | None = None,
        source: RecordSource = RecordSource.EXTERNAL,
    ) -> MasterRecord:
        ...

    @abstractmethod
    async def update_record(
        self,
        tenant_id: str,
        record: MasterRecord,
        *,
        expected_version: int,
    ) -> MasterRecord:
        ...

    # ── Overrides ───────────────────────────────────────────────────────

    @abstractmethod
    async def upsert_override(self, tenant_id: str, entry: OverrideEntry) -> OverrideEntry:
        ...

    @abstractmethod
    async def delete_override(self, tenant_id: str, entity_id: str, field: str) -> bool:
        ...

    @abstractmethod
    async def list_overrides(self, tenant_id: str, entity_id: str) -> list[OverrideEntry]:
        ...

    # ── Jobs ────────────────────────────────────────────────────────────

    @abstractmethod
    async def start_job(self, tenant_id: str, entity_type: EntityType, scope: SyncScope) -> SyncJob:
        ...

    @abstractmethod
    async def finish_job(
        self,
        tenant_id: str,
        job_id: str,
        status: JobStatus,
        *,
        error_summary: str | None = None,
        counts: dict[str, int] | None = None,
    ) -> SyncJob:
        ...

    @abstractmethod
    async def get_job(self, tenant_id: str, job_id: str) -> SyncJob | None:
        ...

    @abstractmethod
    async def list_jobs(
        self,
        tenant_id: str,
        entity_type: EntityType | None = None,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        ...

    @abstractmethod
    async def get_cursor(self, tenant_id: str, entity_type: EntityType) -> SyncCursor:
        ...

    @abstractmethod
    async def save_cursor(self, tenant_id: str, cursor: SyncCursor) -> None:
        ...

    # ── Pending-Sync Queue ──────────────────────────────────────────────

    @abstractmethod
    async def get_pending(self, tenant_id: str, entry_id: str) -> PendingSyncEntry | None:
        ...

    @abstractmethod
    async def find_open_pending(
        self,
        tenant_id: str,
        entity_type: EntityType,
        action: PendingAction,
        *,
        entity_id: str | None = None,
        external_id: str | None = None,
    ) -> PendingSyncEntry | None:
        ...

    @abstractmethod
    async def save_pending(self, tenant_id: str, entry: PendingSyncEntry) -> PendingSyncEntry:
        """Insert or update an entry by id."""
        ...

    @abstractmethod
    async def list_pending(self, tenant_id: str, filters: PendingFilter) -> list[PendingSyncEntry]:
        ...

    @abstractmethod
    async def list_due_pending(self, tenant_id: str, now: datetime, limit: int) -> list[PendingSyncEntry]:
        """Active entries (pending/retrying) with next_retry_at <= now, oldest first."""
        ...

    @abstractmethod
    async def count_pending(self, tenant_id: str, resolved_since: datetime) -> PendingCounts:
        ...

    # ── Duplicate dismissals ────────────────────────────────────────────

    @abstractmethod
    async def add_dismissal(
        self,
        tenant_id: str,
        entity_type: EntityType,
        first_id: str,
        second_id: str,
        dismissed_by: str | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def list_dismissals(self, tenant_id: str) -> set[tuple[str, str]]:
        """Dismissed pairs as (lower id, higher id) tuples."""
        ...
