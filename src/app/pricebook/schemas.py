"""Pydantic schemas for pricebook synchronization.

Defines all structured types that flow between the sync engine, the
pending-sync queue, the job runner, the health analyzer and the API:
- Enums: EntityType, SyncScope, ScopeClass, JobStatus, RecordSource,
  PendingAction, PendingStatus, PushStatus
- Records: ExternalSnapshot, MasterRecord, OverrideEntry
- Jobs: SyncJob, SyncCursor, SyncRunResult
- Queue: PendingSyncEntry, PendingFilter, PendingCounts, RetryOutcome
- Pagination: PageProgress, PaginatedResult
- Health: CategoryCompleteness, DuplicatePair, AttentionItem, SyncCoverage,
  HealthReport
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Pricebook entity kinds mirrored from the external system."""

    CATEGORY = "category"
    SERVICE = "service"
    MATERIAL = "material"
    EQUIPMENT = "equipment"


class SyncScope(str, Enum):
    """Breadth of a sync run."""

    FULL = "full"
    INCREMENTAL = "incremental"
    SINGLE = "single"


class ScopeClass(str, Enum):
    """Overlap-prevention class: full and incremental runs exclude each other."""

    BULK = "bulk"
    SINGLE = "single"


def scope_class_for(scope: SyncScope) -> ScopeClass:
    """Map a sync scope onto the class used for the running-job lock."""
    return ScopeClass.SINGLE if scope == SyncScope.SINGLE else ScopeClass.BULK


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RecordSource(str, Enum):
    """Where a MasterRecord's current field values came from."""

    EXTERNAL = "external"
    LOCAL = "local"
    MERGED = "merged"


class PendingAction(str, Enum):
    PULL = "pull"
    PUSH = "push"


class PendingStatus(str, Enum):
    """Pending-sync entry states: pending -> retrying -> resolved | dead_letter."""

    PENDING = "pending"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"
    RESOLVED = "resolved"


ACTIVE_PENDING_STATUSES = (PendingStatus.PENDING, PendingStatus.RETRYING)


class PushStatus(str, Enum):
    PUSHED = "pushed"
    PROCESSING = "processing"
    QUEUED = "queued"
    NOT_SUPPORTED = "not_supported"


# ── Records ─────────────────────────────────────────────────────────────────


class ExternalSnapshot(BaseModel):
    """One entity as returned by the external system. Never persisted as-is."""

    external_id: str
    entity_type: EntityType
    payload: dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=utcnow)


class MasterRecord(BaseModel):
    """Canonical local pricebook entity, merged from pulls and local edits."""

    id: str
    tenant_id: str
    entity_type: EntityType
    external_id: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)
    visible: bool = True
    overridden_fields: set[str] = Field(default_factory=set)
    source: RecordSource = RecordSource.EXTERNAL
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class OverrideEntry(BaseModel):
    """User-set field value that pulls must not overwrite."""

    entity_id: str
    field: str
    value: Any = None
    set_by: str | None = None
    set_at: datetime = Field(default_factory=utcnow)


# ── Jobs ────────────────────────────────────────────────────────────────────


class SyncJob(BaseModel):
    """Durable record of one sync run."""

    id: str
    tenant_id: str
    entity_type: EntityType
    scope: SyncScope
    status: JobStatus = JobStatus.QUEUED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_summary: str | None = None
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0

    @property
    def scope_class(self) -> ScopeClass:
        return scope_class_for(self.scope)


class SyncCursor(BaseModel):
    """Last successful run timestamps per entity type."""

    entity_type: EntityType
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None

    def modified_since(self) -> datetime | None:
        """Most recent successful run of either scope, or None if never synced."""
        stamps = [s for s in (self.last_full_sync_at, self.last_incremental_sync_at) if s is not None]
        return max(stamps) if stamps else None


class SyncRunResult(BaseModel):
    """Aggregate outcome of a pull run -- bulk callers only see these counts."""

    entity_type: EntityType
    scope: SyncScope
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    complete: bool = True
    not_supported: bool = False
    errors: list[str] = Field(default_factory=list)


class PushOutcome(BaseModel):
    """Result of a single-entity push request."""

    status: PushStatus
    record: MasterRecord | None = None
    message: str | None = None


# ── Pending-Sync Queue ──────────────────────────────────────────────────────


class PendingSyncEntry(BaseModel):
    """Durable record of one failed per-entity sync awaiting retry."""

    id: str
    tenant_id: str
    entity_type: EntityType
    entity_id: str | None = None
    external_id: str | None = None
    action: PendingAction
    attempts: int = 0
    last_error: str | None = None
    next_retry_at: datetime = Field(default_factory=utcnow)
    status: PendingStatus = PendingStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None
    resolved_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PENDING_STATUSES


class PendingFilter(BaseModel):
    """Filter for listing pending-sync entries."""

    entity_type: EntityType | None = None
    action: PendingAction | None = None
    statuses: list[PendingStatus] | None = None
    limit: int = Field(default=100, ge=1, le=1000)


class PendingCounts(BaseModel):
    pending: int = 0
    retrying: int = 0
    dead_letter: int = 0
    resolved_today: int = 0


class RetryOutcome(BaseModel):
    """Result of a manual retry request."""

    retried: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


# ── Pagination ──────────────────────────────────────────────────────────────


class PageProgress(BaseModel):
    """Progress event emitted once per fetched page."""

    page: int
    items: list[Any] = Field(default_factory=list)
    fetched: int = 0
    running_total: int = 0


class PaginatedResult(BaseModel):
    """Concatenation of every page fetched by the paginated fetcher."""

    items: list[Any] = Field(default_factory=list)
    pages_fetched: int = 0
    complete: bool = True


# ── Health ──────────────────────────────────────────────────────────────────


class CategoryCompleteness(BaseModel):
    """Share of required fields populated across a category's items (0-100)."""

    category_id: str
    category_name: str | None = None
    item_count: int = 0
    score: float | None = None
    missing: dict[str, int] = Field(default_factory=dict)


class DuplicatePair(BaseModel):
    entity_type: EntityType
    category_id: str | None = None
    first_id: str
    second_id: str
    first_name: str
    second_name: str
    similarity: float


class AttentionItem(BaseModel):
    """One entity in the needs-attention queue with its combined severity."""

    entity_type: EntityType
    entity_id: str
    name: str | None = None
    severity: float
    reasons: list[str] = Field(default_factory=list)


class SyncCoverage(BaseModel):
    entity_type: EntityType
    total: int = 0
    linked: int = 0
    local_only: int = 0
    last_synced_at: datetime | None = None


class HealthReport(BaseModel):
    """Read-only pricebook health snapshot."""

    overall_completeness: float | None = None
    completeness: list[CategoryCompleteness] = Field(default_factory=list)
    needs_attention: list[AttentionItem] = Field(default_factory=list)
    duplicates: list[DuplicatePair] = Field(default_factory=list)
    coverage: list[SyncCoverage] = Field(default_factory=list)
    pending: PendingCounts = Field(default_factory=PendingCounts)
    generated_at: datetime = Field(default_factory=utcnow)
