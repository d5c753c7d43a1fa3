"""Shared fixtures for pricebook sync tests.

Provides:
- InMemoryPricebookStore: PricebookStore test double that enforces the same
  contract as the Postgres store (version checks, running-job lock,
  external-id uniqueness)
- FakeProvider: scriptable PricebookProvider with per-call error injection
- FakeClock: settable clock for the pending-sync queue
- Wired engine / queue / runner / service fixtures for one tenant
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.app.pricebook.engine import SyncEngine
from src.app.pricebook.errors import ConflictError, EntityNotFound, JobAlreadyRunning
from src.app.pricebook.health import PricebookHealthAnalyzer
from src.app.pricebook.jobs import SyncJobRunner
from src.app.pricebook.pending import PendingSyncQueue
from src.app.pricebook.providers.base import Capability, PricebookProvider
from src.app.pricebook.schemas import (
    ACTIVE_PENDING_STATUSES,
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
from src.app.pricebook.service import PricebookSyncService
from src.app.pricebook.store import PricebookStore

TENANT_ID = "7d3c4f1e-2b6a-4c1d-9e8f-0a1b2c3d4e5f"


# ── In-Memory Store ──────────────────────────────────────────────────────────


class InMemoryPricebookStore(PricebookStore):
    """In-memory PricebookStore for testing without a database."""

    def __init__(self) -> None:
        self.records: dict[str, MasterRecord] = {}
        self.overrides: dict[tuple[str, str], OverrideEntry] = {}
        self.jobs: dict[str, SyncJob] = {}
        self.cursors: dict[tuple[str, EntityType], SyncCursor] = {}
        self.pending: dict[str, PendingSyncEntry] = {}
        self.dismissals: dict[str, set[tuple[str, str]]] = defaultdict(set)
        self.update_calls = 0

    # Records

    async def get_record(self, tenant_id: str, record_id: str) -> MasterRecord | None:
        record = self.records.get(record_id)
        if record and record.tenant_id == tenant_id:
            return record.model_copy(deep=True)
        return None

    async def get_record_by_external_id(
        self, tenant_id: str, entity_type: EntityType, external_id: str
    ) -> MasterRecord | None:
        for record in self.records.values():
            if (
                record.tenant_id == tenant_id
                and record.entity_type == entity_type
                and record.external_id == external_id
            ):
                return record.model_copy(deep=True)
        return None

    async def list_records(
        self,
        tenant_id: str,
        entity_type: EntityType | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[MasterRecord]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.tenant_id == tenant_id
            and (entity_type is None or r.entity_type == entity_type)
            and (include_deleted or not r.is_deleted)
        ]

    async def create_record(
        self,
        tenant_id: str,
        entity_type: EntityType,
        fields: dict[str, Any],
        *,
        external_id: str | None = None,
        source: RecordSource = RecordSource.EXTERNAL,
    ) -> MasterRecord:
        if external_id and await self.get_record_by_external_id(tenant_id, entity_type, external_id):
            raise ConflictError(f"{entity_type.value}:{external_id}", 0)
        now = utcnow()
        record = MasterRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            entity_type=entity_type,
            external_id=external_id,
            fields=dict(fields),
            source=source,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.records[record.id] = record
        return record.model_copy(deep=True)

    async def update_record(
        self, tenant_id: str, record: MasterRecord, *, expected_version: int
    ) -> MasterRecord:
        self.update_calls += 1
        current = self.records.get(record.id)
        if current is None or current.tenant_id != tenant_id:
            raise EntityNotFound(f"record {record.id} not found")
        if current.version != expected_version:
            raise ConflictError(record.id, expected_version, current.version)
        saved = record.model_copy(
            update={"version": expected_version + 1, "updated_at": utcnow()}, deep=True
        )
        self.records[record.id] = saved
        return saved.model_copy(deep=True)

    # Overrides

    async def upsert_override(self, tenant_id: str, entry: OverrideEntry) -> OverrideEntry:
        self.overrides[(entry.entity_id, entry.field)] = entry
        return entry

    async def delete_override(self, tenant_id: str, entity_id: str, field: str) -> bool:
        return self.overrides.pop((entity_id, field), None) is not None

    async def list_overrides(self, tenant_id: str, entity_id: str) -> list[OverrideEntry]:
        return sorted(
            (o for (eid, _), o in self.overrides.items() if eid == entity_id),
            key=lambda o: o.field,
        )

    # Jobs

    async def start_job(self, tenant_id: str, entity_type: EntityType, scope: SyncScope) -> SyncJob:
        scope_class = scope_class_for(scope)
        for job in self.jobs.values():
            if (
                job.tenant_id == tenant_id
                and job.entity_type == entity_type
                and job.scope_class == scope_class
                and job.status == JobStatus.RUNNING
            ):
                raise JobAlreadyRunning(entity_type.value, scope_class.value, job.id)
        job = SyncJob(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            entity_type=entity_type,
            scope=scope,
            status=JobStatus.RUNNING,
            started_at=utcnow(),
        )
        self.jobs[job.id] = job
        return job.model_copy()

    async def finish_job(
        self,
        tenant_id: str,
        job_id: str,
        status: JobStatus,
        *,
        error_summary: str | None = None,
        counts: dict[str, int] | None = None,
    ) -> SyncJob:
        job = self.jobs[job_id]
        update: dict[str, Any] = {
            "status": status,
            "finished_at": utcnow(),
            "error_summary": error_summary,
            **(counts or {}),
        }
        self.jobs[job_id] = job.model_copy(update=update)
        return self.jobs[job_id].model_copy()

    async def get_job(self, tenant_id: str, job_id: str) -> SyncJob | None:
        job = self.jobs.get(job_id)
        return job.model_copy() if job else None

    async def list_jobs(
        self,
        tenant_id: str,
        entity_type: EntityType | None = None,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        jobs = [
            j
            for j in self.jobs.values()
            if j.tenant_id == tenant_id
            and (entity_type is None or j.entity_type == entity_type)
            and (status is None or j.status == status)
        ]
        jobs.sort(key=lambda j: j.started_at or utcnow(), reverse=True)
        return [j.model_copy() for j in jobs[:limit]]

    async def get_cursor(self, tenant_id: str, entity_type: EntityType) -> SyncCursor:
        cursor = self.cursors.get((tenant_id, entity_type))
        return cursor.model_copy() if cursor else SyncCursor(entity_type=entity_type)

    async def save_cursor(self, tenant_id: str, cursor: SyncCursor) -> None:
        self.cursors[(tenant_id, cursor.entity_type)] = cursor.model_copy()

    # Pending-sync queue

    async def get_pending(self, tenant_id: str, entry_id: str) -> PendingSyncEntry | None:
        entry = self.pending.get(entry_id)
        return entry.model_copy() if entry else None

    async def find_open_pending(
        self,
        tenant_id: str,
        entity_type: EntityType,
        action: PendingAction,
        *,
        entity_id: str | None = None,
        external_id: str | None = None,
    ) -> PendingSyncEntry | None:
        for entry in sorted(self.pending.values(), key=lambda e: e.created_at, reverse=True):
            if entry.status == PendingStatus.RESOLVED:
                continue
            if entry.entity_type != entity_type or entry.action != action:
                continue
            if external_id is not None and entry.external_id == external_id:
                return entry.model_copy()
            if external_id is None and entity_id is not None and entry.entity_id == entity_id:
                return entry.model_copy()
        return None

    async def save_pending(self, tenant_id: str, entry: PendingSyncEntry) -> PendingSyncEntry:
        self.pending[entry.id] = entry.model_copy()
        return entry

    async def list_pending(self, tenant_id: str, filters: PendingFilter) -> list[PendingSyncEntry]:
        entries = [
            e
            for e in self.pending.values()
            if (filters.entity_type is None or e.entity_type == filters.entity_type)
            and (filters.action is None or e.action == filters.action)
            and (not filters.statuses or e.status in filters.statuses)
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy() for e in entries[: filters.limit]]

    async def list_due_pending(self, tenant_id: str, now: datetime, limit: int) -> list[PendingSyncEntry]:
        due = [
            e for e in self.pending.values()
            if e.status in ACTIVE_PENDING_STATUSES and e.next_retry_at <= now
        ]
        due.sort(key=lambda e: e.next_retry_at)
        return [e.model_copy() for e in due[:limit]]

    async def count_pending(self, tenant_id: str, resolved_since: datetime) -> PendingCounts:
        counts = PendingCounts()
        for entry in self.pending.values():
            if entry.status == PendingStatus.RESOLVED:
                if entry.resolved_at and entry.resolved_at >= resolved_since:
                    counts.resolved_today += 1
                continue
            setattr(counts, entry.status.value, getattr(counts, entry.status.value) + 1)
        return counts

    # Dismissals

    async def add_dismissal(
        self,
        tenant_id: str,
        entity_type: EntityType,
        first_id: str,
        second_id: str,
        dismissed_by: str | None = None,
    ) -> None:
        low, high = sorted((first_id, second_id))
        self.dismissals[tenant_id].add((low, high))

    async def list_dismissals(self, tenant_id: str) -> set[tuple[str, str]]:
        return set(self.dismissals[tenant_id])


# ── Fake Provider ────────────────────────────────────────────────────────────


class FakeProvider(PricebookProvider):
    """Scriptable provider backed by dicts of external payloads.

    Errors queued in ``list_errors`` / ``push_errors`` are raised by the
    next matching call, in order; ``get_errors`` maps external ids to the
    error raised when that id is fetched.
    """

    name = "fake"

    def __init__(self, capabilities: set[Capability] | None = None) -> None:
        self.capabilities = frozenset(Capability if capabilities is None else capabilities)
        self.entities: dict[EntityType, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.list_errors: list[Exception] = []
        self.get_errors: dict[str, Exception] = {}
        self.push_errors: list[Exception] = []
        self.list_calls: list[dict[str, Any]] = []
        self.created: list[tuple[EntityType, dict[str, Any]]] = []
        self.updated: list[tuple[EntityType, str, dict[str, Any]]] = []
        self.closed = False
        self._next_id = 5000

    def add(self, entity_type: EntityType, payload: dict[str, Any]) -> dict[str, Any]:
        self.entities[entity_type][str(payload["id"])] = payload
        return payload

    async def list_page(self, entity_type, page, page_size, *, modified_since=None):
        self.list_calls.append(
            {"entity_type": entity_type, "page": page, "page_size": page_size, "modified_since": modified_since}
        )
        if self.list_errors:
            raise self.list_errors.pop(0)
        items = list(self.entities[entity_type].values())
        start = (page - 1) * page_size
        return {"data": items[start : start + page_size], "hasMore": start + page_size < len(items)}

    async def get(self, entity_type, external_id):
        if external_id in self.get_errors:
            raise self.get_errors[external_id]
        return self.entities[entity_type].get(external_id)

    async def create(self, entity_type, payload):
        if self.push_errors:
            raise self.push_errors.pop(0)
        self._next_id += 1
        new_id = str(self._next_id)
        self.entities[entity_type][new_id] = {"id": self._next_id, **payload}
        self.created.append((entity_type, payload))
        return new_id

    async def update(self, entity_type, external_id, payload):
        if self.push_errors:
            raise self.push_errors.pop(0)
        self.entities[entity_type].setdefault(external_id, {"id": external_id}).update(payload)
        self.updated.append((entity_type, external_id, payload))
        return None

    async def close(self) -> None:
        self.closed = True


def service_payload(external_id: int, name: str, **extra: Any) -> dict[str, Any]:
    """External service payload in the remote system's shape."""
    payload: dict[str, Any] = {"id": external_id, "displayName": name, "price": 100.0, "active": True}
    payload.update(extra)
    return payload


class FakeClock:
    """Settable timezone-aware clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemoryPricebookStore:
    return InMemoryPricebookStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(store, clock) -> PendingSyncQueue:
    return PendingSyncQueue(TENANT_ID, store, clock=clock)


@pytest.fixture
def engine(store, provider, queue) -> SyncEngine:
    return SyncEngine(TENANT_ID, store, provider, queue, page_size=2, max_pages=50)


@pytest.fixture
def runner(store, engine) -> SyncJobRunner:
    return SyncJobRunner(TENANT_ID, store, engine, timeout=5.0)


@pytest.fixture
def service(store, engine, queue, runner) -> PricebookSyncService:
    return PricebookSyncService(
        TENANT_ID,
        store,
        engine,
        queue,
        runner,
        PricebookHealthAnalyzer(),
        push_timeout=1.0,
    )
