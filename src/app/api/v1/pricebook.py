"""REST API endpoints for pricebook synchronization.

Thin mapping of PricebookSyncService operations onto HTTP: sync triggers,
single-entity pull/push, overrides, visibility, the pending-sync queue,
job history and the health report. Sync errors are translated to status
codes in one place (_http_error).
"""

from __future__ import annotations

import math
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_pricebook_service
from src.app.pricebook.errors import (
    ConfigurationError,
    ConflictError,
    EntityNotFound,
    JobAlreadyRunning,
    PricebookSyncError,
    RateLimited,
    TransientNetworkError,
    ValidationError,
)
from src.app.pricebook.providers import NotSupported
from src.app.pricebook.schemas import (
    EntityType,
    HealthReport,
    MasterRecord,
    PendingAction,
    PendingCounts,
    PendingFilter,
    PendingStatus,
    PendingSyncEntry,
    PushOutcome,
    PushStatus,
    RetryOutcome,
    SyncJob,
    SyncScope,
)
from src.app.pricebook.service import PricebookSyncService

router = APIRouter(prefix="/pricebook", tags=["pricebook"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class TriggerSyncRequest(BaseModel):
    scope: SyncScope = SyncScope.INCREMENTAL
    force: bool = False


class TriggerSyncResponse(BaseModel):
    job_id: str
    entity_type: EntityType
    scope: SyncScope
    status: str


class OverrideRequest(BaseModel):
    value: Any = None
    set_by: str | None = None


class VisibilityRequest(BaseModel):
    visible: bool
    cascade: bool = False


class VisibilityResponse(BaseModel):
    updated: list[str] = Field(default_factory=list)


class EntryIdsRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class ResetResponse(BaseModel):
    reset: list[str] = Field(default_factory=list)


class CreateRecordRequest(BaseModel):
    fields: dict[str, Any]


class DismissDuplicateRequest(BaseModel):
    entity_type: EntityType
    first_id: str
    second_id: str
    dismissed_by: str | None = None


# ── Error Mapping ────────────────────────────────────────────────────────────


def _http_error(exc: PricebookSyncError) -> HTTPException:
    """Translate a sync error into the matching HTTPException."""
    if isinstance(exc, EntityNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (JobAlreadyRunning, ConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, RateLimited):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(max(1, math.ceil(exc.remaining_seconds)))},
        )
    if isinstance(exc, TransientNetworkError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _not_supported(result: NotSupported) -> HTTPException:
    return HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=str(result))


# ── Sync Endpoints ───────────────────────────────────────────────────────────


@router.post("/sync/{entity_type}", response_model=TriggerSyncResponse, status_code=202)
async def trigger_sync(
    entity_type: EntityType,
    body: TriggerSyncRequest | None = None,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> TriggerSyncResponse:
    """Start a detached full or incremental pull. 409 if one is already running."""
    body = body or TriggerSyncRequest()
    try:
        job = await service.trigger_sync(entity_type, body.scope, force=body.force)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc
    return TriggerSyncResponse(
        job_id=job.id,
        entity_type=job.entity_type,
        scope=job.scope,
        status=job.status.value,
    )


@router.post("/push/{entity_type}", status_code=202)
async def push_local_records(
    entity_type: EntityType,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> dict[str, str]:
    """Push every local-only record of a type in the background."""
    await service.push_local(entity_type)
    return {"status": "accepted"}


@router.get("/jobs", response_model=list[SyncJob])
async def list_jobs(
    entity_type: EntityType | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> list[SyncJob]:
    return await service.list_jobs(entity_type, limit=limit)


# ── Pending Queue Endpoints ──────────────────────────────────────────────────


@router.get("/pending", response_model=list[PendingSyncEntry])
async def get_pending_sync(
    entity_type: EntityType | None = None,
    action: PendingAction | None = None,
    entry_status: list[PendingStatus] | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> list[PendingSyncEntry]:
    filters = PendingFilter(entity_type=entity_type, action=action, statuses=entry_status, limit=limit)
    return await service.get_pending_sync(filters)


@router.get("/pending/counts", response_model=PendingCounts)
async def get_pending_counts(
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> PendingCounts:
    return await service.get_pending_counts()


@router.post("/pending/retry", response_model=RetryOutcome)
async def retry_pending(
    body: EntryIdsRequest,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> RetryOutcome:
    """Replay entries now. Ids that fail again (or are unknown) land in ``failed``."""
    try:
        return await service.retry_pending(body.ids)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc


@router.post("/pending/reset", response_model=ResetResponse)
async def reset_pending_attempts(
    body: EntryIdsRequest,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> ResetResponse:
    return ResetResponse(reset=await service.reset_pending_attempts(body.ids))


# ── Health Endpoints ─────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthReport)
async def get_health(
    entity_type: EntityType | None = None,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> HealthReport:
    return await service.get_health(entity_type)


@router.post("/duplicates/dismiss", status_code=204)
async def dismiss_duplicate(
    body: DismissDuplicateRequest,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> None:
    await service.dismiss_duplicate(
        body.entity_type,
        body.first_id,
        body.second_id,
        dismissed_by=body.dismissed_by,
    )


# ── Record Endpoints ─────────────────────────────────────────────────────────


@router.put("/records/{record_id}/overrides/{field}", status_code=204)
async def set_override(
    record_id: str,
    field: str,
    body: OverrideRequest,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> None:
    """Pin a field value; later pulls keep it unless forced."""
    try:
        await service.set_override(record_id, field, body.value, set_by=body.set_by)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc


@router.delete("/records/{record_id}/overrides/{field}", status_code=204)
async def clear_override(
    record_id: str,
    field: str,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> None:
    try:
        await service.clear_override(record_id, field)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc


@router.patch("/records/{record_id}/visibility", response_model=VisibilityResponse)
async def set_visibility(
    record_id: str,
    body: VisibilityRequest,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> VisibilityResponse:
    try:
        updated = await service.set_visibility(record_id, body.visible, cascade=body.cascade)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc
    return VisibilityResponse(updated=updated)


@router.delete("/records/{record_id}", status_code=204)
async def soft_delete_record(
    record_id: str,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> None:
    try:
        await service.soft_delete_record(record_id)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc


@router.post("/{entity_type}", response_model=MasterRecord, status_code=201)
async def create_local_record(
    entity_type: EntityType,
    body: CreateRecordRequest,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> MasterRecord:
    """Create a local-only record (``source=local``)."""
    try:
        return await service.create_local_record(entity_type, body.fields)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc


@router.post("/{entity_type}/{record_id}/pull", response_model=MasterRecord)
async def pull_one(
    entity_type: EntityType,
    record_id: str,
    force: bool = False,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> MasterRecord:
    """Synchronously re-pull one record from the external system."""
    try:
        result = await service.pull_one(entity_type, record_id, force=force)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc
    if isinstance(result, NotSupported):
        raise _not_supported(result)
    return result


@router.post("/{entity_type}/{record_id}/push", response_model=PushOutcome)
async def push_one(
    entity_type: EntityType,
    record_id: str,
    response: Response,
    service: PricebookSyncService = Depends(get_pricebook_service),
) -> PushOutcome:
    """Push one record. 202 with ``processing`` when it outlives the timeout."""
    try:
        outcome = await service.push_one(entity_type, record_id)
    except PricebookSyncError as exc:
        raise _http_error(exc) from exc
    if outcome.status == PushStatus.PROCESSING:
        response.status_code = status.HTTP_202_ACCEPTED
    return outcome
