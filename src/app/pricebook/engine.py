"""Pricebook sync engine -- pull external snapshots into MASTER, push MASTER out.

Pull walks the provider's listing page by page and merges each snapshot into
the record matched by external id (creating it when unseen). Per-entity
failures are recorded in the pending-sync queue and never abort the run.

Push serializes a record's current MASTER fields and sends them to the
provider's update (linked record) or create (local-only record) call.
Failures are always queued; direct single-entity pushes also re-raise.

Every MASTER write is a single-row, version-checked update.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from src.app.core.monitoring import record_entity_outcome
from src.app.pricebook.errors import (
    ConfigurationError,
    ConflictError,
    EntityNotFound,
    TransientNetworkError,
    ValidationError,
)
from src.app.pricebook.field_mapping import (
    flatten_category_tree,
    from_external_payload,
    to_snapshot,
)
from src.app.pricebook.merge import build_push_payload, merge_snapshot
from src.app.pricebook.pagination import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE, PageCollector
from src.app.pricebook.providers.base import Capability, NotSupported, PricebookProvider
from src.app.pricebook.schemas import (
    EntityType,
    MasterRecord,
    PendingAction,
    PushOutcome,
    PushStatus,
    RecordSource,
    SyncRunResult,
    SyncScope,
)
from src.app.pricebook.store import PricebookStore

if TYPE_CHECKING:
    from src.app.pricebook.pending import PendingSyncQueue

logger = structlog.get_logger(__name__)

# Failures of a direct single-entity pull worth a later retry.
_RETRYABLE_PULL_ERRORS = (TransientNetworkError, ValidationError, ConflictError)


class SyncEngine:
    """Reconciles one tenant's MASTER store with its pricebook provider.

    Args:
        tenant_id: Tenant whose records this engine reads and writes.
        store: Persistence for records and overrides.
        provider: Pricebook backend (external system or native).
        queue: Pending-sync queue receiving per-entity failures.
        page_size: Listing page size.
        max_pages: Upper bound on pages fetched per pull.
    """

    def __init__(
        self,
        tenant_id: str,
        store: PricebookStore,
        provider: PricebookProvider,
        queue: PendingSyncQueue,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> None:
        self._tenant_id = tenant_id
        self._store = store
        self._provider = provider
        self._queue = queue
        self._page_size = page_size
        self._max_pages = max_pages

    @property
    def provider(self) -> PricebookProvider:
        return self._provider

    # ── Pull ────────────────────────────────────────────────────────────

    async def pull(
        self,
        entity_type: EntityType,
        scope: SyncScope = SyncScope.FULL,
        *,
        force: bool = False,
        modified_since: datetime | None = None,
    ) -> SyncRunResult:
        """Enumerate external entities and merge each into MASTER.

        Args:
            entity_type: Kind of entity to pull.
            scope: Recorded on the result; incremental runs pass modified_since.
            force: Let external values overwrite overridden fields.
            modified_since: Only entities changed at or after this instant.

        Returns:
            SyncRunResult with per-outcome counts. ``complete`` is False when
            pagination stopped early; ``not_supported`` is True when the
            provider cannot list.

        Raises:
            ConfigurationError, RateLimited, TransientNetworkError: the listing
                itself failed. Entities merged before the failure stay merged.
        """
        result = SyncRunResult(entity_type=entity_type, scope=scope)

        if not self._provider.supports(Capability.LIST):
            result.not_supported = True
            logger.info(
                "pricebook_sync.pull_not_supported",
                tenant_id=self._tenant_id,
                entity_type=entity_type.value,
                provider=self._provider.name,
            )
            return result

        async def fetch_page(page: int, page_size: int) -> Mapping[str, Any]:
            response = await self._provider.list_page(
                entity_type, page, page_size, modified_since=modified_since
            )
            if isinstance(response, NotSupported):
                raise ConfigurationError(str(response))
            return response

        collector = PageCollector(fetch_page, page_size=self._page_size, max_pages=self._max_pages)

        async for progress in collector:
            payloads = progress.items
            if entity_type == EntityType.CATEGORY:
                payloads = flatten_category_tree(payloads)

            for payload in payloads:
                result.processed += 1
                external_id = _payload_id(payload)
                if external_id is None:
                    result.skipped += 1
                    logger.warning(
                        "pricebook_sync.payload_skipped",
                        tenant_id=self._tenant_id,
                        entity_type=entity_type.value,
                        page=progress.page,
                        reason="payload has no id",
                    )
                    continue

                try:
                    outcome, _ = await self._merge_payload(entity_type, payload, force=force)
                except Exception as exc:
                    result.failed += 1
                    result.errors.append(f"{external_id}: {exc}")
                    logger.error(
                        "pricebook_sync.merge_error",
                        tenant_id=self._tenant_id,
                        entity_type=entity_type.value,
                        external_id=external_id,
                        error=str(exc),
                    )
                    await self._queue.record_failure(
                        entity_type, PendingAction.PULL, exc, external_id=external_id
                    )
                    continue

                setattr(result, outcome, getattr(result, outcome) + 1)

            logger.debug(
                "pricebook_sync.page_merged",
                tenant_id=self._tenant_id,
                entity_type=entity_type.value,
                page=progress.page,
                running_total=progress.running_total,
            )

        result.complete = collector.complete

        for outcome in ("created", "updated", "unchanged", "skipped", "failed"):
            record_entity_outcome(entity_type.value, outcome, getattr(result, outcome))

        logger.info(
            "pricebook_sync.pull_complete",
            tenant_id=self._tenant_id,
            entity_type=entity_type.value,
            scope=scope.value,
            processed=result.processed,
            created=result.created,
            updated=result.updated,
            unchanged=result.unchanged,
            skipped=result.skipped,
            failed=result.failed,
            complete=result.complete,
        )
        return result

    async def pull_one(
        self,
        entity_type: EntityType,
        *,
        entity_id: str | None = None,
        external_id: str | None = None,
        force: bool = False,
        record_failure: bool = True,
    ) -> MasterRecord | NotSupported:
        """Fetch one entity from the provider and merge it into MASTER.

        Either ``entity_id`` (a MASTER id) or ``external_id`` identifies the
        entity. Errors always propagate; retryable ones are also queued when
        ``record_failure`` is set.
        """
        if entity_id is not None:
            record = await self._store.get_record(self._tenant_id, entity_id)
            if record is None or record.entity_type != entity_type:
                raise EntityNotFound(f"{entity_type.value} {entity_id} not found")
            if not record.external_id:
                raise ValidationError(f"{entity_type.value} {entity_id} is local-only, nothing to pull")
            external_id = record.external_id
        if not external_id:
            raise ValidationError("pull_one needs an entity_id or external_id")

        if not self._provider.supports(Capability.GET):
            return self._provider.not_supported(Capability.GET)

        try:
            payload = await self._provider.get(entity_type, external_id)
            if payload is None:
                raise EntityNotFound(f"{entity_type.value} {external_id} not found in external system")
            outcome, record = await self._merge_payload(entity_type, payload, force=force)
        except _RETRYABLE_PULL_ERRORS as exc:
            if record_failure:
                await self._queue.record_failure(
                    entity_type,
                    PendingAction.PULL,
                    exc,
                    entity_id=entity_id,
                    external_id=external_id,
                )
            raise

        record_entity_outcome(entity_type.value, outcome)
        logger.info(
            "pricebook_sync.pull_one_complete",
            tenant_id=self._tenant_id,
            entity_type=entity_type.value,
            external_id=external_id,
            outcome=outcome,
        )
        return record

    async def _merge_payload(
        self,
        entity_type: EntityType,
        payload: Any,
        *,
        force: bool = False,
    ) -> tuple[str, MasterRecord]:
        """Merge one external payload. Returns (outcome, record).

        Outcome is one of ``created``, ``updated``, ``unchanged`` or
        ``skipped`` (soft-deleted records are never merged into).
        """
        snapshot = to_snapshot(entity_type, payload)
        incoming = from_external_payload(entity_type, snapshot.payload)

        record = await self._store.get_record_by_external_id(
            self._tenant_id, entity_type, snapshot.external_id
        )
        if record is None:
            created = await self._store.create_record(
                self._tenant_id,
                entity_type,
                incoming,
                external_id=snapshot.external_id,
                source=RecordSource.EXTERNAL,
            )
            return "created", created

        if record.is_deleted:
            return "skipped", record

        merged = merge_snapshot(record, incoming, force=force)
        if not merged.changed:
            return "unchanged", record

        if merged.preserved_fields:
            logger.debug(
                "pricebook_sync.overrides_preserved",
                tenant_id=self._tenant_id,
                entity_id=record.id,
                fields=merged.preserved_fields,
            )

        candidate = record.model_copy(
            update={
                "fields": merged.fields,
                "overridden_fields": merged.overridden_fields,
                "source": merged.source,
            }
        )
        saved = await self._store.update_record(
            self._tenant_id, candidate, expected_version=record.version
        )
        for field_name in merged.cleared_overrides:
            await self._store.delete_override(self._tenant_id, record.id, field_name)
        return "updated", saved

    # ── Push ────────────────────────────────────────────────────────────

    async def push(
        self,
        entity_id: str,
        *,
        direct: bool = False,
        record_failure: bool = True,
    ) -> PushOutcome:
        """Send a record's MASTER fields to the provider.

        Args:
            entity_id: MASTER id of the record to push.
            direct: Operator-initiated single push; failures re-raise after
                being queued.
            record_failure: Queue failures. The retry worker disables this
                and handles the entry itself (failures then re-raise).

        Returns:
            PushOutcome: ``pushed``, ``not_supported``, or ``queued`` for a
            bulk push whose failure went to the pending-sync queue.
        """
        record = await self._store.get_record(self._tenant_id, entity_id)
        if record is None or record.is_deleted:
            raise EntityNotFound(f"record {entity_id} not found")

        capability = Capability.UPDATE if record.external_id else Capability.CREATE
        if not self._provider.supports(capability):
            unsupported = self._provider.not_supported(capability)
            logger.info(
                "pricebook_sync.push_not_supported",
                tenant_id=self._tenant_id,
                entity_id=entity_id,
                provider=self._provider.name,
                capability=capability.value,
            )
            return PushOutcome(status=PushStatus.NOT_SUPPORTED, record=record, message=str(unsupported))

        payload = build_push_payload(record)
        try:
            if record.external_id:
                await self._provider.update(record.entity_type, record.external_id, payload)
                external_id = record.external_id
            else:
                created = await self._provider.create(record.entity_type, payload)
                if isinstance(created, NotSupported):
                    raise ConfigurationError(str(created))
                external_id = created
            saved = await self._commit_push(record, external_id)
        except ConfigurationError:
            raise
        except Exception as exc:
            logger.error(
                "pricebook_sync.push_error",
                tenant_id=self._tenant_id,
                entity_id=entity_id,
                external_id=record.external_id,
                error=str(exc),
            )
            if not record_failure:
                raise
            await self._queue.record_failure(
                record.entity_type,
                PendingAction.PUSH,
                exc,
                entity_id=record.id,
                external_id=record.external_id,
            )
            if direct:
                raise
            return PushOutcome(status=PushStatus.QUEUED, record=record, message=str(exc))

        record_entity_outcome(record.entity_type.value, "pushed")
        logger.info(
            "pricebook_sync.push_complete",
            tenant_id=self._tenant_id,
            entity_id=entity_id,
            external_id=external_id,
            created=record.external_id is None,
        )
        return PushOutcome(status=PushStatus.PUSHED, record=saved)

    async def _commit_push(self, record: MasterRecord, external_id: str) -> MasterRecord:
        """Record a successful push on MASTER with a version-checked write.

        A freshly created external entity must not lose its id to a racing
        local write, so for creates the write is retried once against the
        re-read record. Updates surface the ConflictError.
        """
        source = record.source
        if record.overridden_fields or source == RecordSource.LOCAL:
            source = RecordSource.MERGED
        candidate = record.model_copy(update={"external_id": external_id, "source": source})
        try:
            return await self._store.update_record(
                self._tenant_id, candidate, expected_version=record.version
            )
        except ConflictError:
            if record.external_id:
                raise
            fresh = await self._store.get_record(self._tenant_id, record.id)
            if fresh is None:
                raise
            logger.warning(
                "pricebook_sync.push_link_retry",
                tenant_id=self._tenant_id,
                entity_id=record.id,
                external_id=external_id,
            )
            relinked = fresh.model_copy(
                update={"external_id": external_id, "source": RecordSource.MERGED}
            )
            return await self._store.update_record(
                self._tenant_id, relinked, expected_version=fresh.version
            )

    async def push_local(self, entity_type: EntityType) -> SyncRunResult:
        """Bulk push of every local-only record of a type. Failures are queued."""
        result = SyncRunResult(entity_type=entity_type, scope=SyncScope.FULL)
        records = await self._store.list_records(self._tenant_id, entity_type)

        for record in records:
            if record.external_id:
                continue
            result.processed += 1
            try:
                outcome = await self.push(record.id)
            except EntityNotFound:
                result.skipped += 1
                continue

            if outcome.status == PushStatus.NOT_SUPPORTED:
                result.not_supported = True
                result.processed -= 1
                break
            if outcome.status == PushStatus.PUSHED:
                result.created += 1
            else:
                result.failed += 1
                result.errors.append(f"{record.id}: {outcome.message}")

        logger.info(
            "pricebook_sync.push_local_complete",
            tenant_id=self._tenant_id,
            entity_type=entity_type.value,
            pushed=result.created,
            failed=result.failed,
            not_supported=result.not_supported,
        )
        return result


def _payload_id(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    raw_id = payload.get("id")
    return str(raw_id) if raw_id not in (None, "") else None
