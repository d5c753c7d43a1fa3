"""Pricebook sync service -- the operations exposed to the API and scheduler.

PricebookSyncService wires one tenant's engine, pending queue, job runner
and health analyzer together and implements the operator-facing
operations: trigger a sync, pull or push one entity, manage overrides and
visibility, work the pending queue, and read health.

PricebookServiceRegistry owns the process-wide pieces (one RateLimitGuard,
one provider, one worker-pool semaphore) and hands out a service per tenant.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.app.config import Settings
from src.app.core.redis import TenantRedis
from src.app.core.tenant import TenantContext
from src.app.pricebook.engine import SyncEngine
from src.app.pricebook.errors import EntityNotFound, ValidationError
from src.app.pricebook.health import PricebookHealthAnalyzer
from src.app.pricebook.jobs import SyncJobRunner
from src.app.pricebook.pending import PendingSyncQueue
from src.app.pricebook.providers import (
    ExternalPricebookProvider,
    NativeProvider,
    NotSupported,
    PricebookProvider,
)
from src.app.pricebook.rate_limit import RateLimitGuard
from src.app.pricebook.schemas import (
    EntityType,
    HealthReport,
    JobStatus,
    MasterRecord,
    OverrideEntry,
    PendingCounts,
    PendingFilter,
    PendingStatus,
    PendingSyncEntry,
    PushOutcome,
    PushStatus,
    RecordSource,
    RetryOutcome,
    SyncJob,
    SyncScope,
    utcnow,
)
from src.app.pricebook.store import PricebookStore

logger = structlog.get_logger(__name__)

PUSH_STILL_PROCESSING = "still processing, check pending queue"

_HEALTH_CACHE_KEYS = ["pricebook:health:all"] + [f"pricebook:health:{t.value}" for t in EntityType]


class PricebookSyncService:
    """Pricebook operations for a single tenant.

    Args:
        tenant_id: Tenant served by this instance.
        store: MASTER, job and queue persistence.
        engine: Pull/push engine.
        queue: Pending-sync queue.
        runner: Job runner for bulk pulls.
        analyzer: Health analyzer.
        push_timeout: Seconds a direct push may block the caller.
        cache: Tenant-prefixed Redis for the health report. Optional.
        cache_ttl: Health report TTL in seconds.
        drain_batch: Entries replayed per drain tick.
    """

    def __init__(
        self,
        tenant_id: str,
        store: PricebookStore,
        engine: SyncEngine,
        queue: PendingSyncQueue,
        runner: SyncJobRunner,
        analyzer: PricebookHealthAnalyzer,
        *,
        push_timeout: float = 20.0,
        cache: TenantRedis | None = None,
        cache_ttl: int = 60,
        drain_batch: int = 50,
    ) -> None:
        self.tenant_id = tenant_id
        self._store = store
        self._engine = engine
        self._queue = queue
        self._runner = runner
        self._analyzer = analyzer
        self._push_timeout = push_timeout
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._drain_batch = drain_batch
        self._background: set[asyncio.Task] = set()

    @property
    def runner(self) -> SyncJobRunner:
        return self._runner

    # ── Sync ────────────────────────────────────────────────────────────

    async def trigger_sync(
        self,
        entity_type: EntityType,
        scope: SyncScope = SyncScope.INCREMENTAL,
        *,
        force: bool = False,
    ) -> SyncJob:
        """Start a detached bulk pull. Raises JobAlreadyRunning on overlap."""
        if scope == SyncScope.SINGLE:
            raise ValidationError("single-entity syncs go through pull_one")
        job = await self._runner.trigger(entity_type, scope, force=force)
        await self._invalidate_health()
        return job

    async def pull_one(
        self,
        entity_type: EntityType,
        entity_id: str,
        *,
        force: bool = False,
    ) -> MasterRecord | NotSupported:
        """Synchronously pull one entity by MASTER id."""
        result = await self._engine.pull_one(entity_type, entity_id=entity_id, force=force)
        await self._invalidate_health()
        return result

    async def push_one(self, entity_type: EntityType, entity_id: str) -> PushOutcome:
        """Push one record, waiting at most ``push_timeout`` seconds.

        Past the timeout the push keeps running in the background and the
        caller gets a ``processing`` outcome; a later failure lands in the
        pending-sync queue.
        """
        record = await self._get_live_record(entity_id)
        if record.entity_type != entity_type:
            raise EntityNotFound(f"{entity_type.value} {entity_id} not found")

        task = asyncio.create_task(self._engine.push(entity_id, direct=True))
        self._background.add(task)
        task.add_done_callback(self._on_push_done)

        try:
            outcome = await asyncio.wait_for(asyncio.shield(task), timeout=self._push_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "pricebook_service.push_timeout",
                tenant_id=self.tenant_id,
                entity_id=entity_id,
                timeout=self._push_timeout,
            )
            return PushOutcome(status=PushStatus.PROCESSING, record=record, message=PUSH_STILL_PROCESSING)

        await self._invalidate_health()
        return outcome

    def _on_push_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.info(
                "pricebook_service.push_failed",
                tenant_id=self.tenant_id,
                error=str(task.exception()),
            )

    async def push_local(self, entity_type: EntityType) -> None:
        """Push every local-only record of a type in the background."""
        task = asyncio.create_task(self._engine.push_local(entity_type))
        self._background.add(task)
        task.add_done_callback(self._on_push_done)

    # ── Records ─────────────────────────────────────────────────────────

    async def create_local_record(self, entity_type: EntityType, fields: dict[str, Any]) -> MasterRecord:
        name = fields.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name is required")
        record = await self._store.create_record(
            self.tenant_id, entity_type, dict(fields), source=RecordSource.LOCAL
        )
        logger.info(
            "pricebook_service.local_record_created",
            tenant_id=self.tenant_id,
            entity_id=record.id,
            entity_type=entity_type.value,
        )
        await self._invalidate_health()
        return record

    async def soft_delete_record(self, entity_id: str) -> MasterRecord:
        record = await self._get_live_record(entity_id)
        deleted = await self._store.update_record(
            self.tenant_id,
            record.model_copy(update={"deleted_at": utcnow()}),
            expected_version=record.version,
        )
        logger.info("pricebook_service.record_deleted", tenant_id=self.tenant_id, entity_id=entity_id)
        await self._invalidate_health()
        return deleted

    async def set_override(
        self,
        entity_id: str,
        field: str,
        value: Any,
        *,
        set_by: str | None = None,
    ) -> MasterRecord:
        """Pin a field to a local value that pulls will not overwrite."""
        record = await self._get_live_record(entity_id)
        source = record.source if record.source == RecordSource.LOCAL else RecordSource.MERGED
        updated = await self._store.update_record(
            self.tenant_id,
            record.model_copy(
                update={
                    "fields": {**record.fields, field: value},
                    "overridden_fields": record.overridden_fields | {field},
                    "source": source,
                }
            ),
            expected_version=record.version,
        )
        await self._store.upsert_override(
            self.tenant_id,
            OverrideEntry(entity_id=entity_id, field=field, value=value, set_by=set_by),
        )
        logger.info(
            "pricebook_service.override_set",
            tenant_id=self.tenant_id,
            entity_id=entity_id,
            field=field,
            set_by=set_by,
        )
        await self._invalidate_health()
        return updated

    async def clear_override(self, entity_id: str, field: str) -> MasterRecord:
        """Release a field so the next pull may overwrite it again."""
        record = await self._get_live_record(entity_id)
        await self._store.delete_override(self.tenant_id, entity_id, field)
        if field not in record.overridden_fields:
            return record

        remaining = record.overridden_fields - {field}
        source = record.source
        if not remaining and source == RecordSource.MERGED and record.external_id:
            source = RecordSource.EXTERNAL
        updated = await self._store.update_record(
            self.tenant_id,
            record.model_copy(update={"overridden_fields": remaining, "source": source}),
            expected_version=record.version,
        )
        logger.info("pricebook_service.override_cleared", tenant_id=self.tenant_id, entity_id=entity_id, field=field)
        return updated

    async def list_overrides(self, entity_id: str) -> list[OverrideEntry]:
        return await self._store.list_overrides(self.tenant_id, entity_id)

    async def set_visibility(self, entity_id: str, visible: bool, *, cascade: bool = False) -> list[str]:
        """Toggle visibility; with ``cascade`` also subcategories and their items.

        Returns:
            Ids of the records whose visibility actually changed.
        """
        record = await self._get_live_record(entity_id)
        targets = [record]
        if cascade and record.entity_type == EntityType.CATEGORY:
            targets.extend(await self._descendants(record))

        changed: list[str] = []
        for target in targets:
            if target.visible == visible:
                continue
            await self._store.update_record(
                self.tenant_id,
                target.model_copy(update={"visible": visible}),
                expected_version=target.version,
            )
            changed.append(target.id)

        logger.info(
            "pricebook_service.visibility_set",
            tenant_id=self.tenant_id,
            entity_id=entity_id,
            visible=visible,
            cascade=cascade,
            changed=len(changed),
        )
        return changed

    async def _descendants(self, category: MasterRecord) -> list[MasterRecord]:
        """Subcategories (recursively) and the items assigned to any of them."""
        records = await self._store.list_records(self.tenant_id)
        categories = [r for r in records if r.entity_type == EntityType.CATEGORY]

        children: dict[str, list[MasterRecord]] = {}
        for cat in categories:
            parent = cat.fields.get("parent_id")
            if parent not in (None, ""):
                children.setdefault(str(parent), []).append(cat)

        found: list[MasterRecord] = []
        subtree_keys: set[str] = set()
        seen: set[str] = {category.id}
        stack = [category]
        while stack:
            current = stack.pop()
            keys = {current.id} | ({current.external_id} if current.external_id else set())
            subtree_keys |= keys
            for key in keys:
                for child in children.get(key, []):
                    if child.id in seen:
                        continue
                    seen.add(child.id)
                    found.append(child)
                    stack.append(child)

        for item in records:
            if item.entity_type == EntityType.CATEGORY:
                continue
            if str(item.fields.get("category_id") or "") in subtree_keys:
                found.append(item)
        return found

    async def _get_live_record(self, entity_id: str) -> MasterRecord:
        record = await self._store.get_record(self.tenant_id, entity_id)
        if record is None or record.is_deleted:
            raise EntityNotFound(f"record {entity_id} not found")
        return record

    # ── Pending queue ───────────────────────────────────────────────────

    async def get_pending_sync(self, filters: PendingFilter | None = None) -> list[PendingSyncEntry]:
        return await self._queue.list_entries(filters)

    async def retry_pending(self, entry_ids: list[str]) -> RetryOutcome:
        outcome = await self._queue.retry(self._engine, entry_ids)
        await self._invalidate_health()
        return outcome

    async def reset_pending_attempts(self, entry_ids: list[str]) -> list[str]:
        return await self._queue.reset_attempts(entry_ids)

    async def get_pending_counts(self) -> PendingCounts:
        return await self._queue.counts()

    async def drain_pending(self) -> RetryOutcome:
        """One retry-worker tick: replay due entries and reap stuck jobs."""
        await self._runner.recover_interrupted(
            older_than=timedelta(seconds=self._runner.timeout), retrigger=False
        )
        return await self._queue.drain_due(self._engine, limit=self._drain_batch)

    # ── Jobs ────────────────────────────────────────────────────────────

    async def list_jobs(self, entity_type: EntityType | None = None, *, limit: int = 50) -> list[SyncJob]:
        return await self._store.list_jobs(self.tenant_id, entity_type, limit=limit)

    async def recover_interrupted(self) -> list[SyncJob]:
        """Startup recovery. Jobs younger than the run timeout may belong to a
        sibling worker and are left for start() or the drain tick to reap."""
        return await self._runner.recover_interrupted(older_than=timedelta(seconds=self._runner.timeout))

    # ── Health ──────────────────────────────────────────────────────────

    async def dismiss_duplicate(
        self,
        entity_type: EntityType,
        first_id: str,
        second_id: str,
        *,
        dismissed_by: str | None = None,
    ) -> None:
        await self._store.add_dismissal(self.tenant_id, entity_type, first_id, second_id, dismissed_by)
        await self._invalidate_health()

    async def get_health(self, entity_type: EntityType | None = None) -> HealthReport:
        """Health report, served from the tenant cache when fresh."""
        cache_key = f"pricebook:health:{entity_type.value if entity_type else 'all'}"
        cached = await self._cache_get(cache_key)
        if cached is not None:
            return cached

        records = await self._store.list_records(self.tenant_id)
        dead_letters = await self._store.list_pending(
            self.tenant_id,
            PendingFilter(statuses=[PendingStatus.DEAD_LETTER], limit=1000),
        )
        jobs = await self._store.list_jobs(self.tenant_id, status=JobStatus.SUCCEEDED, limit=200)
        dismissed = await self._store.list_dismissals(self.tenant_id)
        counts = await self._queue.counts()

        report = self._analyzer.report(
            records,
            dead_letters,
            jobs=jobs,
            counts=counts,
            dismissed=dismissed,
            entity_type=entity_type,
        )
        await self._cache_set(cache_key, report)
        return report

    async def _cache_get(self, key: str) -> HealthReport | None:
        if self._cache is None:
            return None
        try:
            raw = await self._cache.get(key)
        except aioredis.RedisError as exc:
            logger.warning("pricebook_service.cache_get_failed", tenant_id=self.tenant_id, error=str(exc))
            return None
        return HealthReport.model_validate_json(raw) if raw else None

    async def _cache_set(self, key: str, report: HealthReport) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(key, report.model_dump_json(), ex=self._cache_ttl)
        except aioredis.RedisError as exc:
            logger.warning("pricebook_service.cache_set_failed", tenant_id=self.tenant_id, error=str(exc))

    async def _invalidate_health(self) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.delete(*_HEALTH_CACHE_KEYS)
        except aioredis.RedisError as exc:
            logger.warning("pricebook_service.cache_invalidate_failed", tenant_id=self.tenant_id, error=str(exc))

    async def wait_idle(self) -> None:
        """Wait for background pushes and detached sync runs."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._runner.wait_idle()


# ── Registry ────────────────────────────────────────────────────────────────


def build_provider(settings: Settings, guard: RateLimitGuard) -> PricebookProvider:
    """Provider selected by PRICEBOOK_PROVIDER."""
    if settings.PRICEBOOK_PROVIDER == "native":
        return NativeProvider()
    if not settings.has_pricing_credentials():
        logger.warning(
            "pricebook_service.credentials_missing",
            detail="sync jobs will fail with a configuration error until PRICING_* is set",
        )
    return ExternalPricebookProvider.from_settings(settings, guard)


class PricebookServiceRegistry:
    """Per-process holder of shared sync resources and per-tenant services.

    Args:
        settings: Application settings.
        store_factory: Builds the store for a tenant.
        provider: Pricebook provider; built from settings when omitted.
        guard: Rate-limit guard; one per registry when omitted.
        tenant_source: Async callable listing active tenants for scheduled work.
        redis_client: Redis pool for the health cache. Optional.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store_factory: Callable[[TenantContext], PricebookStore],
        provider: PricebookProvider | None = None,
        guard: RateLimitGuard | None = None,
        tenant_source: Callable[[], Awaitable[list[TenantContext]]] | None = None,
        redis_client: aioredis.Redis | None = None,
    ) -> None:
        self._settings = settings
        self._store_factory = store_factory
        self.guard = guard or RateLimitGuard(default_retry_after=settings.RATE_LIMIT_DEFAULT_RETRY_AFTER)
        self.provider = provider or build_provider(settings, self.guard)
        self._tenant_source = tenant_source
        self._redis = redis_client
        self._pool = asyncio.Semaphore(settings.SYNC_WORKER_POOL_SIZE)
        self._services: dict[str, PricebookSyncService] = {}
        self._contexts: dict[str, TenantContext] = {}

    def get(self, ctx: TenantContext) -> PricebookSyncService:
        """Service for a tenant, built on first use."""
        service = self._services.get(ctx.tenant_id)
        if service is not None:
            return service

        settings = self._settings
        store = self._store_factory(ctx)
        queue = PendingSyncQueue(
            ctx.tenant_id,
            store,
            max_attempts=settings.PENDING_MAX_ATTEMPTS,
            backoff_base=settings.PENDING_BACKOFF_BASE_SECONDS,
            backoff_cap=settings.PENDING_BACKOFF_CAP_SECONDS,
        )
        engine = SyncEngine(
            ctx.tenant_id,
            store,
            self.provider,
            queue,
            page_size=settings.PRICING_PAGE_SIZE,
            max_pages=settings.PRICING_MAX_PAGES,
        )
        runner = SyncJobRunner(
            ctx.tenant_id,
            store,
            engine,
            pool=self._pool,
            timeout=settings.SYNC_JOB_TIMEOUT_SECONDS,
        )
        analyzer = PricebookHealthAnalyzer(
            completeness_threshold=settings.COMPLETENESS_THRESHOLD,
            similarity_threshold=settings.DUPLICATE_SIMILARITY_THRESHOLD,
        )
        service = PricebookSyncService(
            ctx.tenant_id,
            store,
            engine,
            queue,
            runner,
            analyzer,
            push_timeout=settings.PUSH_TIMEOUT_SECONDS,
            cache=TenantRedis(self._redis, ctx.tenant_id) if self._redis is not None else None,
            cache_ttl=settings.HEALTH_CACHE_TTL_SECONDS,
            drain_batch=settings.PENDING_DRAIN_BATCH,
        )
        self._services[ctx.tenant_id] = service
        self._contexts[ctx.tenant_id] = ctx
        return service

    async def active_tenants(self) -> list[TenantContext]:
        if self._tenant_source is not None:
            return await self._tenant_source()
        return list(self._contexts.values())

    async def close(self) -> None:
        """Release the provider. Detached runs still in flight are left to
        recover_interrupted() on the next start."""
        await self.provider.close()
