"""Tests for SyncJobRunner (durable jobs, overlap, timeout, recovery) and
the APScheduler wrapper that fans scheduled runs out to tenants."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.app.config import Settings
from src.app.core.tenant import TenantContext
from src.app.pricebook.errors import ConfigurationError, JobAlreadyRunning
from src.app.pricebook.jobs import SyncJobRunner
from src.app.pricebook.scheduler import SYNC_ORDER, PricebookSyncScheduler
from src.app.pricebook.schemas import EntityType, JobStatus, SyncCursor, SyncScope
from src.app.pricebook.service import PricebookServiceRegistry
from tests.conftest import TENANT_ID, FakeProvider, InMemoryPricebookStore, service_payload


def _age(store: InMemoryPricebookStore, job_id: str, **delta) -> None:
    job = store.jobs[job_id]
    store.jobs[job_id] = job.model_copy(update={"started_at": job.started_at - timedelta(**delta)})


# ── Job Runner ───────────────────────────────────────────────────────────────


class TestSyncJobRunner:
    """Job persistence, cursor handling and failure capture."""

    async def test_run_persists_success_and_counts(self, runner, provider, store):
        provider.add(EntityType.SERVICE, service_payload(1, "A"))
        provider.add(EntityType.SERVICE, service_payload(2, "B"))

        job = await runner.run(EntityType.SERVICE, SyncScope.FULL)

        assert job.status == JobStatus.SUCCEEDED
        assert job.created == 2
        assert job.processed == 2
        assert job.finished_at is not None

    async def test_full_run_advances_full_cursor(self, runner, store):
        job = await runner.run(EntityType.SERVICE, SyncScope.FULL)

        cursor = await store.get_cursor(TENANT_ID, EntityType.SERVICE)
        assert cursor.last_full_sync_at == job.started_at
        assert cursor.last_incremental_sync_at is None

    async def test_incremental_uses_latest_cursor(self, runner, provider, store):
        full_at = datetime(2026, 3, 1, 1, 0, tzinfo=timezone.utc)
        incremental_at = datetime(2026, 3, 1, 9, 15, tzinfo=timezone.utc)
        await store.save_cursor(
            TENANT_ID,
            SyncCursor(
                entity_type=EntityType.SERVICE,
                last_full_sync_at=full_at,
                last_incremental_sync_at=incremental_at,
            ),
        )

        job = await runner.run(EntityType.SERVICE, SyncScope.INCREMENTAL)

        assert provider.list_calls[0]["modified_since"] == incremental_at
        cursor = await store.get_cursor(TENANT_ID, EntityType.SERVICE)
        assert cursor.last_incremental_sync_at == job.started_at
        assert cursor.last_full_sync_at == full_at

    async def test_incremental_without_cursor_lists_everything(self, runner, provider):
        await runner.run(EntityType.MATERIAL, SyncScope.INCREMENTAL)
        assert provider.list_calls[0]["modified_since"] is None

    async def test_failed_run_keeps_cursor(self, runner, provider, store):
        provider.list_errors.append(ConfigurationError("missing credentials"))

        job = await runner.run(EntityType.SERVICE, SyncScope.FULL)

        assert job.status == JobStatus.FAILED
        assert "configuration error" in job.error_summary
        cursor = await store.get_cursor(TENANT_ID, EntityType.SERVICE)
        assert cursor.last_full_sync_at is None

    async def test_truncated_run_does_not_advance_cursor(self, store, engine, provider):
        engine._max_pages = 1
        for i in range(1, 5):
            provider.add(EntityType.SERVICE, service_payload(i, f"S{i}"))
        runner = SyncJobRunner(TENANT_ID, store, engine)

        job = await runner.run(EntityType.SERVICE, SyncScope.FULL)

        assert job.status == JobStatus.SUCCEEDED
        assert "incomplete" in job.error_summary
        cursor = await store.get_cursor(TENANT_ID, EntityType.SERVICE)
        assert cursor.last_full_sync_at is None

    async def test_timeout_marks_failed(self, store, engine, provider):
        async def slow_list(*args, **kwargs):
            await asyncio.sleep(5)

        provider.list_page = slow_list
        runner = SyncJobRunner(TENANT_ID, store, engine, timeout=0.05)

        job = await runner.run(EntityType.SERVICE, SyncScope.FULL)

        assert job.status == JobStatus.FAILED
        assert "timed out" in job.error_summary

    async def test_overlapping_bulk_runs_rejected(self, runner):
        await runner.start(EntityType.SERVICE, SyncScope.FULL)

        with pytest.raises(JobAlreadyRunning):
            await runner.start(EntityType.SERVICE, SyncScope.INCREMENTAL)

    async def test_different_types_run_concurrently(self, runner):
        await runner.start(EntityType.SERVICE, SyncScope.FULL)
        job = await runner.start(EntityType.MATERIAL, SyncScope.FULL)
        assert job.status == JobStatus.RUNNING

    async def test_trigger_runs_detached(self, runner, provider, store):
        provider.add(EntityType.SERVICE, service_payload(1, "A"))

        job = await runner.trigger(EntityType.SERVICE, SyncScope.FULL)
        assert job.status == JobStatus.RUNNING
        await runner.wait_idle()

        finished = await store.get_job(TENANT_ID, job.id)
        assert finished.status == JobStatus.SUCCEEDED

    async def test_recover_interrupted_fails_and_replays(self, store, engine):
        orphan = await store.start_job(TENANT_ID, EntityType.SERVICE, SyncScope.FULL)
        runner = SyncJobRunner(TENANT_ID, store, engine)

        recovered = await runner.recover_interrupted()
        await runner.wait_idle()

        assert [j.id for j in recovered] == [orphan.id]
        assert recovered[0].status == JobStatus.FAILED
        assert recovered[0].error_summary.startswith("interrupted")
        replays = [j for j in store.jobs.values() if j.id != orphan.id]
        assert len(replays) == 1
        assert replays[0].status == JobStatus.SUCCEEDED

    async def test_recover_skips_own_active_and_recent_jobs(self, store, engine):
        runner = SyncJobRunner(TENANT_ID, store, engine)
        await runner.start(EntityType.SERVICE, SyncScope.FULL)
        await store.start_job(TENANT_ID, EntityType.MATERIAL, SyncScope.FULL)

        recovered = await runner.recover_interrupted(older_than=timedelta(hours=1), retrigger=False)

        assert recovered == []

    async def test_stale_job_from_dead_process_is_reaped_on_start(self, store, engine):
        orphan = await store.start_job(TENANT_ID, EntityType.SERVICE, SyncScope.FULL)
        _age(store, orphan.id, hours=2)
        runner = SyncJobRunner(TENANT_ID, store, engine, timeout=60)

        job = await runner.start(EntityType.SERVICE, SyncScope.INCREMENTAL)

        assert job.status == JobStatus.RUNNING
        reaped = await store.get_job(TENANT_ID, orphan.id)
        assert reaped.status == JobStatus.FAILED
        assert reaped.error_summary.startswith("stale")

    async def test_recent_job_from_another_worker_still_blocks(self, store, engine):
        await store.start_job(TENANT_ID, EntityType.SERVICE, SyncScope.FULL)
        runner = SyncJobRunner(TENANT_ID, store, engine, timeout=60)

        with pytest.raises(JobAlreadyRunning):
            await runner.start(EntityType.SERVICE, SyncScope.FULL)

    async def test_stale_single_job_does_not_unblock_bulk(self, store, engine):
        single = await store.start_job(TENANT_ID, EntityType.SERVICE, SyncScope.SINGLE)
        _age(store, single.id, hours=2)
        await store.start_job(TENANT_ID, EntityType.SERVICE, SyncScope.FULL)
        runner = SyncJobRunner(TENANT_ID, store, engine, timeout=60)

        with pytest.raises(JobAlreadyRunning):
            await runner.start(EntityType.SERVICE, SyncScope.FULL)
        assert (await store.get_job(TENANT_ID, single.id)).status == JobStatus.RUNNING


# ── Scheduler ────────────────────────────────────────────────────────────────


def _registry(tenants: list[TenantContext]) -> tuple[PricebookServiceRegistry, dict]:
    stores: dict[str, InMemoryPricebookStore] = {}

    def store_factory(ctx: TenantContext) -> InMemoryPricebookStore:
        return stores.setdefault(ctx.tenant_id, InMemoryPricebookStore())

    registry = PricebookServiceRegistry(
        Settings(),
        store_factory=store_factory,
        provider=FakeProvider(),
        tenant_source=AsyncMock(return_value=tenants),
    )
    return registry, stores


def _tenant(n: int) -> TenantContext:
    return TenantContext(tenant_id=f"tenant-{n}", tenant_slug=f"t{n}", schema_name=f"tenant_t{n}")


class TestPricebookSyncScheduler:
    """Scheduled fan-out across tenants and entity types."""

    def test_sync_order_covers_every_type_once(self):
        assert len(SYNC_ORDER) == len(set(SYNC_ORDER))
        assert set(SYNC_ORDER) == set(EntityType)

    def test_disabled_scheduler_does_not_start(self):
        registry, _ = _registry([])
        scheduler = PricebookSyncScheduler(registry, Settings(SCHEDULER_ENABLED=False))

        assert scheduler.start() is False
        assert scheduler.running is False

    async def test_full_sync_triggers_every_type_for_every_tenant(self):
        registry, stores = _registry([_tenant(1), _tenant(2)])
        scheduler = PricebookSyncScheduler(registry, Settings())

        started = await scheduler.run_full_sync()
        for ctx in await registry.active_tenants():
            await registry.get(ctx).wait_idle()

        assert started == 2 * len(EntityType)
        for store in stores.values():
            assert {j.entity_type for j in store.jobs.values()} == set(EntityType)
            assert all(j.scope == SyncScope.FULL for j in store.jobs.values())

    async def test_running_job_is_skipped_not_queued(self):
        ctx = _tenant(1)
        registry, stores = _registry([ctx])
        service = registry.get(ctx)
        await service.runner.start(EntityType.SERVICE, SyncScope.FULL)
        scheduler = PricebookSyncScheduler(registry, Settings())

        started = await scheduler.run_incremental_sync()
        await service.wait_idle()

        assert started == len(EntityType) - 1
        service_jobs = [j for j in stores[ctx.tenant_id].jobs.values() if j.entity_type == EntityType.SERVICE]
        assert len(service_jobs) == 1

    async def test_drain_pending_covers_each_tenant(self):
        ctx = _tenant(1)
        registry, _ = _registry([ctx])
        service = registry.get(ctx)
        service.drain_pending = AsyncMock()
        scheduler = PricebookSyncScheduler(registry, Settings())

        await scheduler.drain_pending()

        service.drain_pending.assert_awaited_once()

    async def test_drain_failure_does_not_stop_other_tenants(self):
        first, second = _tenant(1), _tenant(2)
        registry, _ = _registry([first, second])
        registry.get(first).drain_pending = AsyncMock(side_effect=RuntimeError("db down"))
        registry.get(second).drain_pending = AsyncMock()
        scheduler = PricebookSyncScheduler(registry, Settings())

        await scheduler.drain_pending()

        registry.get(second).drain_pending.assert_awaited_once()

    async def test_start_registers_three_jobs(self):
        registry, _ = _registry([])
        scheduler = PricebookSyncScheduler(registry, Settings())

        assert scheduler.start() is True
        try:
            job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
            assert job_ids == {"pricebook_full_sync", "pricebook_incremental_sync", "pricebook_pending_drain"}
        finally:
            scheduler.stop()
        assert scheduler.running is False


class TestRegistry:
    def test_service_cached_per_tenant(self):
        registry, _ = _registry([])
        ctx = _tenant(1)
        assert registry.get(ctx) is registry.get(ctx)
        assert registry.get(ctx) is not registry.get(_tenant(2))

    async def test_close_releases_provider(self):
        registry, _ = _registry([])
        await registry.close()
        assert registry.provider.closed is True

    def test_native_provider_from_settings(self):
        registry = PricebookServiceRegistry(
            Settings(PRICEBOOK_PROVIDER="native"),
            store_factory=MagicMock(),
        )
        assert registry.provider.name == "native"

    async def test_opted_out_tenant_recovers_from_crashed_on_demand_sync(self):
        ctx = _tenant(1)
        registry, stores = _registry([])
        service = registry.get(ctx)
        orphan = await stores[ctx.tenant_id].start_job(ctx.tenant_id, EntityType.SERVICE, SyncScope.FULL)
        _age(stores[ctx.tenant_id], orphan.id, seconds=Settings().SYNC_JOB_TIMEOUT_SECONDS + 60)

        await PricebookSyncScheduler(registry, Settings()).drain_pending()
        job = await service.trigger_sync(EntityType.SERVICE, SyncScope.FULL)
        await service.wait_idle()

        assert job.id != orphan.id
        assert stores[ctx.tenant_id].jobs[orphan.id].status == JobStatus.FAILED

    async def test_startup_recovery_leaves_jobs_younger_than_timeout(self):
        ctx = _tenant(1)
        registry, stores = _registry([ctx])
        service = registry.get(ctx)
        store = stores[ctx.tenant_id]
        fresh = await store.start_job(ctx.tenant_id, EntityType.SERVICE, SyncScope.FULL)
        old = await store.start_job(ctx.tenant_id, EntityType.MATERIAL, SyncScope.FULL)
        _age(store, old.id, seconds=Settings().SYNC_JOB_TIMEOUT_SECONDS + 60)

        recovered = await service.recover_interrupted()
        await service.wait_idle()

        assert [j.id for j in recovered] == [old.id]
        assert store.jobs[fresh.id].status == JobStatus.RUNNING
        service_runs = [j for j in store.jobs.values() if j.entity_type == EntityType.SERVICE]
        assert len(service_runs) == 1
