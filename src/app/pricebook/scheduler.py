"""Background scheduler for pricebook sync runs and pending-queue drains.

Provides a lightweight APScheduler wrapper with 3 jobs:
- Daily full sync at FULL_SYNC_HOUR:00 (every tenant, every entity type)
- Incremental sync every INCREMENTAL_SYNC_MINUTES
- Pending-queue drain every PENDING_DRAIN_INTERVAL_SECONDS

Overlap is rejected, not queued: when a run of the same entity type and
scope class is still going, the trigger is logged and skipped, and the next
tick tries again.

Exports:
    PricebookSyncScheduler: Async scheduler driving sync runs for all tenants.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from src.app.config import Settings
from src.app.pricebook.errors import JobAlreadyRunning
from src.app.pricebook.schemas import EntityType, SyncScope
from src.app.pricebook.service import PricebookServiceRegistry

logger = structlog.get_logger(__name__)

# Trigger order only; runs proceed concurrently under the worker pool. Items
# store the external category id, so they do not depend on category rows.
SYNC_ORDER = (EntityType.CATEGORY, EntityType.SERVICE, EntityType.MATERIAL, EntityType.EQUIPMENT)


class PricebookSyncScheduler:
    """Scheduler for full syncs, incremental syncs and retry-worker ticks.

    Args:
        registry: Per-tenant service registry.
        settings: Application settings (schedule and batch sizes).
    """

    def __init__(self, registry: PricebookServiceRegistry, settings: Settings) -> None:
        self._registry = registry
        self._settings = settings
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> bool:
        """Start the scheduler. Returns False when disabled by settings."""
        if not self._settings.SCHEDULER_ENABLED:
            logger.info("pricebook_scheduler.disabled")
            return False

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            self.run_full_sync,
            trigger=CronTrigger(hour=self._settings.FULL_SYNC_HOUR, minute=0),
            id="pricebook_full_sync",
            name="Pricebook full sync for all tenants",
            misfire_grace_time=3600,
            coalesce=True,
        )

        self._scheduler.add_job(
            self.run_incremental_sync,
            trigger=IntervalTrigger(minutes=self._settings.INCREMENTAL_SYNC_MINUTES),
            id="pricebook_incremental_sync",
            name="Pricebook incremental sync for all tenants",
            misfire_grace_time=300,
            coalesce=True,
        )

        self._scheduler.add_job(
            self.drain_pending,
            trigger=IntervalTrigger(seconds=self._settings.PENDING_DRAIN_INTERVAL_SECONDS),
            id="pricebook_pending_drain",
            name="Pricebook pending-sync retry worker",
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1,
        )

        self._scheduler.start()
        self._started = True
        logger.info(
            "pricebook_scheduler.started",
            jobs=["full_sync", "incremental_sync", "pending_drain"],
            schedule_full=f"Daily {self._settings.FULL_SYNC_HOUR:02d}:00",
            schedule_incremental=f"Every {self._settings.INCREMENTAL_SYNC_MINUTES} min",
            schedule_drain=f"Every {self._settings.PENDING_DRAIN_INTERVAL_SECONDS} s",
        )
        return True

    def stop(self) -> None:
        if self._scheduler is not None and self._started:
            self._scheduler.shutdown(wait=False)
        self._started = False
        logger.info("pricebook_scheduler.stopped")

    # ── Jobs ────────────────────────────────────────────────────────────

    async def run_full_sync(self) -> int:
        """Trigger a full sync of every entity type for every tenant."""
        return await self._trigger_all(SyncScope.FULL)

    async def run_incremental_sync(self) -> int:
        """Trigger an incremental sync of every entity type for every tenant."""
        return await self._trigger_all(SyncScope.INCREMENTAL)

    async def _trigger_all(self, scope: SyncScope) -> int:
        """Returns the number of jobs started."""
        logger.info("pricebook_scheduler.tick", scope=scope.value)
        started = 0

        for ctx in await self._registry.active_tenants():
            service = self._registry.get(ctx)
            for entity_type in SYNC_ORDER:
                try:
                    await service.trigger_sync(entity_type, scope)
                except JobAlreadyRunning as exc:
                    logger.info(
                        "pricebook_scheduler.trigger_skipped",
                        tenant_id=ctx.tenant_id,
                        entity_type=entity_type.value,
                        scope=scope.value,
                        running_job_id=exc.job_id,
                    )
                    continue
                except Exception as exc:
                    logger.error(
                        "pricebook_scheduler.trigger_failed",
                        tenant_id=ctx.tenant_id,
                        entity_type=entity_type.value,
                        scope=scope.value,
                        error=str(exc),
                    )
                    continue
                started += 1

        logger.info("pricebook_scheduler.tick_complete", scope=scope.value, jobs_started=started)
        return started

    async def drain_pending(self) -> None:
        """One retry-worker tick across all tenants."""
        for ctx in await self._registry.active_tenants():
            service = self._registry.get(ctx)
            try:
                await service.drain_pending()
            except Exception as exc:
                logger.error(
                    "pricebook_scheduler.drain_failed",
                    tenant_id=ctx.tenant_id,
                    error=str(exc),
                )
