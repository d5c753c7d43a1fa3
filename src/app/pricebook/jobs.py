"""Durable sync job runner -- checkpoints, overlap rejection, pool and timeout.

A run is persisted as ``running`` before any work starts and as
``succeeded``/``failed`` afterwards. The store refuses a second running job
of the same (entity type, scope class), which is how overlapping triggers
are rejected rather than queued.

Work executes inside a process-wide asyncio.Semaphore (the worker pool) and
a run-level timeout. A timed-out run is marked failed; entities it already
merged stay committed.

Jobs left ``running`` by a dead process are failed and re-triggered by
recover_interrupted() once they are older than the run timeout. start()
reaps such a job itself when it is the one blocking a new run, so tenants
outside the scheduled set are never locked out. Replaying a pull is safe
because merging the same snapshot twice yields the same record.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import structlog

from src.app.core.monitoring import track_sync_run
from src.app.pricebook.engine import SyncEngine
from src.app.pricebook.errors import ConfigurationError, JobAlreadyRunning
from src.app.pricebook.schemas import (
    EntityType,
    JobStatus,
    ScopeClass,
    SyncJob,
    SyncRunResult,
    SyncScope,
    scope_class_for,
    utcnow,
)
from src.app.pricebook.store import PricebookStore

logger = structlog.get_logger(__name__)

DEFAULT_JOB_TIMEOUT_SECONDS = 1800.0


class SyncJobRunner:
    """Runs pull jobs for one tenant.

    Args:
        tenant_id: Tenant the jobs belong to.
        store: Persistence for jobs and cursors.
        engine: Sync engine that performs the pulls.
        pool: Shared semaphore bounding concurrent runs across tenants.
        timeout: Run-level timeout in seconds.
    """

    def __init__(
        self,
        tenant_id: str,
        store: PricebookStore,
        engine: SyncEngine,
        *,
        pool: asyncio.Semaphore | None = None,
        timeout: float = DEFAULT_JOB_TIMEOUT_SECONDS,
    ) -> None:
        self._tenant_id = tenant_id
        self._store = store
        self._engine = engine
        self._pool = pool or asyncio.Semaphore(4)
        self._timeout = timeout
        self._tasks: set[asyncio.Task] = set()
        self._active_jobs: set[str] = set()

    @property
    def timeout(self) -> float:
        return self._timeout

    async def start(self, entity_type: EntityType, scope: SyncScope) -> SyncJob:
        """Persist a running job. Raises JobAlreadyRunning on overlap.

        A conflicting job that has been running longer than the run timeout
        and is not executing in this process is failed as stale, and the
        start is retried once.
        """
        try:
            job = await self._store.start_job(self._tenant_id, entity_type, scope)
        except JobAlreadyRunning:
            if not await self._reap_stale(entity_type, scope_class_for(scope)):
                raise
            job = await self._store.start_job(self._tenant_id, entity_type, scope)
        self._active_jobs.add(job.id)
        logger.info(
            "sync_job.started",
            tenant_id=self._tenant_id,
            job_id=job.id,
            entity_type=entity_type.value,
            scope=scope.value,
        )
        return job

    async def _reap_stale(self, entity_type: EntityType, scope_class: ScopeClass) -> int:
        cutoff = utcnow() - timedelta(seconds=self._timeout)
        running = await self._store.list_jobs(
            self._tenant_id, entity_type, status=JobStatus.RUNNING, limit=500
        )
        reaped = 0
        for job in running:
            if job.scope_class != scope_class or job.id in self._active_jobs:
                continue
            if job.started_at is not None and job.started_at > cutoff:
                continue
            await self._store.finish_job(
                self._tenant_id,
                job.id,
                JobStatus.FAILED,
                error_summary="stale: still running after the run timeout",
            )
            reaped += 1
            logger.warning(
                "sync_job.reaped_stale",
                tenant_id=self._tenant_id,
                job_id=job.id,
                entity_type=entity_type.value,
                scope=job.scope.value,
            )
        return reaped

    async def execute(self, job: SyncJob, *, force: bool = False) -> SyncJob:
        """Run the pull for an already-started job and persist its outcome."""
        modified_since = None
        if job.scope == SyncScope.INCREMENTAL:
            cursor = await self._store.get_cursor(self._tenant_id, job.entity_type)
            modified_since = cursor.modified_since()
            if modified_since is None:
                logger.info(
                    "sync_job.incremental_without_cursor",
                    tenant_id=self._tenant_id,
                    job_id=job.id,
                    entity_type=job.entity_type.value,
                    detail="falling back to full enumeration",
                )

        result: SyncRunResult | None = None
        status = JobStatus.SUCCEEDED
        error_summary: str | None = None

        try:
            async with track_sync_run(job.entity_type.value, job.scope.value) as tracker:
                try:
                    async with self._pool:
                        result = await asyncio.wait_for(
                            self._engine.pull(
                                job.entity_type,
                                job.scope,
                                force=force,
                                modified_since=modified_since,
                            ),
                            timeout=self._timeout,
                        )
                except asyncio.TimeoutError:
                    status = JobStatus.FAILED
                    error_summary = f"timed out after {self._timeout:.0f}s; merged entities were kept"
                except ConfigurationError as exc:
                    status = JobStatus.FAILED
                    error_summary = f"configuration error: {exc}"
                except Exception as exc:
                    status = JobStatus.FAILED
                    error_summary = f"{type(exc).__name__}: {exc}"
                tracker["status"] = status.value

            if result is not None:
                error_summary = _summarize(result)

            finished = await self._store.finish_job(
                self._tenant_id,
                job.id,
                status,
                error_summary=error_summary,
                counts=_counts(result),
            )
        finally:
            self._active_jobs.discard(job.id)

        if status == JobStatus.SUCCEEDED and result is not None:
            await self._advance_cursor(job, result)

        log = logger.info if status == JobStatus.SUCCEEDED else logger.error
        log(
            "sync_job.finished",
            tenant_id=self._tenant_id,
            job_id=job.id,
            entity_type=job.entity_type.value,
            scope=job.scope.value,
            status=status.value,
            error_summary=error_summary,
        )
        return finished

    async def run(self, entity_type: EntityType, scope: SyncScope, *, force: bool = False) -> SyncJob:
        """Start and await a job."""
        job = await self.start(entity_type, scope)
        return await self.execute(job, force=force)

    async def trigger(self, entity_type: EntityType, scope: SyncScope, *, force: bool = False) -> SyncJob:
        """Start a job and execute it detached. Returns the running job."""
        job = await self.start(entity_type, scope)
        task = asyncio.create_task(self.execute(job, force=force))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return job

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "sync_job.detached_run_failed",
                tenant_id=self._tenant_id,
                error=str(exc),
            )

    async def wait_idle(self) -> None:
        """Wait for every detached run started by this runner."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def recover_interrupted(
        self,
        *,
        older_than: timedelta = timedelta(0),
        retrigger: bool = True,
    ) -> list[SyncJob]:
        """Fail jobs stuck in ``running`` and replay the bulk ones.

        Args:
            older_than: Only jobs started at least this long ago. Callers
                pass the run timeout so jobs a sibling worker is still
                executing are left alone.
            retrigger: Start a fresh run for each recovered bulk job.

        Returns:
            The jobs that were marked failed.
        """
        cutoff = utcnow() - older_than
        running = await self._store.list_jobs(self._tenant_id, status=JobStatus.RUNNING, limit=500)
        recovered: list[SyncJob] = []

        for job in running:
            if job.id in self._active_jobs:
                continue
            if job.started_at is not None and job.started_at > cutoff:
                continue
            failed = await self._store.finish_job(
                self._tenant_id,
                job.id,
                JobStatus.FAILED,
                error_summary="interrupted: process stopped before the run finished",
            )
            recovered.append(failed)
            logger.warning(
                "sync_job.recovered_interrupted",
                tenant_id=self._tenant_id,
                job_id=job.id,
                entity_type=job.entity_type.value,
                scope=job.scope.value,
            )

            if retrigger and job.scope_class == ScopeClass.BULK:
                try:
                    await self.trigger(job.entity_type, job.scope)
                except JobAlreadyRunning:
                    logger.info(
                        "sync_job.replay_skipped",
                        tenant_id=self._tenant_id,
                        entity_type=job.entity_type.value,
                    )
        return recovered

    async def _advance_cursor(self, job: SyncJob, result: SyncRunResult) -> None:
        if not result.complete or result.not_supported:
            return
        started = job.started_at or utcnow()
        cursor = await self._store.get_cursor(self._tenant_id, job.entity_type)
        if job.scope == SyncScope.FULL:
            cursor.last_full_sync_at = started
        elif job.scope == SyncScope.INCREMENTAL:
            cursor.last_incremental_sync_at = started
        else:
            return
        await self._store.save_cursor(self._tenant_id, cursor)


def _counts(result: SyncRunResult | None) -> dict[str, int] | None:
    if result is None:
        return None
    return {
        "processed": result.processed,
        "created": result.created,
        "updated": result.updated,
        "unchanged": result.unchanged,
        "failed": result.failed,
    }


def _summarize(result: SyncRunResult) -> str | None:
    notes: list[str] = []
    if result.not_supported:
        notes.append("provider does not support listing")
    if not result.complete:
        notes.append("pagination stopped early; results may be incomplete")
    if result.failed:
        notes.append(f"{result.failed} entities failed and were queued for retry")
    return "; ".join(notes) or None
