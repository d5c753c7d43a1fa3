"""Pending-sync queue -- durable backlog of per-entity sync failures.

State machine per entry::

    pending -> retrying -> resolved
                        -> dead_letter   (attempts == max_attempts)

A new failure starts at attempts=0. Every failed retry increments attempts
and schedules ``next_retry_at = now + backoff(attempts)`` where backoff
doubles from ``backoff_base`` up to ``backoff_cap``. Dead-lettered entries
are only retried on request (retry() or reset_attempts()).

RateLimited never consumes an attempt: the entry is deferred by the
remaining cooldown and the drain stops, since every further call would be
refused as well.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from src.app.core.monitoring import pricebook_pending_entries
from src.app.pricebook.errors import ConfigurationError, RateLimited
from src.app.pricebook.providers.base import NotSupported
from src.app.pricebook.schemas import (
    EntityType,
    PendingAction,
    PendingCounts,
    PendingFilter,
    PendingStatus,
    PendingSyncEntry,
    PushStatus,
    RetryOutcome,
    utcnow,
)
from src.app.pricebook.store import PricebookStore

if TYPE_CHECKING:
    from src.app.pricebook.engine import SyncEngine

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_SECONDS = 30.0
DEFAULT_BACKOFF_CAP_SECONDS = 3600.0


class PendingSyncQueue:
    """Records sync failures for one tenant and replays them through the engine.

    Args:
        tenant_id: Tenant owning the entries.
        store: Persistence for entries.
        max_attempts: Failed retries before an entry is dead-lettered.
        backoff_base: Delay before the first retry, in seconds.
        backoff_cap: Upper bound on the retry delay, in seconds.
        clock: Timezone-aware "now" source. Injected for tests.
    """

    def __init__(
        self,
        tenant_id: str,
        store: PricebookStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_cap: float = DEFAULT_BACKOFF_CAP_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tenant_id = tenant_id
        self._store = store
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next retry after ``attempts`` failed retries."""
        seconds = min(self._backoff_base * (2 ** attempts), self._backoff_cap)
        return timedelta(seconds=seconds)

    # ── Recording ───────────────────────────────────────────────────────

    async def record_failure(
        self,
        entity_type: EntityType,
        action: PendingAction,
        error: BaseException | str,
        *,
        entity_id: str | None = None,
        external_id: str | None = None,
    ) -> PendingSyncEntry:
        """Create or update the open entry for an entity and action.

        Pull entries are keyed by external id, push entries by MASTER id.
        """
        now = self._clock()
        message = _describe(error)

        if action == PendingAction.PULL and external_id:
            existing = await self._store.find_open_pending(
                self._tenant_id, entity_type, action, external_id=external_id
            )
        else:
            existing = await self._store.find_open_pending(
                self._tenant_id, entity_type, action, entity_id=entity_id
            )

        if existing is None:
            entry = PendingSyncEntry(
                id=str(uuid.uuid4()),
                tenant_id=self._tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                external_id=external_id,
                action=action,
                attempts=0,
                last_error=message,
                next_retry_at=now + self.backoff(0),
                status=PendingStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            logger.info(
                "pending_sync.entry_created",
                tenant_id=self._tenant_id,
                entry_id=entry.id,
                entity_type=entity_type.value,
                action=action.value,
                error=message,
            )
        elif existing.status == PendingStatus.DEAD_LETTER:
            entry = existing.model_copy(update={"last_error": message, "updated_at": now})
        else:
            entry = self._apply_failure(existing, message, now)
            if entity_id and not entry.entity_id:
                entry.entity_id = entity_id

        return await self._store.save_pending(self._tenant_id, entry)

    def _apply_failure(self, entry: PendingSyncEntry, message: str, now: datetime) -> PendingSyncEntry:
        attempts = entry.attempts + 1
        if attempts >= self._max_attempts:
            logger.warning(
                "pending_sync.dead_lettered",
                tenant_id=self._tenant_id,
                entry_id=entry.id,
                entity_type=entry.entity_type.value,
                action=entry.action.value,
                attempts=attempts,
                error=message,
            )
            return entry.model_copy(
                update={
                    "attempts": attempts,
                    "last_error": message,
                    "status": PendingStatus.DEAD_LETTER,
                    "updated_at": now,
                }
            )
        return entry.model_copy(
            update={
                "attempts": attempts,
                "last_error": message,
                "status": PendingStatus.RETRYING,
                "next_retry_at": now + self.backoff(attempts),
                "updated_at": now,
            }
        )

    # ── Retry worker ────────────────────────────────────────────────────

    async def drain_due(self, engine: SyncEngine, *, limit: int = 50) -> RetryOutcome:
        """Replay every active entry whose next_retry_at has passed.

        Returns:
            RetryOutcome with resolved ids in ``retried`` and ids that failed
            again in ``failed``.
        """
        now = self._clock()
        entries = await self._store.list_due_pending(self._tenant_id, now, limit)
        outcome = RetryOutcome()

        for entry in entries:
            try:
                await self._replay(engine, entry)
            except RateLimited as exc:
                await self._defer(entry, exc)
                outcome.failed.append(entry.id)
                logger.info(
                    "pending_sync.drain_rate_limited",
                    tenant_id=self._tenant_id,
                    remaining_seconds=exc.remaining_seconds,
                    left_in_batch=len(entries) - len(outcome.retried) - len(outcome.failed),
                )
                break
            except ConfigurationError as exc:
                logger.error(
                    "pending_sync.drain_aborted",
                    tenant_id=self._tenant_id,
                    error=str(exc),
                )
                break
            except Exception as exc:
                failed = self._apply_failure(entry, _describe(exc), self._clock())
                await self._store.save_pending(self._tenant_id, failed)
                outcome.failed.append(entry.id)
            else:
                await self._resolve(entry)
                outcome.retried.append(entry.id)

        if entries:
            logger.info(
                "pending_sync.drain_complete",
                tenant_id=self._tenant_id,
                due=len(entries),
                resolved=len(outcome.retried),
                failed=len(outcome.failed),
            )
        return outcome

    async def retry(self, engine: SyncEngine, entry_ids: list[str]) -> RetryOutcome:
        """Replay the given entries now, regardless of schedule or status.

        A dead-lettered entry that fails again stays dead-lettered with its
        attempts unchanged.
        """
        outcome = RetryOutcome()

        for entry_id in entry_ids:
            entry = await self._store.get_pending(self._tenant_id, entry_id)
            if entry is None or entry.status == PendingStatus.RESOLVED:
                outcome.failed.append(entry_id)
                continue

            try:
                await self._replay(engine, entry)
            except RateLimited as exc:
                await self._defer(entry, exc)
                outcome.failed.append(entry_id)
            except Exception as exc:
                now = self._clock()
                if entry.status == PendingStatus.DEAD_LETTER:
                    failed = entry.model_copy(update={"last_error": _describe(exc), "updated_at": now})
                else:
                    failed = self._apply_failure(entry, _describe(exc), now)
                await self._store.save_pending(self._tenant_id, failed)
                outcome.failed.append(entry_id)
            else:
                await self._resolve(entry)
                outcome.retried.append(entry_id)

        logger.info(
            "pending_sync.manual_retry",
            tenant_id=self._tenant_id,
            requested=len(entry_ids),
            retried=len(outcome.retried),
            failed=len(outcome.failed),
        )
        return outcome

    async def reset_attempts(self, entry_ids: list[str]) -> list[str]:
        """Put entries back to ``pending`` with attempts=0, due immediately."""
        now = self._clock()
        reset: list[str] = []
        for entry_id in entry_ids:
            entry = await self._store.get_pending(self._tenant_id, entry_id)
            if entry is None or entry.status == PendingStatus.RESOLVED:
                continue
            await self._store.save_pending(
                self._tenant_id,
                entry.model_copy(
                    update={
                        "attempts": 0,
                        "status": PendingStatus.PENDING,
                        "next_retry_at": now,
                        "updated_at": now,
                    }
                ),
            )
            reset.append(entry_id)

        logger.info("pending_sync.attempts_reset", tenant_id=self._tenant_id, reset=len(reset))
        return reset

    async def _replay(self, engine: SyncEngine, entry: PendingSyncEntry) -> None:
        if entry.action == PendingAction.PULL:
            if entry.external_id:
                result = await engine.pull_one(
                    entry.entity_type, external_id=entry.external_id, record_failure=False
                )
            else:
                result = await engine.pull_one(
                    entry.entity_type, entity_id=entry.entity_id, record_failure=False
                )
            if isinstance(result, NotSupported):
                raise ConfigurationError(str(result))
            return

        if not entry.entity_id:
            raise ConfigurationError(f"push entry {entry.id} has no entity id")
        pushed = await engine.push(entry.entity_id, record_failure=False)
        if pushed.status == PushStatus.NOT_SUPPORTED:
            raise ConfigurationError(pushed.message or "push not supported")

    async def _resolve(self, entry: PendingSyncEntry) -> None:
        now = self._clock()
        await self._store.save_pending(
            self._tenant_id,
            entry.model_copy(
                update={
                    "status": PendingStatus.RESOLVED,
                    "resolved_at": now,
                    "updated_at": now,
                }
            ),
        )
        logger.info(
            "pending_sync.resolved",
            tenant_id=self._tenant_id,
            entry_id=entry.id,
            action=entry.action.value,
            attempts=entry.attempts,
        )

    async def _defer(self, entry: PendingSyncEntry, exc: RateLimited) -> None:
        now = self._clock()
        await self._store.save_pending(
            self._tenant_id,
            entry.model_copy(
                update={
                    "last_error": str(exc),
                    "next_retry_at": now + timedelta(seconds=exc.remaining_seconds),
                    "updated_at": now,
                }
            ),
        )

    # ── Queries ─────────────────────────────────────────────────────────

    async def list_entries(self, filters: PendingFilter | None = None) -> list[PendingSyncEntry]:
        return await self._store.list_pending(self._tenant_id, filters or PendingFilter())

    async def counts(self) -> PendingCounts:
        """Aggregate counts for dashboards; also refreshes the queue gauge."""
        now = self._clock()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        counts = await self._store.count_pending(self._tenant_id, start_of_day)

        for status in (PendingStatus.PENDING, PendingStatus.RETRYING, PendingStatus.DEAD_LETTER):
            pricebook_pending_entries.labels(
                tenant_id=self._tenant_id, status=status.value
            ).set(getattr(counts, status.value))
        return counts


def _describe(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__
