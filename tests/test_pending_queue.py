"""Tests for the pending-sync queue: recording, backoff, dead-lettering,
retry worker drains and manual retry/reset."""

from __future__ import annotations

from datetime import timedelta

import pytest

from src.app.pricebook.errors import ConfigurationError, RateLimited, TransientNetworkError
from src.app.pricebook.pending import PendingSyncQueue
from src.app.pricebook.schemas import (
    EntityType,
    PendingAction,
    PendingFilter,
    PendingStatus,
)
from tests.conftest import TENANT_ID, service_payload


async def _failed_pull(queue, external_id: str = "9", error: Exception | str = "boom"):
    return await queue.record_failure(
        EntityType.SERVICE, PendingAction.PULL, error, external_id=external_id
    )


class TestBackoff:
    def test_doubles_from_base(self, queue):
        assert queue.backoff(0) == timedelta(seconds=30)
        assert queue.backoff(1) == timedelta(seconds=60)
        assert queue.backoff(3) == timedelta(seconds=240)

    def test_capped(self, queue):
        assert queue.backoff(20) == timedelta(seconds=3600)


class TestRecordFailure:
    """record_failure() creates one open entry per entity and action."""

    async def test_new_entry_starts_pending(self, queue, clock):
        entry = await _failed_pull(queue, error=TransientNetworkError("502"))

        assert entry.status == PendingStatus.PENDING
        assert entry.attempts == 0
        assert entry.last_error == "TransientNetworkError: 502"
        assert entry.next_retry_at == clock.now + timedelta(seconds=30)

    async def test_repeat_failure_updates_same_entry(self, queue, store):
        first = await _failed_pull(queue)
        second = await _failed_pull(queue, error="again")

        assert second.id == first.id
        assert second.attempts == 1
        assert second.status == PendingStatus.RETRYING
        assert len(store.pending) == 1

    async def test_push_and_pull_are_separate_entries(self, queue, store):
        await queue.record_failure(EntityType.SERVICE, PendingAction.PUSH, "x", entity_id="rec-1")
        await queue.record_failure(EntityType.SERVICE, PendingAction.PULL, "x", external_id="1")

        assert len(store.pending) == 2

    async def test_dead_letter_after_max_attempts(self, queue):
        entry = await _failed_pull(queue)
        for _ in range(queue.max_attempts):
            entry = await _failed_pull(queue)

        assert entry.status == PendingStatus.DEAD_LETTER
        assert entry.attempts == queue.max_attempts

    async def test_dead_letter_only_refreshes_error(self, queue):
        for _ in range(queue.max_attempts + 1):
            entry = await _failed_pull(queue)

        again = await _failed_pull(queue, error="still broken")

        assert again.status == PendingStatus.DEAD_LETTER
        assert again.attempts == entry.attempts
        assert again.last_error == "still broken"


class TestDrainDue:
    """The retry worker replays only entries whose time has come."""

    async def test_not_due_entries_are_left_alone(self, queue, engine):
        await _failed_pull(queue)

        outcome = await queue.drain_due(engine)

        assert outcome.retried == []
        assert outcome.failed == []

    async def test_due_entry_resolves_on_success(self, queue, engine, provider, store, clock):
        entry = await _failed_pull(queue, external_id="9")
        provider.add(EntityType.SERVICE, service_payload(9, "Recovered"))
        clock.advance(31)

        outcome = await queue.drain_due(engine)

        assert outcome.retried == [entry.id]
        saved = store.pending[entry.id]
        assert saved.status == PendingStatus.RESOLVED
        assert saved.resolved_at == clock.now
        assert await store.get_record_by_external_id(TENANT_ID, EntityType.SERVICE, "9")

    async def test_failed_retry_increments_and_backs_off(self, queue, engine, provider, store, clock):
        entry = await _failed_pull(queue, external_id="9")
        provider.get_errors["9"] = TransientNetworkError("still down")
        clock.advance(31)

        outcome = await queue.drain_due(engine)

        assert outcome.failed == [entry.id]
        saved = store.pending[entry.id]
        assert saved.attempts == 1
        assert saved.status == PendingStatus.RETRYING
        assert saved.next_retry_at == clock.now + timedelta(seconds=60)
        assert len(store.pending) == 1

    async def test_rate_limit_defers_without_consuming_attempt(self, queue, engine, provider, store, clock):
        first = await _failed_pull(queue, external_id="1")
        second = await _failed_pull(queue, external_id="2")
        provider.get_errors["1"] = RateLimited(90)
        clock.advance(31)

        outcome = await queue.drain_due(engine)

        assert outcome.failed == [first.id]
        assert second.id not in outcome.retried
        deferred = store.pending[first.id]
        assert deferred.attempts == 0
        assert deferred.next_retry_at == clock.now + timedelta(seconds=90)
        assert store.pending[second.id].status == PendingStatus.PENDING

    async def test_configuration_error_stops_drain(self, queue, engine, provider, store, clock):
        entry = await _failed_pull(queue, external_id="1")
        provider.get_errors["1"] = ConfigurationError("credentials rejected")
        clock.advance(31)

        outcome = await queue.drain_due(engine)

        assert outcome.retried == []
        assert store.pending[entry.id].attempts == 0

    async def test_push_entry_replays_push(self, queue, engine, provider, service, store, clock):
        record = await service.create_local_record(EntityType.SERVICE, {"name": "Local"})
        provider.push_errors.append(TransientNetworkError("timeout"))
        await engine.push(record.id)
        (entry,) = store.pending.values()
        clock.advance(31)

        outcome = await queue.drain_due(engine)

        assert outcome.retried == [entry.id]
        linked = await store.get_record(TENANT_ID, record.id)
        assert linked.external_id is not None

    async def test_limit_bounds_batch(self, queue, engine, clock):
        for i in range(5):
            await _failed_pull(queue, external_id=str(i))
        clock.advance(31)

        outcome = await queue.drain_due(engine, limit=2)

        assert len(outcome.retried) + len(outcome.failed) == 2


class TestManualRetryAndReset:
    async def test_retry_dead_letter_success(self, queue, engine, provider, store):
        for _ in range(queue.max_attempts + 1):
            entry = await _failed_pull(queue, external_id="9")
        provider.add(EntityType.SERVICE, service_payload(9, "Back"))

        outcome = await queue.retry(engine, [entry.id])

        assert outcome.retried == [entry.id]
        assert store.pending[entry.id].status == PendingStatus.RESOLVED

    async def test_retry_dead_letter_failure_stays_dead(self, queue, engine, provider, store):
        for _ in range(queue.max_attempts + 1):
            entry = await _failed_pull(queue, external_id="9")
        provider.get_errors["9"] = TransientNetworkError("nope")

        outcome = await queue.retry(engine, [entry.id])

        assert outcome.failed == [entry.id]
        saved = store.pending[entry.id]
        assert saved.status == PendingStatus.DEAD_LETTER
        assert saved.attempts == queue.max_attempts

    async def test_retry_unknown_id_reported_failed(self, queue, engine):
        outcome = await queue.retry(engine, ["does-not-exist"])
        assert outcome.failed == ["does-not-exist"]

    async def test_reset_attempts(self, queue, store, clock):
        for _ in range(queue.max_attempts + 1):
            entry = await _failed_pull(queue)

        reset = await queue.reset_attempts([entry.id, "unknown"])

        assert reset == [entry.id]
        saved = store.pending[entry.id]
        assert saved.status == PendingStatus.PENDING
        assert saved.attempts == 0
        assert saved.next_retry_at == clock.now


class TestQueries:
    async def test_list_entries_filters(self, queue):
        await queue.record_failure(EntityType.SERVICE, PendingAction.PUSH, "x", entity_id="r1")
        await queue.record_failure(EntityType.MATERIAL, PendingAction.PULL, "x", external_id="1")

        pushes = await queue.list_entries(PendingFilter(action=PendingAction.PUSH))
        materials = await queue.list_entries(PendingFilter(entity_type=EntityType.MATERIAL))

        assert [e.entity_id for e in pushes] == ["r1"]
        assert [e.external_id for e in materials] == ["1"]

    async def test_counts(self, queue, engine, provider, clock):
        await _failed_pull(queue, external_id="1")
        await _failed_pull(queue, external_id="2")
        await _failed_pull(queue, external_id="2")
        for _ in range(queue.max_attempts + 1):
            await _failed_pull(queue, external_id="3")
        provider.add(EntityType.SERVICE, service_payload(1, "ok"))
        clock.advance(31)
        await queue.drain_due(engine, limit=1)

        counts = await queue.counts()

        assert counts.resolved_today == 1
        assert counts.dead_letter == 1
        assert counts.pending + counts.retrying == 1

    @pytest.mark.parametrize("attempts", [1, 2])
    async def test_custom_max_attempts(self, store, clock, attempts):
        queue = PendingSyncQueue(TENANT_ID, store, max_attempts=attempts, clock=clock)
        entry = await _failed_pull(queue)
        for _ in range(attempts):
            entry = await _failed_pull(queue)
        assert entry.status == PendingStatus.DEAD_LETTER
