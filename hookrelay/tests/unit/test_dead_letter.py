from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hookrelay.domain.models import DeadLetterJob
from hookrelay.services.webhooks.dead_letter import (
    PRIORITY_BOOST,
    DeadLetterEntry,
    DeadLetterQueue,
    compute_priority,
    dead_letter_backoff_ms,
)
from hookrelay.services.webhooks.runtime import stats_replay_handler
from hookrelay.tests.factories import build_webhook


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def test_priority_boosts_cost_and_usage_operations() -> None:
    raised = datetime(2026, 3, 1, tzinfo=timezone.utc)
    plain = compute_priority("report.export", raised)
    boosted = compute_priority("billing.sync", raised)
    assert boosted - plain == pytest.approx(PRIORITY_BOOST)
    assert compute_priority("Usage.Stats", raised) == boosted
    # Newer failures sort ahead of older ones within the same class.
    assert compute_priority("report.export", raised + timedelta(days=1)) > plain


def test_backoff_doubles_per_attempt() -> None:
    assert [dead_letter_backoff_ms(attempts=n, base_ms=2000) for n in (1, 2, 3, 4)] == [2000, 4000, 8000, 16000]


@pytest.mark.asyncio
async def test_registered_handler_completes_job(dead_letter_store, settings) -> None:
    clock = Clock()
    queue = DeadLetterQueue(dead_letter_store, settings, clock=clock)
    seen: list[DeadLetterJob] = []

    async def handler(job: DeadLetterJob) -> None:
        seen.append(job)

    queue.register_handler("report.export", handler)
    job_id = await queue.add(DeadLetterEntry(operation="report.export", request={"id": 1}, error="timeout"))

    job = await queue.process_next()

    assert job.id == job_id
    assert job.status == "completed"
    assert job.attempts == 1
    assert job.completed_at == clock.now
    assert seen[0].request_json == {"id": 1}
    assert await queue.process_next() is None


@pytest.mark.asyncio
async def test_failures_back_off_then_give_up(dead_letter_store, settings) -> None:
    clock = Clock()
    queue = DeadLetterQueue(dead_letter_store, settings, clock=clock)

    async def handler(job: DeadLetterJob) -> None:
        raise RuntimeError("still broken")

    queue.register_handler("report.export", handler)
    job_id = await queue.add(DeadLetterEntry(operation="report.export"))

    for attempt in range(1, settings.dead_letter_max_attempts):
        job = await queue.process_next()
        assert job.status == "pending"
        assert job.attempts == attempt
        assert job.last_error == "still broken"
        expected_delay = timedelta(milliseconds=dead_letter_backoff_ms(attempts=attempt, base_ms=settings.dead_letter_backoff_ms))
        assert job.next_attempt_at == clock.now + expected_delay
        # Not ready until the backoff elapses.
        assert await queue.process_next() is None
        clock.advance(milliseconds=expected_delay.total_seconds() * 1000)

    job = await queue.process_next()
    assert job.id == job_id
    assert job.status == "failed"
    assert job.attempts == settings.dead_letter_max_attempts
    assert job.completed_at == clock.now


@pytest.mark.asyncio
async def test_missing_handler_counts_as_failed_attempt(dead_letter_store, settings, caplog) -> None:
    queue = DeadLetterQueue(dead_letter_store, settings, clock=Clock())
    await queue.add(DeadLetterEntry(operation="unregistered.op"))

    job = await queue.process_next()

    assert job.status == "pending"
    assert job.attempts == 1
    assert "unregistered.op" in job.last_error
    assert "dead_letter_handler_missing" in caplog.text


@pytest.mark.asyncio
async def test_priority_order_prefers_usage_operations(dead_letter_store, settings) -> None:
    clock = Clock()
    queue = DeadLetterQueue(dead_letter_store, settings, clock=clock)
    order: list[str] = []

    async def handler(job: DeadLetterJob) -> None:
        order.append(job.operation)

    for operation in ("report.export", "webhook.usage_stats", "audit.flush"):
        queue.register_handler(operation, handler)
    await queue.add(DeadLetterEntry(operation="report.export", raised_at=clock.now - timedelta(minutes=5)))
    await queue.add(DeadLetterEntry(operation="webhook.usage_stats", raised_at=clock.now - timedelta(hours=1)))
    await queue.add(DeadLetterEntry(operation="audit.flush", raised_at=clock.now))

    assert await queue.process_all() == 3
    assert order == ["webhook.usage_stats", "audit.flush", "report.export"]


@pytest.mark.asyncio
async def test_stats_and_prune(dead_letter_store, settings) -> None:
    clock = Clock()
    queue = DeadLetterQueue(dead_letter_store, settings, clock=clock)

    async def handler(job: DeadLetterJob) -> None:
        return None

    queue.register_handler("report.export", handler)
    await queue.add(DeadLetterEntry(operation="report.export"))
    await queue.add(DeadLetterEntry(operation="report.export"))
    await queue.process_next()

    stats = await queue.stats()
    assert stats["counts"] == {"pending": 1, "processing": 0, "completed": 1, "failed": 0}
    assert stats["operations"] == ["report.export"]
    assert stats["running"] is False

    clock.advance(hours=settings.dead_letter_retention_hours + 1)
    assert await queue.prune() == 1
    assert (await queue.stats())["counts"]["completed"] == 0


@pytest.mark.asyncio
async def test_stats_replay_handler_applies_outcome(store, dead_letter_store, settings) -> None:
    subscription = await store.add_webhook(build_webhook())
    queue = DeadLetterQueue(dead_letter_store, settings)
    queue.register_handler("webhook.usage_stats", stats_replay_handler(store))
    at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    await queue.add(
        DeadLetterEntry(
            operation="webhook.usage_stats",
            request={"webhook_id": subscription.id, "success": True, "response_time_ms": 40.0, "at": at.isoformat()},
        )
    )

    job = await queue.process_next()

    assert job.status == "completed"
    assert subscription.successful_deliveries == 1
    assert subscription.average_response_time_ms == 40.0
    assert subscription.last_success_at == at


@pytest.mark.asyncio
async def test_start_and_stop_background_loop(dead_letter_store, settings) -> None:
    queue = DeadLetterQueue(dead_letter_store, settings)
    queue.start()
    assert queue.running
    await queue.stop()
    assert not queue.running
