from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from hookrelay.services.webhooks.dead_letter import DeadLetterEntry, DeadLetterQueue
from hookrelay.services.webhooks.delivery import DeliveryWorker
from hookrelay.services.webhooks.payloads import PayloadBuilder
from hookrelay.services.webhooks.queue import InMemoryDeliveryQueue
from hookrelay.services.webhooks.service import WebhookService
from hookrelay.services.webhooks.signing import HeaderBuilder
from hookrelay.services.webhooks.runtime import stats_replay_handler
from hookrelay.tests.factories import build_delivery, build_event, build_webhook


def _worker(store, settings, handler, queue=None) -> DeliveryWorker:
    return DeliveryWorker(
        store,
        queue or InMemoryDeliveryQueue(settings),
        payload_builder=PayloadBuilder(settings),
        header_builder=HeaderBuilder(settings),
        settings=settings,
        transport=httpx.MockTransport(handler),
        rand=lambda low, high: 1.0,
    )


@pytest.mark.asyncio
async def test_webhook_rows_round_trip_and_scope_by_owner(sql_store) -> None:
    row = await sql_store.add_webhook(
        build_webhook(filters_json={"severity": ["high"]}, headers_json={"X-Team": "ops"})
    )
    await sql_store.add_webhook(build_webhook(user_id="user-2"))
    await sql_store.add_webhook(build_webhook(active=False))

    loaded = await sql_store.get_user_webhook("user-1", row.id)
    assert loaded is not None
    assert loaded.events == ["cost.alert"]
    assert loaded.filters_json == {"severity": ["high"]}
    assert await sql_store.get_user_webhook("user-2", row.id) is None
    assert len(await sql_store.list_user_webhooks("user-1")) == 2
    assert [item.id for item in await sql_store.list_user_webhooks("user-1", active=True)] == [row.id]
    assert len(await sql_store.list_active_webhooks()) == 2

    loaded.name = "Renamed"
    await sql_store.save_webhook(loaded)
    assert (await sql_store.get_webhook(row.id)).name == "Renamed"


@pytest.mark.asyncio
async def test_delivery_outcomes_update_counters_in_sql(sql_store) -> None:
    row = await sql_store.add_webhook(build_webhook())
    at = datetime.now(timezone.utc)

    await sql_store.record_delivery_outcome(row.id, success=True, response_time_ms=100.0, at=at)
    await sql_store.record_delivery_outcome(row.id, success=True, response_time_ms=300.0, at=at)
    await sql_store.record_delivery_outcome(row.id, success=False, response_time_ms=None, at=at)

    loaded = await sql_store.get_webhook(row.id)
    assert loaded.total_deliveries == 3
    assert loaded.successful_deliveries == 2
    assert loaded.failed_deliveries == 1
    assert loaded.average_response_time_ms == pytest.approx(200.0)
    assert loaded.last_failure_at is not None


@pytest.mark.asyncio
async def test_deactivation_is_applied_once(sql_store) -> None:
    row = await sql_store.add_webhook(build_webhook())
    at = datetime.now(timezone.utc)
    assert await sql_store.deactivate_webhook(row.id, reason="Too many failures", at=at) is True
    assert await sql_store.deactivate_webhook(row.id, reason="again", at=at) is False
    loaded = await sql_store.get_webhook(row.id)
    assert loaded.active is False
    assert loaded.deactivation_reason == "Too many failures"


@pytest.mark.asyncio
async def test_delivery_queries(sql_store) -> None:
    row = await sql_store.add_webhook(build_webhook())
    now = datetime.now(timezone.utc)
    await sql_store.add_delivery(build_delivery(row, status="failed", created_at=now - timedelta(days=3)))
    await sql_store.add_delivery(build_delivery(row, status="failed"))
    await sql_store.add_delivery(build_delivery(row, status="success"))
    await sql_store.add_delivery(build_delivery(row, status="pending", created_at=now - timedelta(minutes=10)))
    await sql_store.add_delivery(build_delivery(row, status="pending", next_retry_at=now + timedelta(hours=1)))

    assert await sql_store.count_deliveries(row.id) == 5
    assert await sql_store.count_deliveries(row.id, status="failed") == 2
    assert await sql_store.count_deliveries(row.id, status="failed", since=now - timedelta(days=1)) == 1
    due = await sql_store.list_due_pending_deliveries(
        due_before=now - timedelta(minutes=2), claimed_before=now - timedelta(minutes=5)
    )
    assert len(due) == 1

    page, total = await sql_store.list_deliveries("user-1", status="failed", limit=1)
    assert total == 2
    assert len(page) == 1
    _, other_total = await sql_store.list_deliveries("user-2")
    assert other_total == 0

    await sql_store.delete_webhook(row.id)
    assert await sql_store.get_webhook(row.id) is None
    assert await sql_store.count_deliveries(row.id) == 0


@pytest.mark.asyncio
async def test_worker_retry_chain_persists(sql_store, settings) -> None:
    statuses = iter([502, 200])
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    queue = InMemoryDeliveryQueue(settings, sleep=fake_sleep)
    worker = _worker(sql_store, settings, lambda request: httpx.Response(next(statuses)), queue=queue)
    queue.start(worker.process)
    service = WebhookService(sql_store, worker, queue, settings=settings)
    subscription = await service.create_subscription(
        "user-1", {"name": "Ops", "url": "https://receiver.example/hooks", "events": ["cost.alert"]}
    )

    delivery_ids = await service.process_event(build_event())
    await queue.join()

    rows, total = await sql_store.list_deliveries("user-1")
    assert total == 2
    by_attempt = {row.attempt: row for row in rows}
    assert by_attempt[1].id == delivery_ids[0]
    assert by_attempt[1].status == "failed"
    assert by_attempt[1].error_json["type"] == "retry_scheduled"
    assert by_attempt[2].status == "success"
    assert by_attempt[2].metadata_json["previous_attempt_id"] == delivery_ids[0]
    assert sleeps == [10.0]

    loaded = await sql_store.get_webhook(subscription.id)
    assert loaded.total_deliveries == 2
    assert loaded.successful_deliveries == 1

    stats = await service.get_stats("user-1", subscription.id)
    assert stats["windows"]["last_24h"] == {"total": 2, "success": 1, "failed": 1}


@pytest.mark.asyncio
async def test_dead_letter_jobs_persist_and_replay(sql_store, sql_dead_letter_store, settings) -> None:
    row = await sql_store.add_webhook(build_webhook())
    queue = DeadLetterQueue(sql_dead_letter_store, settings)
    queue.register_handler("webhook.usage_stats", stats_replay_handler(sql_store))

    await queue.add(DeadLetterEntry(operation="report.export"))
    await queue.add(
        DeadLetterEntry(
            operation="webhook.usage_stats",
            request={
                "webhook_id": row.id,
                "success": False,
                "response_time_ms": None,
                "at": datetime.now(timezone.utc).isoformat(),
            },
        )
    )

    first = await queue.process_next()
    assert first.operation == "webhook.usage_stats"
    assert first.status == "completed"
    second = await queue.process_next()
    assert second.operation == "report.export"
    assert second.status == "pending"

    counts = (await queue.stats())["counts"]
    assert counts["completed"] == 1
    assert counts["pending"] == 1
    assert (await sql_store.get_webhook(row.id)).failed_deliveries == 1


@pytest.mark.asyncio
async def test_claim_is_granted_once_until_stale(sql_store) -> None:
    row = await sql_store.add_webhook(build_webhook())
    now = datetime.now(timezone.utc)
    delivery = await sql_store.add_delivery(build_delivery(row, status="pending"))
    lease = timedelta(minutes=5)

    assert await sql_store.claim_delivery(delivery.id, now=now, stale_before=now - lease) is True
    assert await sql_store.claim_delivery(delivery.id, now=now, stale_before=now - lease) is False
    later = now + timedelta(minutes=10)
    # Once the lease lapses another worker may take over the row.
    assert await sql_store.claim_delivery(delivery.id, now=later, stale_before=later - lease) is True

    done = await sql_store.add_delivery(build_delivery(row, status="success"))
    assert await sql_store.claim_delivery(done.id, now=now, stale_before=now - lease) is False
