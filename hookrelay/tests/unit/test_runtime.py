from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from hookrelay.services.webhooks.queue import InMemoryDeliveryQueue
from hookrelay.services.webhooks.runtime import build_runtime
from hookrelay.tests.factories import build_delivery, build_webhook
from hookrelay.workers.delivery_worker import deliver_webhook


@pytest.mark.asyncio
async def test_runtime_delivers_emitted_events(settings, store, dead_letter_store) -> None:
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200)

    runtime = await build_runtime(
        settings,
        store=store,
        dead_letter_store=dead_letter_store,
        transport=httpx.MockTransport(handler),
    )
    assert isinstance(runtime.queue, InMemoryDeliveryQueue)
    assert runtime.engine is None
    assert runtime.dead_letters.operations == ["webhook.usage_stats"]

    await runtime.start()
    subscription = await runtime.service.create_subscription(
        "user-1",
        {"name": "Costs", "url": "https://receiver.example/hooks", "events": ["cost.alert"]},
    )
    runtime.emitter.emit_cost_alert("user-1", "proj-1", cost=150.0, threshold=100.0)
    runtime.emitter.emit_usage_spike("user-1", "requests", current=10, average=5)
    await runtime.emitter.flush()
    await runtime.queue.join()
    await runtime.close()

    deliveries = list(store.deliveries.values())
    assert len(deliveries) == 1
    assert deliveries[0].status == "success"
    assert deliveries[0].webhook_id == subscription.id
    assert len(received) == 1
    assert subscription.successful_deliveries == 1


@pytest.mark.asyncio
async def test_arq_job_function_runs_one_attempt(settings, store, dead_letter_store) -> None:
    runtime = await build_runtime(
        settings,
        store=store,
        dead_letter_store=dead_letter_store,
        transport=httpx.MockTransport(lambda request: httpx.Response(204)),
    )
    subscription = await runtime.service.create_subscription(
        "user-1",
        {"name": "Errors", "url": "https://receiver.example/hooks", "events": ["system.error"]},
    )
    delivery = await runtime.worker.create_delivery(
        subscription, runtime.emitter.emit("system.error", "user-1")
    )

    assert await deliver_webhook({"runtime": runtime}, delivery.id) == "success"
    assert await deliver_webhook({"runtime": runtime}, "missing") == "missing"
    await runtime.close()


@pytest.mark.asyncio
async def test_security_alert_is_delivered_without_a_flush(settings, store, dead_letter_store) -> None:
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200)

    runtime = await build_runtime(
        settings,
        store=store,
        dead_letter_store=dead_letter_store,
        transport=httpx.MockTransport(handler),
    )
    runtime.queue.start(runtime.worker.process)
    await runtime.service.create_subscription(
        "user-1",
        {"name": "Security", "url": "https://receiver.example/hooks", "events": ["security.alert"]},
    )
    runtime.emitter.emit_security_alert("user-1", "login_burst", "Unusual login activity")
    assert runtime.emitter.queue_size() == 0

    await runtime.emitter.wait_idle()
    await runtime.queue.join()

    assert len(received) == 1
    assert [row.status for row in store.deliveries.values()] == ["success"]
    await runtime.close()


@pytest.mark.asyncio
async def test_start_recovers_deliveries_left_pending(settings, store, dead_letter_store) -> None:
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200)

    subscription = await store.add_webhook(build_webhook())
    # Written by a process that stopped before its queued job ran.
    earlier = datetime.now(timezone.utc) - timedelta(hours=1)
    orphan = await store.add_delivery(build_delivery(subscription, status="pending", created_at=earlier))
    runtime = await build_runtime(
        settings,
        store=store,
        dead_letter_store=dead_letter_store,
        transport=httpx.MockTransport(handler),
    )

    await runtime.start()
    await runtime.queue.join()
    await runtime.close()

    assert orphan.status == "success"
    assert len(received) == 1
