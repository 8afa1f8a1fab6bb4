from __future__ import annotations

import httpx
import pytest

from hookrelay.core.errors import (
    DeliveryNotFoundError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from hookrelay.services.resilience import CircuitBreaker, CircuitBreakerConfig
from hookrelay.services.security.credentials import is_encrypted
from hookrelay.services.telemetry import counters_snapshot
from hookrelay.services.webhooks.matching import SubscriptionMatcher
from hookrelay.services.webhooks.service import TEST_EVENT_TITLE, WebhookService, bump_version
from hookrelay.tests.factories import build_delivery, build_event


def _payload(**overrides) -> dict:
    payload = {
        "name": "Ops alerts",
        "url": "https://receiver.example/hooks",
        "events": ["cost.alert", "budget.warning"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def received() -> list[httpx.Request]:
    return []


@pytest.fixture
def service(make_worker, store, queue, settings, received) -> WebhookService:
    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(200, text="ok")

    worker = make_worker(handler)
    breaker = CircuitBreaker(
        "webhook_store",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=300, half_open_trials=1),
    )
    return WebhookService(store, worker, queue, matcher=SubscriptionMatcher(), breaker=breaker, settings=settings)


def test_bump_version() -> None:
    assert bump_version("1.0.0") == "1.1.0"
    assert bump_version("2.4.9") == "2.5.0"
    assert bump_version(None) == "1.1.0"
    assert bump_version("garbage") == "1.0.0"


@pytest.mark.asyncio
async def test_create_subscription_applies_defaults(service, settings) -> None:
    row = await service.create_subscription("user-1", _payload(auth={"type": "bearer", "token": "tok-1"}))

    assert row.user_id == "user-1"
    assert row.version == "1.0.0"
    assert row.active is True
    assert len(row.secret) == 64
    assert row.max_retries == settings.webhook_default_max_retries
    assert row.initial_delay_ms == settings.webhook_default_initial_delay_ms
    assert row.timeout_ms == settings.webhook_default_timeout_ms
    assert row.auth_type == "bearer"
    assert is_encrypted(row.auth_json["token"])


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"url": "ftp://receiver.example"},
        {"events": []},
        {"events": ["not.a.real.event"]},
        {"retry_config": {"max_retries": 0}},
        {"unexpected": True},
        {"headers": {"X-HookRelay-Signature": "forged"}},
    ],
)
async def test_create_subscription_rejects_invalid_payloads(service, overrides: dict) -> None:
    with pytest.raises(SubscriptionValidationError):
        await service.create_subscription("user-1", _payload(**overrides))


@pytest.mark.asyncio
async def test_update_bumps_version_only_for_delivery_changes(service) -> None:
    row = await service.create_subscription("user-1", _payload())

    row = await service.update_subscription("user-1", row.id, {"name": "Renamed"})
    assert row.version == "1.0.0"
    assert row.name == "Renamed"

    row = await service.update_subscription("user-1", row.id, {"url": "https://receiver.example/v2"})
    assert row.version == "1.1.0"

    row = await service.update_subscription("user-1", row.id, {"events": ["cost.alert"]})
    assert row.version == "1.2.0"
    assert row.events == ["cost.alert"]

    row = await service.update_subscription("user-1", row.id, {"url": "https://receiver.example/v2"})
    assert row.version == "1.2.0"


@pytest.mark.asyncio
async def test_reactivation_clears_deactivation(service, store) -> None:
    row = await service.create_subscription("user-1", _payload())
    await store.deactivate_webhook(row.id, reason="Too many failures", at=row.created_at)

    row = await service.update_subscription("user-1", row.id, {"active": True})

    assert row.active is True
    assert row.deactivated_at is None
    assert row.deactivation_reason is None


@pytest.mark.asyncio
async def test_subscriptions_are_owner_scoped(service) -> None:
    row = await service.create_subscription("user-1", _payload())
    with pytest.raises(SubscriptionNotFoundError):
        await service.get_subscription("user-2", row.id)
    with pytest.raises(SubscriptionNotFoundError):
        await service.delete_subscription("user-2", row.id)
    assert [item.id for item in await service.list_subscriptions("user-1")] == [row.id]

    await service.delete_subscription("user-1", row.id)
    assert await service.list_subscriptions("user-1") == []


@pytest.mark.asyncio
async def test_process_event_fans_out_to_matching_subscriptions(service, queue, store, received) -> None:
    matching = await service.create_subscription("user-1", _payload())
    await service.create_subscription("user-1", _payload(events=["system.error"]))
    await service.create_subscription("user-1", _payload(filters={"severity": ["critical"]}))
    await service.create_subscription("user-1", _payload(active=False))
    other_owner = await service.create_subscription("user-2", _payload())

    delivery_ids = await service.process_event(build_event())

    assert len(delivery_ids) == 2
    deliveries = [store.deliveries[delivery_id] for delivery_id in delivery_ids]
    assert {row.webhook_id for row in deliveries} == {matching.id, other_owner.id}
    assert all(row.status == "pending" for row in deliveries)
    assert deliveries[0].retries_left == matching.max_retries

    queue.start(service._worker.process)
    await queue.join()
    assert [row.status for row in deliveries] == ["success", "success"]
    assert len(received) == 2


@pytest.mark.asyncio
async def test_process_event_skips_when_store_breaker_open(service, store) -> None:
    await service.create_subscription("user-1", _payload())

    async def broken(*args, **kwargs):
        raise RuntimeError("db down")

    original = store.list_active_webhooks
    store.list_active_webhooks = broken
    assert await service.process_event(build_event()) == []

    # The breaker is open now, so even a healthy store is not consulted.
    store.list_active_webhooks = original
    assert await service.process_event(build_event()) == []


@pytest.mark.asyncio
async def test_process_event_continues_after_one_delivery_fails(service, store, monkeypatch) -> None:
    broken_target = await service.create_subscription("user-1", _payload(name="Broken"))
    healthy = await service.create_subscription("user-1", _payload(name="Healthy"))
    create_delivery = service._worker.create_delivery

    async def flaky_create(subscription, event, **kwargs):
        if subscription.id == broken_target.id:
            raise RuntimeError("db write failed")
        return await create_delivery(subscription, event, **kwargs)

    monkeypatch.setattr(service._worker, "create_delivery", flaky_create)

    delivery_ids = await service.process_event(build_event())

    assert [store.deliveries[delivery_id].webhook_id for delivery_id in delivery_ids] == [healthy.id]
    assert counters_snapshot()["webhook_delivery_create_failed_total"] == 1


@pytest.mark.asyncio
async def test_test_webhook_sends_single_attempt(service, store, received) -> None:
    row = await service.create_subscription("user-1", _payload())

    delivery = await service.test_webhook("user-1", row.id)

    assert delivery.status == "success"
    assert delivery.retries_left == 0
    assert delivery.event_id.startswith("test_")
    assert delivery.event_type == "system.error"
    assert delivery.metadata_json == {"test": True}
    assert delivery.event_json["data"]["title"] == TEST_EVENT_TITLE
    assert len(received) == 1
    assert row.total_deliveries == 1


@pytest.mark.asyncio
async def test_replay_creates_new_delivery(service, store, queue) -> None:
    row = await service.create_subscription("user-1", _payload())
    original = await store.add_delivery(build_delivery(row, status="failed"))

    replay = await service.replay_delivery("user-1", original.id)

    assert replay.id != original.id
    assert replay.status == "pending"
    assert replay.event_id.startswith(f"{original.event_id}_replay_")
    assert replay.metadata_json == {"replayed_from": original.id, "original_event_id": original.event_id}
    assert (await queue.stats()).waiting == 1

    with pytest.raises(DeliveryNotFoundError):
        await service.replay_delivery("user-2", original.id)
    with pytest.raises(DeliveryNotFoundError):
        await service.replay_delivery("user-1", "missing")


@pytest.mark.asyncio
async def test_list_deliveries_filters_and_paginates(service, store) -> None:
    row = await service.create_subscription("user-1", _payload())
    for status in ("success", "failed", "failed"):
        await store.add_delivery(build_delivery(row, status=status))

    failed, total = await service.list_deliveries("user-1", status="failed")
    assert total == 2
    assert {item.status for item in failed} == {"failed"}

    page, total = await service.list_deliveries("user-1", limit=1, offset=1)
    assert total == 3
    assert len(page) == 1
    assert (await service.list_deliveries("user-2"))[1] == 0


@pytest.mark.asyncio
async def test_get_stats_reports_windows(service, store) -> None:
    row = await service.create_subscription("user-1", _payload())
    await service.test_webhook("user-1", row.id)
    await store.add_delivery(build_delivery(row, status="failed"))

    stats = await service.get_stats("user-1", row.id)

    assert stats["total_deliveries"] == 1
    assert stats["success_rate"] == 100.0
    assert stats["windows"]["last_24h"] == {"total": 2, "success": 1, "failed": 1}
    assert set(stats["windows"]) == {"last_24h", "last_7d", "last_30d"}
