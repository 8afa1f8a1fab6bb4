from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest

from hookrelay.core.config import Settings, get_settings
from hookrelay.persistence.stores import InMemoryDeadLetterStore, InMemoryWebhookStore
from hookrelay.services.telemetry import reset_telemetry
from hookrelay.services.webhooks.dead_letter import DeadLetterQueue
from hookrelay.services.webhooks.delivery import DeliveryWorker
from hookrelay.services.webhooks.payloads import PayloadBuilder
from hookrelay.services.webhooks.queue import InMemoryDeliveryQueue
from hookrelay.services.webhooks.signing import HeaderBuilder


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch) -> None:
    # Pin env-driven settings per test so cached Settings never leak between cases.
    monkeypatch.setenv("CREDENTIALS_MASTER_KEY", "test-master-key")
    monkeypatch.setenv("WEBHOOK_QUEUE_BACKEND", "memory")
    monkeypatch.setenv("ENVIRONMENT", "test")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def store() -> InMemoryWebhookStore:
    return InMemoryWebhookStore()


@pytest.fixture
def dead_letter_store() -> InMemoryDeadLetterStore:
    return InMemoryDeadLetterStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def queue(settings: Settings, sleeps: list[float]) -> InMemoryDeliveryQueue:
    # Record requested delays instead of waiting so retry chains finish instantly.
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return InMemoryDeliveryQueue(settings, sleep=fake_sleep)


@pytest.fixture
def make_worker(
    settings: Settings,
    store: InMemoryWebhookStore,
    queue: InMemoryDeliveryQueue,
    dead_letter_store: InMemoryDeadLetterStore,
) -> Callable[..., DeliveryWorker]:
    def _make(handler: Callable[[httpx.Request], Any], **kwargs: Any) -> DeliveryWorker:
        kwargs.setdefault("rand", lambda low, high: 1.0)
        kwargs.setdefault("dead_letters", DeadLetterQueue(dead_letter_store, settings))
        return DeliveryWorker(
            store,
            queue,
            payload_builder=PayloadBuilder(settings),
            header_builder=HeaderBuilder(settings),
            settings=settings,
            transport=httpx.MockTransport(handler),
            **kwargs,
        )

    return _make
