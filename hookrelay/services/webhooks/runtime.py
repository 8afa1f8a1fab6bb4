from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from hookrelay.core.config import Settings, get_settings
from hookrelay.domain.models import DeadLetterJob
from hookrelay.persistence.db import build_engine, build_session_factory
from hookrelay.persistence.stores import (
    DeadLetterStore,
    SQLDeadLetterStore,
    SQLWebhookStore,
    WebhookStore,
)
from hookrelay.services.resilience import CircuitBreaker, CircuitBreakerConfig
from hookrelay.services.webhooks.dead_letter import DeadLetterQueue
from hookrelay.services.webhooks.delivery import STATS_DEAD_LETTER_OPERATION, DeliveryWorker
from hookrelay.services.webhooks.events import WebhookEventEmitter
from hookrelay.services.webhooks.matching import SubscriptionMatcher
from hookrelay.services.webhooks.payloads import PayloadBuilder
from hookrelay.services.webhooks.queue import ArqDeliveryQueue, DeliveryQueue, create_delivery_queue
from hookrelay.services.webhooks.service import WebhookService
from hookrelay.services.webhooks.signing import HeaderBuilder


logger = logging.getLogger(__name__)


@dataclass
class WebhookRuntime:
    settings: Settings
    store: WebhookStore
    dead_letter_store: DeadLetterStore
    queue: DeliveryQueue
    payload_builder: PayloadBuilder
    header_builder: HeaderBuilder
    matcher: SubscriptionMatcher
    dead_letters: DeadLetterQueue
    worker: DeliveryWorker
    service: WebhookService
    emitter: WebhookEventEmitter
    engine: AsyncEngine | None = None
    _recovery_task: asyncio.Task | None = field(default=None, init=False, repr=False)

    async def start(self) -> None:
        # The in-memory queue runs jobs in-process; the arq queue ignores the handler.
        self.queue.start(self.worker.process)
        self.emitter.start()
        self.dead_letters.start()
        # Pending rows left behind by an earlier process are picked up before new work arrives.
        await self.recover_pending()
        self._recovery_task = asyncio.create_task(self._recovery_loop())

    async def recover_pending(self) -> int:
        try:
            return await self.worker.process_pending(self.settings.webhook_recovery_batch_size)
        except Exception:  # noqa: BLE001 - keep the recovery scan alive while surfacing failures in logs.
            logger.exception("webhook_recovery_scan_failed")
            return 0

    async def _recovery_loop(self) -> None:
        interval_s = max(1, int(self.settings.webhook_recovery_interval_s))
        while True:
            await asyncio.sleep(interval_s)
            await self.recover_pending()

    async def close(self) -> None:
        task, self._recovery_task = self._recovery_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.emitter.stop()
        await self.dead_letters.stop()
        await self.queue.close()
        if self.engine is not None:
            await self.engine.dispose()


def stats_replay_handler(store: WebhookStore):
    # Replays a statistics write that failed after its delivery completed.
    async def _handler(job: DeadLetterJob) -> None:
        request = job.request_json or {}
        await store.record_delivery_outcome(
            str(request["webhook_id"]),
            success=bool(request.get("success")),
            response_time_ms=request.get("response_time_ms"),
            at=datetime.fromisoformat(str(request["at"])),
        )

    return _handler


async def build_runtime(
    settings: Settings | None = None,
    *,
    store: WebhookStore | None = None,
    dead_letter_store: DeadLetterStore | None = None,
    queue: DeliveryQueue | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> WebhookRuntime:
    settings = settings or get_settings()
    engine: AsyncEngine | None = None
    if store is None or dead_letter_store is None:
        engine = build_engine(settings)
        session_factory = build_session_factory(engine)
        store = store or SQLWebhookStore(session_factory)
        dead_letter_store = dead_letter_store or SQLDeadLetterStore(session_factory)
    queue = queue or await create_delivery_queue(settings)

    # Breaker state is shared across processes only when the durable queue answered its ping.
    breaker = CircuitBreaker(
        "webhook_store",
        redis=await queue.redis() if isinstance(queue, ArqDeliveryQueue) else None,
        config=CircuitBreakerConfig(
            failure_threshold=settings.webhook_store_breaker_failure_threshold,
            open_seconds=settings.webhook_store_breaker_open_seconds,
            half_open_trials=settings.webhook_store_breaker_half_open_trials,
        ),
    )

    payload_builder = PayloadBuilder(settings)
    header_builder = HeaderBuilder(settings)
    matcher = SubscriptionMatcher(query_cache_size=settings.webhook_query_cache_size)
    dead_letters = DeadLetterQueue(dead_letter_store, settings)
    dead_letters.register_handler(STATS_DEAD_LETTER_OPERATION, stats_replay_handler(store))
    worker = DeliveryWorker(
        store,
        queue,
        payload_builder=payload_builder,
        header_builder=header_builder,
        settings=settings,
        transport=transport,
        dead_letters=dead_letters,
    )
    service = WebhookService(store, worker, queue, matcher=matcher, breaker=breaker, settings=settings)
    emitter = WebhookEventEmitter(service.process_event, settings)
    logger.info("webhook_runtime_built queue_backend=%s", queue.backend)
    return WebhookRuntime(
        settings=settings,
        store=store,
        dead_letter_store=dead_letter_store,
        queue=queue,
        payload_builder=payload_builder,
        header_builder=header_builder,
        matcher=matcher,
        dead_letters=dead_letters,
        worker=worker,
        service=service,
        emitter=emitter,
        engine=engine,
    )
