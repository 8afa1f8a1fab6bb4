from __future__ import annotations

import logging

from arq.connections import RedisSettings

from hookrelay.core.config import get_settings
from hookrelay.services.webhooks.queue import ArqDeliveryQueue, DeliveryJob
from hookrelay.services.webhooks.runtime import WebhookRuntime, build_runtime

logger = logging.getLogger(__name__)


async def deliver_webhook(ctx, delivery_id: str) -> str:
    # Consume queued delivery ids and run one delivery attempt each.
    runtime: WebhookRuntime = ctx["runtime"]
    row = await runtime.worker.process(DeliveryJob(delivery_id=delivery_id))
    if row is None:
        return "missing"
    return row.status


async def _startup(ctx) -> None:
    # Producers inside the worker (retries, recovery) always use the durable queue.
    settings = get_settings()
    runtime = await build_runtime(settings, queue=ArqDeliveryQueue(settings))
    # Starts the dead-letter loop and the pending-delivery recovery scan.
    await runtime.start()
    ctx["runtime"] = runtime
    logger.info("webhook_delivery_worker_started queue=%s", settings.webhook_queue_name)


async def _shutdown(ctx) -> None:
    runtime: WebhookRuntime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.webhook_queue_name
    max_jobs = max(1, int(settings.webhook_queue_concurrency))
    # Retries are modelled as new delivery rows, so arq itself never retries a job.
    max_tries = 1
    keep_result = 3600
    functions = [deliver_webhook]
    on_startup = _startup
    on_shutdown = _shutdown
