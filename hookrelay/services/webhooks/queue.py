from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Awaitable, Callable, Deque, Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import BaseModel

from hookrelay.core.config import Settings, get_settings
from hookrelay.core.errors import QueueUnavailableError
from hookrelay.services.resilience import TokenBucket
from hookrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# arq function name registered by the delivery worker.
DELIVER_FUNCTION = "deliver_webhook"


class DeliveryJob(BaseModel):
    # Queue payload is only the delivery id; the worker reloads everything else from the store.
    delivery_id: str
    webhook_id: str | None = None
    attempt: int = 1


class QueueStats(BaseModel):
    backend: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


DeliveryHandler = Callable[[DeliveryJob], Awaitable[Any]]


class DeliveryQueue(Protocol):
    backend: str

    async def enqueue(self, job: DeliveryJob, *, delay_ms: int = 0) -> None:
        ...

    def start(self, handler: DeliveryHandler) -> None:
        ...

    async def stats(self) -> QueueStats:
        ...

    async def close(self) -> None:
        ...


@dataclass(frozen=True)
class FinishedJob:
    job: DeliveryJob
    finished_at: datetime
    error: str | None = None


def _queue_key(queue_name: str) -> str:
    # arq stores pending and deferred jobs in one sorted set scored by run time.
    return f"arq:queue:{queue_name}"


class InMemoryDeliveryQueue:
    """Single-process delivery queue built on asyncio tasks.

    Jobs enqueued before ``start`` are held and dispatched once a handler is
    attached. A failing handler is logged and retained in the failed window;
    it never takes the queue down.
    """

    backend = "memory"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        bucket: TokenBucket | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._semaphore = asyncio.Semaphore(max(1, int(self._settings.webhook_queue_concurrency)))
        self._bucket = bucket or TokenBucket.per_minute(self._settings.webhook_queue_rate_limit_per_minute)
        self._sleep = sleep or asyncio.sleep
        self._handler: DeliveryHandler | None = None
        self._backlog: list[tuple[DeliveryJob, int]] = []
        self._tasks: set[asyncio.Task] = set()
        self._waiting = 0
        self._active = 0
        self._delayed = 0
        self._closed = False
        self.completed: Deque[FinishedJob] = deque(maxlen=max(1, self._settings.webhook_queue_keep_completed))
        self.failed: Deque[FinishedJob] = deque(maxlen=max(1, self._settings.webhook_queue_keep_failed))

    def start(self, handler: DeliveryHandler) -> None:
        self._handler = handler
        backlog, self._backlog = self._backlog, []
        for job, delay_ms in backlog:
            self._spawn(job, delay_ms)

    async def enqueue(self, job: DeliveryJob, *, delay_ms: int = 0) -> None:
        if self._closed:
            raise QueueUnavailableError("delivery queue is closed")
        increment_counter("webhook_queue_enqueued_total.memory")
        if self._handler is None:
            self._backlog.append((job, max(0, int(delay_ms))))
            return
        self._spawn(job, max(0, int(delay_ms)))

    def _spawn(self, job: DeliveryJob, delay_ms: int) -> None:
        task = asyncio.create_task(self._run(job, delay_ms))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: DeliveryJob, delay_ms: int) -> None:
        if delay_ms > 0:
            self._delayed += 1
            try:
                await self._sleep(delay_ms / 1000.0)
            finally:
                self._delayed -= 1
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        try:
            await self._bucket.acquire()
            await self._dispatch(job)
        finally:
            self._semaphore.release()

    async def _dispatch(self, job: DeliveryJob) -> None:
        handler = self._handler
        if handler is None:
            raise QueueUnavailableError("delivery queue has no handler")
        self._active += 1
        set_gauge("webhook_queue_active.memory", self._active)
        try:
            await handler(job)
        except Exception as exc:  # noqa: BLE001 - one failing job must not stop the queue.
            logger.exception("webhook_queue_job_failed delivery_id=%s", job.delivery_id)
            self.failed.append(FinishedJob(job=job, finished_at=datetime.now(timezone.utc), error=str(exc)))
            increment_counter("webhook_queue_jobs_total.failed")
        else:
            self.completed.append(FinishedJob(job=job, finished_at=datetime.now(timezone.utc)))
            increment_counter("webhook_queue_jobs_total.completed")
        finally:
            self._active -= 1
            set_gauge("webhook_queue_active.memory", self._active)

    async def join(self) -> None:
        # Wait until no job is scheduled, including retries enqueued by running jobs.
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stats(self) -> QueueStats:
        return QueueStats(
            backend=self.backend,
            waiting=self._waiting + len(self._backlog),
            active=self._active,
            completed=len(self.completed),
            failed=len(self.failed),
            delayed=self._delayed,
        )

    async def close(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class ArqDeliveryQueue:
    """Durable delivery queue on Redis via arq.

    Jobs are consumed by ``hookrelay.workers.delivery_worker`` in a separate
    process, so ``start`` only records that this process is a producer.
    """

    backend = "redis"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: ArqRedis | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        # Cache the pool per event loop to avoid cross-loop errors in tests.
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop == current_loop:
            return self._pool
        if self._pool is not None and self._pool_loop != current_loop:
            self._pool = None
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self._settings.webhook_queue_name,
                )
                self._pool_loop = current_loop
        return self._pool

    async def redis(self) -> ArqRedis:
        return await self._get_pool()

    async def ping(self) -> None:
        pool = await self._get_pool()
        await pool.ping()

    def start(self, handler: DeliveryHandler) -> None:
        logger.debug("webhook_queue_producer_only backend=%s", self.backend)

    async def enqueue(self, job: DeliveryJob, *, delay_ms: int = 0) -> None:
        defer_delta = timedelta(milliseconds=max(0, int(delay_ms)))
        try:
            redis = await self._get_pool()
            queued = await redis.enqueue_job(
                DELIVER_FUNCTION,
                job.delivery_id,
                _job_id=job.delivery_id,
                _queue_name=self._settings.webhook_queue_name,
                _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
            )
        except Exception as exc:  # noqa: BLE001 - the recovery scan re-enqueues pending rows later.
            increment_counter("webhook_queue_enqueue_failed_total.redis")
            raise QueueUnavailableError(f"failed to enqueue delivery {job.delivery_id}") from exc
        if queued is None:
            # arq keeps one job per id, so a delivery already queued or running is not added again.
            increment_counter("webhook_queue_duplicates_total.redis")
            logger.debug("webhook_queue_job_exists delivery_id=%s", job.delivery_id)
            return
        increment_counter("webhook_queue_enqueued_total.redis")

    async def stats(self) -> QueueStats:
        redis = await self._get_pool()
        key = _queue_key(self._settings.webhook_queue_name)
        now_ms = int(time.time() * 1000)
        total = int(await redis.zcard(key))
        delayed = int(await redis.zcount(key, now_ms + 1, "+inf"))
        active = 0
        async for _ in redis.scan_iter(match="arq:in-progress:*"):
            active += 1
        return QueueStats(backend=self.backend, waiting=max(0, total - delayed), active=active, delayed=delayed)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
            self._pool_loop = None


async def create_delivery_queue(settings: Settings | None = None) -> DeliveryQueue:
    # Prefer the durable backend; degrade to memory so event intake keeps working without Redis.
    settings = settings or get_settings()
    if settings.webhook_queue_backend.lower() == "memory":
        return InMemoryDeliveryQueue(settings)
    queue = ArqDeliveryQueue(settings)
    try:
        await queue.ping()
    except Exception:  # noqa: BLE001 - Redis might be unavailable in dev
        logger.warning("webhook_queue_degraded_to_memory redis_url_configured=%s", bool(settings.redis_url), exc_info=True)
        increment_counter("webhook_queue_degraded_total")
        return InMemoryDeliveryQueue(settings)
    return queue
