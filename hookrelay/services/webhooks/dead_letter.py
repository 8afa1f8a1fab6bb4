from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from hookrelay.core.config import Settings, get_settings
from hookrelay.core.errors import DeadLetterHandlerMissingError
from hookrelay.domain.models import DeadLetterJob
from hookrelay.persistence.stores import DeadLetterStore
from hookrelay.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# Operations touching money or quota are replayed ahead of everything else.
PRIORITY_KEYWORDS = ("cost", "billing", "usage", "budget")
PRIORITY_BOOST = 100.0
# Recency is scaled so one boost outweighs any realistic age difference.
_RECENCY_SCALE_SECONDS = 10_000_000.0

DeadLetterHandler = Callable[[DeadLetterJob], Awaitable[Any]]


@dataclass(frozen=True)
class DeadLetterEntry:
    operation: str
    request: dict[str, Any] | None = None
    response: dict[str, Any] | None = None
    user_id: str | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None
    raised_at: datetime | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def compute_priority(operation: str, raised_at: datetime) -> float:
    base = raised_at.timestamp() / _RECENCY_SCALE_SECONDS
    name = operation.lower()
    if any(keyword in name for keyword in PRIORITY_KEYWORDS):
        return base + PRIORITY_BOOST
    return base


def dead_letter_backoff_ms(*, attempts: int, base_ms: int) -> int:
    return int(base_ms) * (2 ** max(0, int(attempts) - 1))


class DeadLetterQueue:
    """Replay background operations that exhausted their own retries.

    Handlers are registered per operation name. Jobs are processed highest
    priority first, retried with exponential backoff, and marked ``failed``
    once ``dead_letter_max_attempts`` is reached. A job whose operation has
    no handler counts as a failed attempt and is logged at error level.
    """

    def __init__(
        self,
        store: DeadLetterStore,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock or _utc_now
        self._handlers: dict[str, DeadLetterHandler] = {}
        self._task: asyncio.Task | None = None

    def register_handler(self, operation: str, handler: DeadLetterHandler) -> None:
        self._handlers[operation] = handler

    @property
    def operations(self) -> list[str]:
        return sorted(self._handlers)

    async def add(self, entry: DeadLetterEntry) -> str:
        now = self._clock()
        raised_at = entry.raised_at or now
        job = DeadLetterJob(
            id=uuid4().hex,
            operation=entry.operation,
            request_json=entry.request,
            response_json=entry.response,
            user_id=entry.user_id,
            metadata_json=entry.metadata,
            error=entry.error,
            raised_at=raised_at,
            status="pending",
            attempts=0,
            priority=compute_priority(entry.operation, raised_at),
            next_attempt_at=now,
            last_error=None,
            completed_at=None,
            created_at=now,
        )
        await self._store.add(job)
        increment_counter("dead_letter_jobs_added_total")
        logger.warning("dead_letter_job_added job_id=%s operation=%s", job.id, job.operation)
        return job.id

    async def process_next(self) -> DeadLetterJob | None:
        job = await self._store.next_ready(now=self._clock())
        if job is None:
            return None
        job.status = "processing"
        job.attempts = int(job.attempts or 0) + 1
        await self._store.save(job)
        try:
            handler = self._handlers.get(job.operation)
            if handler is None:
                raise DeadLetterHandlerMissingError(f"No dead-letter handler registered for {job.operation}")
            await handler(job)
        except DeadLetterHandlerMissingError as exc:
            logger.error("dead_letter_handler_missing job_id=%s operation=%s", job.id, job.operation)
            await self._record_failure(job, exc)
        except Exception as exc:  # noqa: BLE001 - handler failures are retried with backoff.
            logger.warning("dead_letter_handler_failed job_id=%s operation=%s", job.id, job.operation, exc_info=True)
            await self._record_failure(job, exc)
        else:
            job.status = "completed"
            job.completed_at = self._clock()
            job.last_error = None
            await self._store.save(job)
            increment_counter("dead_letter_jobs_total.completed")
            logger.info("dead_letter_job_completed job_id=%s operation=%s attempts=%s", job.id, job.operation, job.attempts)
        return job

    async def _record_failure(self, job: DeadLetterJob, exc: Exception) -> None:
        now = self._clock()
        job.last_error = str(exc) or exc.__class__.__name__
        if job.attempts >= self._settings.dead_letter_max_attempts:
            job.status = "failed"
            job.completed_at = now
            increment_counter("dead_letter_jobs_total.failed")
            logger.error(
                "dead_letter_job_failed job_id=%s operation=%s attempts=%s error=%s",
                job.id,
                job.operation,
                job.attempts,
                job.last_error,
            )
        else:
            delay_ms = dead_letter_backoff_ms(attempts=job.attempts, base_ms=self._settings.dead_letter_backoff_ms)
            job.status = "pending"
            job.next_attempt_at = now + timedelta(milliseconds=delay_ms)
            increment_counter("dead_letter_jobs_total.retried")
        await self._store.save(job)

    async def process_all(self, limit: int | None = None) -> int:
        # Drain every job that is ready now; rescheduled jobs wait for their next_attempt_at.
        processed = 0
        while limit is None or processed < limit:
            job = await self.process_next()
            if job is None:
                break
            processed += 1
        return processed

    async def stats(self) -> dict[str, Any]:
        counts = await self._store.count_by_status()
        for status in ("pending", "processing", "completed", "failed"):
            counts.setdefault(status, 0)
        set_gauge("dead_letter_jobs_pending", counts["pending"])
        return {"counts": counts, "operations": self.operations, "running": self.running}

    async def prune(self) -> int:
        before = self._clock() - timedelta(hours=self._settings.dead_letter_retention_hours)
        removed = await self._store.prune(before=before)
        if removed:
            logger.info("dead_letter_jobs_pruned count=%s", removed)
        return removed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        interval_s = max(1, int(self._settings.dead_letter_poll_interval_s))
        while True:
            try:
                await self.process_all()
                await self.prune()
            except Exception:  # noqa: BLE001 - keep the replay loop alive while surfacing failures in logs.
                logger.exception("dead_letter_loop_failed")
            await asyncio.sleep(interval_s)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
