from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.domain.models import DeadLetterJob, Webhook, WebhookDelivery
from hookrelay.persistence.db import session_scope
from hookrelay.persistence.repos import dead_letters as dead_letters_repo
from hookrelay.persistence.repos import deliveries as deliveries_repo
from hookrelay.persistence.repos import webhooks as webhooks_repo


class WebhookStore(Protocol):
    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        ...

    async def get_user_webhook(self, user_id: str, webhook_id: str) -> Webhook | None:
        ...

    async def list_user_webhooks(self, user_id: str, *, active: bool | None = None) -> list[Webhook]:
        ...

    async def list_active_webhooks(self) -> list[Webhook]:
        ...

    async def add_webhook(self, row: Webhook) -> Webhook:
        ...

    async def save_webhook(self, row: Webhook) -> Webhook:
        ...

    async def delete_webhook(self, webhook_id: str) -> None:
        ...

    async def add_delivery(self, row: WebhookDelivery) -> WebhookDelivery:
        ...

    async def save_delivery(self, row: WebhookDelivery) -> WebhookDelivery:
        ...

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        ...

    async def list_deliveries(
        self,
        user_id: str,
        *,
        webhook_id: str | None = None,
        status: str | None = None,
        event_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        ...

    async def count_deliveries(
        self, webhook_id: str, *, status: str | None = None, since: datetime | None = None
    ) -> int:
        ...

    async def list_due_pending_deliveries(
        self, *, due_before: datetime, claimed_before: datetime, limit: int = 100
    ) -> list[WebhookDelivery]:
        ...

    async def claim_delivery(self, delivery_id: str, *, now: datetime, stale_before: datetime) -> bool:
        ...

    async def record_delivery_outcome(
        self, webhook_id: str, *, success: bool, response_time_ms: float | None, at: datetime
    ) -> None:
        ...

    async def deactivate_webhook(self, webhook_id: str, *, reason: str, at: datetime) -> bool:
        ...


class DeadLetterStore(Protocol):
    async def add(self, job: DeadLetterJob) -> DeadLetterJob:
        ...

    async def save(self, job: DeadLetterJob) -> DeadLetterJob:
        ...

    async def get(self, job_id: str) -> DeadLetterJob | None:
        ...

    async def next_ready(self, *, now: datetime) -> DeadLetterJob | None:
        ...

    async def count_by_status(self) -> dict[str, int]:
        ...

    async def prune(self, *, before: datetime) -> int:
        ...


class InMemoryWebhookStore:
    # Single-process store for tests and Redis-less local runs; rows are shared by reference.
    def __init__(self) -> None:
        self.webhooks: dict[str, Webhook] = {}
        self.deliveries: dict[str, WebhookDelivery] = {}

    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        return self.webhooks.get(webhook_id)

    async def get_user_webhook(self, user_id: str, webhook_id: str) -> Webhook | None:
        row = self.webhooks.get(webhook_id)
        if row is None or row.user_id != user_id:
            return None
        return row

    async def list_user_webhooks(self, user_id: str, *, active: bool | None = None) -> list[Webhook]:
        rows = [row for row in self.webhooks.values() if row.user_id == user_id]
        if active is not None:
            rows = [row for row in rows if bool(row.active) is active]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    async def list_active_webhooks(self) -> list[Webhook]:
        return [row for row in self.webhooks.values() if row.active]

    async def add_webhook(self, row: Webhook) -> Webhook:
        self.webhooks[row.id] = row
        return row

    async def save_webhook(self, row: Webhook) -> Webhook:
        self.webhooks[row.id] = row
        return row

    async def delete_webhook(self, webhook_id: str) -> None:
        self.webhooks.pop(webhook_id, None)
        for delivery_id in [key for key, row in self.deliveries.items() if row.webhook_id == webhook_id]:
            self.deliveries.pop(delivery_id, None)

    async def add_delivery(self, row: WebhookDelivery) -> WebhookDelivery:
        self.deliveries[row.id] = row
        return row

    async def save_delivery(self, row: WebhookDelivery) -> WebhookDelivery:
        self.deliveries[row.id] = row
        return row

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        return self.deliveries.get(delivery_id)

    async def list_deliveries(
        self,
        user_id: str,
        *,
        webhook_id: str | None = None,
        status: str | None = None,
        event_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        rows = [row for row in self.deliveries.values() if row.user_id == user_id]
        if webhook_id:
            rows = [row for row in rows if row.webhook_id == webhook_id]
        if status:
            rows = [row for row in rows if row.status == status]
        if event_type:
            rows = [row for row in rows if row.event_type == event_type]
        if start is not None:
            rows = [row for row in rows if row.created_at >= start]
        if end is not None:
            rows = [row for row in rows if row.created_at <= end]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        window_start = max(0, int(offset))
        window_end = window_start + max(1, min(int(limit), 500))
        return rows[window_start:window_end], len(rows)

    async def count_deliveries(
        self, webhook_id: str, *, status: str | None = None, since: datetime | None = None
    ) -> int:
        count = 0
        for row in self.deliveries.values():
            if row.webhook_id != webhook_id:
                continue
            if status and row.status != status:
                continue
            if since is not None and row.created_at < since:
                continue
            count += 1
        return count

    async def list_due_pending_deliveries(
        self, *, due_before: datetime, claimed_before: datetime, limit: int = 100
    ) -> list[WebhookDelivery]:
        rows = [
            row
            for row in self.deliveries.values()
            if row.status == "pending"
            and (row.claimed_at is None or row.claimed_at < claimed_before)
            and (row.next_retry_at or row.created_at) <= due_before
        ]
        rows.sort(key=lambda row: row.created_at)
        return rows[: max(1, int(limit))]

    async def claim_delivery(self, delivery_id: str, *, now: datetime, stale_before: datetime) -> bool:
        row = self.deliveries.get(delivery_id)
        if row is None or row.status != "pending":
            return False
        if row.claimed_at is not None and row.claimed_at >= stale_before:
            return False
        row.claimed_at = now
        row.updated_at = now
        return True

    async def record_delivery_outcome(
        self, webhook_id: str, *, success: bool, response_time_ms: float | None, at: datetime
    ) -> None:
        row = self.webhooks.get(webhook_id)
        if row is None:
            return
        row.total_deliveries = int(row.total_deliveries or 0) + 1
        row.last_delivery_at = at
        if success:
            successes = int(row.successful_deliveries or 0)
            if response_time_ms is not None:
                current = float(row.average_response_time_ms or 0.0)
                row.average_response_time_ms = (current * successes + float(response_time_ms)) / (successes + 1)
            row.successful_deliveries = successes + 1
            row.last_success_at = at
        else:
            row.failed_deliveries = int(row.failed_deliveries or 0) + 1
            row.last_failure_at = at

    async def deactivate_webhook(self, webhook_id: str, *, reason: str, at: datetime) -> bool:
        row = self.webhooks.get(webhook_id)
        if row is None or not row.active:
            return False
        row.active = False
        row.deactivated_at = at
        row.deactivation_reason = reason
        row.updated_at = at
        return True


class SQLWebhookStore:
    # Durable store: one short-lived session per call so workers never share session state.
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        async with session_scope(self._session_factory) as session:
            return await webhooks_repo.get_webhook(session, webhook_id)

    async def get_user_webhook(self, user_id: str, webhook_id: str) -> Webhook | None:
        async with session_scope(self._session_factory) as session:
            return await webhooks_repo.get_user_webhook(session, user_id, webhook_id)

    async def list_user_webhooks(self, user_id: str, *, active: bool | None = None) -> list[Webhook]:
        async with session_scope(self._session_factory) as session:
            return await webhooks_repo.list_user_webhooks(session, user_id, active=active)

    async def list_active_webhooks(self) -> list[Webhook]:
        async with session_scope(self._session_factory) as session:
            return await webhooks_repo.list_active_webhooks(session)

    async def add_webhook(self, row: Webhook) -> Webhook:
        async with session_scope(self._session_factory) as session:
            session.add(row)
            await session.commit()
        return row

    async def save_webhook(self, row: Webhook) -> Webhook:
        async with session_scope(self._session_factory) as session:
            await session.merge(row)
            await session.commit()
        return row

    async def delete_webhook(self, webhook_id: str) -> None:
        async with session_scope(self._session_factory) as session:
            await webhooks_repo.delete_webhook(session, webhook_id)
            await session.commit()

    async def add_delivery(self, row: WebhookDelivery) -> WebhookDelivery:
        async with session_scope(self._session_factory) as session:
            session.add(row)
            await session.commit()
        return row

    async def save_delivery(self, row: WebhookDelivery) -> WebhookDelivery:
        async with session_scope(self._session_factory) as session:
            await session.merge(row)
            await session.commit()
        return row

    async def get_delivery(self, delivery_id: str) -> WebhookDelivery | None:
        async with session_scope(self._session_factory) as session:
            return await deliveries_repo.get_delivery(session, delivery_id)

    async def list_deliveries(
        self,
        user_id: str,
        *,
        webhook_id: str | None = None,
        status: str | None = None,
        event_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]:
        async with session_scope(self._session_factory) as session:
            return await deliveries_repo.list_deliveries(
                session,
                user_id,
                webhook_id=webhook_id,
                status=status,
                event_type=event_type,
                start=start,
                end=end,
                limit=limit,
                offset=offset,
            )

    async def count_deliveries(
        self, webhook_id: str, *, status: str | None = None, since: datetime | None = None
    ) -> int:
        async with session_scope(self._session_factory) as session:
            return await deliveries_repo.count_deliveries(session, webhook_id, status=status, since=since)

    async def list_due_pending_deliveries(
        self, *, due_before: datetime, claimed_before: datetime, limit: int = 100
    ) -> list[WebhookDelivery]:
        async with session_scope(self._session_factory) as session:
            return await deliveries_repo.list_due_pending_deliveries(
                session, due_before=due_before, claimed_before=claimed_before, limit=limit
            )

    async def claim_delivery(self, delivery_id: str, *, now: datetime, stale_before: datetime) -> bool:
        async with session_scope(self._session_factory) as session:
            claimed = await deliveries_repo.claim_delivery(
                session, delivery_id, now=now, stale_before=stale_before
            )
            await session.commit()
            return claimed

    async def record_delivery_outcome(
        self, webhook_id: str, *, success: bool, response_time_ms: float | None, at: datetime
    ) -> None:
        async with session_scope(self._session_factory) as session:
            await webhooks_repo.record_delivery_outcome(
                session, webhook_id, success=success, response_time_ms=response_time_ms, at=at
            )
            await session.commit()

    async def deactivate_webhook(self, webhook_id: str, *, reason: str, at: datetime) -> bool:
        async with session_scope(self._session_factory) as session:
            changed = await webhooks_repo.deactivate_webhook(session, webhook_id, reason=reason, at=at)
            await session.commit()
            return changed


class InMemoryDeadLetterStore:
    def __init__(self) -> None:
        self.jobs: dict[str, DeadLetterJob] = {}

    async def add(self, job: DeadLetterJob) -> DeadLetterJob:
        self.jobs[job.id] = job
        return job

    async def save(self, job: DeadLetterJob) -> DeadLetterJob:
        self.jobs[job.id] = job
        return job

    async def get(self, job_id: str) -> DeadLetterJob | None:
        return self.jobs.get(job_id)

    async def next_ready(self, *, now: datetime) -> DeadLetterJob | None:
        ready = [job for job in self.jobs.values() if job.status == "pending" and job.next_attempt_at <= now]
        if not ready:
            return None
        ready.sort(key=lambda job: (-float(job.priority or 0.0), job.raised_at))
        return ready[0]

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self.jobs.values():
            counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    async def prune(self, *, before: datetime) -> int:
        stale = [
            job_id
            for job_id, job in self.jobs.items()
            if job.status in {"completed", "failed"} and job.completed_at is not None and job.completed_at < before
        ]
        for job_id in stale:
            self.jobs.pop(job_id, None)
        return len(stale)


class SQLDeadLetterStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, job: DeadLetterJob) -> DeadLetterJob:
        async with session_scope(self._session_factory) as session:
            session.add(job)
            await session.commit()
        return job

    async def save(self, job: DeadLetterJob) -> DeadLetterJob:
        async with session_scope(self._session_factory) as session:
            await session.merge(job)
            await session.commit()
        return job

    async def get(self, job_id: str) -> DeadLetterJob | None:
        async with session_scope(self._session_factory) as session:
            return await session.get(DeadLetterJob, job_id)

    async def next_ready(self, *, now: datetime) -> DeadLetterJob | None:
        async with session_scope(self._session_factory) as session:
            return await dead_letters_repo.next_ready_job(session, now=now)

    async def count_by_status(self) -> dict[str, int]:
        async with session_scope(self._session_factory) as session:
            return await dead_letters_repo.count_by_status(session)

    async def prune(self, *, before: datetime) -> int:
        async with session_scope(self._session_factory) as session:
            removed = await dead_letters_repo.prune_finished(session, before=before)
            await session.commit()
            return removed
