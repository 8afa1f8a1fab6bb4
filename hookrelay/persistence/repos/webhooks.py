from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.domain.models import Webhook, WebhookDelivery


async def get_webhook(session: AsyncSession, webhook_id: str) -> Webhook | None:
    # Use with care; ownership checks should be enforced by callers.
    return await session.get(Webhook, webhook_id)


async def get_user_webhook(session: AsyncSession, user_id: str, webhook_id: str) -> Webhook | None:
    # Return None for owner mismatch to keep not-found semantics.
    result = await session.execute(
        select(Webhook).where(Webhook.id == webhook_id, Webhook.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def list_user_webhooks(
    session: AsyncSession, user_id: str, *, active: bool | None = None
) -> list[Webhook]:
    stmt = select(Webhook).where(Webhook.user_id == user_id)
    if active is not None:
        stmt = stmt.where(Webhook.active.is_(active))
    result = await session.execute(stmt.order_by(Webhook.created_at.desc(), Webhook.id))
    return list(result.scalars().all())


async def list_active_webhooks(session: AsyncSession) -> list[Webhook]:
    # Event-type membership lives in a JSON list, so the matcher filters it in process.
    result = await session.execute(select(Webhook).where(Webhook.active.is_(True)))
    return list(result.scalars().all())


async def delete_webhook(session: AsyncSession, webhook_id: str) -> None:
    # Delete delivery history first so the cascade also holds on backends without FK enforcement.
    await session.execute(delete(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id))
    await session.execute(delete(Webhook).where(Webhook.id == webhook_id))


async def record_delivery_outcome(
    session: AsyncSession,
    webhook_id: str,
    *,
    success: bool,
    response_time_ms: float | None,
    at: datetime,
) -> None:
    # Increment counters in SQL so concurrent workers never lose updates.
    values: dict = {
        "total_deliveries": Webhook.total_deliveries + 1,
        "last_delivery_at": at,
    }
    if success:
        values["successful_deliveries"] = Webhook.successful_deliveries + 1
        values["last_success_at"] = at
        if response_time_ms is not None:
            # Incremental mean over successful deliveries: (avg * n + x) / (n + 1).
            values["average_response_time_ms"] = (
                Webhook.average_response_time_ms * Webhook.successful_deliveries + float(response_time_ms)
            ) / (Webhook.successful_deliveries + 1)
    else:
        values["failed_deliveries"] = Webhook.failed_deliveries + 1
        values["last_failure_at"] = at
    await session.execute(update(Webhook).where(Webhook.id == webhook_id).values(**values))


async def deactivate_webhook(session: AsyncSession, webhook_id: str, *, reason: str, at: datetime) -> bool:
    # Only flip active rows so repeated health checks do not overwrite the first deactivation stamp.
    result = await session.execute(
        update(Webhook)
        .where(Webhook.id == webhook_id, Webhook.active.is_(True))
        .values(
            active=False,
            deactivated_at=at,
            deactivation_reason=reason,
            updated_at=at,
        )
    )
    return int(result.rowcount or 0) > 0
