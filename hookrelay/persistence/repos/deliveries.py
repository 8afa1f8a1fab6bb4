from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.domain.models import WebhookDelivery


async def get_delivery(session: AsyncSession, delivery_id: str) -> WebhookDelivery | None:
    return await session.get(WebhookDelivery, delivery_id)


async def list_deliveries(
    session: AsyncSession,
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
    # Owner scoping prevents cross-user leakage; newest first for audit views.
    conditions = [WebhookDelivery.user_id == user_id]
    if webhook_id:
        conditions.append(WebhookDelivery.webhook_id == webhook_id)
    if status:
        conditions.append(WebhookDelivery.status == status)
    if event_type:
        conditions.append(WebhookDelivery.event_type == event_type)
    if start is not None:
        conditions.append(WebhookDelivery.created_at >= start)
    if end is not None:
        conditions.append(WebhookDelivery.created_at <= end)
    total = int(
        (await session.execute(select(func.count()).select_from(WebhookDelivery).where(*conditions))).scalar()
        or 0
    )
    rows = (
        await session.execute(
            select(WebhookDelivery)
            .where(*conditions)
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id)
            .limit(max(1, min(int(limit), 500)))
            .offset(max(0, int(offset)))
        )
    ).scalars().all()
    return list(rows), total


async def count_deliveries(
    session: AsyncSession,
    webhook_id: str,
    *,
    status: str | None = None,
    since: datetime | None = None,
) -> int:
    stmt = select(func.count()).select_from(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id)
    if status:
        stmt = stmt.where(WebhookDelivery.status == status)
    if since is not None:
        stmt = stmt.where(WebhookDelivery.created_at >= since)
    return int((await session.execute(stmt)).scalar() or 0)


async def list_due_pending_deliveries(
    session: AsyncSession, *, due_before: datetime, claimed_before: datetime, limit: int = 100
) -> list[WebhookDelivery]:
    # Recovery scan: only rows past due by the grace period and not held by a live claim.
    stmt = (
        select(WebhookDelivery)
        .where(
            WebhookDelivery.status == "pending",
            WebhookDelivery.claimed_at.is_(None) | (WebhookDelivery.claimed_at < claimed_before),
            (WebhookDelivery.next_retry_at.is_(None) & (WebhookDelivery.created_at <= due_before))
            | (WebhookDelivery.next_retry_at <= due_before),
        )
        .order_by(WebhookDelivery.created_at.asc())
        .limit(max(1, int(limit)))
    )
    return list((await session.execute(stmt)).scalars().all())


async def claim_delivery(
    session: AsyncSession, delivery_id: str, *, now: datetime, stale_before: datetime
) -> bool:
    # Conditional update so exactly one worker sends a pending row.
    result = await session.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status == "pending",
            WebhookDelivery.claimed_at.is_(None) | (WebhookDelivery.claimed_at < stale_before),
        )
        .values(claimed_at=now, updated_at=now)
    )
    return int(result.rowcount or 0) > 0
