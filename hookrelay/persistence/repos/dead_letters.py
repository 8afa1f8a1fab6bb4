from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.domain.models import DeadLetterJob


async def next_ready_job(session: AsyncSession, *, now: datetime) -> DeadLetterJob | None:
    # Highest priority first; ties resolve to the oldest raise so nothing starves.
    stmt = (
        select(DeadLetterJob)
        .where(DeadLetterJob.status == "pending", DeadLetterJob.next_attempt_at <= now)
        .order_by(DeadLetterJob.priority.desc(), DeadLetterJob.raised_at.asc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(
            select(DeadLetterJob.status, func.count()).group_by(DeadLetterJob.status)
        )
    ).all()
    return {str(status): int(count) for status, count in rows}


async def prune_finished(session: AsyncSession, *, before: datetime) -> int:
    # Keep finished jobs only for the forensic retention window.
    result = await session.execute(
        delete(DeadLetterJob).where(
            DeadLetterJob.status.in_(("completed", "failed")),
            DeadLetterJob.completed_at.is_not(None),
            DeadLetterJob.completed_at < before,
        )
    )
    return int(result.rowcount or 0)
