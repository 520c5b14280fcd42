"""Read-only view of the queue for operators."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue import repository
from mailqueue.config import settings
from mailqueue.database import utcnow
from mailqueue.schemas.mail import JobSummary, QueueStats


async def queue_stats(db: AsyncSession, limit: int | None = None) -> QueueStats:
    """Counts per status plus the newest jobs, without their payloads."""
    counts = await repository.count_by_status(db)
    rows = await repository.recent_jobs(db, limit or settings.recent_jobs_limit)
    return QueueStats(
        counts_by_status=counts,
        recent_jobs=[JobSummary.model_validate(row) for row in rows],
        timestamp=utcnow(),
    )
