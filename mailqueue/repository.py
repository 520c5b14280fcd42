"""Persistence for the mail queue.

Every write that changes a job's status also updates its paired
``EmailHistory`` row and commits both in one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.handlers.retry_policy import RetryDecision
from mailqueue.models.email_history import EmailHistory
from mailqueue.models.mail_job import TERMINAL_STATUSES, MailJob, MailJobStatus

logger = logging.getLogger(__name__)

ERROR_MAX_LENGTH = 500


@dataclass(frozen=True, slots=True)
class DueJob:
    """Detached copy of the fields the worker needs from a queue row."""

    id: int
    kind: str
    payload: Any
    retry_count: int
    max_retries: int

    @classmethod
    def from_row(cls, row: MailJob) -> "DueJob":
        return cls(
            id=row.id,
            kind=row.kind,
            payload=row.payload,
            retry_count=row.retry_count or 0,
            max_retries=row.max_retries,
        )


def truncate_error(error: str | None) -> str:
    return (error or "Unknown error")[:ERROR_MAX_LENGTH]


async def select_due_jobs(db: AsyncSession, limit: int, now: datetime) -> list[DueJob]:
    """Queued jobs whose ``send_at`` has passed, most urgent first, then FIFO."""
    result = await db.execute(
        select(MailJob)
        .where(MailJob.status == MailJobStatus.QUEUED.value, MailJob.send_at <= now)
        .order_by(MailJob.priority.asc(), MailJob.created_at.asc(), MailJob.id.asc())
        .limit(limit)
    )
    return [DueJob.from_row(row) for row in result.scalars().all()]


async def _write_pair(
    db: AsyncSession,
    job_id: int,
    job_values: dict[str, Any],
    history_values: dict[str, Any],
    *,
    expect_status: MailJobStatus | None = None,
) -> bool:
    """Update a job and its history row, then commit both or neither.

    With *expect_status* the job update is conditional on that status;
    otherwise a job already SENT or FAILED is never moved. Returns False and
    rolls back when no row matched.
    """
    stmt = update(MailJob).where(MailJob.id == job_id)
    if expect_status is not None:
        stmt = stmt.where(MailJob.status == expect_status.value)
    else:
        stmt = stmt.where(MailJob.status.not_in([status.value for status in TERMINAL_STATUSES]))
    try:
        result = await db.execute(
            stmt.values(**job_values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            return False
        await db.execute(
            update(EmailHistory)
            .where(EmailHistory.mail_queue_id == job_id)
            .values(**history_values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return True


async def claim_job(db: AsyncSession, job_id: int) -> bool:
    """Atomically move a job from QUEUED to PROCESSING.

    Returns False when another worker already claimed it.
    """
    status = MailJobStatus.PROCESSING.value
    return await _write_pair(
        db,
        job_id,
        {"status": status},
        {"status": status},
        expect_status=MailJobStatus.QUEUED,
    )


async def mark_sent(
    db: AsyncSession,
    job_id: int,
    now: datetime,
    provider_message_id: str | None = None,
) -> bool:
    status = MailJobStatus.SENT.value
    return await _write_pair(
        db,
        job_id,
        {"status": status, "sent_at": now, "error": None, "provider_message_id": provider_message_id},
        {"status": status, "sent_at": now, "error": None},
    )


async def mark_attempt_failed(
    db: AsyncSession,
    job_id: int,
    decision: RetryDecision,
    error: str,
) -> bool:
    """Record a failed delivery: back to QUEUED with a later send_at, or FAILED."""
    error = truncate_error(error)
    job_values: dict[str, Any] = {
        "status": decision.status.value,
        "retry_count": decision.retry_count,
        "error": error,
    }
    if decision.send_at is not None:
        job_values["send_at"] = decision.send_at
    return await _write_pair(
        db,
        job_id,
        job_values,
        {"status": decision.status.value, "error": error},
    )


async def mark_internal_failure(db: AsyncSession, job_id: int, max_retries: int, error: str) -> bool:
    """Fail a job permanently after an unexpected error; it is never retried."""
    error = truncate_error(error)
    status = MailJobStatus.FAILED.value
    return await _write_pair(
        db,
        job_id,
        {"status": status, "retry_count": max_retries, "error": error},
        {"status": status, "error": error},
    )


async def create_job(
    db: AsyncSession,
    *,
    kind: str,
    payload: dict[str, Any],
    priority: int,
    send_at: datetime,
    max_retries: int,
    created_by: str,
    history: dict[str, Any] | None,
) -> MailJob:
    """Insert a QUEUED job, and its history row when *history* is given."""
    job = MailJob(
        kind=kind,
        payload=payload,
        status=MailJobStatus.QUEUED.value,
        send_at=send_at,
        priority=priority,
        retry_count=0,
        max_retries=max_retries,
        created_by=created_by,
    )
    try:
        db.add(job)
        await db.flush()
        if history is not None:
            db.add(
                EmailHistory(
                    mail_queue_id=job.id,
                    email_type=kind,
                    status=MailJobStatus.QUEUED.value,
                    created_by=created_by,
                    **history,
                )
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info("Enqueued %s job %d (priority %d, send_at %s)", kind, job.id, priority, send_at.isoformat())
    return job


async def count_by_status(db: AsyncSession) -> dict[str, int]:
    counts = {status.value: 0 for status in MailJobStatus}
    result = await db.execute(
        select(MailJob.status, func.count(MailJob.id)).group_by(MailJob.status)
    )
    for status, count in result.all():
        counts[status] = count
    return counts


async def recent_jobs(db: AsyncSession, limit: int) -> list[MailJob]:
    result = await db.execute(
        select(MailJob).order_by(MailJob.created_at.desc(), MailJob.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def get_history(db: AsyncSession, job_id: int) -> EmailHistory | None:
    result = await db.execute(select(EmailHistory).where(EmailHistory.mail_queue_id == job_id))
    return result.scalar_one_or_none()
