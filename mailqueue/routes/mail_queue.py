"""Enqueue and inspection routes for the mail queue."""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.database import get_db
from mailqueue.handlers.enqueue import enqueue_job
from mailqueue.handlers.queue_stats import queue_stats
from mailqueue.schemas.mail import EnqueueRequest, JobSummary, QueueStats

router = APIRouter(prefix="/mail-queue", tags=["mail-queue"])


@router.post("/jobs", response_model=JobSummary, status_code=201)
async def create_mail_job(
    request: EnqueueRequest,
    db: AsyncSession = Depends(get_db),
) -> JobSummary:
    """Queue an email job for the next worker run at or after ``send_at``."""
    try:
        job = await enqueue_job(db, request)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc
    return JobSummary.model_validate(job)


@router.get("/stats", response_model=QueueStats)
async def mail_queue_stats(
    limit: int | None = Query(default=None, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> QueueStats:
    """Job counts by status and the most recent jobs. Payloads are not included."""
    return await queue_stats(db, limit)
