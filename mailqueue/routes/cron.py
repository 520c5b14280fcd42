"""Scheduler trigger for the mail worker."""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue.database import get_db
from mailqueue.handlers.mail_worker import process_batch
from mailqueue.schemas.mail import WorkerResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron"])


@router.api_route(
    "/cron/mail-worker",
    methods=["GET", "POST"],
    response_model=WorkerResponse,
    responses={500: {"description": "The batch could not be read or the provider is not configured"}},
)
async def mail_worker(
    limit: int | None = Query(default=None, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Process one batch of due mail jobs.

    Safe to call on a short fixed interval: jobs waiting out a backoff are
    not due and are left alone.
    """
    try:
        results = await process_batch(db, limit)
    except Exception as exc:
        logger.exception("Mail worker batch failed")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Mail worker failed.", "error": str(exc)},
        )
    return WorkerResponse(
        status="success",
        message=f"Processed {results.processed} mail job(s)",
        **results.model_dump(),
    )
