"""Drains one batch of due mail jobs.

For each job, in priority-then-FIFO order:

1. Claim it (QUEUED -> PROCESSING, conditional on the status).
2. Render subject, HTML and text from the typed payload.
3. Validate recipients; an empty list is a failed attempt and Resend is
   never called.
4. Send, tagged with the job kind and the service source tag.
5. Persist SENT, a rescheduled retry, or FAILED together with the history row.

An unexpected error while handling one job fails that job permanently and
the batch moves on. Only a failure to read the batch propagates.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue import repository
from mailqueue.clients.resend_client import ResendClient
from mailqueue.config import settings
from mailqueue.database import utcnow
from mailqueue.handlers.retry_policy import next_attempt
from mailqueue.repository import DueJob
from mailqueue.schemas.mail import BatchResult, DeliveryResult
from mailqueue.schemas.payloads import parse_payload
from mailqueue.templates.email_templates import render_email

logger = logging.getLogger(__name__)

NO_RECIPIENTS_ERROR = "No recipients"


class DeliveryClient(Protocol):
    async def send(
        self,
        recipients: list[str],
        subject: str,
        html: str,
        text: str,
        tags: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> DeliveryResult: ...

    async def close(self) -> None: ...


def idempotency_key_for(job_id: int) -> str:
    return f"mail-job-{job_id}"


def _recipients(job: DueJob) -> list[str]:
    if not isinstance(job.payload, dict):
        return []
    return parse_payload(None, job.payload).resolved_recipients()


async def _deliver(client: DeliveryClient, job: DueJob) -> DeliveryResult:
    """Render and send one job. Provider errors come back as a failed result."""
    rendered = render_email(job.kind, job.payload)
    recipients = _recipients(job)
    if not recipients:
        return DeliveryResult(success=False, error=NO_RECIPIENTS_ERROR)

    try:
        return await client.send(
            recipients,
            rendered.subject,
            rendered.html,
            rendered.text,
            tags={"type": job.kind, "source": settings.source_tag},
            idempotency_key=idempotency_key_for(job.id),
        )
    except Exception as exc:
        # Timeouts and transport errors count as an ordinary failed attempt.
        return DeliveryResult(success=False, error=str(exc) or exc.__class__.__name__)


async def _process_job(
    db: AsyncSession,
    client: DeliveryClient,
    job: DueJob,
    now: datetime | None,
    results: BatchResult,
) -> None:
    if not await repository.claim_job(db, job.id):
        logger.info("Job %d already claimed by another worker, skipping", job.id)
        results.skipped += 1
        return

    outcome = await _deliver(client, job)
    # sent_at and the backoff base are taken after the attempt unless pinned.
    finished_at = now or utcnow()

    if outcome.success:
        if not await repository.mark_sent(db, job.id, finished_at, outcome.provider_message_id):
            logger.error("Job %d (%s) sent but its row changed or vanished, result not recorded", job.id, job.kind)
            return
        results.succeeded += 1
        logger.info("Job %d (%s) sent: %s", job.id, job.kind, outcome.provider_message_id or "no message id")
        return

    error = repository.truncate_error(outcome.error)
    decision = next_attempt(job.retry_count, job.max_retries, finished_at)
    if not await repository.mark_attempt_failed(db, job.id, decision, error):
        logger.error("Job %d (%s) failed but its row changed or vanished, result not recorded: %s",
                     job.id, job.kind, error)
        return
    if decision.will_retry:
        logger.warning(
            "Job %d (%s) failed attempt %d/%d, retrying at %s: %s",
            job.id, job.kind, decision.retry_count, job.max_retries,
            decision.send_at.isoformat(), error,
        )
    else:
        logger.error("Job %d (%s) failed permanently: %s", job.id, job.kind, error)
        results.failed += 1
        results.errors.append(f"Job {job.id}: {error}")


async def process_batch(
    db: AsyncSession,
    limit: int | None = None,
    *,
    client: DeliveryClient | None = None,
    now: datetime | None = None,
) -> BatchResult:
    """Process up to *limit* due jobs and return aggregate counts.

    *client* defaults to :class:`ResendClient`, built only when there is work.
    *now* pins the clock for selection, ``sent_at`` and backoff; without it
    each job's outcome is stamped with the time its attempt finished.
    """
    limit = limit or settings.batch_size
    results = BatchResult()

    jobs = await repository.select_due_jobs(db, limit, now or utcnow())
    if not jobs:
        return results

    owns_client = client is None
    if client is None:
        client = ResendClient()

    try:
        for job in jobs:
            results.processed += 1
            try:
                await _process_job(db, client, job, now, results)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                logger.exception("Internal error processing job %d", job.id)
                results.failed += 1
                results.errors.append(f"Job {job.id}: {error}")
                try:
                    if not await repository.mark_internal_failure(db, job.id, job.max_retries, error):
                        logger.error("Job %d already finished or gone, internal failure not recorded", job.id)
                except Exception:
                    logger.exception("Could not mark job %d as failed", job.id)
    finally:
        if owns_client:
            with suppress(Exception):
                await client.close()

    logger.info(
        "Mail batch done: processed=%d succeeded=%d failed=%d skipped=%d",
        results.processed, results.succeeded, results.failed, results.skipped,
    )
    return results
