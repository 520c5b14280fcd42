"""Producer-side entry point: put a job on the queue with its history row."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from mailqueue import repository
from mailqueue.config import settings
from mailqueue.database import utcnow
from mailqueue.models.mail_job import MailJob
from mailqueue.schemas.mail import EnqueueRequest
from mailqueue.schemas.payloads import parse_kind, parse_payload
from mailqueue.templates.email_templates import render_email

logger = logging.getLogger(__name__)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def enqueue_job(db: AsyncSession, request: EnqueueRequest) -> MailJob:
    """Create a QUEUED job and, unless disabled, its paired history row.

    The history row snapshots recipients, subject and HTML as rendered now.
    Raises ``pydantic.ValidationError`` when the payload does not fit its kind.
    """
    if parse_kind(request.kind) is None:
        logger.warning("Enqueueing unknown mail kind %r; it will render as a system message", request.kind)

    rendered = render_email(request.kind, request.payload)
    history = None
    if request.history:
        history = {
            "recipients": parse_payload(None, request.payload).resolved_recipients(),
            "subject": rendered.subject[:512],
            "content": rendered.html,
            "onboarding_employee_id": request.onboarding_employee_id,
            "offboarding_employee_id": request.offboarding_employee_id,
        }

    return await repository.create_job(
        db,
        kind=request.kind,
        payload=request.payload,
        priority=request.priority if request.priority is not None else settings.default_priority,
        send_at=_to_utc(request.send_at) if request.send_at else utcnow(),
        max_retries=request.max_retries or settings.default_max_retries,
        created_by=request.created_by,
        history=history,
    )
