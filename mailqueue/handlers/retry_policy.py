"""Retry and backoff decisions for failed delivery attempts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from mailqueue.models.mail_job import MailJobStatus

BACKOFF_UNIT = timedelta(minutes=1)


def backoff_delay(retry_count: int) -> timedelta:
    """``2 ** retry_count`` minutes, where *retry_count* already counts the failure."""
    return BACKOFF_UNIT * (2 ** max(retry_count, 0))


@dataclass(frozen=True, slots=True)
class RetryDecision:
    status: MailJobStatus
    retry_count: int
    send_at: datetime | None

    @property
    def will_retry(self) -> bool:
        return self.status is MailJobStatus.QUEUED


def next_attempt(retry_count: int, max_retries: int, now: datetime) -> RetryDecision:
    """Decide what happens to a job whose delivery attempt just failed."""
    attempts = min(retry_count + 1, max_retries)
    if attempts < max_retries:
        return RetryDecision(MailJobStatus.QUEUED, attempts, now + backoff_delay(attempts))
    return RetryDecision(MailJobStatus.FAILED, attempts, None)
