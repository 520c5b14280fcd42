"""Pydantic models for the mail queue API and its internal boundaries."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mailqueue.database import as_utc


class RenderedEmail(BaseModel):
    subject: str
    html: str
    text: str


class DeliveryResult(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class EnqueueRequest(BaseModel):
    """Shape accepted from producers (HR record endpoints, cron jobs)."""

    model_config = ConfigDict(extra="ignore")

    kind: str = Field(min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[int] = None
    send_at: Optional[datetime] = None
    max_retries: Optional[int] = Field(default=None, ge=1)
    created_by: str = "system"
    history: bool = True
    onboarding_employee_id: Optional[int] = None
    offboarding_employee_id: Optional[int] = None


class JobSummary(BaseModel):
    """Routing and status metadata for one job. Never carries the payload."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    status: str
    send_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int = 0

    @field_validator("send_at", "sent_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


class BatchResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class WorkerResponse(BatchResult):
    status: str
    message: str


class QueueStats(BaseModel):
    counts_by_status: dict[str, int]
    recent_jobs: list[JobSummary]
    timestamp: datetime
