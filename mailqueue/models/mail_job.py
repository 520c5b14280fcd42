"""Queue record for one outbound email."""

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text

from mailqueue.database import Base


class MailJobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({MailJobStatus.SENT, MailJobStatus.FAILED})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MailJob(Base):
    __tablename__ = "mail_queue"
    __table_args__ = (
        Index("ix_mail_queue_due", "status", "send_at", "priority", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(16), nullable=False, default=MailJobStatus.QUEUED.value)
    send_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    priority = Column(Integer, nullable=False, default=5)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error = Column(Text, nullable=True)
    provider_message_id = Column(String(128), nullable=True)
    created_by = Column(String(128), nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    sent_at = Column(DateTime(timezone=True), nullable=True)
