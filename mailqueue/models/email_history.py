"""Audit trail of what was sent, paired 1:1 with a queue record."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text

from mailqueue.database import Base


class EmailHistory(Base):
    __tablename__ = "email_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # No cascade: the audit row must outlive queue housekeeping.
    mail_queue_id = Column(
        Integer,
        ForeignKey("mail_queue.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
        index=True,
    )
    onboarding_employee_id = Column(Integer, nullable=True)
    offboarding_employee_id = Column(Integer, nullable=True)
    email_type = Column(String(64), nullable=False)
    recipients = Column(JSON, nullable=False, default=list)
    subject = Column(String(512), nullable=False, default="")
    content = Column(Text, nullable=True)
    status = Column(String(16), nullable=False)
    error = Column(Text, nullable=True)
    created_by = Column(String(128), nullable=False, default="system")
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    sent_at = Column(DateTime(timezone=True), nullable=True)
