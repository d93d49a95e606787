from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from loam.database.tables.base_class import BasePublic
from loam.main.models import ScheduledEmailStatus


class ScheduledEmails(BasePublic):
    """Admin-scheduled emails, claimed and dispatched by the email scheduler."""

    __tablename__ = "scheduled_emails"
    __table_args__ = (Index("ix_scheduled_emails_status_scheduled_for", "status", "scheduled_for"),)

    subject: Mapped[str] = mapped_column(Text)
    message_html: Mapped[str] = mapped_column(Text)
    template_type: Mapped[str] = mapped_column(String, default="announcement")
    recipient_ids: Mapped[list[str]] = mapped_column(default=list)
    recipient_count: Mapped[int] = mapped_column(default=0)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String, default=ScheduledEmailStatus.PENDING.value
    )
    created_by: Mapped[str] = mapped_column(String, index=True)
    sent_count: Mapped[Optional[int]] = mapped_column()
    failed_count: Mapped[Optional[int]] = mapped_column()
    suppressed_count: Mapped[Optional[int]] = mapped_column()
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
