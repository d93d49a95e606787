from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from loam.main.models import ScheduledEmailStatus


class ScheduledEmail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subject: str
    message_html: str
    template_type: str = "announcement"
    recipient_ids: list[str] = []
    scheduled_for: datetime
    status: ScheduledEmailStatus


class Recipient(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: Optional[str] = None
    email_unsubscribed: bool = False

    @property
    def first_name(self) -> Optional[str]:
        if not self.name:
            return None
        return self.name.split(" ")[0] or None


class DispatchResult(BaseModel):
    sent: int = 0
    failed: int = 0
    suppressed: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.failed + self.suppressed

    @property
    def final_status(self) -> ScheduledEmailStatus:
        if self.total == 0 or self.failed == self.total:
            return ScheduledEmailStatus.FAILED
        return ScheduledEmailStatus.SENT


class EmailMessage(BaseModel):
    to: str
    subject: str
    html: str
    text: Optional[str] = None
