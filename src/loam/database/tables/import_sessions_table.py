from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from loam.database.tables.base_class import BasePublic
from loam.main.models import ImportSessionStatus


class ImportSessions(BasePublic):
    """A bulk ride import from a provider, completed by the import session reaper."""

    __tablename__ = "import_sessions"
    __table_args__ = (
        Index("ix_import_sessions_status_last_activity", "status", "last_activity_received_at"),
    )

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    provider: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(
        String, default=ImportSessionStatus.RUNNING.value
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_activity_received_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    unassigned_ride_count: Mapped[int] = mapped_column(default=0)
