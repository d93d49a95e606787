from typing import Optional
from uuid import UUID

from sqlalchemy import ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column

from loam.database.tables.base_class import BasePublic


class Rides(BasePublic):
    __tablename__ = "rides"

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    import_session_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("import_sessions.id", ondelete="SET NULL"), index=True
    )
    bike_id: Mapped[Optional[UUID]] = mapped_column()
    location: Mapped[Optional[str]] = mapped_column(Text)
    start_lat: Mapped[Optional[float]] = mapped_column()
    start_lng: Mapped[Optional[float]] = mapped_column()
