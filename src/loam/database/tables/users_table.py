from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from loam.database.tables.base_class import BasePublic


class Users(BasePublic):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[Optional[str]] = mapped_column()
    email_unsubscribed: Mapped[bool] = mapped_column(default=False)
