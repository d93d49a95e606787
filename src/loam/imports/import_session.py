from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from loam.main.models import ImportSessionStatus


class ImportSession(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    provider: str
    status: ImportSessionStatus
    started_at: datetime
    last_activity_received_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    unassigned_ride_count: int = 0
