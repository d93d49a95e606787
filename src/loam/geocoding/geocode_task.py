"""Background reverse geocoding of newly imported rides."""

import math
from typing import Optional
from uuid import UUID

import sqlalchemy as sa
from pydantic import BaseModel, field_validator

from loam.coordination.claims import SessionFactory
from loam.database.database import sessionmanager
from loam.database.tables.rides_table import Rides
from loam.geocoding.location import LAT_LON_PREFIX
from loam.geocoding.reverse_geocoder import ReverseGeocoder
from loam.main.logging import get_logger

logger = get_logger(__name__)


class GeocodeRideParams(BaseModel):
    ride_id: UUID
    lat: float
    lon: float

    @field_validator("lat", "lon")
    @classmethod
    def must_be_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("lat and lon must be valid numbers")
        return value


async def apply_geocoded_location(
    ride_id: UUID, location: str, session_factory: Optional[SessionFactory] = None
) -> bool:
    """Set the ride location unless the user has already replaced the placeholder."""
    session_factory = session_factory or sessionmanager.session
    stmt = (
        sa.update(Rides)
        .where(Rides.id == ride_id)
        .where(Rides.location.startswith(LAT_LON_PREFIX, autoescape=True))
        .values(location=location, updated_at=sa.func.now())
        .execution_options(synchronize_session=False)
    )
    async with session_factory() as session, session.begin():
        result = await session.execute(stmt)
    return result.rowcount > 0


async def geocode_ride_task(
    job_id: str,
    params: GeocodeRideParams,
    geocoder: ReverseGeocoder,
    session_factory: Optional[SessionFactory] = None,
) -> Optional[str]:
    place = await geocoder.reverse_geocode(params.lat, params.lon)
    if place is None:
        logger.info(
            "No location found for ride",
            extra={"job_id": job_id, "ride_id": str(params.ride_id)},
        )
        return None

    if await apply_geocoded_location(params.ride_id, place.label, session_factory):
        logger.info(
            f"Updated ride location to: {place.label}",
            extra={"job_id": job_id, "ride_id": str(params.ride_id)},
        )
        return place.label

    logger.info(
        "Ride not found or location already set, skipping",
        extra={"job_id": job_id, "ride_id": str(params.ride_id)},
    )
    return None
