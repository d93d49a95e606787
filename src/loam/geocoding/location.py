"""Helpers for turning provider metadata and coordinates into a ride location."""

import math
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from loam.geocoding.reverse_geocoder import ReverseGeocoder

LAT_LON_PREFIX = "Lat "


def build_location_string(parts: Iterable[Optional[str]]) -> Optional[str]:
    cleaned = [part.strip() for part in parts if isinstance(part, str) and part.strip()]
    return ", ".join(cleaned) if cleaned else None


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


def format_lat_lon(lat: Optional[float], lon: Optional[float]) -> Optional[str]:
    """Placeholder location, e.g. ``Lat 39.739, Lon -104.990``."""
    if not _finite(lat) or not _finite(lon):
        return None
    return f"{LAT_LON_PREFIX}{lat:.3f}, Lon {lon:.3f}"


def is_lat_lon_placeholder(location: Optional[str]) -> bool:
    return bool(location) and location.startswith(LAT_LON_PREFIX)


def derive_location(
    city: Optional[str] = None,
    state: Optional[str] = None,
    country: Optional[str] = None,
    fallback: Optional[str] = None,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
) -> Optional[str]:
    """Best human-readable location from whatever fields a provider sent.

    Prefers "City, State", then "City, Country", then "State, Country", then
    any single field, and finally a lat/lon placeholder.
    """
    for pair in ((city, state), (city, country), (state, country)):
        combined = build_location_string(pair)
        if combined:
            return combined

    single = next((v for v in (city, state, country, fallback) if v is not None), None)
    if single is not None and single.strip():
        return single.strip()

    return format_lat_lon(lat, lon)


async def derive_location_async(
    geocoder: "ReverseGeocoder",
    city: Optional[str] = None,
    state: Optional[str] = None,
    country: Optional[str] = None,
    fallback: Optional[str] = None,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
) -> Optional[str]:
    """Like ``derive_location`` but reverse geocodes when only coordinates exist."""
    derived = derive_location(city, state, country, fallback, lat, lon)
    if derived and not is_lat_lon_placeholder(derived):
        return derived

    if _finite(lat) and _finite(lon):
        place = await geocoder.reverse_geocode(lat, lon)
        if place is not None:
            return place.label

    return derived


def should_apply_auto_location(
    existing: Optional[str], incoming: Optional[str]
) -> Optional[str]:
    """Return ``incoming`` only when it would not overwrite a user-set location."""
    if not incoming:
        return None
    if existing and existing.strip():
        return None
    return incoming
