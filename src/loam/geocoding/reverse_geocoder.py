"""Reverse geocoding through Nominatim.

Nominatim's usage policy allows one request per second per application and
requires an identifying User-Agent. Every instance of the worker shares the
Redis cache tier; requests that do go out pass through one process-wide
``RateLimitedGate``.
"""

from typing import Any, Callable, Optional

import aiohttp
import redis.asyncio as aioredis
from pydantic import BaseModel

from loam.coordination.cache import (
    NEGATIVE,
    CacheCodec,
    ReadThroughCache,
    coordinate_cache_key,
)
from loam.coordination.rate_gate import RateLimitedGate
from loam.geocoding.location import build_location_string
from loam.main.aiohttp_client import aiohttp_client
from loam.main.config import Settings, get_settings
from loam.main.logging import get_logger

logger = get_logger(__name__)

CITY_FIELDS = ("city", "town", "village", "hamlet", "municipality")
STATE_FIELDS = ("state", "state_district")


class Place(BaseModel):
    label: str
    city: Optional[str] = None
    state: Optional[str] = None


class PlaceCodec(CacheCodec[Place]):
    def to_payload(self, value: Place) -> Any:
        return value.model_dump()

    def from_payload(self, payload: Any) -> Place:
        return Place.model_validate(payload)

    def upgrade(self, legacy: str) -> Place:
        # Older entries cached only the "City, State" label
        return Place(label=legacy)


def place_from_address(address: Optional[dict]) -> Optional[Place]:
    if not isinstance(address, dict) or not address:
        return None

    city = next((address[f] for f in CITY_FIELDS if address.get(f)), None)
    state = next((address[f] for f in STATE_FIELDS if address.get(f)), None)
    label = build_location_string([city, state])
    if label is None:
        return None
    return Place(label=label, city=city, state=state)


class ReverseGeocoder:
    def __init__(
        self,
        cache: ReadThroughCache[Place],
        gate: RateLimitedGate,
        session: Callable[[], aiohttp.ClientSession] = aiohttp_client,
        api_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        precision: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.cache = cache
        self.gate = gate
        self._session = session
        self._api_url = api_url or settings.geocode_api_url
        self._user_agent = user_agent or settings.geocode_user_agent
        self._precision = precision if precision is not None else settings.geocode_coordinate_precision

    async def reverse_geocode(self, lat: float, lon: float) -> Optional[Place]:
        """Resolve coordinates to a place.

        Returns:
            The place, or None if nothing is there or the lookup failed.
            Only definite answers are cached.
        """
        key = coordinate_cache_key(lat, lon, precision=self._precision)

        cached = await self.cache.get(key)
        if cached is NEGATIVE:
            return None
        if cached is not None:
            return cached

        params = {
            "lat": str(lat),
            "lon": str(lon),
            "format": "json",
            "addressdetails": "1",
        }
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}

        try:
            async with self.gate:
                async with self._session().get(
                    self._api_url, params=params, headers=headers
                ) as response:
                    if not 200 <= response.status < 300:
                        logger.warning(
                            f"Reverse geocode failed with status {response.status}",
                            extra={"status": response.status, "cache_key": key},
                        )
                        return None
                    data = await response.json(content_type=None)

            if not isinstance(data, dict):
                logger.warning(
                    "Reverse geocode returned an unexpected payload",
                    extra={"cache_key": key, "payload_type": type(data).__name__},
                )
                return None
            address = data.get("address")
        except Exception as exc:
            logger.warning(
                "Reverse geocode request failed",
                extra={"cache_key": key, "error": str(exc)},
            )
            return None

        place = place_from_address(address)
        await self.cache.set(key, place if place is not None else NEGATIVE)
        return place


def build_reverse_geocoder(
    redis_client: Optional[aioredis.Redis],
    gate: Optional[RateLimitedGate] = None,
    settings: Optional[Settings] = None,
) -> ReverseGeocoder:
    settings = settings or get_settings()
    cache = ReadThroughCache(
        redis_client,
        max_entries=settings.geocode_memory_cache_max_size,
        ttl_seconds=settings.geocode_cache_ttl_seconds,
        codec=PlaceCodec(),
        name="geocode",
    )
    gate = gate or RateLimitedGate(settings.geocode_min_interval_seconds, name="nominatim")
    return ReverseGeocoder(cache, gate, settings=settings)
