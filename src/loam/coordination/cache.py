"""Two-tier read-through cache with first-class negative entries.

The local tier is a bounded LRU with per-entry expiry; the shared tier is
Redis. A lookup that resolved to "nothing there" (e.g. a coordinate in the
ocean) is cached as ``NEGATIVE`` so it is not asked upstream again, and is
kept distinct from ``None``, which means "not cached".
"""

from __future__ import annotations

import json
import time
from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

from loam.main.logging import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)

V = TypeVar("V")

NEGATIVE_MARKER = "__NULL__"
ENVELOPE_VERSION = 2


class _Negative:
    _instance: "_Negative | None" = None

    def __new__(cls) -> "_Negative":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NEGATIVE"

    def __bool__(self) -> bool:
        return False


NEGATIVE = _Negative()


class CacheCodec(Generic[V]):
    """Serializes cache values for the Redis tier.

    Values are written as a versioned JSON envelope. Reads also accept bare
    legacy strings written before the envelope existed; ``upgrade`` turns
    those into the current value shape. Subclasses override ``to_payload``,
    ``from_payload`` and ``upgrade`` for structured values.
    """

    def to_payload(self, value: V) -> Any:
        return value

    def from_payload(self, payload: Any) -> V:
        return payload

    def upgrade(self, legacy: str) -> V:
        return legacy  # type: ignore[return-value]

    def dumps(self, value: "V | _Negative") -> str:
        if value is NEGATIVE:
            return NEGATIVE_MARKER
        return json.dumps({"v": ENVELOPE_VERSION, "value": self.to_payload(value)})

    def loads(self, raw: str | bytes) -> "V | _Negative | None":
        """Decode a Redis value. None means the entry is unreadable and is a miss."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        if raw == NEGATIVE_MARKER:
            return NEGATIVE

        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return self.upgrade(raw)

        if isinstance(decoded, dict) and decoded.get("v") == ENVELOPE_VERSION and "value" in decoded:
            return self.from_payload(decoded["value"])
        if isinstance(decoded, dict):
            # Envelope from another version, or not an envelope at all
            return None

        return self.upgrade(raw)


class ReadThroughCache(Generic[V]):
    """Bounded in-memory LRU in front of Redis.

    Args:
        redis_client: Async Redis client, or None to run memory-only.
        max_entries: Maximum number of entries in the local tier.
        ttl_seconds: Default expiry for both tiers.
        codec: Serializer for the Redis tier.
        name: Label used in log lines.
        clock: Wall clock for local expiry, injectable for tests.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis | None,
        *,
        max_entries: int,
        ttl_seconds: int,
        codec: CacheCodec[V] | None = None,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._redis = redis_client
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._codec: CacheCodec[V] = codec or CacheCodec()
        self._name = name
        self._clock = clock
        self._local: OrderedDict[str, tuple[V | _Negative, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._local)

    def _local_get(self, key: str) -> "V | _Negative | None":
        entry = self._local.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._local[key]
            return None
        self._local.move_to_end(key)
        return value

    def _local_set(self, key: str, value: "V | _Negative", ttl_seconds: int) -> None:
        self._local[key] = (value, self._clock() + ttl_seconds)
        self._local.move_to_end(key)
        while len(self._local) > self._max_entries:
            self._local.popitem(last=False)

    async def get(self, key: str) -> "V | _Negative | None":
        """Look up a key in memory, then Redis.

        Returns:
            The cached value, ``NEGATIVE`` for a cached miss, or None if absent.
        """
        value = self._local_get(key)
        if value is not None:
            return value

        if self._redis is None:
            return None

        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.warning(
                "Cache read from Redis failed",
                extra={"cache": self._name, "key": key, "error": str(exc)},
            )
            return None

        if raw is None:
            return None

        try:
            value = self._codec.loads(raw)
        except Exception as exc:
            logger.warning(
                "Unreadable cache entry in Redis, treating as a miss",
                extra={"cache": self._name, "key": key, "error": str(exc)},
            )
            return None

        if value is None:
            logger.warning(
                "Cache entry in Redis has an unknown format, treating as a miss",
                extra={"cache": self._name, "key": key},
            )
            return None

        self._local_set(key, value, self._ttl)
        return value

    async def set(self, key: str, value: "V | _Negative", ttl_seconds: int | None = None) -> None:
        """Write to both tiers. A Redis failure leaves the memory tier populated."""
        if value is None:
            raise ValueError("Use NEGATIVE to cache a miss, not None")

        ttl = ttl_seconds if ttl_seconds is not None else self._ttl
        self._local_set(key, value, ttl)

        if self._redis is None:
            return

        try:
            await self._redis.set(key, self._codec.dumps(value), ex=ttl)
        except Exception as exc:
            logger.warning(
                "Cache write to Redis failed",
                extra={"cache": self._name, "key": key, "error": str(exc)},
            )

    async def invalidate(self, key: str) -> None:
        self._local.pop(key, None)
        if self._redis is None:
            return
        try:
            await self._redis.delete(key)
        except Exception as exc:
            logger.warning(
                "Cache invalidation in Redis failed",
                extra={"cache": self._name, "key": key, "error": str(exc)},
            )

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix`` from both tiers.

        Returns:
            Number of Redis keys deleted.
        """
        for key in [k for k in self._local if k.startswith(prefix)]:
            del self._local[key]

        if self._redis is None:
            return 0

        deleted = 0
        try:
            batch: list[str] = []
            async for key in self._redis.scan_iter(match=f"{prefix}*", count=100):
                batch.append(key)
                if len(batch) >= 100:
                    deleted += await self._redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._redis.delete(*batch)
        except Exception as exc:
            logger.warning(
                "Cache prefix invalidation in Redis failed",
                extra={"cache": self._name, "prefix": prefix, "error": str(exc)},
            )
        return deleted


def round_coordinate(value: float, precision: int = 3) -> float:
    """Round half away from zero (``39.7395 -> 39.740``, ``-0.0005 -> -0.001``)."""
    quantum = Decimal(1).scaleb(-precision)
    rounded = Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return float(rounded) + 0.0  # normalizes -0.0


def coordinate_cache_key(
    lat: float, lon: float, precision: int = 3, prefix: str = "geocode"
) -> str:
    """Fixed-precision cell key, e.g. ``geocode:39.739:-104.990``."""
    return (
        f"{prefix}:"
        f"{round_coordinate(lat, precision):.{precision}f}:"
        f"{round_coordinate(lon, precision):.{precision}f}"
    )
