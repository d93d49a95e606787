"""Distributed lease for electing one active runner among N instances.

Uses Redis SET NX with a TTL, so a crashed holder frees the lease on expiry.
Ownership is proven on release/refresh with a holder token compared inside a
Lua script.

What happens when Redis cannot be reached is an explicit per-call-site policy
(``OnUnavailable``):

- ``PROCEED_UNLOCKED``: run anyway, without a lease. Only valid where the work
  is independently protected (e.g. by atomic record claims).
- ``SKIP``: do nothing this cycle.
"""

from __future__ import annotations

import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import uuid4

from loam.main.logging import get_logger
from loam.main.models import OnUnavailable
from loam.redis.lua_scripts import LuaScripts

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = get_logger(__name__)


@dataclass(frozen=True)
class LeaseGrant:
    """Outcome of a policy-aware acquire.

    ``acquired`` says whether the caller may run. ``token`` is set only when a
    lease is really held; ``acquired and token is None`` means the caller runs
    unlocked because the store was unavailable.
    """

    acquired: bool
    token: str | None = None

    @property
    def unlocked(self) -> bool:
        return self.acquired and self.token is None


class DistributedLease:
    """Redis-backed, TTL-bounded exclusive lease on one key.

    Args:
        redis_client: Async Redis connection, or None when Redis is not configured.
        key: Redis key for the lease.
        ttl_seconds: Lease expiry (automatic failover threshold).
        on_unavailable: Policy applied when Redis is missing or raising.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis | None,
        key: str,
        ttl_seconds: int,
        on_unavailable: OnUnavailable,
    ) -> None:
        self._redis = redis_client
        self._key = key
        self._ttl = ttl_seconds
        self._on_unavailable = on_unavailable
        self._holder_prefix = socket.gethostname()

    @property
    def key(self) -> str:
        return self._key

    @property
    def on_unavailable(self) -> OnUnavailable:
        return self._on_unavailable

    def _new_token(self) -> str:
        return f"{self._holder_prefix}:{uuid4().hex}"

    async def try_acquire(self) -> str | None:
        """Single SET NX EX against Redis.

        Returns:
            A holder token if the lease was acquired, None if someone else holds it.

        Raises:
            Whatever the Redis client raises; policy is applied by ``acquire``.
        """
        if self._redis is None:
            raise ConnectionError("Redis is not configured")

        token = self._new_token()
        acquired = await self._redis.set(self._key, token, nx=True, ex=self._ttl)
        return token if acquired else None

    async def acquire(self) -> LeaseGrant:
        """Attempt the lease, applying the configured unavailability policy."""
        try:
            token = await self.try_acquire()
        except Exception as exc:
            return self._unavailable(exc)

        if token is None:
            logger.debug(
                "Lease held by another instance",
                extra={"lock_key": self._key},
            )
            return LeaseGrant(acquired=False)

        return LeaseGrant(acquired=True, token=token)

    def _unavailable(self, exc: Exception) -> LeaseGrant:
        if self._on_unavailable is OnUnavailable.PROCEED_UNLOCKED:
            logger.warning(
                "Lease store unavailable, proceeding without distributed lock",
                extra={"lock_key": self._key, "error": str(exc)},
            )
            return LeaseGrant(acquired=True, token=None)

        logger.warning(
            "Lease store unavailable, skipping to prevent duplicate work",
            extra={"lock_key": self._key, "error": str(exc)},
        )
        return LeaseGrant(acquired=False)

    async def refresh(self, token: str | None) -> bool:
        """Extend the TTL if the caller still holds the lease.

        Returns:
            True if refreshed, False if not the holder, unlocked, or on error.
        """
        if token is None or self._redis is None:
            return False
        try:
            return await LuaScripts.refresh_lease(self._redis, self._key, token, self._ttl)
        except Exception as exc:
            logger.debug(
                "Failed to refresh lease",
                extra={"lock_key": self._key, "error": str(exc)},
            )
            return False

    async def release(self, token: str | None) -> bool:
        """Release the lease if the caller still holds it.

        A failed release is logged, never raised: the TTL expires it anyway.

        Returns:
            True if the lease was deleted, False otherwise.
        """
        if token is None or self._redis is None:
            return False
        try:
            released = await LuaScripts.release_lease(self._redis, self._key, token)
        except Exception as exc:
            logger.warning(
                "Failed to release lease",
                extra={"lock_key": self._key, "error": str(exc)},
            )
            return False

        if not released:
            logger.info(
                "Lease expired before release, left untouched",
                extra={"lock_key": self._key},
            )
        return released
