"""Centralized Lua scripts for Redis atomic operations.

Every lease in the coordination layer goes through these scripts so that
ownership checks and the mutation they guard happen in one atomic step on the
Redis server.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from redis.asyncio import Redis


class LuaScripts:
    """Container for Redis Lua scripts.

    Usage:
        await LuaScripts.release_lease(redis, "lock:email-scheduler:global", token)
    """

    # ─────────────────────────────────────────────────────────────────────────
    # LEASES: Distributed lock ownership
    # ─────────────────────────────────────────────────────────────────────────

    RELEASE_LEASE: str = (
        # Delete a lease only if it is still held by the caller.
        #
        # KEYS[1]: lease key (e.g., lock:email-scheduler:global)
        # ARGV[1]: holder token returned by SET NX
        #
        # Returns:
        #   1: Lease deleted
        #   0: Lease expired or re-acquired by another holder, left untouched
        #
        # INVARIANT: A holder whose lease expired can never delete its successor's lease.
        "local key = KEYS[1]\n"
        "local token = ARGV[1]\n"
        "if redis.call('GET', key) == token then\n"
        "    return redis.call('DEL', key)\n"
        "end\n"
        "return 0\n"
    )

    REFRESH_LEASE: str = (
        # Extend a lease TTL only if it is still held by the caller.
        #
        # KEYS[1]: lease key
        # ARGV[1]: holder token
        # ARGV[2]: ttl (seconds)
        #
        # Returns:
        #   1: TTL extended
        #   0: Lease not owned by caller or doesn't exist
        "local key = KEYS[1]\n"
        "local token = ARGV[1]\n"
        "local ttl = tonumber(ARGV[2])\n"
        "if redis.call('GET', key) == token then\n"
        "    redis.call('EXPIRE', key, ttl)\n"
        "    return 1\n"
        "end\n"
        "return 0\n"
    )

    @staticmethod
    async def release_lease(redis: "Redis", key: str, token: str) -> bool:
        """Release a lease if owned by the caller.

        Returns:
            True if the lease was deleted, False if it was no longer ours
        """
        result = await redis.eval(LuaScripts.RELEASE_LEASE, 1, key, token)
        return int(result or 0) == 1

    @staticmethod
    async def refresh_lease(
        redis: "Redis", key: str, token: str, ttl_seconds: int
    ) -> bool:
        """Extend a lease if owned by the caller.

        Returns:
            True if the TTL was extended (still the holder), False otherwise
        """
        result = await redis.eval(
            LuaScripts.REFRESH_LEASE, 1, key, token, str(ttl_seconds)
        )
        return int(result or 0) == 1
