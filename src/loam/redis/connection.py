"""Redis connection helpers shared across services."""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
from arq.connections import RedisSettings

from loam.main.config import Settings, get_settings
from loam.main.logging import get_logger

logger = get_logger(__name__)


def _get_redis_database(settings: Settings) -> int:
    redis_db = getattr(settings, "redis_db", None)
    return redis_db if redis_db is not None else 0


def build_arq_redis_settings(settings: Settings | None = None) -> RedisSettings:
    """Build ARQ Redis settings with connection resilience defaults."""
    resolved_settings = settings or get_settings()
    return RedisSettings(
        host=resolved_settings.redis_host,
        port=resolved_settings.redis_port,
        database=_get_redis_database(resolved_settings),
        conn_timeout=resolved_settings.redis_conn_timeout,
        conn_retries=resolved_settings.redis_conn_retries,
        conn_retry_delay=resolved_settings.redis_conn_retry_delay,
        retry_on_timeout=resolved_settings.redis_retry_on_timeout,
        max_connections=resolved_settings.redis_max_connections,
    )


def build_redis_pool_kwargs(
    settings: Settings | None = None,
    *,
    decode_responses: bool,
) -> dict[str, Any]:
    """Build keyword arguments for redis.asyncio connection pools."""
    resolved_settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "decode_responses": decode_responses,
        "socket_connect_timeout": resolved_settings.redis_conn_timeout,
        "retry_on_timeout": resolved_settings.redis_retry_on_timeout,
        "socket_keepalive": resolved_settings.redis_socket_keepalive,
        "health_check_interval": resolved_settings.redis_health_check_interval,
    }

    if resolved_settings.redis_max_connections is not None:
        kwargs["max_connections"] = resolved_settings.redis_max_connections

    redis_db = getattr(resolved_settings, "redis_db", None)
    if redis_db is not None:
        kwargs["db"] = redis_db

    return kwargs


def create_redis_client(settings: Settings | None = None) -> aioredis.Redis:
    """Create a text-mode Redis client for leases and caches.

    Decoded responses keep lease tokens and cached payloads as ``str`` so the
    Lua ownership comparisons and JSON decoding need no byte handling.
    """
    resolved_settings = settings or get_settings()
    redis_url = f"redis://{resolved_settings.redis_host}:{resolved_settings.redis_port}"
    pool = aioredis.ConnectionPool.from_url(
        redis_url,
        **build_redis_pool_kwargs(resolved_settings, decode_responses=True),
    )
    return aioredis.Redis(connection_pool=pool)


async def close_redis_client(client: aioredis.Redis | None) -> None:
    """Close a Redis client, logging instead of raising on shutdown errors."""
    if client is None:
        return
    try:
        await client.aclose()
        logger.debug("Redis client closed")
    except Exception as exc:
        logger.warning(f"Error closing Redis client: {exc}")
