"""Redis connection for the shared escrow-creation rate limiter.

Redis is optional: when it is disabled or unreachable at startup the API
keeps the per-process InMemoryRateLimiter and reports redis as "disabled"
in /health.
"""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

import redis.asyncio as aioredis

from escrow_marketplace.config import Settings, get_settings
from escrow_marketplace.logging_config import get_logger

logger = get_logger(__name__)

_client: aioredis.Redis | None = None


def _redacted(url: str) -> str:
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit(parts._replace(netloc=f"{parts.username or ''}:***@{host}"))


def build_client(settings: Settings) -> aioredis.Redis:
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        health_check_interval=settings.redis_health_check_interval_seconds,
    )


async def init_redis(settings: Settings | None = None) -> aioredis.Redis:
    """Connect and ping. On failure the half-open client is closed and the error re-raised."""
    global _client
    settings = settings or get_settings()
    client = build_client(settings)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise
    _client = client
    logger.info("redis.connected", url=_redacted(settings.redis_url))
    return client


async def redis_status() -> str:
    """Connection status for the health endpoint: healthy, disabled or unhealthy."""
    if _client is None:
        return "disabled"
    try:
        await _client.ping()
    except Exception as exc:
        logger.error("health.redis_check_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        logger.info("redis.disconnected")
        _client = None
