"""Shared Redis client for rate limit windows and pending queue snapshots.

Redis is optional. Callers treat a missing or unreachable server as a cache
miss, so the pool is created on first use and an unanswered ping only marks
the process as degraded in the readiness check.
"""

import logging

import redis.asyncio as redis
from redis.asyncio import ConnectionPool
from redis.exceptions import RedisError

from streetmed.core.config import settings

logger = logging.getLogger(__name__)

_pool: ConnectionPool | None = None
_client: redis.Redis | None = None


def _pool_options() -> dict:
    return {
        "max_connections": settings.REDIS_MAX_CONNECTIONS,
        "decode_responses": True,
        "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
        "socket_connect_timeout": settings.REDIS_SOCKET_TIMEOUT,
        "retry_on_timeout": True,
        "health_check_interval": 30,
    }


async def get_redis() -> redis.Redis:
    """Process-wide client on a lazily created pool."""
    global _pool, _client
    if _client is None:
        _pool = ConnectionPool.from_url(settings.REDIS_URL, **_pool_options())
        _client = redis.Redis(connection_pool=_pool)
        logger.info(f"Redis pool created (max {settings.REDIS_MAX_CONNECTIONS} connections)")
    return _client


async def ping_redis() -> bool:
    """True when Redis answers PING; False when disabled or unreachable."""
    if not settings.REDIS_ENABLED:
        return False
    try:
        client = await get_redis()
        return bool(await client.ping())
    except (RedisError, OSError) as e:
        logger.warning(f"Redis ping failed: {e}")
        return False


async def close_redis() -> None:
    """Close the client and its pool; called from the app lifespan."""
    global _pool, _client
    if _client is not None:
        await _client.aclose()
    if _pool is not None:
        await _pool.disconnect()
    _client = None
    _pool = None
