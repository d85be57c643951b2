"""Redis service for order rate limiting and read-side projection caches."""

import json
import random
import time
from typing import Any

from redis.asyncio import Redis


class RedisService:
    """Service class for Redis operations."""

    # Sliding-window counter: trim, count, admit in one atomic call
    SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local request_id = ARGV[4]
    local window_start = now - window

    redis.call('ZREMRANGEBYSCORE', key, 0, window_start)

    local count = redis.call('ZCARD', key)

    if count < limit then
        redis.call('ZADD', key, now, request_id)
        redis.call('EXPIRE', key, window + 1)
        return {1, 0}
    else
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        local retry_after = 1
        if oldest and #oldest >= 2 then
            retry_after = math.ceil(oldest[2] + window - now) + 1
            if retry_after < 1 then retry_after = 1 end
        end
        return {0, retry_after}
    end
    """

    PENDING_GENERATION_KEY = "pending_queue:gen"

    def __init__(self, redis: Redis):
        """Initialize Redis service with a Redis client.

        Args:
            redis: Async Redis client instance
        """
        self.redis = redis
        self._sliding_window_script = None

    async def _get_sliding_window_script(self):
        """Get or register the sliding window Lua script."""
        if self._sliding_window_script is None:
            self._sliding_window_script = self.redis.register_script(
                self.SLIDING_WINDOW_SCRIPT
            )
        return self._sliding_window_script

    # ==================== Order Rate Limiting ====================

    async def check_order_rate(
        self, identity: str, limit: int, window: int = 3600
    ) -> tuple[bool, int]:
        """Count an order creation attempt against a sliding window.

        Key pattern: order_rate:{identity}, where identity is
        ``user:{user_id}`` or ``ip:{client_ip}``.

        Args:
            identity: Rate limit subject
            limit: Maximum creations per window
            window: Window size in seconds

        Returns:
            Tuple of (allowed, retry_after_seconds)
        """
        now = time.time()
        request_id = f"{now}:{random.randint(0, 999999)}"

        script = await self._get_sliding_window_script()
        result = await script(
            keys=[f"order_rate:{identity}"],
            args=[now, window, limit, request_id],
        )
        return bool(result[0]), int(result[1])

    # ==================== Pending Queue Snapshot Cache ====================

    async def get_pending_generation(self) -> int:
        """Current generation of the pending queue (bumped on every order write)."""
        value = await self.redis.get(self.PENDING_GENERATION_KEY)
        return int(value) if value is not None else 0

    async def bump_pending_generation(self) -> int:
        """Invalidate every cached pending queue page at once."""
        return await self.redis.incr(self.PENDING_GENERATION_KEY)

    async def cache_pending_page(
        self,
        generation: int,
        page: int,
        size: int,
        data: dict[str, Any],
        ttl: int,
    ) -> None:
        """Cache one page of the pending queue projection.

        Args:
            generation: Generation the page was computed under
            page: Zero-based page number
            size: Page size
            data: JSON-serializable page payload
            ttl: Expiry in seconds (the read-side staleness bound)
        """
        key = f"pending_queue:{generation}:{page}:{size}"
        await self.redis.setex(key, ttl, json.dumps(data, default=str))

    async def get_cached_pending_page(
        self, generation: int, page: int, size: int
    ) -> dict[str, Any] | None:
        """Get a cached pending queue page, or None if missing/expired."""
        key = f"pending_queue:{generation}:{page}:{size}"
        data = await self.redis.get(key)
        if data:
            return json.loads(data)
        return None
