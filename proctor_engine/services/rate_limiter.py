"""
Rate Limiter - Redis-based throttling of inbound realtime events

Sliding window per (user, event) on a sorted set. Only the high-volume
student events are limited (see settings.EVENT_RATE_LIMITS); violations
and supervisor commands always pass. When Redis is disabled or
unreachable every event is allowed.
"""
import logging
import time
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import settings

logger = logging.getLogger(__name__)


class EventRateLimiter:
    """
    Redis-based rate limiter with sliding window.

    Usage:
        limiter = EventRateLimiter()
        await limiter.start()

        if not await limiter.allow(user_id, "snapshot"):
            ...
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        enabled: Optional[bool] = None,
        limits: Optional[Dict[str, Dict[str, int]]] = None
    ):
        self.redis_url = redis_url or settings.REDIS_URL
        self.enabled = settings.RATE_LIMIT_ENABLED if enabled is None else enabled
        self.limits = limits if limits is not None else settings.EVENT_RATE_LIMITS
        self.redis_client = None

    async def start(self) -> None:
        """Connect to Redis"""
        if not self.enabled:
            logger.info("[RateLimiter] Disabled via RATE_LIMIT_ENABLED=false")
            return

        try:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=5
            )
            await self.redis_client.ping()
            logger.info("[RateLimiter] Redis connected")
        except (RedisError, OSError) as e:
            logger.warning(f"[RateLimiter] Redis connection failed, allowing all events: {e}")
            self.redis_client = None

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None

    def _get_key(self, user_id: str, event: str) -> str:
        return f"rate_limit:ws:{user_id}:{event}"

    def is_limited_event(self, event: str) -> bool:
        return event in self.limits

    async def check_event(self, user_id: str, event: str) -> Dict[str, Any]:
        """
        Check the window for (user, event) and record the event if allowed.

        Returns:
            Dict with keys: allowed, remaining, retry_after
        """
        config = self.limits.get(event)
        if not self.enabled or self.redis_client is None or config is None:
            return {"allowed": True, "remaining": 999, "retry_after": 0}

        max_requests = config["max_requests"]
        window_seconds = config["window_seconds"]
        key = self._get_key(user_id, event)
        now = time.time()

        try:
            pipe = self.redis_client.pipeline()
            # Remove old entries
            pipe.zremrangebyscore(key, 0, now - window_seconds)
            # Count current entries
            pipe.zcard(key)
            # Get oldest entry time
            pipe.zrange(key, 0, 0, withscores=True)
            results = await pipe.execute()

            current_count = results[1]
            oldest_entry = results[2]
            allowed = current_count < max_requests

            if not allowed:
                reset_at = oldest_entry[0][1] + window_seconds if oldest_entry else now + window_seconds
                return {
                    "allowed": False,
                    "remaining": 0,
                    "retry_after": max(1, int(reset_at - now)),
                }

            pipe = self.redis_client.pipeline()
            pipe.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            pipe.expire(key, window_seconds + 60)  # Cleanup buffer
            await pipe.execute()

            return {
                "allowed": True,
                "remaining": max(0, max_requests - current_count - 1),
                "retry_after": 0,
            }

        except RedisError as e:
            logger.error(f"[RateLimiter] Check failed: {e}")
            return {"allowed": True, "remaining": 999, "retry_after": 0}

    async def allow(self, user_id: str, event: str) -> bool:
        result = await self.check_event(user_id, event)
        return result["allowed"]
