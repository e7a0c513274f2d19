"""
config/redis_client.py
Async Redis client for the JWT deny-list, rate limiting and pub/sub
(real-time notification channels).
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()
    return redis_client


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class RedisCache:
    """Key conventions shared by the auth layer and the HTTP middleware."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── JWT Deny List ─────────────────────────────────────────
    async def is_token_revoked(self, jti: str) -> bool:
        # Written by the identity service on logout
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        current_count = await self.client.incr(key)
        if current_count == 1:
            # Window starts with the first request; later hits must not extend it
            await self.client.expire(key, window_seconds)
        return current_count <= limit
