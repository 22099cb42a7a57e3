"""
Redis client factory - shared cache store for provider access tokens.

NOT used for balances or idempotency (those go through the ledger store).
"""

import redis.asyncio as aioredis

from credit_ledger.config import settings

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    """Get or create the Redis connection pool."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
