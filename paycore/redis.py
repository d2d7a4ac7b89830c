"""
Redis client configuration using redis-py (asyncio).
"""

from typing import Optional
import logging

from redis import asyncio as aioredis
from redis.asyncio.client import Redis

from paycore.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client wrapper."""

    _client: Optional[Redis] = None

    @classmethod
    def get_client(cls) -> Optional[Redis]:
        """Get or create Redis client. Returns None when REDIS_URL is not set."""
        if cls._client is None:
            if not settings.redis_url:
                logger.warning("REDIS_URL not set. Webhook dedup cache disabled.")
                return None

            cls._client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                health_check_interval=30,
            )
            logger.info("Redis client initialized")

        return cls._client

    @classmethod
    async def close(cls):
        """Close Redis client."""
        if cls._client:
            await cls._client.aclose()
            cls._client = None
            logger.info("Redis client closed")


async def get_redis() -> Optional[Redis]:
    """Dependency for getting redis connection."""
    return RedisClient.get_client()
