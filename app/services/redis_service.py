"""Redis connection used to fan out cache invalidation between workers."""

import json
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import redis.asyncio as redis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

INVALIDATION_CHANNEL = "telephony:cache-invalidation"

# Global Redis connection pool
_redis_pool: redis.ConnectionPool | None = None
_redis_client: redis.Redis | None = None


async def init_redis() -> None:
    """Initialize Redis connection pool (no-op when REDIS_URL is empty)."""
    global _redis_pool, _redis_client

    if not settings.redis_url:
        logger.info("redis_disabled")
        return

    _redis_pool = redis.ConnectionPool.from_url(
        str(settings.redis_url),
        decode_responses=True,
        max_connections=50,
    )
    _redis_client = redis.Redis(connection_pool=_redis_pool)

    # Verify connection
    await _redis_client.ping()
    logger.info("redis_connected")


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
    if _redis_pool:
        await _redis_pool.disconnect()
    _redis_client = None
    _redis_pool = None

    logger.info("redis_closed")


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client instance, or None when Redis is not configured."""
    return _redis_client


class RedisService:
    """Pub/sub helpers for invalidation events."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    async def publish(self, message: dict[str, Any]) -> None:
        await self.client.publish(INVALIDATION_CHANNEL, json.dumps(message))

    async def listen(self, handler: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        """Deliver every invalidation published by other workers to ``handler``."""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(INVALIDATION_CHANNEL)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                except (TypeError, json.JSONDecodeError):
                    logger.warning("invalidation_message_malformed", data=str(message.get("data"))[:200])
                    continue
                await handler(payload)
        finally:
            await pubsub.unsubscribe(INVALIDATION_CHANNEL)
            await pubsub.aclose()
