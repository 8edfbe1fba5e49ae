"""Drops webhook retries and duplicate deliveries by provider message id."""

from typing import Optional

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from salesbot.logging_config import get_logger

logger = get_logger("message_dedup")


def build_redis_client(redis_url: str, socket_timeout_seconds: float):
    return redis_async.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=socket_timeout_seconds,
        socket_timeout=socket_timeout_seconds,
    )


class MessageDeduplicator:
    def __init__(self, redis_client, ttl_seconds: int = 3600, prefix: str = "salesbot:dedup"):
        self.redis = redis_client
        self.ttl_seconds = int(ttl_seconds)
        self.prefix = prefix

    async def is_duplicate(self, contact_key: str, message_id: Optional[str]) -> bool:
        """True when this message id was already seen for the contact within the TTL.

        Messages without an id are never duplicates. When Redis is unavailable the
        message is let through.
        """
        if not message_id:
            return False

        key = f"{self.prefix}:{contact_key}:{message_id}"
        try:
            was_set = await self.redis.set(key, "1", ex=self.ttl_seconds, nx=True)
        except RedisError as e:
            logger.warning(f"Dedup redis unavailable, processing message: {e}")
            return False
        return not was_set
