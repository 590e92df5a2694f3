"""
Device command channel over Redis pub/sub.

Machine controllers subscribe to ``machines/{id}/commands`` and publish
acks and heartbeats to ``machines/{id}/events``.
"""

import json
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisClientConnectionError
from redis.exceptions import TimeoutError as RedisClientTimeoutError

from loggers import logger


class RedisDeviceChannel:
    """Publishes JSON device commands to Redis channels."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            receivers = await self._redis.publish(topic, json.dumps(payload))
        except (RedisClientConnectionError, RedisClientTimeoutError) as e:
            raise ConnectionError(f"Failed to publish to {topic}: {e}") from e
        logger.debug(f"Published {payload.get('type')} to {topic} ({receivers} receivers)")
