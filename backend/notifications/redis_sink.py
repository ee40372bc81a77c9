"""Redis pub/sub sink: one JSON digest per recipient on ``notifications:<recipient_id>``."""

import json
from collections.abc import Callable

import redis.asyncio as aioredis
import structlog

from notifications.base import NotificationMessage, NotificationSink

logger = structlog.get_logger()

CHANNEL_PREFIX = "notifications"


def channel_for(recipient_id) -> str:
    return f"{CHANNEL_PREFIX}:{recipient_id}"


def build_digest(recipient_id, batch: list[NotificationMessage]) -> str:
    return json.dumps(
        {
            "type": "notification_digest",
            "payload": {
                "recipient_id": str(recipient_id),
                "count": len(batch),
                "notifications": [message.to_dict() for message in batch],
            },
        }
    )


class RedisNotificationSink(NotificationSink):
    name = "redis"

    def __init__(self, redis_url: str, client_factory: Callable | None = None):
        self.redis_url = redis_url
        self._client_factory = client_factory or aioredis.from_url

    async def deliver(self, recipient_id, batch):
        if not batch:
            return True
        redis = self._client_factory(self.redis_url)
        try:
            subscribers = await redis.publish(channel_for(recipient_id), build_digest(recipient_id, batch))
        finally:
            await redis.aclose()
        # Publishing is fire-and-forget; zero subscribers still counts as handed off.
        logger.info(
            "notifications.published",
            recipient_id=str(recipient_id),
            count=len(batch),
            subscribers=subscribers,
        )
        return True
