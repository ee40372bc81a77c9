"""
Notification sinks.

    from notifications import build_sink

    sink = build_sink(get_settings(), store)
    delivered = await sink.deliver(recipient_id, batch)
"""

from core.config import Settings
from notifications.base import CollectingSink, NotificationMessage, NotificationSink
from notifications.email_sink import EmailDigestSink
from notifications.redis_sink import RedisNotificationSink
from store.record_store import RecordStore

SINK_NAMES = ("redis", "email", "memory")


def build_sink(settings: Settings, store: RecordStore) -> NotificationSink:
    """Construct the sink named by ``settings.notification_sink``."""
    name = settings.notification_sink
    if name == "redis":
        return RedisNotificationSink(settings.redis_url)
    if name == "email":
        return EmailDigestSink(store, settings.sendgrid_api_key, settings.notification_from_email)
    if name == "memory":
        return CollectingSink()
    raise ValueError(f"Unknown notification sink '{name}'. Available: {', '.join(SINK_NAMES)}")


__all__ = [
    "NotificationMessage",
    "NotificationSink",
    "CollectingSink",
    "RedisNotificationSink",
    "EmailDigestSink",
    "build_sink",
    "SINK_NAMES",
]
