"""
Notification Sink — where batched notifications leave the system.

The scheduler's notification job groups undelivered rows by recipient and
hands each batch to ``NotificationSink.deliver``. A sink returns True only
when the whole batch was accepted; False (or an exception) leaves the rows
undelivered for the next sweep.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class NotificationMessage:
    """Detached copy of a notification row, safe to use after the session moves on."""

    id: str
    recipient_id: str
    level: str
    channel: str
    title: str
    body: str
    created_at: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row) -> "NotificationMessage":
        level = getattr(row.level, "value", row.level)
        channel = getattr(row.channel, "value", row.channel)
        return cls(
            id=str(row.id),
            recipient_id=str(row.target_id),
            level=str(level),
            channel=str(channel),
            title=row.title,
            body=row.body,
            created_at=row.created_at.isoformat() if row.created_at else None,
            meta=dict(row.meta or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level,
            "channel": self.channel,
            "title": self.title,
            "body": self.body,
            "created_at": self.created_at,
            "meta": self.meta,
        }


class NotificationSink(ABC):
    """Delivery target for one recipient's batch of notifications."""

    name = "base"

    @abstractmethod
    async def deliver(self, recipient_id: uuid.UUID | str, batch: list[NotificationMessage]) -> bool:
        """Deliver the batch. Return True only if every message was accepted."""

    async def close(self) -> None:
        """Release any connection held by the sink."""
        return None


class CollectingSink(NotificationSink):
    """In-process sink that keeps delivered batches in memory (local runs, tests)."""

    name = "memory"

    def __init__(self):
        self.delivered: dict[str, list[NotificationMessage]] = {}

    async def deliver(self, recipient_id, batch):
        self.delivered.setdefault(str(recipient_id), []).extend(batch)
        logger.info("notifications.collected", recipient_id=str(recipient_id), count=len(batch))
        return True
