"""Notifications for cup point changes.

Notifiers are best effort: ``notify_safely`` swallows and logs any delivery
failure so a broken channel never fails a correction.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class NotificationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class CupNotification:
    severity: NotificationSeverity
    event: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        data["created_at"] = self.created_at.isoformat()
        return data


class CupNotifier(Protocol):
    async def notify(self, notification: CupNotification) -> None: ...


class LoggingNotifier:
    """Emits notifications as structured log events."""

    async def notify(self, notification: CupNotification) -> None:
        log_method = {
            NotificationSeverity.INFO: logger.info,
            NotificationSeverity.WARNING: logger.warning,
            NotificationSeverity.ERROR: logger.error,
        }[notification.severity]
        log_method(
            notification.event,
            notification_message=notification.message,
            **notification.context,
        )


class RedisNotifier:
    """Publishes notifications as JSON on a Redis channel for admin tooling."""

    def __init__(self, redis_client: redis.Redis, channel: str = "cup:notifications"):
        self.redis = redis_client
        self.channel = channel

    async def notify(self, notification: CupNotification) -> None:
        payload = json.dumps(notification.to_dict(), default=str)
        await self.redis.publish(self.channel, payload)


async def notify_safely(notifier: CupNotifier, notification: CupNotification) -> bool:
    """Deliver a notification; returns False instead of raising on failure."""
    try:
        await notifier.notify(notification)
        return True
    except Exception as e:
        logger.warning(
            "cup_notification_failed",
            notification_event=notification.event,
            error=str(e),
        )
        return False
