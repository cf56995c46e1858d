"""
Notification sinks. Fire-and-forget: a failed publish is logged, never raised.
"""
import abc
import json
import logging
from typing import Any, Dict, Optional

from starraffle.constants import ch_broadcast, ch_participant, ch_admin

logger = logging.getLogger(__name__)


class NotificationSink(abc.ABC):
    @abc.abstractmethod
    async def broadcast(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abc.abstractmethod
    async def notify(self, participant_id: int, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        ...

    async def alert_admins(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.broadcast(event, payload)


class LogNotificationSink(NotificationSink):
    async def broadcast(self, event, payload=None):
        logger.info("broadcast %s %s", event, payload or {})

    async def notify(self, participant_id, event, payload=None):
        logger.info("notify %s %s %s", participant_id, event, payload or {})

    async def alert_admins(self, event, payload=None):
        logger.warning("admin alert %s %s", event, payload or {})


class RedisNotificationSink(NotificationSink):
    """Publishes ``{"event", "data"}`` JSON on Redis pub/sub channels for the socket layer."""

    def __init__(self, client, prefix: str = "raffle"):
        self.client = client
        self.prefix = prefix

    async def _publish(self, channel: str, event: str, payload: Optional[Dict[str, Any]]) -> None:
        try:
            message = json.dumps({"event": event, "data": payload or {}}, default=str, ensure_ascii=False)
            await self.client.publish(channel, message)
        except Exception as e:
            logger.error("Failed to publish %s to %s: %s", event, channel, e)

    async def broadcast(self, event, payload=None):
        await self._publish(ch_broadcast(self.prefix), event, payload)

    async def notify(self, participant_id, event, payload=None):
        await self._publish(ch_participant(self.prefix, participant_id), event, payload)

    async def alert_admins(self, event, payload=None):
        await self._publish(ch_admin(self.prefix), event, payload)


def build_notification_sink(config) -> NotificationSink:
    if config.NOTIFY_BACKEND == "redis":
        from starraffle.db.redis import r
        return RedisNotificationSink(r, prefix=config.NOTIFY_CHANNEL_PREFIX)
    if config.NOTIFY_BACKEND == "log":
        return LogNotificationSink()
    raise ValueError(f"Unknown NOTIFY_BACKEND: {config.NOTIFY_BACKEND}")
