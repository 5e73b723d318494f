"""
Notification channel layered on Redis Pub/Sub.

Every append publishes on ``<prefix><stream>``. Payloads are irrelevant: a
message on the channel only means "this stream may have new work". Delivery
is best-effort and non-durable, so consumers must never rely on it alone.
"""

from __future__ import annotations

from typing import Iterable, Optional

from loguru import logger
from redis.exceptions import RedisError

from ..errors import map_redis_error

DEFAULT_NOTIFY_PREFIX = "streams:notify:"


def notify_channel(stream: str, prefix: str = DEFAULT_NOTIFY_PREFIX) -> str:
    return f"{prefix}{stream}"


def stream_for_channel(channel: str, prefix: str = DEFAULT_NOTIFY_PREFIX) -> Optional[str]:
    if not channel.startswith(prefix):
        return None
    return channel[len(prefix) :]


class NotificationSubscription:
    """Subscription to the notification channels of several streams.

    SUBSCRIBE monopolizes its connection, so ``client`` must be dedicated to
    this subscription.
    """

    def __init__(self, client, streams: Iterable[str], prefix: str = DEFAULT_NOTIFY_PREFIX):
        self._client = client
        self._prefix = prefix
        self._streams = list(streams)
        self._channels = [notify_channel(s, prefix) for s in self._streams]
        self._pubsub = None

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    async def open(self) -> None:
        if self._pubsub is not None:
            return
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(*self._channels)
        except RedisError as exc:
            logger.error(f"Subscribe failed channels={self._channels}: {exc}")
            raise map_redis_error(exc) from exc
        self._pubsub = pubsub
        logger.debug(f"Subscribed to notification channels {self._channels}")

    async def next_stream(self, timeout: float = 1.0) -> Optional[str]:
        """Wait up to ``timeout`` for a notification; return its stream name."""
        if self._pubsub is None:
            raise RuntimeError("subscription is not open")
        try:
            msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        if not msg or msg.get("type") not in ("message", "pmessage"):
            return None
        channel = msg.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode()
        return stream_for_channel(str(channel), self._prefix)

    async def close(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
        except Exception as exc:
            logger.debug(f"Unsubscribe during shutdown failed (ignored): {exc}")
        try:
            await pubsub.aclose()
        except Exception as exc:
            logger.debug(f"Pub/Sub close failed (ignored): {exc}")
