"""Stream transport: Redis Streams with consumer groups plus Pub/Sub wake-ups."""

from .types import StreamMessage, PendingInfo, StreamInfo, MessageHandler, encode_fields
from .notify import (
    DEFAULT_NOTIFY_PREFIX,
    NotificationSubscription,
    notify_channel,
    stream_for_channel,
)
from .producer import ProducerStreams, ConsumerStreams
from .connections import ConnectionFactory, RedisConnections

__all__ = [
    "StreamMessage",
    "PendingInfo",
    "StreamInfo",
    "MessageHandler",
    "encode_fields",
    "DEFAULT_NOTIFY_PREFIX",
    "NotificationSubscription",
    "notify_channel",
    "stream_for_channel",
    "ProducerStreams",
    "ConsumerStreams",
    "ConnectionFactory",
    "RedisConnections",
]
