"""Consumer strategies: continuous blocking poll and notification-driven drains."""

from .base import ConsumerState, StreamBinding, RedeliveryPolicy, handle_and_ack
from .blocking import BlockingConsumer
from .notification import NotificationConsumer

__all__ = [
    "ConsumerState",
    "StreamBinding",
    "RedeliveryPolicy",
    "handle_and_ack",
    "BlockingConsumer",
    "NotificationConsumer",
]
