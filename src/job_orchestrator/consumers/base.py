"""
Pieces shared by the blocking and notification-driven consumers: lifecycle
state, stream bindings, and the per-message handle/ack contract.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from loguru import logger

from ..metrics import MESSAGES_HANDLED_TOTAL
from ..streams import ConsumerStreams, MessageHandler, StreamMessage


class ConsumerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(frozen=True)
class StreamBinding:
    """What one consumer does with one stream.

    Attributes:
        stream: Stream name (e.g. "job:status:stream")
        group: Consumer group name
        consumer: Consumer name within the group, unique per process
        handler: Async callable run once per claimed message
    """

    stream: str
    group: str
    consumer: str
    handler: MessageHandler


@dataclass(frozen=True)
class RedeliveryPolicy:
    """Opt-in redelivery for failed messages.

    Without a policy a failing handler's message is acknowledged anyway
    (poison-message avoidance). With one, the message stays pending and is
    reclaimed once it has been idle for ``min_idle_ms``; after
    ``max_deliveries`` deliveries it is acknowledged and dropped.
    """

    min_idle_ms: int = 30_000
    max_deliveries: int = 3
    batch_size: int = 10

    def __post_init__(self):
        if self.min_idle_ms <= 0:
            raise ValueError("min_idle_ms must be > 0")
        if self.max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")


async def handle_and_ack(
    streams: ConsumerStreams,
    binding: StreamBinding,
    message: StreamMessage,
    *,
    service: str,
    redelivery: Optional[RedeliveryPolicy] = None,
) -> bool:
    """Run the handler, then acknowledge.

    Returns True when the handler succeeded. Handler exceptions never escape;
    transport errors from the ack do.
    """
    try:
        await binding.handler(message)
    except Exception as exc:
        logger.error(
            f"[{service}] Error processing message stream={binding.stream} "
            f"id={message.id}: {type(exc).__name__}: {exc}"
        )
        MESSAGES_HANDLED_TOTAL.labels(stream=binding.stream, outcome="error").inc()
        if redelivery is None:
            await streams.ack(binding.stream, binding.group, message.id)
        return False

    await streams.ack(binding.stream, binding.group, message.id)
    MESSAGES_HANDLED_TOTAL.labels(stream=binding.stream, outcome="ok").inc()
    return True


class Reclaimer:
    """Throttled XAUTOCLAIM pass for consumers with a RedeliveryPolicy."""

    def __init__(self, policy: RedeliveryPolicy, service: str):
        self.policy = policy
        self._service = service
        self._last: dict[str, float] = {}

    def due(self, stream: str) -> bool:
        last = self._last.get(stream)
        return last is None or (time.monotonic() - last) * 1000 >= self.policy.min_idle_ms

    async def run(self, streams: ConsumerStreams, binding: StreamBinding) -> int:
        """Re-handle idle pending messages; returns how many were reclaimed."""
        self._last[binding.stream] = time.monotonic()
        messages = await streams.reclaim_idle(
            binding.stream,
            binding.group,
            binding.consumer,
            min_idle_ms=self.policy.min_idle_ms,
            count=self.policy.batch_size,
        )
        for message in messages:
            deliveries = await streams.delivery_count(binding.stream, binding.group, message.id)
            if deliveries > self.policy.max_deliveries:
                logger.error(
                    f"[{self._service}] Dropping message after {deliveries - 1} deliveries "
                    f"stream={binding.stream} id={message.id}"
                )
                await streams.ack(binding.stream, binding.group, message.id)
                MESSAGES_HANDLED_TOTAL.labels(stream=binding.stream, outcome="dropped").inc()
                continue
            logger.info(
                f"[{self._service}] Redelivering message stream={binding.stream} "
                f"id={message.id} delivery={deliveries}"
            )
            await handle_and_ack(
                streams, binding, message, service=self._service, redelivery=self.policy
            )
        return len(messages)
