"""
Notification-driven consumer.

Instead of holding a BLOCK read open every cycle, the consumer sleeps on the
Pub/Sub notification channels of its streams and drains a stream (repeated
non-blocking XREADGROUP until empty) only when told work exists.

HOW IT WORKS:
1. start(): ensure groups, drain every stream once (backlog from downtime)
2. SUBSCRIBE to ``streams:notify:<stream>`` for every bound stream
3. Notification for S: drain S unless a drain of S is already running
   (the running drain loops to empty, so it sees everything appended so far)
4. Fallback: every ``fallback_interval_s`` drain every idle stream, because
   notifications are best-effort and a missed one is gone for good

The subscription and the drain claims each run on their own dedicated
connection; neither touches the shared producer client.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Sequence

from loguru import logger

from ..errors import ConsumerStateError, is_connection_error
from ..metrics import DRAIN_DURATION_SECONDS
from ..streams import (
    DEFAULT_NOTIFY_PREFIX,
    ConnectionFactory,
    ConsumerStreams,
    MessageHandler,
    NotificationSubscription,
)
from .base import ConsumerState, Reclaimer, RedeliveryPolicy, StreamBinding, handle_and_ack


class NotificationConsumer:
    """Pub/Sub-woken consumer over one or more streams.

    Coalescing of notifications is per stream: a running drain on one stream
    never delays a drain on another.
    """

    def __init__(
        self,
        name: str,
        bindings: Sequence[StreamBinding],
        connections: ConnectionFactory,
        *,
        fallback_interval_s: float = 60.0,
        grace_s: float = 3.0,
        listen_timeout_s: float = 1.0,
        error_backoff_s: float = 1.0,
        redelivery: Optional[RedeliveryPolicy] = None,
        notify_prefix: str = DEFAULT_NOTIFY_PREFIX,
    ):
        if not bindings:
            raise ValueError("at least one stream binding is required")
        streams = [b.stream for b in bindings]
        if len(set(streams)) != len(streams):
            raise ValueError(f"duplicate stream bindings: {streams}")

        self.name = name
        self._bindings = {b.stream: b for b in bindings}
        self._connections = connections
        self._fallback_interval_s = fallback_interval_s
        self._grace_s = grace_s
        self._listen_timeout_s = listen_timeout_s
        self._error_backoff_s = error_backoff_s
        self._redelivery = redelivery
        self._reclaimer = Reclaimer(redelivery, name) if redelivery else None
        self._notify_prefix = notify_prefix

        self._state = ConsumerState.STOPPED
        self._stream_client = None
        self._subscriber_client = None
        self._streams: Optional[ConsumerStreams] = None
        self._subscription: Optional[NotificationSubscription] = None
        self._listener: Optional[asyncio.Task] = None
        self._fallback: Optional[asyncio.Task] = None
        self._drains: dict[str, asyncio.Task] = {}
        # streams notified while their drain was running
        self._rerun: set[str] = set()

    @classmethod
    def for_stream(
        cls,
        name: str,
        stream: str,
        group: str,
        consumer: str,
        handler: MessageHandler,
        connections: ConnectionFactory,
        **kwargs,
    ) -> "NotificationConsumer":
        return cls(name, [StreamBinding(stream, group, consumer, handler)], connections, **kwargs)

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ConsumerState.RUNNING

    @property
    def streams(self) -> list[str]:
        return list(self._bindings)

    def drain_in_progress(self, stream: str) -> bool:
        task = self._drains.get(stream)
        return task is not None and not task.done()

    async def __aenter__(self) -> "NotificationConsumer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._state in (ConsumerState.RUNNING, ConsumerState.STARTING):
            logger.warning(f"[{self.name}] Consumer already running")
            return
        if self._state is ConsumerState.STOPPING:
            raise ConsumerStateError(f"{self.name} is stopping; wait for stop() to finish")

        self._state = ConsumerState.STARTING
        logger.info(f"[{self.name}] Starting Pub/Sub consumer streams={self.streams}")

        try:
            self._stream_client = self._connections.dedicated(f"{self.name}:streams")
            self._streams = ConsumerStreams(self._stream_client, notify_prefix=self._notify_prefix)
            for binding in self._bindings.values():
                await self._streams.ensure_group_once(binding.stream, binding.group)

            # Drains only run while RUNNING.
            self._state = ConsumerState.RUNNING
            for binding in self._bindings.values():
                await self._drain(binding)

            self._subscriber_client = self._connections.dedicated(f"{self.name}:subscriber")
            self._subscription = NotificationSubscription(
                self._subscriber_client,
                self.streams,
                self._notify_prefix,
            )
            await self._subscription.open()
        except BaseException:
            self._state = ConsumerState.STOPPING
            await self._close_connections()
            self._state = ConsumerState.STOPPED
            raise

        self._listener = asyncio.create_task(self._listen(), name=f"{self.name}:listener")
        self._fallback = asyncio.create_task(self._fallback_loop(), name=f"{self.name}:fallback")
        logger.info(f"[{self.name}] Pub/Sub consumer started successfully")

    async def stop(self) -> None:
        if self._state in (ConsumerState.STOPPED, ConsumerState.STOPPING):
            return

        logger.info(f"[{self.name}] Stopping Pub/Sub consumer...")
        self._state = ConsumerState.STOPPING

        for task in (self._fallback, self._listener):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._fallback, self._listener) if t is not None),
            return_exceptions=True,
        )
        self._fallback = self._listener = None

        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

        drains = [t for t in self._drains.values() if not t.done()]
        if drains:
            _, pending = await asyncio.wait(drains, timeout=self._grace_s)
            if pending:
                logger.warning(f"[{self.name}] Processing did not complete in time")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._drains.clear()
        self._rerun.clear()

        await self._close_connections()
        self._state = ConsumerState.STOPPED
        logger.info(f"[{self.name}] Pub/Sub consumer stopped")

    async def _close_connections(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        clients = (self._stream_client, self._subscriber_client)
        self._stream_client = self._subscriber_client = None
        self._streams = None
        for client in clients:
            if client is None:
                continue
            try:
                await client.aclose()
            except Exception as exc:
                logger.debug(f"[{self.name}] Error closing connection (ignored): {exc}")

    # ---------- draining ----------

    def trigger_drain(self, stream: str) -> Optional[asyncio.Task]:
        """Start a drain of ``stream`` unless one is already running.

        A trigger that arrives during a drain is coalesced into one more pass
        of that drain, so a message appended just after the drain's last
        empty claim is not left for the fallback timer.

        Returns the new drain task, or None when coalesced or not running.
        """
        if self._state is not ConsumerState.RUNNING:
            return None
        binding = self._bindings.get(stream)
        if binding is None:
            logger.debug(f"[{self.name}] Notification for unbound stream={stream} ignored")
            return None
        if self.drain_in_progress(stream):
            self._rerun.add(stream)
            logger.debug(f"[{self.name}] Drain already in progress stream={stream}, coalesced")
            return None

        task = asyncio.create_task(self._drain(binding), name=f"{self.name}:drain:{stream}")
        self._drains[stream] = task
        task.add_done_callback(lambda t, s=stream: self._forget_drain(s, t))
        return task

    def _forget_drain(self, stream: str, task: asyncio.Task) -> None:
        if self._drains.get(stream) is task:
            del self._drains[stream]

    async def _drain(self, binding: StreamBinding) -> int:
        """Claim non-blockingly until the group reports nothing new."""
        streams = self._streams
        if streams is None:
            return 0

        started = time.perf_counter()
        handled = 0
        try:
            if self._reclaimer is not None and self._reclaimer.due(binding.stream):
                handled += await self._reclaimer.run(streams, binding)

            while self._state is ConsumerState.RUNNING:
                self._rerun.discard(binding.stream)
                while self._state is ConsumerState.RUNNING:
                    message = await streams.claim_next(binding.stream, binding.group, binding.consumer)
                    if message is None:
                        break
                    await handle_and_ack(
                        streams, binding, message, service=self.name, redelivery=self._redelivery
                    )
                    handled += 1
                if binding.stream not in self._rerun:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # The fallback timer retries; a half-finished drain loses nothing
            # because unclaimed messages stay in the stream.
            if self._state is ConsumerState.RUNNING and not is_connection_error(exc):
                logger.error(
                    f"[{self.name}] Error in consume loop stream={binding.stream}: "
                    f"{type(exc).__name__}: {exc}"
                )
            else:
                logger.debug(f"[{self.name}] Drain interrupted stream={binding.stream}: {exc}")
        finally:
            DRAIN_DURATION_SECONDS.labels(stream=binding.stream).observe(time.perf_counter() - started)

        if handled:
            logger.debug(f"[{self.name}] Drained {handled} message(s) stream={binding.stream}")
        return handled

    # ---------- background tasks ----------

    async def _listen(self) -> None:
        while self._state is ConsumerState.RUNNING:
            subscription = self._subscription
            if subscription is None:
                break
            try:
                stream = await subscription.next_stream(timeout=self._listen_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._state is not ConsumerState.RUNNING:
                    break
                logger.error(f"[{self.name}] Subscriber error: {type(exc).__name__}: {exc}")
                await asyncio.sleep(self._error_backoff_s)
                continue
            if stream is not None:
                self.trigger_drain(stream)

    async def _fallback_loop(self) -> None:
        while self._state is ConsumerState.RUNNING:
            await asyncio.sleep(self._fallback_interval_s)
            for stream in self._bindings:
                self.trigger_drain(stream)
