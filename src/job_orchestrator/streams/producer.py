"""
Redis Streams transport.

ProducerStreams: ONLY non-blocking operations (append, ack, group setup,
introspection). Safe on the shared connection.

ConsumerStreams: adds claim operations that may BLOCK the connection they run
on. Construct it only over a dedicated connection (see RedisConnections).
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable, Mapping, Optional

from loguru import logger
from redis.exceptions import RedisError, ResponseError

from ..errors import map_redis_error
from ..metrics import STREAM_APPENDS_TOTAL, STREAM_CLAIMS_TOTAL
from .notify import DEFAULT_NOTIFY_PREFIX, notify_channel
from .types import PendingInfo, StreamInfo, StreamMessage, encode_fields


def _parse_entry(stream: str, entry: Any) -> Optional[StreamMessage]:
    if not entry:
        return None
    msg_id, fields = entry[0], entry[1]
    if fields is None:
        # Entry was trimmed/deleted while still pending.
        return None
    if isinstance(fields, (list, tuple)):
        fields = {fields[i]: fields[i + 1] for i in range(0, len(fields), 2)}
    return StreamMessage(id=str(msg_id), fields={str(k): str(v) for k, v in fields.items()}, stream=stream)


def _parse_read(result: Any) -> list[StreamMessage]:
    """Normalise an XREADGROUP reply (RESP2 list or RESP3 dict)."""
    if not result:
        return []
    if isinstance(result, dict):
        # RESP3: {stream: [[(id, fields), ...]]}
        pairs: Iterable = [
            (s, v[0] if v and isinstance(v[0], list) else v) for s, v in result.items()
        ]
    else:
        pairs = result
    out: list[StreamMessage] = []
    for stream, entries in pairs:
        for entry in entries or []:
            msg = _parse_entry(str(stream), entry)
            if msg is not None:
                out.append(msg)
    return out


class ProducerStreams:
    """Non-blocking stream operations over a shared client."""

    def __init__(
        self,
        client,
        *,
        notify_prefix: str = DEFAULT_NOTIFY_PREFIX,
        slow_append_ms: int = 100,
    ):
        self._client = client
        self._notify_prefix = notify_prefix
        self._slow_append_ms = slow_append_ms
        self._ensured_groups: set[tuple[str, str]] = set()
        self._group_lock = asyncio.Lock()

    @property
    def client(self):
        return self._client

    @property
    def notify_prefix(self) -> str:
        return self._notify_prefix

    # ---------- groups ----------

    async def ensure_group_once(self, stream: str, group: str, start_id: str = "0") -> None:
        """Create the consumer group if absent; memoized per (stream, group).

        BUSYGROUP from a concurrent creator (another process, or a previous
        run) counts as success.
        """
        key = (stream, group)
        if key in self._ensured_groups:
            return

        async with self._group_lock:
            if key in self._ensured_groups:
                return
            try:
                await self._client.xgroup_create(stream, group, id=start_id, mkstream=True)
                logger.info(f"Created consumer group stream={stream} group={group}")
            except ResponseError as exc:
                if "BUSYGROUP" not in str(exc):
                    logger.error(f"Failed to create consumer group stream={stream} group={group}: {exc}")
                    raise map_redis_error(exc) from exc
                logger.debug(f"Consumer group already exists stream={stream} group={group}")
            except RedisError as exc:
                logger.error(f"Failed to create consumer group stream={stream} group={group}: {exc}")
                raise map_redis_error(exc) from exc
            self._ensured_groups.add(key)

    # ---------- produce ----------

    async def append(self, stream: str, fields: Mapping[str, Any]) -> str:
        """XADD a message and notify subscribers (best-effort).

        Returns:
            Broker-assigned message id
        """
        data = encode_fields(fields)
        if not data:
            raise ValueError("stream message needs at least one non-null field")

        start = time.perf_counter()
        try:
            msg_id = await self._client.xadd(stream, data)
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        STREAM_APPENDS_TOTAL.labels(stream=stream).inc()

        await self.notify(stream)

        elapsed_ms = (time.perf_counter() - start) * 1000
        if elapsed_ms > self._slow_append_ms:
            logger.warning(
                f"[REDIS SLOW] xadd stream={stream} elapsed_ms={elapsed_ms:.0f} fields={len(data)}"
            )
        return str(msg_id)

    async def notify(self, stream: str) -> None:
        """Publish a wake-up on the stream's channel. Never raises."""
        channel = notify_channel(stream, self._notify_prefix)
        try:
            await self._client.publish(channel, "1")
        except Exception as exc:
            # Fallback drains pick the message up; the append itself succeeded.
            logger.warning(f"Notification publish failed channel={channel}: {type(exc).__name__}: {exc}")

    async def ack(self, stream: str, group: str, message_id: str) -> None:
        """XACK; unknown or already-acked ids are a no-op."""
        try:
            acked = await self._client.xack(stream, group, message_id)
        except RedisError as exc:
            logger.error(f"Failed to acknowledge stream={stream} group={group} id={message_id}: {exc}")
            raise map_redis_error(exc) from exc
        if not acked:
            logger.debug(f"Ack was a no-op stream={stream} group={group} id={message_id}")

    # ---------- introspection ----------

    async def pending_info(self, stream: str, group: str) -> PendingInfo:
        try:
            raw = await self._client.xpending(stream, group)
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        consumers = {}
        for c in raw.get("consumers") or []:
            consumers[str(c["name"])] = int(c["pending"])
        return PendingInfo(
            count=int(raw.get("pending") or 0),
            min_id=raw.get("min"),
            max_id=raw.get("max"),
            per_consumer=consumers,
        )

    async def stream_info(self, stream: str) -> StreamInfo:
        try:
            raw = await self._client.xinfo_stream(stream)
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        return StreamInfo(
            length=int(raw.get("length") or 0),
            first_entry=_parse_entry(stream, raw.get("first-entry")),
            last_entry=_parse_entry(stream, raw.get("last-entry")),
        )

    async def consumer_lag(self, stream: str, group: str, consumer: str) -> int:
        """Pending count for one named consumer (0 if unknown)."""
        try:
            rows = await self._client.xinfo_consumers(stream, group)
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        for row in rows:
            if str(row.get("name")) == consumer:
                return int(row.get("pending") or 0)
        return 0


class ConsumerStreams(ProducerStreams):
    """Stream operations that may block. Dedicated connections only."""

    async def claim(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        count: int = 1,
        block_ms: Optional[int] = None,
    ) -> list[StreamMessage]:
        """XREADGROUP '>': only never-delivered messages.

        Args:
            block_ms: None returns immediately (drain mode). A positive value
                waits up to that long. 0 is rejected: Redis reads it as
                "block forever".
        """
        if block_ms is not None and block_ms <= 0:
            raise ValueError("block_ms must be > 0 or None")

        STREAM_CLAIMS_TOTAL.labels(stream=stream, mode="drain" if block_ms is None else "block").inc()
        try:
            result = await self._client.xreadgroup(
                group, consumer, {stream: ">"}, count=count, block=block_ms
            )
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        return _parse_read(result)

    async def claim_next(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        block_ms: Optional[int] = None,
    ) -> Optional[StreamMessage]:
        messages = await self.claim(stream, group, consumer, count=1, block_ms=block_ms)
        return messages[0] if messages else None

    async def reclaim_idle(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        min_idle_ms: int,
        count: int = 10,
    ) -> list[StreamMessage]:
        """XAUTOCLAIM pending messages idle longer than ``min_idle_ms``."""
        try:
            result = await self._client.xautoclaim(
                stream, group, consumer, min_idle_ms, start_id="0-0", count=count
            )
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        entries = result[1] if result and len(result) > 1 else []
        out = []
        for entry in entries:
            msg = _parse_entry(stream, entry)
            if msg is not None:
                out.append(msg)
        return out

    async def delivery_count(self, stream: str, group: str, message_id: str) -> int:
        try:
            rows = await self._client.xpending_range(
                stream, group, min=message_id, max=message_id, count=1
            )
        except RedisError as exc:
            raise map_redis_error(exc) from exc
        if not rows:
            return 0
        return int(rows[0].get("times_delivered") or 0)
