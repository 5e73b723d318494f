from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol


@dataclass(frozen=True)
class StreamMessage:
    """One stream entry as delivered to a consumer group.

    Attributes:
        id: Broker-assigned monotonic id (e.g. "1718000000000-0")
        fields: Flat string->string mapping, producer-defined per stream
        stream: Stream the message was claimed from
    """

    id: str
    fields: dict[str, str]
    stream: str = ""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.fields.get(key, default)


@dataclass(frozen=True)
class PendingInfo:
    """Summary of a group's delivered-but-unacknowledged messages."""

    count: int
    min_id: Optional[str]
    max_id: Optional[str]
    per_consumer: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamInfo:
    length: int
    first_entry: Optional[StreamMessage]
    last_entry: Optional[StreamMessage]


class MessageHandler(Protocol):
    """Async callable invoked once per claimed message.

    Raising marks the message as failed; what happens next depends on the
    consumer's redelivery policy (ack-and-drop by default).
    """

    async def __call__(self, message: StreamMessage) -> None: ...


def encode_fields(fields: Mapping[str, Any]) -> dict[str, str]:
    """Stringify values the way every producer is expected to.

    ``True`` -> ``"true"``, ``1024`` -> ``"1024"``; ``None`` values are
    omitted because stream fields cannot be null.
    """
    out: dict[str, str] = {}
    for k, v in fields.items():
        if v is None:
            continue
        if isinstance(v, bool):
            out[str(k)] = "true" if v else "false"
        else:
            out[str(k)] = str(v)
    return out
