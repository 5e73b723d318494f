"""
Downstream appends shared by the status consumer and the reconciler.

Both paths call these after a successful store transition, so anything
listening on the completed/failed streams cannot tell which path moved the
work item.
"""

from __future__ import annotations

from datetime import datetime, timezone

from ..streams import ProducerStreams


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


async def emit_completed(
    producer: ProducerStreams,
    media_id: str,
    output_key: str,
    *,
    stream: str = "generation:completed:stream",
) -> str:
    return await producer.append(
        stream, {"mediaId": media_id, "s3Key": output_key, "timestamp": _timestamp()}
    )


async def emit_failed(
    producer: ProducerStreams,
    media_id: str,
    error: str,
    *,
    stream: str = "generation:failed:stream",
) -> str:
    return await producer.append(
        stream, {"mediaId": media_id, "error": error, "timestamp": _timestamp()}
    )
