import pytest

from job_orchestrator.streams import NotificationSubscription, notify_channel, stream_for_channel

pytestmark = pytest.mark.timeout(10)


def test_channel_naming_roundtrip():
    assert notify_channel("thumbnail:stream") == "streams:notify:thumbnail:stream"
    assert stream_for_channel("streams:notify:thumbnail:stream") == "thumbnail:stream"
    assert stream_for_channel("other:thumbnail:stream") is None
    assert notify_channel("s", prefix="n:") == "n:s"


@pytest.mark.asyncio
async def test_subscription_receives_stream_name(connections, producer):
    sub = NotificationSubscription(connections.dedicated("sub"), ["a:stream", "b:stream"])
    await sub.open()
    try:
        await producer.append("b:stream", {"x": 1})
        assert await sub.next_stream(timeout=0.5) == "b:stream"
        assert await sub.next_stream(timeout=0.05) is None
    finally:
        await sub.close()


@pytest.mark.asyncio
async def test_notification_published_before_subscribe_is_lost(connections, producer):
    """Pub/Sub is not durable: nothing is replayed to late subscribers."""
    await producer.append("a:stream", {"x": 1})

    sub = NotificationSubscription(connections.dedicated("sub"), ["a:stream"])
    await sub.open()
    try:
        assert await sub.next_stream(timeout=0.05) is None
    finally:
        await sub.close()


@pytest.mark.asyncio
async def test_close_unsubscribes_and_is_idempotent(server, connections):
    sub = NotificationSubscription(connections.dedicated("sub"), ["a:stream"])
    await sub.open()
    assert server.subscribers["streams:notify:a:stream"]

    await sub.close()
    await sub.close()

    assert server.subscribers["streams:notify:a:stream"] == []


@pytest.mark.asyncio
async def test_next_stream_requires_open(connections):
    sub = NotificationSubscription(connections.dedicated("sub"), ["a:stream"])
    with pytest.raises(RuntimeError):
        await sub.next_stream(timeout=0.01)
