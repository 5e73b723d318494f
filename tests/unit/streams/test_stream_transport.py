"""
Unit tests for ProducerStreams / ConsumerStreams over the Redis double.
"""

import asyncio

import pytest

from fakes import FakeRedis
from job_orchestrator.errors import TransportError
from job_orchestrator.streams import ConsumerStreams, ProducerStreams, encode_fields

pytestmark = pytest.mark.timeout(10)

STREAM = "job:status:stream"
GROUP = "core-status-processors"


@pytest.mark.asyncio
async def test_append_stringifies_fields_and_notifies(server, producer):
    msg_id = await producer.append(STREAM, {"mediaId": "m-1", "width": 1024, "nsfw": True, "error": None})

    assert msg_id
    assert server.entries(STREAM) == [{"mediaId": "m-1", "width": "1024", "nsfw": "true"}]
    assert server.published == [("streams:notify:job:status:stream", "1")]


@pytest.mark.asyncio
async def test_append_survives_publish_failure(server, producer):
    """Notification is best-effort: the append still succeeds."""
    server.fail_publish = True

    msg_id = await producer.append(STREAM, {"mediaId": "m-1"})

    assert msg_id
    assert server.stream_len(STREAM) == 1


@pytest.mark.asyncio
async def test_append_rejects_empty_message(producer):
    with pytest.raises(ValueError):
        await producer.append(STREAM, {"error": None})


@pytest.mark.asyncio
async def test_append_ids_are_monotonic(producer):
    ids = [await producer.append(STREAM, {"n": i}) for i in range(5)]
    parsed = [tuple(int(p) for p in i.split("-")) for i in ids]
    assert parsed == sorted(parsed)
    assert len(set(ids)) == 5


@pytest.mark.asyncio
async def test_append_on_closed_connection_raises_transport_error(connections, producer):
    await connections.shared().aclose()
    with pytest.raises(TransportError):
        await producer.append(STREAM, {"mediaId": "m-1"})


@pytest.mark.asyncio
async def test_ensure_group_once_is_idempotent(server, producer):
    await producer.ensure_group_once(STREAM, GROUP)
    await producer.ensure_group_once(STREAM, GROUP)

    assert list(server.streams[STREAM].groups) == [GROUP]


@pytest.mark.asyncio
async def test_ensure_group_once_concurrent_processes(server):
    """Two independent instances (two processes) racing: BUSYGROUP is success."""
    a = ProducerStreams(FakeRedis(server, "proc-a"))
    b = ProducerStreams(FakeRedis(server, "proc-b"))

    await asyncio.gather(
        a.ensure_group_once(STREAM, GROUP),
        b.ensure_group_once(STREAM, GROUP),
        a.ensure_group_once(STREAM, GROUP),
    )

    assert list(server.streams[STREAM].groups) == [GROUP]


@pytest.mark.asyncio
async def test_ensure_group_once_is_memoized(connections, producer, monkeypatch):
    calls = []
    client = connections.shared()
    original = client.xgroup_create

    async def counting(*args, **kwargs):
        calls.append(args)
        return await original(*args, **kwargs)

    monkeypatch.setattr(client, "xgroup_create", counting)

    await asyncio.gather(*(producer.ensure_group_once(STREAM, GROUP) for _ in range(5)))
    await producer.ensure_group_once(STREAM, GROUP)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_new_group_sees_backlog(producer, consumer_streams):
    """Groups start at 0, so messages appended before setup are delivered."""
    await producer.append(STREAM, {"mediaId": "early"})
    await consumer_streams.ensure_group_once(STREAM, GROUP)

    msg = await consumer_streams.claim_next(STREAM, GROUP, "c-1")

    assert msg is not None
    assert msg.get("mediaId") == "early"
    assert msg.stream == STREAM


@pytest.mark.asyncio
async def test_claim_next_drain_mode_returns_none_when_empty(consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    assert await consumer_streams.claim_next(STREAM, GROUP, "c-1") is None


@pytest.mark.asyncio
async def test_claim_only_returns_never_delivered(producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    await producer.append(STREAM, {"n": 1})
    await producer.append(STREAM, {"n": 2})

    first = await consumer_streams.claim_next(STREAM, GROUP, "c-1")
    second = await consumer_streams.claim_next(STREAM, GROUP, "c-2")
    third = await consumer_streams.claim_next(STREAM, GROUP, "c-1")

    assert first.get("n") == "1"
    assert second.get("n") == "2"
    assert third is None


@pytest.mark.asyncio
async def test_claim_count_returns_every_delivered_message(producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    for i in range(3):
        await producer.append(STREAM, {"n": i})

    batch = await consumer_streams.claim(STREAM, GROUP, "c-1", count=10)

    assert [m.get("n") for m in batch] == ["0", "1", "2"]


@pytest.mark.asyncio
async def test_claim_rejects_block_zero(consumer_streams):
    """BLOCK 0 means forever to Redis."""
    with pytest.raises(ValueError):
        await consumer_streams.claim(STREAM, GROUP, "c-1", block_ms=0)


@pytest.mark.asyncio
async def test_blocking_claim_wakes_on_append(producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)

    task = asyncio.create_task(consumer_streams.claim_next(STREAM, GROUP, "c-1", block_ms=5000))
    await asyncio.sleep(0.05)
    assert not task.done()

    await producer.append(STREAM, {"mediaId": "m-1"})
    msg = await asyncio.wait_for(task, timeout=1)

    assert msg.get("mediaId") == "m-1"


@pytest.mark.asyncio
async def test_blocking_claim_times_out_empty(consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    assert await consumer_streams.claim_next(STREAM, GROUP, "c-1", block_ms=50) is None


@pytest.mark.asyncio
async def test_ack_and_pending_info(server, producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    for i in range(3):
        await producer.append(STREAM, {"n": i})
    a = await consumer_streams.claim_next(STREAM, GROUP, "c-1")
    b = await consumer_streams.claim_next(STREAM, GROUP, "c-2")
    c = await consumer_streams.claim_next(STREAM, GROUP, "c-2")

    info = await producer.pending_info(STREAM, GROUP)
    assert info.count == 3
    assert info.min_id == a.id
    assert info.max_id == c.id
    assert info.per_consumer == {"c-1": 1, "c-2": 2}

    await producer.ack(STREAM, GROUP, b.id)
    info = await producer.pending_info(STREAM, GROUP)
    assert info.count == 2
    assert info.per_consumer == {"c-1": 1, "c-2": 1}


@pytest.mark.asyncio
async def test_ack_unknown_or_repeated_id_is_noop(producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    await producer.append(STREAM, {"n": 1})
    msg = await consumer_streams.claim_next(STREAM, GROUP, "c-1")

    await producer.ack(STREAM, GROUP, msg.id)
    await producer.ack(STREAM, GROUP, msg.id)
    await producer.ack(STREAM, GROUP, "1-999")

    assert (await producer.pending_info(STREAM, GROUP)).count == 0


@pytest.mark.asyncio
async def test_acked_message_never_redelivered(producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    await producer.append(STREAM, {"n": 1})
    msg = await consumer_streams.claim_next(STREAM, GROUP, "c-1")
    await producer.ack(STREAM, GROUP, msg.id)

    assert await consumer_streams.claim_next(STREAM, GROUP, "c-1") is None
    assert await consumer_streams.claim_next(STREAM, GROUP, "c-2") is None


@pytest.mark.asyncio
async def test_stream_info_and_consumer_lag(producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    await producer.append(STREAM, {"n": "first"})
    await producer.append(STREAM, {"n": "last"})
    await consumer_streams.claim_next(STREAM, GROUP, "c-1")

    info = await producer.stream_info(STREAM)
    assert info.length == 2
    assert info.first_entry.get("n") == "first"
    assert info.last_entry.get("n") == "last"

    assert await producer.consumer_lag(STREAM, GROUP, "c-1") == 1
    assert await producer.consumer_lag(STREAM, GROUP, "nobody") == 0


@pytest.mark.asyncio
async def test_delivery_count_and_reclaim_idle(server, producer, consumer_streams):
    await consumer_streams.ensure_group_once(STREAM, GROUP)
    await producer.append(STREAM, {"n": 1})
    msg = await consumer_streams.claim_next(STREAM, GROUP, "c-1")
    assert await consumer_streams.delivery_count(STREAM, GROUP, msg.id) == 1

    # not idle long enough yet
    assert await consumer_streams.reclaim_idle(STREAM, GROUP, "c-2", min_idle_ms=1000) == []

    server.advance(1500)
    reclaimed = await consumer_streams.reclaim_idle(STREAM, GROUP, "c-2", min_idle_ms=1000)

    assert [m.id for m in reclaimed] == [msg.id]
    assert await consumer_streams.delivery_count(STREAM, GROUP, msg.id) == 2
    assert (await producer.pending_info(STREAM, GROUP)).per_consumer == {"c-2": 1}


def test_encode_fields():
    assert encode_fields({"a": True, "b": False, "c": 7, "d": None, "e": "x"}) == {
        "a": "true",
        "b": "false",
        "c": "7",
        "e": "x",
    }


def test_consumer_streams_is_a_producer():
    """Dedicated consumer connections can still ack/append; the reverse is not true."""
    assert issubclass(ConsumerStreams, ProducerStreams)
    assert not hasattr(ProducerStreams, "claim_next")
