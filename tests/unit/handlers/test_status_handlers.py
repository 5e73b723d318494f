"""
Unit tests for the primary-path handlers (status pushes, completion fan-out,
thumbnails).
"""

import pytest

from job_orchestrator.handlers import CompletionHandler, StatusUpdateHandler, ThumbnailHandler
from job_orchestrator.streams import StreamMessage
from job_orchestrator.workitems import WorkItemState

pytestmark = pytest.mark.timeout(5)

COMPLETED = "generation:completed:stream"
FAILED = "generation:failed:stream"


def _msg(stream="job:status:stream", **fields):
    return StreamMessage("1-0", fields, stream)


@pytest.fixture
def handler(store, producer, events):
    return StatusUpdateHandler(store, producer, events, completed_stream=COMPLETED, failed_stream=FAILED)


@pytest.fixture
def seen(events):
    received = []

    async def on_event(evt):
        received.append(evt)

    events.subscribe(on_event)
    return received


@pytest.mark.asyncio
async def test_processing_update(store, handler, make_item, seen):
    store.add(make_item("m-1", state=WorkItemState.QUEUED))

    await handler(_msg(mediaId="m-1", status="processing"))

    assert store.snapshot("m-1").state is WorkItemState.PROCESSING
    assert seen[0].source == "status-consumer"


@pytest.mark.asyncio
async def test_completed_update_emits_completion(server, store, handler, make_item, seen):
    store.add(make_item("m-1"))

    await handler(_msg(mediaId="m-1", status="completed", s3Key="generations/m-1.png"))

    item = store.snapshot("m-1")
    assert item.state is WorkItemState.COMPLETED
    assert item.output_key == "generations/m-1.png"
    [emitted] = server.entries(COMPLETED)
    assert emitted["mediaId"] == "m-1"
    assert emitted["s3Key"] == "generations/m-1.png"
    assert emitted["timestamp"]
    assert seen[-1].state is WorkItemState.COMPLETED


@pytest.mark.asyncio
async def test_completed_without_key_is_dropped(server, store, handler, make_item):
    store.add(make_item("m-1"))

    await handler(_msg(mediaId="m-1", status="completed"))

    assert store.snapshot("m-1").state is WorkItemState.PROCESSING
    assert server.stream_len(COMPLETED) == 0


@pytest.mark.asyncio
async def test_failed_update_defaults_error(server, store, handler, make_item):
    store.add(make_item("m-1"))

    await handler(_msg(mediaId="m-1", status="failed"))

    assert store.snapshot("m-1").error == "Unknown error"
    assert server.entries(FAILED)[0]["error"] == "Unknown error"


@pytest.mark.asyncio
async def test_cancelled_item_ignores_late_completion(server, store, handler, make_item):
    store.add(make_item("m-1"))
    await store.mark_cancelled("m-1", "Cancelled by user")

    await handler(_msg(mediaId="m-1", status="completed", s3Key="k"))
    await handler(_msg(mediaId="m-1", status="failed", error="boom"))

    item = store.snapshot("m-1")
    assert item.error == "Cancelled by user"
    assert item.output_key is None
    assert server.stream_len(COMPLETED) == 0
    assert server.stream_len(FAILED) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fields",
    [{"status": "completed"}, {"mediaId": "m-1"}, {"mediaId": "m-1", "status": "exploded"}],
)
async def test_malformed_updates_change_nothing(store, handler, make_item, seen, fields):
    store.add(make_item("m-1"))

    await handler(_msg(**fields))

    assert store.snapshot("m-1").state is WorkItemState.PROCESSING
    assert seen == []


@pytest.mark.asyncio
async def test_completion_handler_requests_thumbnail(server, producer):
    handler = CompletionHandler(producer, thumbnail_stream="thumbnail:stream")

    await handler(_msg(COMPLETED, mediaId="m-1", s3Key="k", timestamp="t"))
    await handler(_msg(COMPLETED, s3Key="k"))

    assert server.entries("thumbnail:stream") == [{"mediaId": "m-1"}]


class _Processor:
    def __init__(self, fail=False):
        self.fail = fail
        self.processed = []

    async def process(self, media_id):
        if self.fail:
            raise RuntimeError("blob store unavailable")
        self.processed.append(media_id)


@pytest.mark.asyncio
async def test_thumbnail_handler_calls_processor():
    processor = _Processor()
    await ThumbnailHandler(processor)(_msg("thumbnail:stream", mediaId="m-1"))
    assert processor.processed == ["m-1"]


@pytest.mark.asyncio
async def test_thumbnail_handler_reraises():
    with pytest.raises(RuntimeError):
        await ThumbnailHandler(_Processor(fail=True))(_msg("thumbnail:stream", mediaId="m-1"))
