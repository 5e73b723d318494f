from __future__ import annotations

from typing import Protocol

from loguru import logger

from ..streams import ProducerStreams, StreamMessage


class ThumbnailProcessor(Protocol):
    """Blob-store side of thumbnailing (download, resize, upload)."""

    async def process(self, media_id: str) -> None: ...


class CompletionHandler:
    """Turns a completion (from either path) into a thumbnail request."""

    def __init__(self, producer: ProducerStreams, *, thumbnail_stream: str = "thumbnail:stream"):
        self.producer = producer
        self.thumbnail_stream = thumbnail_stream

    async def __call__(self, message: StreamMessage) -> None:
        media_id = message.get("mediaId")
        if not media_id:
            logger.error(f"Completion message missing mediaId data={message.fields}")
            return
        await self.producer.append(self.thumbnail_stream, {"mediaId": media_id})
        logger.debug(f"Queued thumbnail generation media_id={media_id}")


class ThumbnailHandler:
    def __init__(self, processor: ThumbnailProcessor):
        self.processor = processor

    async def __call__(self, message: StreamMessage) -> None:
        media_id = message.get("mediaId")
        if not media_id:
            logger.error(f"Thumbnail message missing mediaId data={message.fields}")
            return

        logger.info(f"Processing thumbnail generation media_id={media_id}")
        try:
            await self.processor.process(media_id)
        except Exception as exc:
            logger.error(f"Thumbnail failed media_id={media_id}: {type(exc).__name__}: {exc}")
            # let the consumer's redelivery policy decide
            raise
        logger.info(f"Thumbnail completed media_id={media_id}")
