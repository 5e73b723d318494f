"""
Primary-path handler for worker status pushes.

Messages on the status stream look like::

    {"mediaId": "...", "status": "processing" | "completed" | "failed",
     "s3Key": "...", "error": "..."}
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from ..events import WorkItemEvent, WorkItemEventBus
from ..streams import ProducerStreams, StreamMessage
from ..workitems import WorkItemState, WorkItemStore
from .emit import emit_completed, emit_failed


class StatusUpdateHandler:
    """Applies a worker's status push to the work item store.

    Completed and failed updates are ignored for cancelled items (the store
    transition refuses them). Malformed messages are logged and dropped.
    """

    def __init__(
        self,
        store: WorkItemStore,
        producer: ProducerStreams,
        events: Optional[WorkItemEventBus] = None,
        *,
        completed_stream: str = "generation:completed:stream",
        failed_stream: str = "generation:failed:stream",
    ):
        self.store = store
        self.producer = producer
        self.events = events
        self.completed_stream = completed_stream
        self.failed_stream = failed_stream

    async def __call__(self, message: StreamMessage) -> None:
        media_id = message.get("mediaId")
        status = message.get("status")

        if not media_id:
            logger.error(f"Status update missing mediaId data={message.fields}")
            return
        if not status:
            logger.error(f"Status update missing status field data={message.fields}")
            return

        logger.info(f"Processing status update media_id={media_id} status={status}")

        if status == WorkItemState.PROCESSING.value:
            if await self.store.mark_processing(media_id):
                logger.info(f"Updated media status to processing media_id={media_id}")
                await self._publish(media_id, WorkItemState.PROCESSING, None)

        elif status == WorkItemState.COMPLETED.value:
            s3_key = message.get("s3Key")
            if not s3_key:
                logger.error(f"Completed status missing s3Key media_id={media_id}")
                return
            if not await self.store.mark_completed(media_id, s3_key):
                logger.info(f"Ignoring completed message for cancelled or finished job media_id={media_id}")
                return
            logger.info(f"Updated media status to completed media_id={media_id} s3_key={s3_key}")
            await emit_completed(self.producer, media_id, s3_key, stream=self.completed_stream)
            await self._publish(media_id, WorkItemState.COMPLETED, None)

        elif status == WorkItemState.FAILED.value:
            error = message.get("error") or "Unknown error"
            if not await self.store.mark_failed(media_id, error):
                logger.info(f"Ignoring failed message for cancelled or finished job media_id={media_id}")
                return
            logger.error(f"Updated media status to failed media_id={media_id} error={error}")
            await emit_failed(self.producer, media_id, error, stream=self.failed_stream)
            await self._publish(media_id, WorkItemState.FAILED, error)

        else:
            logger.warning(f"Unknown status in status update media_id={media_id} status={status}")

    async def _publish(self, media_id: str, state: WorkItemState, reason: Optional[str]) -> None:
        if self.events is not None:
            await self.events.publish(WorkItemEvent(media_id, state, reason, source="status-consumer"))
