"""
Request-layer seam for generation work items.

``submit`` picks the delivery path (external provider or the generation
stream); ``cancel`` is the race-aware cancellation that asks the provider
before marking the item cancelled.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from loguru import logger

from ..errors import OrchestratorError, ProviderError
from ..events import WorkItemEvent, WorkItemEventBus
from ..streams import ProducerStreams
from ..workitems import WorkItem, WorkItemState, WorkItemStore
from .job_refs import ExternalJobRefStore
from .provider import ExternalJobProvider, JobStatus

CANCELLED_BY_USER = "Cancelled by user"


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    ALREADY_CANCELLED = "already_cancelled"
    ALREADY_FINISHED = "already_finished"
    COMPLETED_FIRST = "completed_first"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class CancelResult:
    outcome: CancelOutcome
    detail: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.outcome in (CancelOutcome.CANCELLED, CancelOutcome.ALREADY_CANCELLED)


class GenerationDispatcher:
    """Delivers generation work items and cancels them.

    Usage:
        dispatcher = GenerationDispatcher(provider, refs, producer, store)
        await dispatcher.submit(item)
        result = await dispatcher.cancel(item.id)
    """

    def __init__(
        self,
        provider: ExternalJobProvider,
        refs: ExternalJobRefStore,
        producer: ProducerStreams,
        store: WorkItemStore,
        *,
        generation_stream: str = "generation:stream",
        execution_timeout_ms: int = 20_000,
        events: Optional[WorkItemEventBus] = None,
    ):
        self.provider = provider
        self.refs = refs
        self.producer = producer
        self.store = store
        self.generation_stream = generation_stream
        self.execution_timeout_ms = execution_timeout_ms
        self.events = events

    async def submit(self, item: WorkItem) -> Optional[str]:
        """Hand a queued work item to a worker.

        Returns the external job id in provider mode, ``None`` in stream mode.
        On any delivery failure the item is marked failed and the error is
        re-raised.
        """
        try:
            if self.provider.enabled:
                job_id = await self.submit_external(item)
                logger.info(f"Generation submitted to provider media_id={item.id} job_id={job_id}")
                return job_id

            job = item.generation_input()
            await self.producer.append(
                self.generation_stream,
                {
                    "userId": job.userId,
                    "mediaId": job.mediaId,
                    "prompt": job.prompt,
                    "seed": job.seed,
                    "width": job.width,
                    "height": job.height,
                    "status": WorkItemState.QUEUED.value,
                },
            )
            logger.info(f"Generation queued in stream media_id={item.id} stream={self.generation_stream}")
            return None
        except OrchestratorError:
            logger.error(f"Failed to queue generation, marking as failed media_id={item.id}")
            if await self.store.mark_failed(item.id, "Failed to queue job"):
                await self._publish(item.id, WorkItemState.FAILED, "Failed to queue job")
            raise

    async def submit_external(self, item: WorkItem) -> str:
        """Submit a new provider job and remember its id. Used for retries too."""
        job_id = await self.provider.submit(
            item.generation_input(), execution_timeout_ms=self.execution_timeout_ms
        )
        await self.refs.put(item.id, job_id)
        return job_id

    async def cancel(self, item_id: str) -> CancelResult:
        item = await self.store.get(item_id)
        if item is None:
            return CancelResult(CancelOutcome.NOT_FOUND)

        if item.is_cancelled:
            logger.info(f"Job already cancelled media_id={item_id}")
            return CancelResult(CancelOutcome.ALREADY_CANCELLED)

        if item.state.terminal:
            logger.info(f"Job already finished, cannot cancel media_id={item_id} status={item.state.value}")
            return CancelResult(CancelOutcome.ALREADY_FINISHED, f"Job already {item.state.value}")

        if self.provider.enabled:
            completed = await self._cancel_external(item_id)
            if completed:
                return CancelResult(CancelOutcome.COMPLETED_FIRST, "Job completed before cancellation")

        if not await self.store.mark_cancelled(item_id, CANCELLED_BY_USER):
            # primary path finished it between our read and write
            current = await self.store.get(item_id)
            if current is not None and current.is_cancelled:
                return CancelResult(CancelOutcome.ALREADY_CANCELLED)
            state = current.state.value if current else "missing"
            return CancelResult(CancelOutcome.ALREADY_FINISHED, f"Job already {state}")

        logger.info(f"Job cancelled successfully media_id={item_id}")
        await self._publish(item_id, WorkItemState.FAILED, CANCELLED_BY_USER)
        return CancelResult(CancelOutcome.CANCELLED)

    async def _cancel_external(self, item_id: str) -> bool:
        """Cancel the provider job. Returns True if it completed first."""
        ref = await self.refs.get(item_id)
        if ref is None:
            logger.warning(f"No external job id found, marking as cancelled media_id={item_id}")
            return False

        try:
            report = await self.provider.get_status(ref.job_id)
            if report.status is JobStatus.COMPLETED:
                logger.info(f"Job completed before cancellation media_id={item_id} job_id={ref.job_id}")
                return True
            if report.status not in (JobStatus.IN_QUEUE, JobStatus.IN_PROGRESS):
                return False

            try:
                await self.provider.cancel(ref.job_id)
            except ProviderError as exc:
                logger.warning(f"Provider cancel failed, checking status again media_id={item_id}: {exc}")
                again = await self.provider.get_status(ref.job_id)
                if again.status is JobStatus.COMPLETED:
                    return True
                logger.error(f"Provider cancel failed, marking as cancelled anyway media_id={item_id}")
        except ProviderError as exc:
            logger.error(f"Error checking/cancelling provider job media_id={item_id}: {exc}")
        return False

    async def _publish(self, item_id: str, state: WorkItemState, reason: Optional[str]) -> None:
        if self.events is not None:
            await self.events.publish(WorkItemEvent(item_id, state, reason, source="dispatcher"))
