"""
External job reconciliation.

Backup path for generation work delegated to the external provider. The
worker's own status push is the primary path; this loop only looks at work
items whose last update is older than the staleness threshold (provider
execution timeout plus a margin), asks the provider for ground truth and
repairs local state:

    reference absent          -> retry, or fail once attempts are exhausted
    COMPLETED + output        -> complete, replay the completion append
    COMPLETED without output  -> retry or fail
    FAILED / TIMED_OUT        -> retry or fail with the provider's error
    CANCELLED                 -> reflect the cancellation locally
    IN_QUEUE / IN_PROGRESS    -> correct a stale "queued" to "processing"

Every store write is conditional (non-terminal, not cancelled), so running a
cycle twice is harmless and a concurrent user cancellation always wins.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Optional

from loguru import logger

from ..errors import OrchestratorError, ProviderError
from ..events import WorkItemEvent, WorkItemEventBus
from ..handlers.emit import emit_completed, emit_failed
from ..metrics import RECONCILE_ACTIONS_TOTAL
from ..settings import OrchestratorSettings
from ..streams import ProducerStreams
from ..workitems import WorkItem, WorkItemState, WorkItemStore, utc_now
from .dispatcher import GenerationDispatcher
from .job_refs import ExternalJobRefStore
from .provider import ExternalJobProvider, JobStatus, JobStatusReport

LOST_JOB_ID = "Lost external job id"
COMPLETED_WITHOUT_OUTPUT = "Completed without output key"
MAX_ATTEMPTS_SUFFIX = ", max attempts reached"


class ReconcileAction(str, Enum):
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RESYNCED = "resynced"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


@dataclass
class ReconcileSummary:
    """Outcome of one reconciliation cycle."""

    scanned: int = 0
    actions: dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def record(self, action: ReconcileAction) -> None:
        self.actions[action.value] = self.actions.get(action.value, 0) + 1

    def count(self, action: ReconcileAction) -> int:
        return self.actions.get(action.value, 0)


class JobReconciler:
    """Periodic sweep over stale generation work items.

    Example:
        reconciler = JobReconciler(store, refs, provider, dispatcher, producer, events, settings)
        await reconciler.start()
        ...
        await reconciler.stop()

    ``reconcile_once()`` runs a single cycle without the background loop.
    """

    def __init__(
        self,
        store: WorkItemStore,
        refs: ExternalJobRefStore,
        provider: ExternalJobProvider,
        dispatcher: GenerationDispatcher,
        producer: ProducerStreams,
        events: Optional[WorkItemEventBus] = None,
        settings: Optional[OrchestratorSettings] = None,
    ):
        settings = settings or OrchestratorSettings()
        self.store = store
        self.refs = refs
        self.provider = provider
        self.dispatcher = dispatcher
        self.producer = producer
        self.events = events or WorkItemEventBus()

        self.interval_s = settings.RECONCILE_INTERVAL_S
        self.staleness = timedelta(milliseconds=settings.STALENESS_THRESHOLD_MS)
        self.max_attempts = settings.MAX_ATTEMPTS
        self.batch_limit = settings.RECONCILE_BATCH_LIMIT
        self.completed_stream = settings.COMPLETED_STREAM
        self.failed_stream = settings.FAILED_STREAM

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # --------------- lifecycle

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Job reconciliation service already running")
            return
        if not self.provider.enabled:
            logger.info("External provider not enabled, job reconciliation service not started")
            return

        logger.info(
            f"Starting job reconciliation service interval_s={self.interval_s} "
            f"staleness_ms={int(self.staleness.total_seconds() * 1000)}"
        )
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="job-reconciler")

    async def stop(self, timeout: float = 5.0) -> None:
        if self._task is None:
            return
        logger.info("Stopping job reconciliation service...")
        self._stop_event.set()
        task, self._task = self._task, None
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Reconciliation cycle did not finish in time, cancelled")
        logger.info("Job reconciliation service stopped")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.reconcile_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Error in reconciliation loop: {type(exc).__name__}: {exc}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass

    # --------------- one cycle

    async def reconcile_once(self) -> ReconcileSummary:
        summary = ReconcileSummary()
        cutoff = utc_now() - self.staleness
        stuck = await self.store.find_stale(cutoff, limit=self.batch_limit)
        summary.scanned = len(stuck)

        if not stuck:
            logger.debug("No stuck jobs found")
            return summary

        logger.info(f"Found stuck jobs, reconciling... count={len(stuck)}")
        for item in stuck:
            try:
                action = await self.reconcile_item(item)
            except Exception as exc:
                # one bad row must not starve the items behind it
                summary.errors += 1
                logger.error(f"Failed to reconcile job media_id={item.id}: {type(exc).__name__}: {exc}")
                continue
            summary.record(action)
        return summary

    async def reconcile_item(self, item: WorkItem) -> ReconcileAction:
        if item.is_cancelled or item.state.terminal:
            return self._done(ReconcileAction.UNCHANGED)

        ref = await self.refs.get(item.id)
        if ref is None:
            age_s = (utc_now() - item.updated_at).total_seconds()
            logger.warning(
                f"Job missing external job id, never submitted or reference expired "
                f"media_id={item.id} age_s={age_s:.1f}"
            )
            return await self._retry_or_fail(item, LOST_JOB_ID)

        try:
            report = await self.provider.get_status(ref.job_id)
        except ProviderError as exc:
            # unknown is not negative: try again next cycle
            logger.error(
                f"Failed to query provider status, will retry next cycle "
                f"media_id={item.id} job_id={ref.job_id}: {exc}"
            )
            return self._done(ReconcileAction.SKIPPED)

        logger.info(
            f"Retrieved provider job status media_id={item.id} job_id={ref.job_id} "
            f"status={report.status.value}"
        )
        return await self._apply_status(item, ref.job_id, report)

    async def _apply_status(self, item: WorkItem, job_id: str, report: JobStatusReport) -> ReconcileAction:
        status = report.status

        if status is JobStatus.COMPLETED:
            output_key = report.output_key
            if not output_key:
                logger.error(f"Job completed without output key, retrying media_id={item.id} output={report.output}")
                return await self._retry_or_fail(item, COMPLETED_WITHOUT_OUTPUT)
            return await self._complete(item, output_key)

        if status is JobStatus.FAILED:
            error = report.error or "Unknown error from provider"
            logger.error(f"Job failed on provider media_id={item.id} error={error}")
            return await self._retry_or_fail(item, error)

        if status is JobStatus.TIMED_OUT:
            took = report.executionTime if report.executionTime is not None else "unknown"
            logger.error(f"Job timed out on provider media_id={item.id} execution_time_ms={took}")
            return await self._retry_or_fail(item, f"Timed out after {took}ms")

        if status is JobStatus.CANCELLED:
            logger.info(f"Job cancelled on provider media_id={item.id}")
            if not await self.store.mark_cancelled(item.id, "Cancelled"):
                return self._done(ReconcileAction.UNCHANGED)
            await self._publish(item.id, WorkItemState.FAILED, "Cancelled")
            return self._done(ReconcileAction.CANCELLED)

        if status in (JobStatus.IN_QUEUE, JobStatus.IN_PROGRESS):
            if item.state is WorkItemState.PROCESSING:
                return self._done(ReconcileAction.UNCHANGED)
            logger.info(f"Job still running, updating status to processing media_id={item.id} job_id={job_id}")
            if not await self.store.mark_processing(item.id):
                return self._done(ReconcileAction.UNCHANGED)
            await self._publish(item.id, WorkItemState.PROCESSING, None)
            return self._done(ReconcileAction.RESYNCED)

        logger.warning(f"Unknown provider status media_id={item.id} job_id={job_id} status={status.value}")
        return self._done(ReconcileAction.UNCHANGED)

    # --------------- transitions

    async def _complete(self, item: WorkItem, output_key: str) -> ReconcileAction:
        # conditional write: a cancellation that landed since find_stale wins
        if not await self.store.mark_completed(item.id, output_key):
            logger.info(f"Skipping recovered completion, item changed concurrently media_id={item.id}")
            return self._done(ReconcileAction.UNCHANGED)

        logger.info(f"Recovered completed job from provider media_id={item.id} s3_key={output_key}")
        await emit_completed(self.producer, item.id, output_key, stream=self.completed_stream)
        await self._publish(item.id, WorkItemState.COMPLETED, "recovered")
        return self._done(ReconcileAction.COMPLETED)

    async def _retry_or_fail(self, item: WorkItem, reason: str) -> ReconcileAction:
        if item.attempts < self.max_attempts:
            return await self._retry(item, reason)
        return await self._fail(item, f"{reason}{MAX_ATTEMPTS_SUFFIX}")

    async def _retry(self, item: WorkItem, reason: str) -> ReconcileAction:
        attempts = item.attempts + 1
        logger.warning(
            f"Retrying job media_id={item.id} attempts={attempts} max_attempts={self.max_attempts} reason={reason}"
        )
        if not await self.store.requeue(item.id, attempts, f"Retry {attempts}/{self.max_attempts}: {reason}"):
            return self._done(ReconcileAction.UNCHANGED)

        try:
            job_id = await self.dispatcher.submit_external(item)
        except OrchestratorError as exc:
            logger.error(f"Failed to submit retry to provider, marking failed media_id={item.id}: {exc}")
            return await self._fail(item, f"Retry submission failed: {exc}")

        logger.info(f"Job retry submitted to provider media_id={item.id} job_id={job_id} attempts={attempts}")
        await self._publish(item.id, WorkItemState.QUEUED, reason)
        return self._done(ReconcileAction.RETRIED)

    async def _fail(self, item: WorkItem, reason: str) -> ReconcileAction:
        logger.error(f"Marking job as permanently failed media_id={item.id} attempts={item.attempts} reason={reason}")
        if not await self.store.mark_failed(item.id, reason):
            return self._done(ReconcileAction.UNCHANGED)
        await emit_failed(self.producer, item.id, reason, stream=self.failed_stream)
        await self._publish(item.id, WorkItemState.FAILED, reason)
        return self._done(ReconcileAction.FAILED)

    def _done(self, action: ReconcileAction) -> ReconcileAction:
        RECONCILE_ACTIONS_TOTAL.labels(action=action.value).inc()
        return action

    async def _publish(self, item_id: str, state: WorkItemState, reason: Optional[str]) -> None:
        await self.events.publish(WorkItemEvent(item_id, state, reason, source="reconciler"))
