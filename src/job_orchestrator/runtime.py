"""
Process-level wiring.

Builds the shared producer, the status consumer (status, completed and
thumbnail streams behind one notification-driven consumer) and the
reconciler, and owns their start/stop order.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from .consumers import NotificationConsumer, RedeliveryPolicy, StreamBinding
from .errors import OrchestratorError, map_redis_error
from .events import WorkItemEventBus
from .handlers import CompletionHandler, StatusUpdateHandler, ThumbnailHandler, ThumbnailProcessor
from .reconciler import (
    ExternalJobProvider,
    ExternalJobRefStore,
    GenerationDispatcher,
    JobReconciler,
    RunPodProvider,
)
from .settings import OrchestratorSettings
from .streams import ConnectionFactory, ProducerStreams, RedisConnections
from .workitems import InMemoryWorkItemStore, WorkItemStore


@dataclass
class OrchestratorHealth:
    broker_ok: bool
    consumer_state: str
    reconciler_running: bool
    provider_enabled: bool
    pending: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.broker_ok and self.consumer_state == "running"


class Orchestrator:
    """
    Usage:
        settings = get_settings()
        async with Orchestrator.from_settings(settings) as orch:
            await orch.dispatcher.submit(item)
            ...
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        connections: ConnectionFactory,
        store: WorkItemStore,
        provider: ExternalJobProvider,
        thumbnails: Optional[ThumbnailProcessor] = None,
        *,
        events: Optional[WorkItemEventBus] = None,
        redelivery: Optional[RedeliveryPolicy] = None,
    ):
        self.settings = settings
        self.connections = connections
        self.store = store
        self.provider = provider
        self.events = events or WorkItemEventBus()

        self.producer = ProducerStreams(
            connections.shared(),
            notify_prefix=settings.NOTIFY_PREFIX,
            slow_append_ms=settings.SLOW_APPEND_MS,
        )
        self.refs = ExternalJobRefStore(
            connections.shared(), prefix=settings.JOB_REF_PREFIX, ttl_s=settings.JOB_REF_TTL_S
        )
        self.dispatcher = GenerationDispatcher(
            provider,
            self.refs,
            self.producer,
            store,
            generation_stream=settings.GENERATION_STREAM,
            execution_timeout_ms=settings.EXECUTION_TIMEOUT_MS,
            events=self.events,
        )
        self.reconciler = JobReconciler(
            store, self.refs, provider, self.dispatcher, self.producer, self.events, settings
        )

        pid = os.getpid()
        bindings = [
            StreamBinding(
                settings.STATUS_STREAM,
                settings.STATUS_GROUP,
                f"status-processor-{pid}",
                StatusUpdateHandler(
                    store,
                    self.producer,
                    self.events,
                    completed_stream=settings.COMPLETED_STREAM,
                    failed_stream=settings.FAILED_STREAM,
                ),
            ),
            StreamBinding(
                settings.COMPLETED_STREAM,
                settings.COMPLETED_GROUP,
                f"completer-{pid}",
                CompletionHandler(self.producer, thumbnail_stream=settings.THUMBNAIL_STREAM),
            ),
        ]
        if thumbnails is not None:
            bindings.append(
                StreamBinding(
                    settings.THUMBNAIL_STREAM,
                    settings.THUMBNAIL_GROUP,
                    f"thumbnail-processor-{pid}",
                    ThumbnailHandler(thumbnails),
                )
            )
        self.status_consumer = NotificationConsumer(
            "job-status-consumer",
            bindings,
            connections,
            fallback_interval_s=settings.FALLBACK_INTERVAL_S,
            grace_s=settings.SHUTDOWN_GRACE_S,
            error_backoff_s=settings.ERROR_BACKOFF_S,
            redelivery=redelivery,
            notify_prefix=settings.NOTIFY_PREFIX,
        )
        self._owned: list = []

    @classmethod
    def from_settings(
        cls,
        settings: OrchestratorSettings,
        thumbnails: Optional[ThumbnailProcessor] = None,
    ) -> "Orchestrator":
        """Build real Redis, Postgres (if configured) and provider clients."""
        connections = RedisConnections(settings)
        provider = RunPodProvider.from_settings(settings)
        store: WorkItemStore
        if settings.DATABASE_URL:
            from .workitems.postgres import PostgresWorkItemStore

            store = PostgresWorkItemStore(
                settings.DATABASE_URL, table=settings.WORK_ITEM_TABLE, pool_max=settings.DB_POOL_MAX
            )
        else:
            logger.warning("ORCH_DATABASE_URL not set, using in-memory work item store")
            store = InMemoryWorkItemStore()

        orch = cls(settings, connections, store, provider, thumbnails)
        orch._owned = [store, provider, connections]
        return orch

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self) -> None:
        logger.info("Starting orchestrator...")
        await self.open_resources()
        await self.status_consumer.start()
        await self.reconciler.start()
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        logger.info("Stopping orchestrator...")
        await self.reconciler.stop()
        await self.status_consumer.stop()
        await self.close_resources()
        logger.info("Orchestrator stopped")

    async def open_resources(self) -> None:
        """Open clients built by from_settings (e.g. the Postgres pool)."""
        for resource in self._owned:
            opener = getattr(resource, "open", None)
            if opener is not None:
                await opener()

    async def close_resources(self) -> None:
        for resource in self._owned:
            closer = getattr(resource, "aclose", None)
            if closer is None:
                continue
            try:
                await closer()
            except Exception as exc:
                logger.warning(f"Error closing {type(resource).__name__}: {exc}")

    async def health(self) -> OrchestratorHealth:
        health = OrchestratorHealth(
            broker_ok=False,
            consumer_state=self.status_consumer.state.value,
            reconciler_running=self.reconciler.is_running,
            provider_enabled=self.provider.enabled,
        )
        try:
            await self.connections.shared().ping()
            health.broker_ok = True
            for stream in self.status_consumer.streams:
                group = self._group_for(stream)
                info = await self.producer.pending_info(stream, group)
                health.pending[stream] = info.count
        except OrchestratorError as exc:
            health.error = str(exc)
        except Exception as exc:
            health.error = str(map_redis_error(exc))
        return health

    def _group_for(self, stream: str) -> str:
        s = self.settings
        return {
            s.STATUS_STREAM: s.STATUS_GROUP,
            s.COMPLETED_STREAM: s.COMPLETED_GROUP,
            s.THUMBNAIL_STREAM: s.THUMBNAIL_GROUP,
        }[stream]
