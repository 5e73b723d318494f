"""
Job Orchestrator

Redis Streams job orchestration: a stream transport with consumer groups,
blocking and notification-driven consumers, and a reconciler that repairs
work delegated to an external GPU job provider.

Usage:
    from job_orchestrator import ProducerStreams, NotificationConsumer, StreamBinding

    producer = ProducerStreams(connections.shared())
    await producer.append("thumbnail:stream", {"mediaId": "m-1"})

    consumer = NotificationConsumer(
        "thumbs", [StreamBinding("thumbnail:stream", "thumbnail-processors", "t-1", handler)], connections
    )
    async with consumer:
        ...
"""

from .errors import (
    OrchestratorError,
    TransportError,
    ProviderError,
    ProviderNotConfigured,
    ConsumerStateError,
    StoreError,
)
from .settings import OrchestratorSettings, get_settings
from .streams import (
    StreamMessage,
    PendingInfo,
    ProducerStreams,
    ConsumerStreams,
    RedisConnections,
)
from .consumers import (
    BlockingConsumer,
    NotificationConsumer,
    StreamBinding,
    RedeliveryPolicy,
    ConsumerState,
)
from .events import WorkItemEvent, WorkItemEventBus
from .reconciler import GenerationDispatcher, JobReconciler, RunPodProvider
from .runtime import Orchestrator, OrchestratorHealth

__version__ = "1.0.0"
__all__ = [
    "OrchestratorError",
    "TransportError",
    "ProviderError",
    "ProviderNotConfigured",
    "ConsumerStateError",
    "StoreError",
    "OrchestratorSettings",
    "get_settings",
    "StreamMessage",
    "PendingInfo",
    "ProducerStreams",
    "ConsumerStreams",
    "RedisConnections",
    "BlockingConsumer",
    "NotificationConsumer",
    "StreamBinding",
    "RedeliveryPolicy",
    "ConsumerState",
    "WorkItemEvent",
    "WorkItemEventBus",
    "GenerationDispatcher",
    "JobReconciler",
    "RunPodProvider",
    "Orchestrator",
    "OrchestratorHealth",
]
