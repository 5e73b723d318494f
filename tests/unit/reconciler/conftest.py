"""
Fixtures wiring a JobReconciler to the Redis double and a fake provider.
"""

from types import SimpleNamespace

import pytest

from fakes import FakeProvider
from job_orchestrator.reconciler import ExternalJobRefStore, GenerationDispatcher, JobReconciler


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def refs(connections, settings):
    return ExternalJobRefStore(connections.shared(), prefix=settings.JOB_REF_PREFIX, ttl_s=settings.JOB_REF_TTL_S)


@pytest.fixture
def dispatcher(provider, refs, producer, store, events, settings):
    return GenerationDispatcher(
        provider,
        refs,
        producer,
        store,
        generation_stream=settings.GENERATION_STREAM,
        execution_timeout_ms=settings.EXECUTION_TIMEOUT_MS,
        events=events,
    )


@pytest.fixture
def reconciler(store, refs, provider, dispatcher, producer, events, settings):
    return JobReconciler(store, refs, provider, dispatcher, producer, events, settings)


@pytest.fixture
def recorded(events):
    """Every WorkItemEvent published during the test."""
    seen = []

    async def _on_event(event):
        seen.append(event)

    events.subscribe(_on_event)
    return SimpleNamespace(events=seen)
