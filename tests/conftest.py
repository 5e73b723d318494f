"""
Pytest configuration and fixtures for job-orchestrator.

Provides cross-platform event loop configuration and the in-process Redis
double every unit test runs against.
"""

import asyncio
import sys
from datetime import timedelta

import pytest

from fakes import FakeConnections, FakeRedisServer
from job_orchestrator.events import WorkItemEventBus
from job_orchestrator.settings import OrchestratorSettings
from job_orchestrator.streams import ConsumerStreams, ProducerStreams
from job_orchestrator.workitems import InMemoryWorkItemStore, WorkItem, WorkItemState, utc_now

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest.fixture
def server():
    """Fresh Redis double per test."""
    return FakeRedisServer()


@pytest.fixture
def connections(server):
    return FakeConnections(server)


@pytest.fixture
def producer(connections):
    return ProducerStreams(connections.shared())


@pytest.fixture
def consumer_streams(connections):
    return ConsumerStreams(connections.dedicated("test-consumer"))


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return OrchestratorSettings(_env_file=None)


@pytest.fixture
def store():
    return InMemoryWorkItemStore()


@pytest.fixture
def events():
    return WorkItemEventBus()


@pytest.fixture
def make_item():
    """Factory for work items whose last update is ``age_s`` seconds old."""

    def _make(item_id="W1", *, state=WorkItemState.PROCESSING, attempts=0, age_s=25.0, **kw):
        return WorkItem(
            id=item_id,
            state=state,
            attempts=attempts,
            updated_at=utc_now() - timedelta(seconds=age_s),
            user_id=kw.pop("user_id", "u-1"),
            prompt=kw.pop("prompt", "a lighthouse at dusk"),
            **kw,
        )

    return _make

