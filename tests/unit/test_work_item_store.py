"""
Conditional transitions of the in-memory WorkItemStore.
"""

import asyncio
from datetime import timedelta

import pytest

from job_orchestrator.workitems import WorkItemState, utc_now

pytestmark = pytest.mark.timeout(5)


@pytest.mark.asyncio
async def test_find_stale_filters_and_orders(store, make_item):
    store.add(make_item("old", age_s=60))
    store.add(make_item("older", state=WorkItemState.QUEUED, age_s=90))
    store.add(make_item("fresh", age_s=1))
    store.add(make_item("done", state=WorkItemState.COMPLETED, age_s=60))
    store.add(make_item("gone", age_s=60, cancelled_at=utc_now()))

    stale = await store.find_stale(utc_now() - timedelta(seconds=22))

    assert [i.id for i in stale] == ["older", "old"]
    assert [i.id for i in await store.find_stale(utc_now(), limit=1)] == ["older"]


@pytest.mark.asyncio
async def test_terminal_items_refuse_transitions(store, make_item):
    store.add(make_item("m-1"))

    assert await store.mark_completed("m-1", "k") is True
    assert await store.mark_failed("m-1", "late") is False
    assert await store.requeue("m-1", 1, "late") is False
    assert await store.mark_cancelled("m-1") is False

    item = store.snapshot("m-1")
    assert item.state is WorkItemState.COMPLETED
    assert item.output_key == "k"
    assert item.error is None


@pytest.mark.asyncio
async def test_requeue_bumps_attempts_and_clock(store, make_item):
    store.add(make_item("m-1", age_s=60))
    before = store.snapshot("m-1").updated_at

    assert await store.requeue("m-1", 1, "Retry 1/3: Timed out after 20000ms") is True

    item = store.snapshot("m-1")
    assert item.state is WorkItemState.QUEUED
    assert item.attempts == 1
    assert item.updated_at > before


@pytest.mark.asyncio
async def test_get_returns_copy(store, make_item):
    store.add(make_item("m-1"))
    copy = await store.get("m-1")
    await store.mark_processing("m-1")
    assert copy is not store.snapshot("m-1")
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_unknown_item_transitions_are_refused(store):
    assert await store.mark_processing("nope") is False
    assert await store.mark_cancelled("nope") is False


def test_negative_attempts_rejected(make_item):
    with pytest.raises(ValueError):
        make_item(attempts=-1)


@pytest.mark.asyncio
async def test_cancel_keeps_first_timestamp(store, make_item):
    first = utc_now() - timedelta(seconds=5)
    store.add(make_item("m-1", cancelled_at=first))

    assert await store.mark_cancelled("m-1", "Cancelled by user") is True

    item = store.snapshot("m-1")
    assert item.cancelled_at == first
    assert item.state is WorkItemState.FAILED


@pytest.mark.asyncio
async def test_concurrent_cancel_and_complete_one_wins(store, make_item):
    store.add(make_item("m-1"))

    cancelled, completed = await asyncio.gather(
        store.mark_cancelled("m-1", "Cancelled by user"),
        store.mark_completed("m-1", "k"),
    )

    assert cancelled != completed
    item = store.snapshot("m-1")
    assert item.is_cancelled is cancelled
    assert (item.output_key == "k") is completed
