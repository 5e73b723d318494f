"""
Work item change notifications.

In-process pub/sub used by both the primary (push) path and the reconciler,
so observers (SSE broadcasters, UI refreshers, audit hooks) see the same
events no matter which path moved a work item.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from loguru import logger

from .workitems import WorkItemState


@dataclass(frozen=True)
class WorkItemEvent:
    """Immutable change notification for one work item.

    Attributes:
        work_item_id: Id of the changed work item (media id)
        state: State after the change
        reason: Optional context (e.g. error text, "recovered")
        source: Which path produced it ("status-consumer", "reconciler", ...)
    """

    work_item_id: str
    state: WorkItemState
    reason: Optional[str] = None
    source: str = "unknown"


class WorkItemSubscriber(Protocol):
    async def __call__(self, event: WorkItemEvent) -> None: ...


class WorkItemEventBus:
    """Best-effort fan-out of WorkItemEvents.

    One subscriber's failure does not affect others.

    Example:
        bus = WorkItemEventBus()

        async def on_change(event: WorkItemEvent):
            await sse.broadcast(event.work_item_id)

        bus.subscribe(on_change)
        await bus.publish(WorkItemEvent("m-1", WorkItemState.COMPLETED))
    """

    def __init__(self) -> None:
        self._subs: list[WorkItemSubscriber] = []

    def subscribe(self, callback: WorkItemSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Work item subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: WorkItemSubscriber) -> None:
        """Remove a subscriber; no-op if it was never added."""
        try:
            self._subs.remove(callback)
            logger.debug(f"Work item subscriber removed (total: {len(self._subs)})")
        except ValueError:
            pass

    async def publish(self, event: WorkItemEvent) -> None:
        if not self._subs:
            return

        logger.debug(
            f"Publishing work item event id={event.work_item_id} "
            f"state={event.state.value} source={event.source}"
        )
        for callback in list(self._subs):
            try:
                await callback(event)
            except Exception as exc:
                logger.error(
                    f"Work item subscriber error (ignored) id={event.work_item_id}: "
                    f"{type(exc).__name__}: {exc}"
                )

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
