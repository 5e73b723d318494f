from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Iterable, Optional, Protocol

from .models import ACTIVE_STATES, WorkItem, WorkItemState, utc_now


class WorkItemStore(Protocol):
    """Durable work item record, the single source of truth for completion.

    Every transition is conditional on the item being non-terminal and not
    cancelled, and reports whether it changed anything. Callers use the
    boolean to decide whether to emit downstream messages, which is what
    keeps replays idempotent.
    """

    async def get(self, item_id: str) -> Optional[WorkItem]: ...

    async def find_stale(self, older_than: datetime, limit: int = 100) -> list[WorkItem]: ...

    async def mark_processing(self, item_id: str) -> bool: ...

    async def mark_completed(self, item_id: str, output_key: str) -> bool: ...

    async def mark_failed(self, item_id: str, error: str) -> bool: ...

    async def requeue(self, item_id: str, attempts: int, error: str) -> bool: ...

    async def mark_cancelled(self, item_id: str, error: str = "Cancelled") -> bool: ...


class InMemoryWorkItemStore:
    """Process-local WorkItemStore for tests and single-node development."""

    def __init__(self, items: Iterable[WorkItem] = ()):
        self._items: dict[str, WorkItem] = {i.id: i for i in items}
        self._lock = asyncio.Lock()

    def add(self, item: WorkItem) -> None:
        self._items[item.id] = item

    def snapshot(self, item_id: str) -> Optional[WorkItem]:
        return self._items.get(item_id)

    async def get(self, item_id: str) -> Optional[WorkItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def find_stale(self, older_than: datetime, limit: int = 100) -> list[WorkItem]:
        stale = [
            i.model_copy()
            for i in self._items.values()
            if i.state in ACTIVE_STATES and i.cancelled_at is None and i.updated_at < older_than
        ]
        stale.sort(key=lambda i: i.updated_at)
        return stale[:limit]

    async def _transition(self, item_id: str, *, cancel: bool = False, **changes) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.state.terminal:
                return False
            if cancel:
                changes["cancelled_at"] = item.cancelled_at or utc_now()
            elif item.cancelled_at is not None:
                return False
            self._items[item_id] = item.model_copy(update={**changes, "updated_at": utc_now()})
            return True

    async def mark_processing(self, item_id: str) -> bool:
        return await self._transition(item_id, state=WorkItemState.PROCESSING)

    async def mark_completed(self, item_id: str, output_key: str) -> bool:
        return await self._transition(
            item_id, state=WorkItemState.COMPLETED, output_key=output_key, error=None
        )

    async def mark_failed(self, item_id: str, error: str) -> bool:
        return await self._transition(item_id, state=WorkItemState.FAILED, error=error)

    async def requeue(self, item_id: str, attempts: int, error: str) -> bool:
        return await self._transition(
            item_id, state=WorkItemState.QUEUED, attempts=attempts, error=error
        )

    async def mark_cancelled(self, item_id: str, error: str = "Cancelled") -> bool:
        return await self._transition(item_id, cancel=True, state=WorkItemState.FAILED, error=error)
