from .models import (
    ACTIVE_STATES,
    GenerationInput,
    WorkItem,
    WorkItemState,
    utc_now,
)
from .store import InMemoryWorkItemStore, WorkItemStore

__all__ = [
    "ACTIVE_STATES",
    "GenerationInput",
    "WorkItem",
    "WorkItemState",
    "utc_now",
    "WorkItemStore",
    "InMemoryWorkItemStore",
]
