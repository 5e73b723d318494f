"""
Pydantic models for work items.

The durable record is owned by the request layer; the orchestrator only reads
and writes its status, attempts, cancellation and terminal fields.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator


class WorkItemState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (WorkItemState.COMPLETED, WorkItemState.FAILED)


ACTIVE_STATES = (WorkItemState.QUEUED, WorkItemState.PROCESSING)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class GenerationInput(BaseModel):
    """Job input sent to the generation worker (stream or external provider).

    Numbers travel as strings, matching the stream field convention.
    """

    mediaId: str
    userId: str
    prompt: str = ""
    seed: str = "0"
    width: str = "1024"
    height: str = "1024"


class WorkItem(BaseModel):
    """Generation work item (a ``media`` row with ``source_type='generation'``)."""

    id: str
    state: WorkItemState = WorkItemState.QUEUED
    attempts: int = 0
    cancelled_at: Optional[datetime] = None
    updated_at: datetime
    error: Optional[str] = None
    output_key: Optional[str] = None
    user_id: str = ""
    prompt: Optional[str] = None
    seed: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @field_validator("attempts")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("attempts must be >= 0")
        return v

    @field_validator("updated_at", "cancelled_at")
    @classmethod
    def _aware(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    def generation_input(self) -> GenerationInput:
        return GenerationInput(
            mediaId=self.id,
            userId=self.user_id,
            prompt=self.prompt or "",
            seed=str(self.seed or 0),
            width=str(self.width or 1024),
            height=str(self.height or 1024),
        )
