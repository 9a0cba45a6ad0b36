"""Progress snapshots returned by the completion trackers."""

from __future__ import annotations

from pydantic import BaseModel


class UnitProgress(BaseModel):
    """Child-completion progress of a lesson or module for one learner."""

    percentage: float
    completed_count: int
    total_count: int
    can_complete: bool
    time_requirement_met: bool
    time_spent_seconds: int
    min_time_required_seconds: int


class NextItem(BaseModel):
    """What a learner should open after finishing a topic."""

    kind: str
    id: int
    title: str


class BulkCompletionResult(BaseModel):
    success: bool
    completion_id: int | None = None
    error: str | None = None
