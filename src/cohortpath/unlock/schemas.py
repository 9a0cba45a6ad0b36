"""Result models of the week unlock evaluator."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class WeekState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    COMPLETED = "completed"


class RequirementStatus(BaseModel):
    """One checked unlock condition, with the learner's standing against it."""

    type: str
    description: str
    met: bool
    current: int | float | str | None = None
    required: int | float | str | None = None


class UnlockSummary(BaseModel):
    can_unlock: bool
    message: str
    requirements: list[RequirementStatus] = Field(default_factory=list)

    @property
    def unmet(self) -> list[str]:
        return [r.description for r in self.requirements if not r.met]


class BulkUnlockResult(BaseModel):
    success: bool
    error: str | None = None


class WeekOverview(BaseModel):
    week_id: int
    week_number: int
    title: str
    state: WeekState
    completion_percentage: float
    unlocked_at: datetime | None = None
    completed_at: datetime | None = None
