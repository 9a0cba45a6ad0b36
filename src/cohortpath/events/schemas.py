"""Event envelope published by the completion event bus."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

TOPIC_COMPLETED = "topic.completed"
LESSON_COMPLETED = "lesson.completed"
MODULE_COMPLETED = "module.completed"
WEEK_UNLOCKED = "week.unlocked"
WEEK_COMPLETED = "week.completed"
COINS_AWARDED = "coins.awarded"
COINS_SPENT = "coins.spent"
COHORT_ENROLLED = "cohort.enrolled"

EVENT_NAMES = frozenset({
    TOPIC_COMPLETED,
    LESSON_COMPLETED,
    MODULE_COMPLETED,
    WEEK_UNLOCKED,
    WEEK_COMPLETED,
    COINS_AWARDED,
    COINS_SPENT,
    COHORT_ENROLLED,
})


class ProgressionEvent(BaseModel):
    name: str
    user_id: int
    occurred_at: datetime
    data: dict[str, Any] = Field(default_factory=dict)
