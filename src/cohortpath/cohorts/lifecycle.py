"""Cohort lifecycle state machine and enrollment.

State progression: draft -> published -> active -> completed -> archived
Transitions are validated: no skipping states and no going backwards.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.db.models import Cohort, UserProgress, Week
from cohortpath.db.transaction import atomic
from cohortpath.events.bus import EventBus
from cohortpath.events.schemas import COHORT_ENROLLED
from cohortpath.exceptions import PreconditionError
from cohortpath.unlock.evaluator import WeekUnlockEvaluator

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[str, list[str]] = {
    "draft": ["published"],
    "published": ["active"],
    "active": ["completed"],
    "completed": ["archived"],
    "archived": [],
}

ENROLLABLE_STATUSES = ("published", "active")


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise ValueError(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}"
        )


class CohortService:
    def __init__(
        self,
        db: AsyncSession,
        weeks: WeekUnlockEvaluator,
        events: EventBus | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.weeks = weeks
        self.events = events
        self.clock = clock

    async def get_cohort(self, cohort_id: int) -> Cohort:
        cohort = await self.db.get(Cohort, cohort_id)
        if cohort is None:
            raise ValueError(f"Cohort {cohort_id} not found")
        return cohort

    @atomic
    async def transition(self, cohort: Cohort, target_status: str) -> Cohort:
        """Move a cohort to its next lifecycle state."""
        validate_transition(cohort.status, target_status)
        if target_status == "active":
            now = self.clock()
            cohort.started_at = now
            if cohort.start_date is None:
                cohort.start_date = now
        previous = cohort.status
        cohort.status = target_status
        await self.db.flush()
        logger.info("Cohort %d transitioned %s -> %s", cohort.id, previous, target_status)
        return cohort

    async def is_enrolled(self, user_id: int, cohort_id: int) -> bool:
        count = (
            await self.db.execute(
                select(func.count(UserProgress.id)).where(
                    UserProgress.user_id == user_id, UserProgress.cohort_id == cohort_id
                )
            )
        ).scalar_one()
        return count > 0

    @atomic
    async def enroll(self, user_id: int, cohort: Cohort) -> list[UserProgress]:
        """Create the learner's per-week progress rows; week 0 starts unlocked.

        Enrolling again returns the existing rows.
        """
        if cohort.status not in ENROLLABLE_STATUSES:
            raise PreconditionError(f"Cohort {cohort.id} is not open for enrollment ({cohort.status})")

        already = await self.is_enrolled(user_id, cohort.id)
        weeks = (
            await self.db.execute(
                select(Week).where(Week.cohort_id == cohort.id).order_by(Week.week_number)
            )
        ).scalars().all()
        rows = [await self.weeks.ensure_progress(user_id, week) for week in weeks]

        if not already:
            logger.info("User %d enrolled in cohort %d", user_id, cohort.id)
            if self.events is not None:
                await self.events.emit(self.db, COHORT_ENROLLED, user_id, cohort_id=cohort.id, weeks=len(rows))
        return rows
