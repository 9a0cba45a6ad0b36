"""Week progress recalculation and the cascade into the next week."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.db.models import UserProgress, Week
from cohortpath.db.transaction import atomic
from cohortpath.events.bus import EventBus
from cohortpath.events.schemas import WEEK_COMPLETED
from cohortpath.tracking.counters import (
    WEEK_PROGRESS_ACTIVITIES,
    ActivityType,
    completion_percentage,
    get_counter,
)
from cohortpath.unlock.evaluator import WeekUnlockEvaluator

logger = logging.getLogger(__name__)


class WeekProgressRecalculator:
    """Aggregates a week's topic, quiz and assignment outcomes into one figure."""

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

    @atomic
    async def recalculate_week_progress(self, user_id: int, week: Week) -> UserProgress:
        """Recompute percentage and ``completion_data`` from the outcome tables.

        At 100% the week is marked completed (once) and the next week is
        evaluated for unlock on every call. Below 100% ``completed_at`` is
        cleared, since content added later can lower the figure.
        """
        progress = await self.weeks.ensure_progress(user_id, week)

        done = 0
        total = 0
        completion_data: dict[str, Any] = {}
        for activity in WEEK_PROGRESS_ACTIVITIES:
            counter = get_counter(self.db, activity)
            total += len(await counter.unit_ids(week.cohort_id, week.week_number))
            completed = await counter.completed_units(user_id, week.cohort_id, week.week_number)
            done += len(completed)
            completion_data[activity.value] = {str(unit_id): entry for unit_id, entry in completed.items()}

        attended = await get_counter(self.db, ActivityType.LIVE_CLASSES).completed_units(
            user_id, week.cohort_id, week.week_number
        )
        completion_data[ActivityType.LIVE_CLASSES.value] = {str(k): v for k, v in attended.items()}

        percentage = completion_percentage(done, total)
        progress.completion_percentage = percentage
        progress.completion_data = completion_data
        if percentage < 100:
            progress.completed_at = None
        await self.db.flush()

        if percentage < 100:
            return progress

        result = await self.db.execute(
            update(UserProgress)
            .where(UserProgress.id == progress.id, UserProgress.completed_at.is_(None))
            .values(completed_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(progress)
        if result.rowcount:
            logger.info("Week %d completed by user %d (cohort %d)", week.week_number, user_id, week.cohort_id)
            if self.events is not None:
                await self.events.emit(
                    self.db, WEEK_COMPLETED, user_id,
                    week_id=week.id, week_number=week.week_number, cohort_id=week.cohort_id,
                )

        await self.weeks.evaluate_and_unlock_next(user_id, week)
        return progress

    @atomic
    async def recalculate_cohort_progress(self, user_id: int, cohort_id: int) -> list[UserProgress]:
        """Recalculate every week of a cohort in order."""
        weeks = (
            await self.db.execute(
                select(Week).where(Week.cohort_id == cohort_id).order_by(Week.week_number)
            )
        ).scalars().all()
        return [await self.recalculate_week_progress(user_id, week) for week in weeks]
