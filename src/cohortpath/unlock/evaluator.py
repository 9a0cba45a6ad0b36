"""Week unlock evaluator.

Per (user, week) the state is ``locked`` -> ``unlocked`` -> ``completed``.
Week 0 starts unlocked. Any later week unlocks once every compiled rule
(previous-week progress, coin balance, required completions, drip date)
holds for the learner.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, ensure_utc, utcnow
from cohortpath.config import get_settings
from cohortpath.db.models import Cohort, UserProgress, Week
from cohortpath.db.transaction import atomic
from cohortpath.events.bus import EventBus
from cohortpath.events.schemas import WEEK_UNLOCKED
from cohortpath.exceptions import ProgressionError, WeekProgressionException
from cohortpath.ledger.coin_service import CoinLedger
from cohortpath.tracking.counters import get_counter
from cohortpath.unlock.rules import (
    DripScheduleRule,
    MinCoinsRule,
    MinPreviousWeekProgressRule,
    RequiredCompletionRule,
    UnlockRule,
    compile_rules,
)
from cohortpath.unlock.schemas import (
    BulkUnlockResult,
    RequirementStatus,
    UnlockSummary,
    WeekOverview,
    WeekState,
)

logger = logging.getLogger(__name__)


class WeekUnlockEvaluator:
    """Checks and applies week unlock rules for one database session."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: CoinLedger,
        events: EventBus | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.ledger = ledger
        self.events = events
        self.clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _week_at(self, cohort_id: int, week_number: int) -> Week | None:
        result = await self.db.execute(
            select(Week).where(Week.cohort_id == cohort_id, Week.week_number == week_number)
        )
        return result.scalar_one_or_none()

    async def previous_week(self, week: Week) -> Week | None:
        return await self._week_at(week.cohort_id, week.week_number - 1)

    async def next_week(self, week: Week) -> Week | None:
        return await self._week_at(week.cohort_id, week.week_number + 1)

    async def get_progress(self, user_id: int, week: Week) -> UserProgress | None:
        result = await self.db.execute(
            select(UserProgress).where(UserProgress.user_id == user_id, UserProgress.week_id == week.id)
        )
        return result.scalar_one_or_none()

    @atomic
    async def ensure_progress(self, user_id: int, week: Week) -> UserProgress:
        """Get or create the learner's progress row; week 0 starts unlocked."""
        progress = await self.get_progress(user_id, week)
        if progress is not None:
            return progress

        week_id = week.id
        now = self.clock()
        is_first = week.week_number == 0
        progress = UserProgress(
            user_id=user_id,
            cohort_id=week.cohort_id,
            week_id=week_id,
            completion_percentage=0.0,
            is_unlocked=is_first,
            unlocked_at=now if is_first else None,
            completed_at=None,
            completion_data={},
        )
        try:
            async with self.db.begin_nested():
                self.db.add(progress)
                await self.db.flush()
        except IntegrityError:
            progress = await self.get_progress(user_id, week)
            if progress is None:
                raise
        return progress

    async def is_week_unlocked(self, user_id: int, week: Week) -> bool:
        if week.week_number == 0:
            return True
        progress = await self.get_progress(user_id, week)
        return progress is not None and progress.is_unlocked

    # ------------------------------------------------------------------
    # Rule evaluation
    # ------------------------------------------------------------------

    def rules_for(self, week: Week) -> list[UnlockRule]:
        return compile_rules(
            week.unlock_rules,
            week_number=week.week_number,
            drip_days=week.drip_days,
            default_previous_week_progress=get_settings().default_min_previous_week_progress,
        )

    async def _check(self, user_id: int, week: Week, rule: UnlockRule) -> RequirementStatus | None:
        if isinstance(rule, MinPreviousWeekProgressRule):
            previous = await self.previous_week(week)
            if previous is None:
                return RequirementStatus(
                    type="previous_week",
                    description=f"Previous week {week.week_number - 1} does not exist",
                    met=False,
                    current=0.0,
                    required=rule.percentage,
                )
            progress = await self.get_progress(user_id, previous)
            current = progress.completion_percentage if progress is not None else 0.0
            if rule.percentage >= 100:
                description = f"Complete Week {previous.week_number}"
            else:
                description = f"Reach {rule.percentage:g}% progress in Week {previous.week_number}"
            return RequirementStatus(
                type="previous_week",
                description=description,
                met=progress is not None and current >= rule.percentage,
                current=current,
                required=rule.percentage,
            )

        if isinstance(rule, MinCoinsRule):
            balance = await self.ledger.current_balance(user_id)
            return RequirementStatus(
                type="coins",
                description=f"Earn {rule.amount} coins",
                met=balance >= rule.amount,
                current=balance,
                required=rule.amount,
            )

        if isinstance(rule, RequiredCompletionRule):
            counter = get_counter(self.db, rule.type)
            done = await counter.count(user_id, week.cohort_id, rule.week_number)
            return RequirementStatus(
                type=rule.type.value,
                description=counter.describe(rule.count, rule.week_number),
                met=done >= rule.count,
                current=done,
                required=rule.count,
            )

        if isinstance(rule, DripScheduleRule):
            cohort = await self.db.get(Cohort, week.cohort_id)
            if cohort is None or cohort.start_date is None:
                return None
            opens_at = ensure_utc(cohort.start_date) + timedelta(days=rule.days)
            now = self.clock()
            return RequirementStatus(
                type="drip",
                description=f"Available on {opens_at:%b %d, %Y}",
                met=now >= opens_at,
                current=now.isoformat(),
                required=opens_at.isoformat(),
            )

        raise TypeError(f"Unsupported unlock rule: {rule!r}")

    async def evaluate(self, user_id: int, week: Week) -> list[RequirementStatus]:
        """Status of every rule that applies to the week."""
        statuses = []
        for rule in self.rules_for(week):
            status = await self._check(user_id, week, rule)
            if status is not None:
                statuses.append(status)
        return statuses

    async def can_unlock_week(self, user_id: int, week: Week) -> bool:
        if week.week_number == 0:
            return True
        return all(status.met for status in await self.evaluate(user_id, week))

    async def get_unlock_requirements_summary(self, user_id: int, week: Week) -> UnlockSummary:
        if week.week_number == 0:
            return UnlockSummary(can_unlock=True, message="Week 1 is automatically unlocked")
        statuses = await self.evaluate(user_id, week)
        can_unlock = all(status.met for status in statuses)
        return UnlockSummary(
            can_unlock=can_unlock,
            message="All requirements met" if can_unlock else "Some requirements not yet met",
            requirements=statuses,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @atomic
    async def unlock_week(self, user_id: int, week: Week) -> UserProgress:
        """Unlock a week for a learner; idempotent once unlocked."""
        progress = await self.ensure_progress(user_id, week)
        if progress.is_unlocked:
            return progress

        statuses = await self.evaluate(user_id, week)
        unmet = [status.description for status in statuses if not status.met]
        if unmet:
            raise WeekProgressionException(week.week_number, unmet)

        result = await self.db.execute(
            update(UserProgress)
            .where(UserProgress.id == progress.id, UserProgress.is_unlocked.is_(False))
            .values(is_unlocked=True, unlocked_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(progress)
        if result.rowcount == 0:
            return progress

        logger.info("Week %d unlocked for user %d (cohort %d)", week.week_number, user_id, week.cohort_id)
        if self.events is not None:
            await self.events.emit(
                self.db, WEEK_UNLOCKED, user_id,
                week_id=week.id, week_number=week.week_number, cohort_id=week.cohort_id,
            )
        return progress

    @atomic
    async def evaluate_and_unlock_next(self, user_id: int, completed_week: Week) -> UserProgress | None:
        """Unlock the week after ``completed_week`` when its rules now hold."""
        following = await self.next_week(completed_week)
        if following is None:
            return None
        if not await self.can_unlock_week(user_id, following):
            return None
        return await self.unlock_week(user_id, following)

    async def bulk_unlock_week(self, week: Week, user_ids: list[int]) -> dict[int, BulkUnlockResult]:
        """Unlock one week for many learners; each user succeeds or fails alone."""
        week_id, week_number = week.id, week.week_number
        results: dict[int, BulkUnlockResult] = {}
        for user_id in user_ids:
            # A failed unlock rolls back and expires loaded rows.
            current = await self.db.get(Week, week_id)
            try:
                await self.unlock_week(user_id, current)
            except ProgressionError as exc:
                results[user_id] = BulkUnlockResult(success=False, error=exc.message)
            except SQLAlchemyError:
                logger.warning("Unlock of week %d failed for user %d", week_number, user_id, exc_info=True)
                results[user_id] = BulkUnlockResult(success=False, error="Could not save week progress")
            else:
                results[user_id] = BulkUnlockResult(success=True)
        return results

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def get_week_state(self, user_id: int, week: Week) -> WeekState:
        progress = await self.get_progress(user_id, week)
        return self._state(week, progress)

    @staticmethod
    def _state(week: Week, progress: UserProgress | None) -> WeekState:
        if progress is not None and progress.completed_at is not None:
            return WeekState.COMPLETED
        if week.week_number == 0 or (progress is not None and progress.is_unlocked):
            return WeekState.UNLOCKED
        return WeekState.LOCKED

    async def get_cohort_progress(self, user_id: int, cohort_id: int) -> list[WeekOverview]:
        """Ordered per-week overview of a learner's standing in a cohort."""
        weeks = (
            await self.db.execute(
                select(Week).where(Week.cohort_id == cohort_id).order_by(Week.week_number)
            )
        ).scalars().all()
        rows = (
            await self.db.execute(
                select(UserProgress).where(UserProgress.user_id == user_id, UserProgress.cohort_id == cohort_id)
            )
        ).scalars().all()
        by_week = {row.week_id: row for row in rows}

        overview = []
        for week in weeks:
            progress = by_week.get(week.id)
            overview.append(
                WeekOverview(
                    week_id=week.id,
                    week_number=week.week_number,
                    title=week.title,
                    state=self._state(week, progress),
                    completion_percentage=progress.completion_percentage if progress else 0.0,
                    unlocked_at=ensure_utc(progress.unlocked_at) if progress and progress.unlocked_at else None,
                    completed_at=ensure_utc(progress.completed_at) if progress and progress.completed_at else None,
                )
            )
        return overview
