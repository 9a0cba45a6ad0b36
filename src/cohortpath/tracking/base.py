"""Shared lifecycle of per-user completion records (topic, lesson, module).

A record is created on ``start`` and moved to completed exactly once: the
completed transition is a conditional UPDATE on ``completed_at IS NULL`` and
the table is unique per (user, unit), so a second concurrent writer ends up
on the idempotent "already completed" path.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.config import get_settings
from cohortpath.db.models import Week
from cohortpath.db.transaction import atomic
from cohortpath.events.bus import EventBus
from cohortpath.exceptions import PreconditionError
from cohortpath.tracking.counters import completion_percentage
from cohortpath.tracking.schemas import UnitProgress
from cohortpath.unlock.evaluator import WeekUnlockEvaluator

logger = logging.getLogger(__name__)


class CompletionTracker:
    """Base tracker; subclasses bind a unit model to its completion table."""

    record_model: Any
    unit_key: str
    completed_event: str
    label: str

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

    # ------------------------------------------------------------------
    # Unit-specific hooks
    # ------------------------------------------------------------------

    async def week_of(self, unit: Any) -> Week:
        """The week containing ``unit``."""
        raise NotImplementedError

    async def child_counts(self, user_id: int, unit: Any) -> tuple[int, int]:
        """(completed, total) children of ``unit`` for the learner."""
        raise NotImplementedError

    def min_time_required(self, unit: Any) -> int:
        return 0

    async def check_requirements(
        self, user_id: int, unit: Any, record: Any | None, metadata: dict[str, Any]
    ) -> None:
        progress = await self.calculate_progress(user_id, unit)
        if not progress.can_complete:
            raise PreconditionError(f"{self.label} requirements not met")

    def completion_values(self, record: Any, metadata: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def after_complete(
        self, user_id: int, unit: Any, week: Week, record: Any, metadata: dict[str, Any]
    ) -> None:
        return None

    def event_data(self, unit: Any, week: Week, record: Any) -> dict[str, Any]:
        return {self.unit_key: unit.id, "week_id": week.id, "cohort_id": week.cohort_id}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _find(self, user_id: int, unit_id: int) -> Any | None:
        column = getattr(self.record_model, self.unit_key)
        result = await self.db.execute(
            select(self.record_model).where(self.record_model.user_id == user_id, column == unit_id)
        )
        return result.scalar_one_or_none()

    async def get_completion(self, user_id: int, unit: Any) -> Any | None:
        return await self._find(user_id, unit.id)

    async def has_completed(self, user_id: int, unit: Any) -> bool:
        record = await self.get_completion(user_id, unit)
        return record is not None and record.completed_at is not None

    async def calculate_progress(self, user_id: int, unit: Any) -> UnitProgress:
        """Child-completion percentage plus the minimum-time gate."""
        done, total = await self.child_counts(user_id, unit)
        record = await self.get_completion(user_id, unit)
        time_spent = record.time_spent_seconds if record is not None else 0
        min_time = self.min_time_required(unit)
        time_met = min_time <= 0 or time_spent >= min_time
        percentage = completion_percentage(done, total)
        return UnitProgress(
            percentage=percentage,
            completed_count=done,
            total_count=total,
            can_complete=time_met and percentage >= 100,
            time_requirement_met=time_met,
            time_spent_seconds=time_spent,
            min_time_required_seconds=min_time,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @atomic
    async def start(self, user_id: int, unit: Any) -> Any:
        """Create the in-progress record, or return the existing one."""
        unit_id = unit.id
        record = await self._find(user_id, unit_id)
        if record is not None:
            return record

        record = self.record_model(
            user_id=user_id,
            started_at=self.clock(),
            completed_at=None,
            time_spent_seconds=0,
            completion_percentage=0.0,
            last_position_seconds=0,
            coins_awarded=0,
            completion_data={},
            **{self.unit_key: unit_id},
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
                await self.db.flush()
        except IntegrityError:
            # A concurrent request inserted the row first; use theirs.
            record = await self._find(user_id, unit_id)
            if record is None:
                raise
        return record

    @atomic
    async def complete(self, user_id: int, unit: Any, metadata: dict[str, Any] | None = None) -> Any:
        """Mark ``unit`` completed. Completing twice returns the first record."""
        record = await self.get_completion(user_id, unit)
        if record is not None and record.completed_at is not None:
            return record

        week = await self.week_of(unit)
        if not await self.weeks.is_week_unlocked(user_id, week):
            raise PreconditionError(f"{self.label} {unit.id} belongs to locked week {week.week_number}")

        metadata = dict(metadata or {})
        await self.check_requirements(user_id, unit, record, metadata)
        if record is None:
            record = await self.start(user_id, unit)

        values = {
            "completed_at": self.clock(),
            "completion_percentage": 100.0,
            "completion_method": metadata.get("method", get_settings().default_completion_method),
            "completion_data": {**(record.completion_data or {}), **metadata},
        }
        values.update(self.completion_values(record, metadata))
        result = await self.db.execute(
            update(self.record_model)
            .where(self.record_model.id == record.id, self.record_model.completed_at.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(record)
        if result.rowcount == 0:
            return record

        logger.info("%s %d completed by user %d", self.label, unit.id, user_id)
        await self.after_complete(user_id, unit, week, record, metadata)
        if self.events is not None:
            await self.events.emit(self.db, self.completed_event, user_id, **self.event_data(unit, week, record))
        return record

    @atomic
    async def update_progress(
        self, user_id: int, unit: Any, percentage: float, position_seconds: int = 0
    ) -> Any:
        """Record playback/reading progress on a not-yet-completed record."""
        record = await self.start(user_id, unit)
        if record.completed_at is not None:
            return record
        record.completion_percentage = round(max(0.0, min(100.0, float(percentage))), 2)
        record.last_position_seconds = max(0, position_seconds)
        await self.db.flush()
        return record

    @atomic
    async def add_time_spent(self, user_id: int, unit: Any, seconds: int) -> Any:
        if seconds < 0:
            raise ValueError("Time spent cannot be negative")
        record = await self.start(user_id, unit)
        if record.completed_at is not None or seconds == 0:
            return record
        await self.db.execute(
            update(self.record_model)
            .where(self.record_model.id == record.id)
            .values(time_spent_seconds=self.record_model.time_spent_seconds + seconds)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(record)
        return record

    @atomic
    async def refresh_progress(self, user_id: int, unit: Any) -> Any:
        """Copy the child percentage onto an in-progress record; never completes it."""
        progress = await self.calculate_progress(user_id, unit)
        record = await self.start(user_id, unit)
        if record.completed_at is None:
            record.completion_percentage = progress.percentage
            await self.db.flush()
        return record
