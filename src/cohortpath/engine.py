"""Progression engine facade: one session, one event bus, one clock."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager

from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.cohorts.lifecycle import CohortService
from cohortpath.db.transaction import unit_of_work
from cohortpath.events.bus import EventBus
from cohortpath.ledger.coin_service import CoinLedger
from cohortpath.tracking.lesson_tracker import LessonTracker
from cohortpath.tracking.module_tracker import ModuleTracker
from cohortpath.tracking.topic_tracker import TopicTracker
from cohortpath.unlock.evaluator import WeekUnlockEvaluator
from cohortpath.unlock.recalculator import WeekProgressRecalculator


class ProgressionEngine:
    """Wires every progression service onto a single ``AsyncSession``.

    Each public service method is its own transaction unless called inside
    ``engine.transaction()``, in which case they all commit together.
    """

    def __init__(
        self,
        db: AsyncSession,
        redis: object | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.events = events or EventBus(redis=redis, clock=clock)
        self.ledger = CoinLedger(db, self.events, clock)
        self.weeks = WeekUnlockEvaluator(db, self.ledger, self.events, clock)
        self.recalculator = WeekProgressRecalculator(db, self.weeks, self.events, clock)
        self.modules = ModuleTracker(db, self.weeks, self.events, clock)
        self.lessons = LessonTracker(db, self.weeks, self.modules, self.events, clock)
        self.topics = TopicTracker(
            db, self.weeks, self.ledger, self.lessons, self.recalculator, self.events, clock
        )
        self.cohorts = CohortService(db, self.weeks, self.events, clock)

    def transaction(self) -> AbstractAsyncContextManager[AsyncSession]:
        """Group several operations into one commit."""
        return unit_of_work(self.db)

