"""Lesson completion: all topics done and the lesson's minimum time spent."""

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.db.models import Lesson, LessonCompletion, Module, Topic, TopicCompletion, Week
from cohortpath.events.bus import EventBus
from cohortpath.events.schemas import LESSON_COMPLETED
from cohortpath.tracking.base import CompletionTracker
from cohortpath.tracking.module_tracker import ModuleTracker
from cohortpath.unlock.evaluator import WeekUnlockEvaluator


class LessonTracker(CompletionTracker):
    record_model = LessonCompletion
    unit_key = "lesson_id"
    completed_event = LESSON_COMPLETED
    label = "Lesson"

    def __init__(
        self,
        db: AsyncSession,
        weeks: WeekUnlockEvaluator,
        modules: ModuleTracker,
        events: EventBus | None = None,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(db, weeks, events=events, clock=clock)
        self.modules = modules

    async def module_of(self, unit: Lesson) -> Module:
        module = await self.db.get(Module, unit.module_id)
        if module is None:
            raise ValueError(f"Lesson {unit.id} has no module")
        return module

    async def week_of(self, unit: Lesson) -> Week:
        module = await self.module_of(unit)
        return await self.modules.week_of(module)

    def min_time_required(self, unit: Lesson) -> int:
        return unit.min_time_required_seconds or 0

    async def child_counts(self, user_id: int, unit: Lesson) -> tuple[int, int]:
        topics = select(Topic.id).where(Topic.lesson_id == unit.id)
        total = (await self.db.execute(select(func.count()).select_from(topics.subquery()))).scalar_one()
        done = (
            await self.db.execute(
                select(func.count(TopicCompletion.id)).where(
                    TopicCompletion.user_id == user_id,
                    TopicCompletion.completed_at.is_not(None),
                    TopicCompletion.topic_id.in_(topics),
                )
            )
        ).scalar_one()
        return int(done), int(total)

    async def after_complete(
        self, user_id: int, unit: Lesson, week: Week, record: Any, metadata: dict[str, Any]
    ) -> None:
        await self.modules.refresh_progress(user_id, await self.module_of(unit))

    def event_data(self, unit: Lesson, week: Week, record: Any) -> dict[str, Any]:
        data = super().event_data(unit, week, record)
        data["module_id"] = unit.module_id
        return data
