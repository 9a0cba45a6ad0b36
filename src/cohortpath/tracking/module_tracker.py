"""Module completion: every published lesson of the module completed."""

from __future__ import annotations

from sqlalchemy import func, select

from cohortpath.db.models import Lesson, LessonCompletion, Module, ModuleCompletion, Week
from cohortpath.events.schemas import MODULE_COMPLETED
from cohortpath.tracking.base import CompletionTracker


class ModuleTracker(CompletionTracker):
    record_model = ModuleCompletion
    unit_key = "module_id"
    completed_event = MODULE_COMPLETED
    label = "Module"

    async def week_of(self, unit: Module) -> Week:
        week = await self.db.get(Week, unit.week_id)
        if week is None:
            raise ValueError(f"Module {unit.id} has no week")
        return week

    async def child_counts(self, user_id: int, unit: Module) -> tuple[int, int]:
        lessons = select(Lesson.id).where(Lesson.module_id == unit.id, Lesson.status == "published")
        total = (await self.db.execute(select(func.count()).select_from(lessons.subquery()))).scalar_one()
        done = (
            await self.db.execute(
                select(func.count(LessonCompletion.id)).where(
                    LessonCompletion.user_id == user_id,
                    LessonCompletion.completed_at.is_not(None),
                    LessonCompletion.lesson_id.in_(lessons),
                )
            )
        ).scalar_one()
        return int(done), int(total)
