"""Topic completion: the leaf of the cascade.

Completing a topic awards its coins, refreshes the containing lesson and
module percentages, and recalculates the week, which may in turn unlock the
next week. Lessons and modules are never completed automatically.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import Clock, utcnow
from cohortpath.db.models import Lesson, Module, Topic, TopicCompletion, Week
from cohortpath.db.transaction import atomic
from cohortpath.events.bus import EventBus
from cohortpath.events.schemas import TOPIC_COMPLETED
from cohortpath.exceptions import PreconditionError, ProgressionError
from cohortpath.ledger.coin_service import CoinLedger
from cohortpath.tracking.base import CompletionTracker
from cohortpath.tracking.lesson_tracker import LessonTracker
from cohortpath.tracking.schemas import BulkCompletionResult, NextItem, UnitProgress
from cohortpath.unlock.evaluator import WeekUnlockEvaluator
from cohortpath.unlock.recalculator import WeekProgressRecalculator

logger = logging.getLogger(__name__)


def topic_reward_key(topic_id: int, user_id: int) -> str:
    return f"topic:{topic_id}:{user_id}"


class TopicTracker(CompletionTracker):
    record_model = TopicCompletion
    unit_key = "topic_id"
    completed_event = TOPIC_COMPLETED
    label = "Topic"

    def __init__(
        self,
        db: AsyncSession,
        weeks: WeekUnlockEvaluator,
        ledger: CoinLedger,
        lessons: LessonTracker,
        recalculator: WeekProgressRecalculator,
        events: EventBus | None = None,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(db, weeks, events=events, clock=clock)
        self.ledger = ledger
        self.lessons = lessons
        self.recalculator = recalculator

    async def lesson_of(self, unit: Topic) -> Lesson:
        lesson = await self.db.get(Lesson, unit.lesson_id)
        if lesson is None:
            raise ValueError(f"Topic {unit.id} has no lesson")
        return lesson

    async def week_of(self, unit: Topic) -> Week:
        return await self.lessons.week_of(await self.lesson_of(unit))

    def min_time_required(self, unit: Topic) -> int:
        return unit.min_time_required_seconds or 0

    @staticmethod
    def _effective_time(record: TopicCompletion | None, metadata: dict[str, Any]) -> int:
        tracked = record.time_spent_seconds if record is not None else 0
        watched = int(metadata.get("watch_time_seconds") or 0)
        return max(tracked, watched)

    async def calculate_progress(self, user_id: int, unit: Topic) -> UnitProgress:
        record = await self.get_completion(user_id, unit)
        completed = record is not None and record.completed_at is not None
        time_spent = self._effective_time(record, {})
        min_time = self.min_time_required(unit)
        time_met = min_time <= 0 or time_spent >= min_time
        return UnitProgress(
            percentage=100.0 if completed else (record.completion_percentage if record is not None else 0.0),
            completed_count=1 if completed else 0,
            total_count=1,
            can_complete=time_met,
            time_requirement_met=time_met,
            time_spent_seconds=time_spent,
            min_time_required_seconds=min_time,
        )

    async def check_requirements(
        self, user_id: int, unit: Topic, record: TopicCompletion | None, metadata: dict[str, Any]
    ) -> None:
        min_time = self.min_time_required(unit)
        spent = self._effective_time(record, metadata)
        if min_time > 0 and spent < min_time:
            raise PreconditionError(f"Minimum time requirement not met ({spent}s of {min_time}s)")

    def completion_values(self, record: TopicCompletion, metadata: dict[str, Any]) -> dict[str, Any]:
        return {"time_spent_seconds": self._effective_time(record, metadata)}

    async def after_complete(
        self, user_id: int, unit: Topic, week: Week, record: TopicCompletion, metadata: dict[str, Any]
    ) -> None:
        if unit.coin_reward > 0:
            key = topic_reward_key(unit.id, user_id)
            if await self.ledger.find_transaction(key) is None:
                await self.ledger.award_coins(
                    user_id,
                    unit.coin_reward,
                    "topic",
                    unit.id,
                    f"Completed topic: {unit.title}",
                    metadata={"lesson_id": unit.lesson_id, "week_id": week.id},
                    idempotency_key=key,
                )
                record.coins_awarded = unit.coin_reward
                await self.db.flush()

        lesson = await self.lesson_of(unit)
        await self.lessons.refresh_progress(user_id, lesson)
        await self.lessons.modules.refresh_progress(user_id, await self.lessons.module_of(lesson))
        await self.recalculator.recalculate_week_progress(user_id, week)

    def event_data(self, unit: Topic, week: Week, record: TopicCompletion) -> dict[str, Any]:
        data = super().event_data(unit, week, record)
        data["lesson_id"] = unit.lesson_id
        data["coins_awarded"] = record.coins_awarded
        return data

    # ------------------------------------------------------------------
    # Navigation and admin
    # ------------------------------------------------------------------

    async def next_item(self, unit: Topic) -> NextItem | None:
        """Next topic in the lesson, else next lesson, else next module."""
        topic = (
            await self.db.execute(
                select(Topic)
                .where(Topic.lesson_id == unit.lesson_id, _after(Topic, unit.order, unit.id))
                .order_by(Topic.order, Topic.id)
                .limit(1)
            )
        ).scalar_one_or_none()
        if topic is not None:
            return NextItem(kind="topic", id=topic.id, title=topic.title)

        lesson = await self.lesson_of(unit)
        next_lesson = (
            await self.db.execute(
                select(Lesson)
                .where(
                    Lesson.module_id == lesson.module_id,
                    Lesson.status == "published",
                    _after(Lesson, lesson.order, lesson.id),
                )
                .order_by(Lesson.order, Lesson.id)
                .limit(1)
            )
        ).scalar_one_or_none()
        if next_lesson is not None:
            return NextItem(kind="lesson", id=next_lesson.id, title=next_lesson.title)

        module = await self.lessons.module_of(lesson)
        next_module = (
            await self.db.execute(
                select(Module)
                .where(Module.week_id == module.week_id, _after(Module, module.order, module.id))
                .order_by(Module.order, Module.id)
                .limit(1)
            )
        ).scalar_one_or_none()
        if next_module is not None:
            return NextItem(kind="module", id=next_module.id, title=next_module.title)
        return None

    @atomic
    async def reset(self, user_id: int, unit: Topic) -> bool:
        """Delete the learner's completion and recalculate the week.

        Coins already awarded stay; the reward key keeps a re-completion
        from paying out again.
        """
        record = await self.get_completion(user_id, unit)
        if record is None:
            return False
        week = await self.week_of(unit)
        await self.db.delete(record)
        await self.db.flush()

        await self.lessons.refresh_progress(user_id, await self.lesson_of(unit))
        await self.recalculator.recalculate_week_progress(user_id, week)
        logger.info("Topic %d completion reset for user %d", unit.id, user_id)
        return True

    async def bulk_complete(
        self, user_id: int, topics: list[Topic], metadata: dict[str, Any] | None = None
    ) -> dict[int, BulkCompletionResult]:
        """Complete many topics; one failure does not stop the rest."""
        topic_ids = [topic.id for topic in topics]
        results: dict[int, BulkCompletionResult] = {}
        for topic_id in topic_ids:
            # A failed completion rolls back and expires loaded rows.
            topic = await self.db.get(Topic, topic_id)
            if topic is None:
                results[topic_id] = BulkCompletionResult(success=False, error="Topic not found")
                continue
            try:
                record = await self.complete(user_id, topic, metadata)
            except ProgressionError as exc:
                results[topic_id] = BulkCompletionResult(success=False, error=exc.message)
            except SQLAlchemyError:
                logger.warning("Completion of topic %d failed for user %d", topic_id, user_id, exc_info=True)
                results[topic_id] = BulkCompletionResult(success=False, error="Could not save completion")
            else:
                results[topic_id] = BulkCompletionResult(success=True, completion_id=record.id)
        return results


def _after(model: Any, order: int, row_id: int) -> Any:
    return or_(model.order > order, and_(model.order == order, model.id > row_id))
