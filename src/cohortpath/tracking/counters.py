"""Completion counters: one per activity kind, selected by its tag.

Each counter answers the same three questions for its activity: which
units exist in a cohort (optionally one week of it), which of them a
learner has completed, and whether a single unit is completed. The week
recalculator and the unlock evaluator only talk to these counters.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import Select, and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cohortpath.clock import ensure_utc
from cohortpath.db.models import (
    Assignment,
    AssignmentSubmission,
    Lesson,
    LiveAttendance,
    LiveClass,
    Module,
    Quiz,
    QuizAttempt,
    Topic,
    TopicCompletion,
    Week,
)


class ActivityType(str, Enum):
    TOPICS = "topics"
    QUIZZES = "quizzes"
    ASSIGNMENTS = "assignments"
    LIVE_CLASSES = "live_classes"


def completion_percentage(done: int, total: int) -> float:
    """``round(100 * done / total, 2)``; only a full set reports 100."""
    if total <= 0:
        return 0.0
    percentage = round(100.0 * done / total, 2)
    if done < total:
        percentage = min(percentage, 99.99)
    return percentage


def _iso(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None


def _entry(completed_at: datetime | None, coins: int, method: str | None) -> dict[str, Any]:
    return {
        "completed_at": _iso(completed_at),
        "coins_earned": coins,
        "completion_method": method,
    }


class CompletionCounter:
    """Base class; subclasses bind one activity kind to its outcome table."""

    activity: ActivityType
    noun: str
    verb: str

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    def units_query(self, cohort_id: int, week_number: int | None = None) -> Select[Any]:
        raise NotImplementedError

    async def completed_units(
        self, user_id: int, cohort_id: int, week_number: int | None = None
    ) -> dict[int, dict[str, Any]]:
        """Completed unit ids mapped to their completion summary."""
        raise NotImplementedError

    async def is_completed(self, user_id: int, unit_id: int) -> bool:
        raise NotImplementedError

    async def unit_ids(self, cohort_id: int, week_number: int | None = None) -> list[int]:
        result = await self.db.execute(self.units_query(cohort_id, week_number))
        return list(result.scalars().all())

    async def count(self, user_id: int, cohort_id: int, week_number: int | None = None) -> int:
        return len(await self.completed_units(user_id, cohort_id, week_number))

    def describe(self, count: int, week_number: int | None = None) -> str:
        """Human readable requirement, e.g. ``Pass 2 quiz(zes) in Week 3``."""
        text = f"{self.verb} {count} {self.noun}"
        if week_number is not None:
            text += f" in Week {week_number}"
        return text

    @staticmethod
    def _scope(query: Select[Any], week_fk: Any, cohort_id: int, week_number: int | None) -> Select[Any]:
        query = query.join(Week, week_fk == Week.id).where(Week.cohort_id == cohort_id)
        if week_number is not None:
            query = query.where(Week.week_number == week_number)
        return query


class TopicCounter(CompletionCounter):
    """Completed topics of published lessons."""

    activity = ActivityType.TOPICS
    noun = "topic(s)"
    verb = "Complete"

    def units_query(self, cohort_id: int, week_number: int | None = None) -> Select[Any]:
        query = (
            select(Topic.id)
            .join(Lesson, Topic.lesson_id == Lesson.id)
            .join(Module, Lesson.module_id == Module.id)
            .where(Lesson.status == "published")
        )
        return self._scope(query, Module.week_id, cohort_id, week_number)

    async def completed_units(
        self, user_id: int, cohort_id: int, week_number: int | None = None
    ) -> dict[int, dict[str, Any]]:
        result = await self.db.execute(
            select(TopicCompletion).where(
                TopicCompletion.user_id == user_id,
                TopicCompletion.completed_at.is_not(None),
                TopicCompletion.topic_id.in_(self.units_query(cohort_id, week_number)),
            )
        )
        return {
            row.topic_id: _entry(row.completed_at, row.coins_awarded, row.completion_method)
            for row in result.scalars().all()
        }

    async def is_completed(self, user_id: int, unit_id: int) -> bool:
        result = await self.db.execute(
            select(TopicCompletion.id).where(
                TopicCompletion.user_id == user_id,
                TopicCompletion.topic_id == unit_id,
                TopicCompletion.completed_at.is_not(None),
            )
        )
        return result.first() is not None


class QuizCounter(CompletionCounter):
    """Quizzes whose latest completed attempt passed."""

    activity = ActivityType.QUIZZES
    noun = "quiz(zes)"
    verb = "Pass"

    def units_query(self, cohort_id: int, week_number: int | None = None) -> Select[Any]:
        return self._scope(select(Quiz.id), Quiz.week_id, cohort_id, week_number)

    def _latest_attempts(self, user_id: int) -> Select[Any]:
        latest = (
            select(
                QuizAttempt.quiz_id.label("quiz_id"),
                func.max(QuizAttempt.attempt_number).label("attempt_number"),
            )
            .where(QuizAttempt.user_id == user_id, QuizAttempt.completed_at.is_not(None))
            .group_by(QuizAttempt.quiz_id)
            .subquery()
        )
        return (
            select(QuizAttempt)
            .join(
                latest,
                and_(
                    QuizAttempt.quiz_id == latest.c.quiz_id,
                    QuizAttempt.attempt_number == latest.c.attempt_number,
                ),
            )
            .where(QuizAttempt.user_id == user_id, QuizAttempt.passed.is_(True))
        )

    async def completed_units(
        self, user_id: int, cohort_id: int, week_number: int | None = None
    ) -> dict[int, dict[str, Any]]:
        query = self._latest_attempts(user_id).where(
            QuizAttempt.quiz_id.in_(self.units_query(cohort_id, week_number))
        )
        result = await self.db.execute(query)
        return {
            row.quiz_id: _entry(row.completed_at, row.coins_awarded, "quiz")
            for row in result.scalars().all()
        }

    async def is_completed(self, user_id: int, unit_id: int) -> bool:
        result = await self.db.execute(
            self._latest_attempts(user_id).where(QuizAttempt.quiz_id == unit_id)
        )
        return result.first() is not None


class AssignmentCounter(CompletionCounter):
    """Assignments with at least one approved submission."""

    activity = ActivityType.ASSIGNMENTS
    noun = "assignment(s)"
    verb = "Complete"

    def units_query(self, cohort_id: int, week_number: int | None = None) -> Select[Any]:
        return self._scope(select(Assignment.id), Assignment.week_id, cohort_id, week_number)

    async def completed_units(
        self, user_id: int, cohort_id: int, week_number: int | None = None
    ) -> dict[int, dict[str, Any]]:
        result = await self.db.execute(
            select(AssignmentSubmission)
            .where(
                AssignmentSubmission.user_id == user_id,
                AssignmentSubmission.status == "approved",
                AssignmentSubmission.assignment_id.in_(self.units_query(cohort_id, week_number)),
            )
            .order_by(AssignmentSubmission.id)
        )
        completed: dict[int, dict[str, Any]] = {}
        for row in result.scalars().all():
            if row.assignment_id not in completed:
                completed[row.assignment_id] = _entry(row.reviewed_at, row.coins_awarded, "assignment")
        return completed

    async def is_completed(self, user_id: int, unit_id: int) -> bool:
        result = await self.db.execute(
            select(AssignmentSubmission.id).where(
                AssignmentSubmission.user_id == user_id,
                AssignmentSubmission.assignment_id == unit_id,
                AssignmentSubmission.status == "approved",
            )
        )
        return result.first() is not None


class LiveClassCounter(CompletionCounter):
    """Live classes the learner attended."""

    activity = ActivityType.LIVE_CLASSES
    noun = "live class(es)"
    verb = "Attend"

    def units_query(self, cohort_id: int, week_number: int | None = None) -> Select[Any]:
        return self._scope(select(LiveClass.id), LiveClass.week_id, cohort_id, week_number)

    async def completed_units(
        self, user_id: int, cohort_id: int, week_number: int | None = None
    ) -> dict[int, dict[str, Any]]:
        result = await self.db.execute(
            select(LiveAttendance).where(
                LiveAttendance.user_id == user_id,
                LiveAttendance.attended.is_(True),
                LiveAttendance.live_class_id.in_(self.units_query(cohort_id, week_number)),
            )
        )
        return {
            row.live_class_id: _entry(row.joined_at, row.coins_awarded, "live_class")
            for row in result.scalars().all()
        }

    async def is_completed(self, user_id: int, unit_id: int) -> bool:
        result = await self.db.execute(
            select(LiveAttendance.id).where(
                LiveAttendance.user_id == user_id,
                LiveAttendance.live_class_id == unit_id,
                LiveAttendance.attended.is_(True),
            )
        )
        return result.first() is not None


COUNTERS: dict[ActivityType, type[CompletionCounter]] = {
    ActivityType.TOPICS: TopicCounter,
    ActivityType.QUIZZES: QuizCounter,
    ActivityType.ASSIGNMENTS: AssignmentCounter,
    ActivityType.LIVE_CLASSES: LiveClassCounter,
}

# Activities that make up a week's completion percentage. Live classes only
# gate unlocks through explicit required completions.
WEEK_PROGRESS_ACTIVITIES = (ActivityType.TOPICS, ActivityType.QUIZZES, ActivityType.ASSIGNMENTS)


def get_counter(db: AsyncSession, activity: ActivityType | str) -> CompletionCounter:
    """Counter instance for an activity tag (``ValueError`` when unknown)."""
    return COUNTERS[ActivityType(activity)](db)
