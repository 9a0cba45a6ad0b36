"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cohortpath.clock import FixedClock
from cohortpath.database import enable_sqlite_savepoints
from cohortpath.db import models  # noqa: F401
from cohortpath.db.base import Base
from cohortpath.db.models import (
    Assignment,
    AssignmentSubmission,
    Cohort,
    Lesson,
    LiveAttendance,
    LiveClass,
    Module,
    Quiz,
    QuizAttempt,
    Topic,
    Week,
)
from cohortpath.engine import ProgressionEngine

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def progression(db_session: AsyncSession, clock: FixedClock) -> ProgressionEngine:
    return ProgressionEngine(db_session, clock=clock)


class CurriculumBuilder:
    """Creates committed curriculum rows so engine rollbacks never undo them."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _save(self, obj: Any) -> Any:
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def cohort(self, status: str = "active", start_date: datetime | None = START, **kw: Any) -> Cohort:
        return await self._save(Cohort(name=kw.pop("name", "Spring cohort"), status=status, start_date=start_date, **kw))

    async def week(
        self, cohort: Cohort, week_number: int, rules: dict[str, Any] | None = None, drip_days: int = 0
    ) -> Week:
        return await self._save(
            Week(
                cohort_id=cohort.id,
                week_number=week_number,
                title=f"Week {week_number}",
                unlock_rules=rules,
                drip_days=drip_days,
            )
        )

    async def module(self, week: Week, order: int = 0) -> Module:
        return await self._save(Module(week_id=week.id, title=f"Module {order}", order=order))

    async def lesson(self, module: Module, order: int = 0, **kw: Any) -> Lesson:
        return await self._save(Lesson(module_id=module.id, title=f"Lesson {order}", order=order, **kw))

    async def topic(self, lesson: Lesson, order: int = 0, coin_reward: int = 10, **kw: Any) -> Topic:
        return await self._save(
            Topic(lesson_id=lesson.id, title=f"Topic {order}", order=order, coin_reward=coin_reward, **kw)
        )

    async def topics(self, lesson: Lesson, count: int, coin_reward: int = 10) -> list[Topic]:
        return [await self.topic(lesson, order=i, coin_reward=coin_reward) for i in range(count)]

    async def week_with_topics(
        self,
        cohort: Cohort,
        week_number: int,
        count: int,
        coin_reward: int = 10,
        rules: dict[str, Any] | None = None,
    ) -> tuple[Week, Lesson, list[Topic]]:
        week = await self.week(cohort, week_number, rules=rules)
        module = await self.module(week)
        lesson = await self.lesson(module)
        return week, lesson, await self.topics(lesson, count, coin_reward)

    async def quiz(self, week: Week, **kw: Any) -> Quiz:
        return await self._save(Quiz(week_id=week.id, title=kw.pop("title", "Quiz"), **kw))

    async def attempt(
        self, user_id: int, quiz: Quiz, attempt_number: int, passed: bool, completed: bool = True
    ) -> QuizAttempt:
        return await self._save(
            QuizAttempt(
                user_id=user_id,
                quiz_id=quiz.id,
                attempt_number=attempt_number,
                passed=passed,
                score_percentage=90.0 if passed else 40.0,
                started_at=START,
                completed_at=START if completed else None,
            )
        )

    async def assignment(self, week: Week) -> Assignment:
        return await self._save(Assignment(week_id=week.id, title="Assignment"))

    async def submission(self, user_id: int, assignment: Assignment, status: str = "approved") -> AssignmentSubmission:
        return await self._save(
            AssignmentSubmission(
                user_id=user_id,
                assignment_id=assignment.id,
                status=status,
                submitted_at=START,
                reviewed_at=START if status != "submitted" else None,
            )
        )

    async def live_class(self, week: Week) -> LiveClass:
        return await self._save(LiveClass(week_id=week.id, title="Live class", scheduled_at=START))

    async def attendance(self, user_id: int, live_class: LiveClass, attended: bool = True) -> LiveAttendance:
        return await self._save(
            LiveAttendance(
                user_id=user_id,
                live_class_id=live_class.id,
                attended=attended,
                joined_at=START if attended else None,
            )
        )


@pytest.fixture
def build(db_session: AsyncSession) -> CurriculumBuilder:
    return CurriculumBuilder(db_session)
