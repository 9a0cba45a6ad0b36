"""ORM models for curriculum content, learner progress and the coin ledger.

``user_id`` columns reference the external identity system and carry no
foreign key. One completion row exists per (user, unit); the unique
constraints are what serialize concurrent "complete" requests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from cohortpath.db.base import Base, BigIntPK, JSONDocument


# ---------------------------------------------------------------------------
# Curriculum
# ---------------------------------------------------------------------------


class Cohort(Base):
    """Time-boxed group enrollment owning an ordered sequence of weeks."""

    __tablename__ = "cohorts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Week(Base):
    """One week of a cohort. ``week_number`` is 0-based; week 0 is free."""

    __tablename__ = "weeks"
    __table_args__ = (UniqueConstraint("cohort_id", "week_number", name="uq_week_cohort_number"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    cohort_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("cohorts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    unlock_rules: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    drip_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Module(Base):
    """Ordered grouping of lessons inside a week."""

    __tablename__ = "modules"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Lesson(Base):
    """Lesson inside a module; owns topics and an optional minimum-time gate."""

    __tablename__ = "lessons"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    module_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="published")
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    min_time_required_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Topic(Base):
    """Leaf completable unit. Completing it earns ``coin_reward`` coins."""

    __tablename__ = "topics"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    lesson_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_time_required_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Activity outcomes (written by the quiz / assignment / live-class services)
# ---------------------------------------------------------------------------


class Quiz(Base):
    __tablename__ = "quizzes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    passing_score: Mapped[int] = mapped_column(Integer, nullable=False, default=70)
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class QuizAttempt(Base):
    """One attempt; only attempts with ``completed_at`` set are outcomes."""

    __tablename__ = "quiz_attempts"
    __table_args__ = (UniqueConstraint("user_id", "quiz_id", "attempt_number", name="uq_quiz_attempt"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    quiz_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("quizzes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    passed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    score_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    coins_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AssignmentSubmission(Base):
    __tablename__ = "assignment_submissions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    assignment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="submitted")
    coins_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LiveClass(Base):
    __tablename__ = "live_classes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    coin_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LiveAttendance(Base):
    __tablename__ = "live_attendances"
    __table_args__ = (UniqueConstraint("user_id", "live_class_id", name="uq_live_attendance"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    live_class_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("live_classes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    attended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    coins_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Learner progress
# ---------------------------------------------------------------------------


class UserProgress(Base):
    """Per user x week progress. UNIQUE(user_id, week_id)."""

    __tablename__ = "user_progress"
    __table_args__ = (UniqueConstraint("user_id", "week_id", name="uq_user_progress_week"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    cohort_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("cohorts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    week_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    completion_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unlocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)


class _UnitCompletionColumns:
    """Columns shared by the topic, lesson and module completion tables."""

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_position_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    coins_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_method: Mapped[str | None] = mapped_column(String(32), nullable=True)
    completion_data: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)


class TopicCompletion(_UnitCompletionColumns, Base):
    """User topic completion. UNIQUE(user_id, topic_id) prevents duplicates."""

    __tablename__ = "topic_completions"
    __table_args__ = (UniqueConstraint("user_id", "topic_id", name="uq_user_topic"),)

    topic_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True
    )


class LessonCompletion(_UnitCompletionColumns, Base):
    """User lesson completion. UNIQUE(user_id, lesson_id)."""

    __tablename__ = "lesson_completions"
    __table_args__ = (UniqueConstraint("user_id", "lesson_id", name="uq_user_lesson"),)

    lesson_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True
    )


class ModuleCompletion(_UnitCompletionColumns, Base):
    """User module completion. UNIQUE(user_id, module_id)."""

    __tablename__ = "module_completions"
    __table_args__ = (UniqueConstraint("user_id", "module_id", name="uq_user_module"),)

    module_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("modules.id", ondelete="CASCADE"), nullable=False, index=True
    )


# ---------------------------------------------------------------------------
# Coin ledger
# ---------------------------------------------------------------------------


class CoinTransaction(Base):
    """Append-only ledger row. ``amount`` is always a positive magnitude."""

    __tablename__ = "coin_transactions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    transaction_metadata: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONDocument, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    created_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserCoinBalance(Base):
    """Denormalized balance derived from coin_transactions."""

    __tablename__ = "user_coin_balances"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    total_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
