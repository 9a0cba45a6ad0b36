"""Week progress recalculation tests: aggregation, convergence, cascade."""

from __future__ import annotations

import pytest

from cohortpath.events.schemas import WEEK_COMPLETED, WEEK_UNLOCKED


class TestAggregation:
    """Test how outcomes combine into one percentage."""

    @pytest.mark.asyncio
    async def test_topics_quizzes_and_assignments_count(self, progression, build):
        cohort = await build.cohort()
        week, _, topics = await build.week_with_topics(cohort, 0, 2)
        quiz = await build.quiz(week)
        assignment = await build.assignment(week)
        await build.live_class(week)

        await progression.topics.complete(1, topics[0])
        progress = await progression.weeks.get_progress(1, week)
        assert progress.completion_percentage == 25.0

        await build.attempt(1, quiz, 1, passed=True)
        await build.submission(1, assignment, "approved")
        progress = await progression.recalculator.recalculate_week_progress(1, week)
        assert progress.completion_percentage == 75.0
        assert set(progress.completion_data) == {"topics", "quizzes", "assignments", "live_classes"}
        assert list(progress.completion_data["quizzes"]) == [str(quiz.id)]
        assert progress.completed_at is None

    @pytest.mark.asyncio
    async def test_live_classes_recorded_but_not_counted(self, progression, build):
        cohort = await build.cohort()
        week, _, topics = await build.week_with_topics(cohort, 0, 1)
        live = await build.live_class(week)
        await build.attendance(1, live)

        await progression.topics.complete(1, topics[0])
        progress = await progression.weeks.get_progress(1, week)
        assert progress.completion_percentage == 100.0
        assert list(progress.completion_data["live_classes"]) == [str(live.id)]

    @pytest.mark.asyncio
    async def test_empty_week_is_zero(self, progression, build):
        cohort = await build.cohort()
        week = await build.week(cohort, 0)
        progress = await progression.recalculator.recalculate_week_progress(1, week)
        assert progress.completion_percentage == 0.0
        assert progress.completed_at is None


class TestConvergence:
    """Recalculating again without new completions changes nothing."""

    @pytest.mark.asyncio
    async def test_second_recalculation_is_stable(self, progression, build):
        cohort = await build.cohort()
        week, _, topics = await build.week_with_topics(cohort, 0, 3)
        await progression.topics.complete(1, topics[0])

        first = await progression.recalculator.recalculate_week_progress(1, week)
        snapshot = (first.completion_percentage, dict(first.completion_data), first.completed_at)
        second = await progression.recalculator.recalculate_week_progress(1, week)
        assert (second.completion_percentage, dict(second.completion_data), second.completed_at) == snapshot

    @pytest.mark.asyncio
    async def test_completed_iff_full(self, progression, build):
        cohort = await build.cohort()
        week, lesson, topics = await build.week_with_topics(cohort, 0, 1)
        await progression.topics.complete(1, topics[0])

        progress = await progression.weeks.get_progress(1, week)
        assert progress.completion_percentage == 100.0
        assert progress.completed_at is not None

        await build.topic(lesson, order=5)
        progress = await progression.recalculator.recalculate_week_progress(1, week)
        assert progress.completion_percentage == 50.0
        assert progress.completed_at is None


class TestCascade:
    """Completing a week evaluates the next one."""

    @pytest.mark.asyncio
    async def test_completion_unlocks_next_week(self, progression, build):
        cohort = await build.cohort()
        week0, _, topics = await build.week_with_topics(cohort, 0, 1)
        week1 = await build.week(cohort, 1)

        await progression.topics.complete(1, topics[0])
        progress = await progression.weeks.get_progress(1, week1)
        assert progress.is_unlocked is True

    @pytest.mark.asyncio
    async def test_blocked_cascade_is_retried(self, progression, build):
        cohort = await build.cohort()
        week0, _, topics = await build.week_with_topics(cohort, 0, 1, coin_reward=10)
        week1 = await build.week(cohort, 1, rules={"min_coins": 50})

        await progression.topics.complete(1, topics[0])
        assert await progression.weeks.is_week_unlocked(1, week1) is False

        await progression.ledger.award_coins(1, 40, "manual")
        await progression.recalculator.recalculate_week_progress(1, week0)
        assert await progression.weeks.is_week_unlocked(1, week1) is True

    @pytest.mark.asyncio
    async def test_week_completed_event_emitted_once(self, progression, build):
        cohort = await build.cohort()
        week0, _, topics = await build.week_with_topics(cohort, 0, 1)
        await build.week(cohort, 1)
        seen = []
        progression.events.subscribe(WEEK_COMPLETED, lambda event: seen.append(event.data["week_id"]))
        progression.events.subscribe(WEEK_UNLOCKED, lambda event: seen.append(("unlocked", event.data["week_number"])))

        await progression.topics.complete(1, topics[0])
        await progression.recalculator.recalculate_week_progress(1, week0)
        await progression.recalculator.recalculate_week_progress(1, week0)

        assert seen == [week0.id, ("unlocked", 1)]

    @pytest.mark.asyncio
    async def test_recalculate_whole_cohort(self, progression, build):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)
        await build.week_with_topics(cohort, 1, 2)
        await progression.topics.complete(1, topics[0])

        rows = await progression.recalculator.recalculate_cohort_progress(1, cohort.id)
        assert [row.completion_percentage for row in rows] == [100.0, 0.0]
        assert [row.is_unlocked for row in rows] == [True, True]
