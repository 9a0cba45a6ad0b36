"""Topic tracker tests: completion, rewards, gates, cascade and admin tools."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cohortpath.clock import ensure_utc
from cohortpath.db.models import CoinTransaction, Topic, Week
from cohortpath.exceptions import PreconditionError


class TestCompleteTopic:
    """Test the topic completion transition."""

    @pytest.mark.asyncio
    async def test_complete_awards_coins(self, progression, build, clock):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 2, coin_reward=10)

        record = await progression.topics.complete(1, topics[0])

        assert ensure_utc(record.completed_at) == clock.now
        assert record.completion_percentage == 100.0
        assert record.completion_method == "manual"
        assert record.coins_awarded == 10
        balance = await progression.ledger.get_balance(1)
        assert balance.total_balance == 10

    @pytest.mark.asyncio
    async def test_completion_method_from_metadata(self, progression, build):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)

        record = await progression.topics.complete(1, topics[0], {"method": "video_end", "note": "auto"})
        assert record.completion_method == "video_end"
        assert record.completion_data["note"] == "auto"

    @pytest.mark.asyncio
    async def test_second_complete_is_a_no_op(self, progression, build, db_session, clock):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 2, coin_reward=10)

        first = await progression.topics.complete(1, topics[0])
        first_completed_at = first.completed_at
        clock.advance(minutes=5)
        second = await progression.topics.complete(1, topics[0])

        assert second.id == first.id
        assert second.completed_at == first_completed_at
        balance = await progression.ledger.get_balance(1)
        assert balance.total_balance == 10
        count = (await db_session.execute(select(func.count()).select_from(CoinTransaction))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_zero_reward_topic_creates_no_transaction(self, progression, build, db_session):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1, coin_reward=0)

        record = await progression.topics.complete(1, topics[0])
        assert record.coins_awarded == 0
        count = (await db_session.execute(select(func.count()).select_from(CoinTransaction))).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_locked_week_raises(self, progression, build, db_session):
        cohort = await build.cohort()
        await build.week_with_topics(cohort, 0, 1)
        _, _, topics = await build.week_with_topics(cohort, 1, 1)
        topic_id = topics[0].id

        with pytest.raises(PreconditionError):
            await progression.topics.complete(1, topics[0])

        topic = await db_session.get(Topic, topic_id)
        assert await progression.topics.has_completed(1, topic) is False
        assert await progression.ledger.current_balance(1) == 0


class TestMinimumTime:
    """Test the minimum-time gate."""

    @pytest.mark.asyncio
    async def test_rejected_below_minimum(self, progression, build, db_session):
        cohort = await build.cohort()
        week = await build.week(cohort, 0)
        lesson = await build.lesson(await build.module(week))
        topic = await build.topic(lesson, min_time_required_seconds=60)
        topic_id = topic.id

        with pytest.raises(PreconditionError, match="Minimum time"):
            await progression.topics.complete(1, topic, {"watch_time_seconds": 30})

        topic = await db_session.get(Topic, topic_id)
        assert await progression.topics.has_completed(1, topic) is False

    @pytest.mark.asyncio
    async def test_watch_time_metadata_satisfies_gate(self, progression, build):
        cohort = await build.cohort()
        week = await build.week(cohort, 0)
        lesson = await build.lesson(await build.module(week))
        topic = await build.topic(lesson, min_time_required_seconds=60)

        record = await progression.topics.complete(1, topic, {"watch_time_seconds": 75})
        assert record.completed_at is not None
        assert record.time_spent_seconds == 75

    @pytest.mark.asyncio
    async def test_tracked_time_satisfies_gate(self, progression, build):
        cohort = await build.cohort()
        week = await build.week(cohort, 0)
        lesson = await build.lesson(await build.module(week))
        topic = await build.topic(lesson, min_time_required_seconds=60)

        await progression.topics.add_time_spent(1, topic, 40)
        await progression.topics.add_time_spent(1, topic, 25)
        progress = await progression.topics.calculate_progress(1, topic)
        assert progress.time_requirement_met is True

        record = await progression.topics.complete(1, topic)
        assert record.time_spent_seconds == 65


class TestInProgressUpdates:
    """Test progress and time tracking before completion."""

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, progression, build, clock):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)

        first = await progression.topics.start(1, topics[0])
        clock.advance(minutes=3)
        second = await progression.topics.start(1, topics[0])
        assert second.id == first.id
        assert second.started_at == first.started_at

    @pytest.mark.asyncio
    async def test_update_progress_clamps(self, progression, build):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)

        record = await progression.topics.update_progress(1, topics[0], 140, position_seconds=300)
        assert record.completion_percentage == 100.0
        assert record.last_position_seconds == 300
        assert record.completed_at is None

        record = await progression.topics.update_progress(1, topics[0], -3)
        assert record.completion_percentage == 0.0

    @pytest.mark.asyncio
    async def test_completed_record_is_not_updated(self, progression, build):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)

        await progression.topics.complete(1, topics[0])
        record = await progression.topics.update_progress(1, topics[0], 20)
        assert record.completion_percentage == 100.0
        record = await progression.topics.add_time_spent(1, topics[0], 50)
        assert record.time_spent_seconds == 0

    @pytest.mark.asyncio
    async def test_negative_time_rejected(self, progression, build):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)
        with pytest.raises(ValueError):
            await progression.topics.add_time_spent(1, topics[0], -1)


class TestCascade:
    """Topic completion refreshes lesson, module and week progress."""

    @pytest.mark.asyncio
    async def test_lesson_and_module_progress_refreshed_not_completed(self, progression, build, db_session):
        cohort = await build.cohort()
        _, lesson, topics = await build.week_with_topics(cohort, 0, 2)

        await progression.topics.complete(1, topics[0])
        lesson_record = await progression.lessons.get_completion(1, lesson)
        assert lesson_record.completion_percentage == 50.0

        await progression.topics.complete(1, topics[1])
        lesson_record = await progression.lessons.get_completion(1, lesson)
        assert lesson_record.completion_percentage == 100.0
        assert lesson_record.completed_at is None

        from cohortpath.db.models import Module

        module = await db_session.get(Module, lesson.module_id)
        module_record = await progression.modules.get_completion(1, module)
        assert module_record is not None
        assert module_record.completed_at is None

    @pytest.mark.asyncio
    async def test_week_progress_and_completion_data(self, progression, build):
        cohort = await build.cohort()
        week, _, topics = await build.week_with_topics(cohort, 0, 4, coin_reward=5)

        await progression.topics.complete(1, topics[0], {"method": "quiz_pass"})
        progress = await progression.weeks.get_progress(1, week)

        assert progress.completion_percentage == 25.0
        entry = progress.completion_data["topics"][str(topics[0].id)]
        assert entry["coins_earned"] == 5
        assert entry["completion_method"] == "quiz_pass"
        assert entry["completed_at"] is not None


class TestNextItem:
    """Test navigation to the next unit."""

    @pytest.mark.asyncio
    async def test_next_topic_then_lesson_then_module(self, progression, build):
        cohort = await build.cohort()
        week = await build.week(cohort, 0)
        first_module = await build.module(week, order=0)
        second_module = await build.module(week, order=1)
        first_lesson = await build.lesson(first_module, order=0)
        second_lesson = await build.lesson(first_module, order=1)
        a, b = await build.topics(first_lesson, 2)
        c = await build.topic(second_lesson)

        assert (await progression.topics.next_item(a)).id == b.id
        after_b = await progression.topics.next_item(b)
        assert (after_b.kind, after_b.id) == ("lesson", second_lesson.id)
        after_c = await progression.topics.next_item(c)
        assert (after_c.kind, after_c.id) == ("module", second_module.id)

    @pytest.mark.asyncio
    async def test_last_item_returns_none(self, progression, build):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)
        assert await progression.topics.next_item(topics[0]) is None


class TestResetAndBulk:
    """Test admin reset and bulk completion."""

    @pytest.mark.asyncio
    async def test_reset_removes_completion_without_double_reward(self, progression, build):
        cohort = await build.cohort()
        week, _, topics = await build.week_with_topics(cohort, 0, 1, coin_reward=10)

        await progression.topics.complete(1, topics[0])
        progress = await progression.weeks.get_progress(1, week)
        assert progress.completed_at is not None

        assert await progression.topics.reset(1, topics[0]) is True
        assert await progression.topics.has_completed(1, topics[0]) is False
        progress = await progression.weeks.get_progress(1, week)
        assert progress.completion_percentage == 0.0
        assert progress.completed_at is None

        record = await progression.topics.complete(1, topics[0])
        assert record.coins_awarded == 0
        balance = await progression.ledger.get_balance(1)
        assert balance.total_balance == 10

    @pytest.mark.asyncio
    async def test_reset_without_completion(self, progression, build):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 1)
        assert await progression.topics.reset(1, topics[0]) is False

    @pytest.mark.asyncio
    async def test_bulk_complete_isolates_failures(self, progression, build, db_session):
        cohort = await build.cohort()
        _, _, open_topics = await build.week_with_topics(cohort, 0, 2)
        _, _, locked_topics = await build.week_with_topics(cohort, 1, 1)
        ids = [open_topics[0].id, locked_topics[0].id, open_topics[1].id]

        results = await progression.topics.bulk_complete(1, [open_topics[0], locked_topics[0], open_topics[1]])

        assert list(results) == ids
        assert results[ids[0]].success is True
        assert results[ids[1]].success is False
        assert "locked week" in results[ids[1]].error
        assert results[ids[2]].success is True
        assert await progression.ledger.current_balance(1) == 20

        week0 = (await db_session.execute(select(Week).where(Week.week_number == 0))).scalar_one()
        progress = await progression.weeks.get_progress(1, week0)
        assert progress.completion_percentage == 100.0

    @pytest.mark.asyncio
    async def test_bulk_complete_records_database_errors(self, progression, build, monkeypatch):
        cohort = await build.cohort()
        _, _, topics = await build.week_with_topics(cohort, 0, 3)
        ids = [topic.id for topic in topics]
        real_start = progression.topics.start

        async def start(user_id, unit):
            if unit.id == ids[1]:
                raise OperationalError("INSERT INTO topic_completions", {}, Exception("database is locked"))
            return await real_start(user_id, unit)

        monkeypatch.setattr(progression.topics, "start", start)
        results = await progression.topics.bulk_complete(1, topics)

        assert results[ids[0]].success is True
        assert results[ids[1]].success is False
        assert results[ids[1]].error == "Could not save completion"
        assert results[ids[2]].success is True
        assert await progression.ledger.current_balance(1) == 20
