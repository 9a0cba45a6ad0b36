"""Cohort lifecycle tests: state machine and enrollment."""

from __future__ import annotations

import pytest

from cohortpath.clock import ensure_utc
from cohortpath.cohorts.lifecycle import VALID_TRANSITIONS, validate_transition
from cohortpath.db.models import Cohort
from cohortpath.events.schemas import COHORT_ENROLLED
from cohortpath.exceptions import PreconditionError


class TestValidateTransition:
    """Test the status state machine."""

    @pytest.mark.parametrize(
        ("current", "target"),
        [("draft", "published"), ("published", "active"), ("active", "completed"), ("completed", "archived")],
    )
    def test_valid_transitions(self, current, target):
        validate_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [("draft", "active"), ("active", "published"), ("archived", "draft"), ("completed", "active")],
    )
    def test_invalid_transitions(self, current, target):
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition(current, target)

    def test_archived_is_terminal(self):
        assert VALID_TRANSITIONS["archived"] == []


class TestTransition:
    """Test persisted transitions."""

    @pytest.mark.asyncio
    async def test_activation_stamps_start(self, progression, build, clock):
        cohort = await build.cohort(status="published", start_date=None)
        cohort = await progression.cohorts.transition(cohort, "active")
        assert cohort.status == "active"
        assert ensure_utc(cohort.started_at) == clock.now
        assert ensure_utc(cohort.start_date) == clock.now

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_status(self, progression, build, db_session):
        cohort = await build.cohort(status="draft")
        cohort_id = cohort.id
        with pytest.raises(ValueError):
            await progression.cohorts.transition(cohort, "completed")
        cohort = await db_session.get(Cohort, cohort_id)
        assert cohort.status == "draft"

    @pytest.mark.asyncio
    async def test_get_missing_cohort(self, progression):
        with pytest.raises(ValueError, match="not found"):
            await progression.cohorts.get_cohort(12345)


class TestEnroll:
    """Test enrollment."""

    @pytest.mark.asyncio
    async def test_enroll_creates_progress_rows(self, progression, build):
        cohort = await build.cohort()
        for number in range(3):
            await build.week(cohort, number)

        rows = await progression.cohorts.enroll(1, cohort)
        assert [row.is_unlocked for row in rows] == [True, False, False]
        assert rows[0].unlocked_at is not None
        assert rows[1].unlocked_at is None
        assert await progression.cohorts.is_enrolled(1, cohort.id) is True

    @pytest.mark.asyncio
    async def test_enroll_is_idempotent(self, progression, build):
        cohort = await build.cohort()
        await build.week(cohort, 0)
        seen = []
        progression.events.subscribe(COHORT_ENROLLED, lambda event: seen.append(event.user_id))

        first = await progression.cohorts.enroll(1, cohort)
        second = await progression.cohorts.enroll(1, cohort)
        assert [row.id for row in first] == [row.id for row in second]
        assert seen == [1]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["draft", "completed", "archived"])
    async def test_closed_cohort_rejects_enrollment(self, progression, build, status):
        cohort = await build.cohort(status=status)
        with pytest.raises(PreconditionError, match="not open for enrollment"):
            await progression.cohorts.enroll(1, cohort)
