"""
בדיקות ל-Backoff Calculator - app/domain/services/backoff.py

מכסה:
- calculate_backoff_seconds: הכפלה, תקרה, קלט שלילי/קיצוני (כולל hypothesis)
- לוח זמנים מדורג עם זנב קבוע (nudge / drip)
- is_nudge_due / is_drip_followup_due: תקרת ניסיונות וסף שקט
"""
from datetime import datetime, timedelta

import pytest
from hypothesis import given
from hypothesis.strategies import integers

from app.domain.services.backoff import (
    calculate_backoff_seconds,
    drip_interval_seconds,
    is_drip_followup_due,
    is_nudge_due,
    next_eligible_at,
    nudge_threshold_seconds,
    schedule_step_seconds,
)

NOW = datetime(2026, 3, 10, 16, 0, 0)
NUDGE_SCHEDULE = [900, 1800, 3600, 14400, 28800, 86400]


class TestCalculateBackoff:

    @pytest.mark.unit
    def test_doubles_per_retry(self):
        assert calculate_backoff_seconds(0, base_seconds=30, max_backoff_seconds=3600) == 30
        assert calculate_backoff_seconds(1, base_seconds=30, max_backoff_seconds=3600) == 60
        assert calculate_backoff_seconds(3, base_seconds=30, max_backoff_seconds=3600) == 240

    @pytest.mark.unit
    def test_capped_at_max(self):
        assert calculate_backoff_seconds(10, base_seconds=30, max_backoff_seconds=3600) == 3600

    @pytest.mark.unit
    def test_huge_retry_count_does_not_overflow(self):
        """retry_count ענק - לא מחשבים 2**n בפועל"""
        assert calculate_backoff_seconds(10**9, base_seconds=30, max_backoff_seconds=3600) == 3600

    @pytest.mark.unit
    def test_negative_retry_treated_as_zero(self):
        assert calculate_backoff_seconds(-5, base_seconds=30, max_backoff_seconds=3600) == 30

    @pytest.mark.unit
    def test_non_positive_base_returns_zero(self):
        assert calculate_backoff_seconds(2, base_seconds=0, max_backoff_seconds=3600) == 0

    @pytest.mark.unit
    def test_base_above_max_returns_max(self):
        assert calculate_backoff_seconds(0, base_seconds=5000, max_backoff_seconds=3600) == 3600

    @pytest.mark.unit
    @given(
        retry_count=integers(min_value=0, max_value=200),
        base=integers(min_value=1, max_value=10_000),
        cap=integers(min_value=1, max_value=100_000),
    )
    def test_matches_naive_formula(self, retry_count, base, cap):
        """האופטימיזציה עם bit_length שקולה לנוסחה הנאיבית"""
        expected = min(base * (2 ** retry_count), cap)
        assert calculate_backoff_seconds(retry_count, base_seconds=base, max_backoff_seconds=cap) == expected

    @pytest.mark.unit
    @given(retry_count=integers(min_value=0, max_value=60))
    def test_monotonic_non_decreasing(self, retry_count):
        current = calculate_backoff_seconds(retry_count, base_seconds=30, max_backoff_seconds=3600)
        following = calculate_backoff_seconds(retry_count + 1, base_seconds=30, max_backoff_seconds=3600)
        assert following >= current


class TestSchedules:

    @pytest.mark.unit
    def test_schedule_step_reuses_last_value(self):
        assert schedule_step_seconds(0, [10, 20, 30]) == 10
        assert schedule_step_seconds(2, [10, 20, 30]) == 30
        assert schedule_step_seconds(7, [10, 20, 30]) == 30

    @pytest.mark.unit
    def test_schedule_step_negative_attempt(self):
        assert schedule_step_seconds(-1, [10, 20]) == 10

    @pytest.mark.unit
    def test_empty_schedule_rejected(self):
        with pytest.raises(ValueError):
            schedule_step_seconds(0, [])

    @pytest.mark.unit
    def test_default_nudge_schedule_is_escalating_then_daily(self):
        assert nudge_threshold_seconds(0) == 15 * 60
        assert nudge_threshold_seconds(1) == 30 * 60
        assert nudge_threshold_seconds(2) == 60 * 60
        assert nudge_threshold_seconds(5) == 24 * 3600
        assert nudge_threshold_seconds(40) == 24 * 3600

    @pytest.mark.unit
    def test_default_drip_schedule_flat_after_one_hour(self):
        assert [drip_interval_seconds(i) for i in range(6)] == [900, 1800, 3600, 14400, 14400, 14400]

    @pytest.mark.unit
    def test_next_eligible_at(self):
        assert next_eligible_at(NOW, 900) == NOW + timedelta(minutes=15)


class TestIsNudgeDue:

    @pytest.mark.unit
    def test_not_due_before_threshold(self):
        last = NOW - timedelta(minutes=14)
        assert not is_nudge_due(last, 0, NOW, max_count=6, schedule=NUDGE_SCHEDULE)

    @pytest.mark.unit
    def test_due_at_threshold(self):
        last = NOW - timedelta(minutes=15)
        assert is_nudge_due(last, 0, NOW, max_count=6, schedule=NUDGE_SCHEDULE)

    @pytest.mark.unit
    def test_threshold_escalates_with_count(self):
        last = NOW - timedelta(minutes=20)
        assert is_nudge_due(last, 0, NOW, max_count=6, schedule=NUDGE_SCHEDULE)
        assert not is_nudge_due(last, 1, NOW, max_count=6, schedule=NUDGE_SCHEDULE)

    @pytest.mark.unit
    def test_cap_blocks_forever(self):
        last = NOW - timedelta(days=30)
        assert not is_nudge_due(last, 6, NOW, max_count=6, schedule=NUDGE_SCHEDULE)

    @pytest.mark.unit
    def test_missing_activity_never_due(self):
        assert not is_nudge_due(None, 0, NOW, max_count=6, schedule=NUDGE_SCHEDULE)

    @pytest.mark.unit
    @given(count=integers(min_value=0, max_value=50), idle_minutes=integers(min_value=0, max_value=60 * 24 * 10))
    def test_never_due_at_or_above_cap(self, count, idle_minutes):
        last = NOW - timedelta(minutes=idle_minutes)
        due = is_nudge_due(last, count, NOW, max_count=6, schedule=NUDGE_SCHEDULE)
        if count >= 6:
            assert not due


class TestIsDripFollowupDue:

    @pytest.mark.unit
    def test_first_followup_after_fifteen_minutes(self):
        assert not is_drip_followup_due(NOW - timedelta(minutes=14), 0, NOW)
        assert is_drip_followup_due(NOW - timedelta(minutes=15), 0, NOW)

    @pytest.mark.unit
    def test_capped_at_max_attempts(self):
        assert not is_drip_followup_due(NOW - timedelta(days=2), 4, NOW, max_attempts=4)
