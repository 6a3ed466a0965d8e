"""
Backoff Calculator - pure functions mapping an attempt count to the next
eligible time. Shared by the nudge cadence, the drip cadence and the
failed-outbound retry pass.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import DateTime, case, literal
from sqlalchemy.sql.elements import ColumnElement

from app.core.config import settings


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff with a hard upper bound:
        backoff = base_seconds * (2 ** retry_count), capped at max_backoff_seconds

    Avoids computing huge powers when retry_count is unexpectedly large.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # Is 2**retry_count >= ceil(max/base)? Answer it with bit_length instead of the power.
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


def schedule_step_seconds(attempt: int, schedule: Sequence[int]) -> int:
    """
    Threshold for the given attempt from an escalating schedule.

    Attempts past the end of the schedule reuse its last value (the flat tail).
    """
    if not schedule:
        raise ValueError("schedule must not be empty")
    index = min(max(attempt, 0), len(schedule) - 1)
    return schedule[index]


def nudge_threshold_seconds(nudge_count: int, schedule: Sequence[int] | None = None) -> int:
    """Idle time a previously-engaged lead must reach before nudge #nudge_count+1."""
    return schedule_step_seconds(nudge_count, schedule or settings.nudge_schedule)


def drip_interval_seconds(attempt: int, schedule: Sequence[int] | None = None) -> int:
    """Wait after the previous drip send before drip follow-up #attempt+1."""
    return schedule_step_seconds(attempt, schedule or settings.drip_schedule)


def next_eligible_at(last_activity: datetime, threshold_seconds: int) -> datetime:
    return last_activity + timedelta(seconds=threshold_seconds)


def is_nudge_due(
    last_activity: datetime | None,
    nudge_count: int,
    now: datetime,
    *,
    max_count: int | None = None,
    schedule: Sequence[int] | None = None,
) -> bool:
    """True when nudge_count is under the cap and idle time passed its threshold."""
    cap = settings.NUDGE_MAX_COUNT if max_count is None else max_count
    if nudge_count >= cap or last_activity is None:
        return False
    return now >= next_eligible_at(last_activity, nudge_threshold_seconds(nudge_count, schedule))


def is_drip_followup_due(
    last_activity: datetime | None,
    attempt: int,
    now: datetime,
    *,
    max_attempts: int | None = None,
    schedule: Sequence[int] | None = None,
) -> bool:
    cap = settings.DRIP_MAX_ATTEMPTS if max_attempts is None else max_attempts
    if attempt >= cap or last_activity is None:
        return False
    return now >= next_eligible_at(last_activity, drip_interval_seconds(attempt, schedule))


def idle_past_schedule(
    activity_column,
    count_column,
    now: datetime,
    schedule: Sequence[int],
) -> ColumnElement[bool]:
    """
    SQL form of the escalating threshold: activity at or before
    now - schedule[count], with counts past the end using the last step.

    Filtering in the WHERE clause keeps LIMIT from filling a batch with leads
    that are not due yet.
    """
    if not schedule:
        raise ValueError("schedule must not be empty")
    tail = literal(now - timedelta(seconds=schedule[-1]), DateTime())
    cutoffs = {
        index: literal(now - timedelta(seconds=step), DateTime())
        for index, step in enumerate(schedule[:-1])
    }
    if not cutoffs:
        return activity_column <= tail
    return activity_column <= case(cutoffs, value=count_column, else_=tail)
