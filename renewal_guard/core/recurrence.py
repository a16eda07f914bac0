"""
Recurrence date engine.

Computes the next occurrence of a billing schedule from its anchor date.

Two resolution policies exist for month-based schedules:
1. Version 1 (legacy) - a day-of-month missing from the target month
   overflows into the next month (Jan 31 + 1 month = Mar 3)
2. Version 2 (anniversary) - the day is clamped to the last valid day
   of the target month (Jan 31 + 1 month = Feb 28)

Daily and weekly schedules are exact day counts and agree under both.
Everything here is pure: no clock reads, no shared state.
"""

from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from .schedule import CalculationVersion, RecurrenceSchedule


def add_periods(
    anchor: datetime,
    schedule: RecurrenceSchedule,
    count: int,
    version: CalculationVersion
) -> datetime:
    """Advance an anchor by a whole number of schedule periods.

    The offset is always applied to the anchor itself, never to an
    intermediate result, so day-of-month is measured against the
    anchor for every count.

    Args:
        anchor: Date to advance (time of day and tzinfo are kept)
        schedule: Billing schedule defining the period
        count: Number of periods to add (>= 0)
        version: Month-end resolution policy

    Returns:
        The advanced datetime
    """
    if schedule.days is not None:
        return anchor + timedelta(days=schedule.days * count)

    months = schedule.months * count
    if version == CalculationVersion.ANNIVERSARY:
        return anchor + relativedelta(months=months)
    return _add_months_overflowing(anchor, months)


def _add_months_overflowing(anchor: datetime, months: int) -> datetime:
    """Add calendar months, letting surplus days spill into the next month."""
    zero_based = anchor.month - 1 + months
    year = anchor.year + zero_based // 12
    month = zero_based % 12 + 1
    first_of_month = anchor.replace(year=year, month=month, day=1)
    return first_of_month + timedelta(days=anchor.day - 1)


def next_occurrence(
    anchor: Optional[datetime],
    schedule,
    version,
    now: datetime
) -> datetime:
    """Compute the next occurrence strictly after ``now``.

    Past anchors are advanced until the candidate is strictly later
    than ``now``. A candidate equal to ``now`` is treated as already
    passed.

    Version 1 steps one period at a time from the previous candidate,
    so an overflowed day carries into every later step (Jan 31, Mar 3,
    Apr 3, ...). Version 2 measures every step from the anchor itself,
    which keeps month ends (Jan 31, Feb 28, Mar 31, ...).

    Args:
        anchor: Historical start date, or None to anchor at ``now``
        schedule: RecurrenceSchedule member or schedule name
        version: Calculation version (1 or 2)
        now: Reference instant

    Returns:
        Next occurrence, in the anchor's timezone

    Raises:
        InvalidScheduleError: If the schedule is unknown
        InvalidVersionError: If the version is not 1 or 2
        ValueError: If only one of ``anchor`` and ``now`` is timezone-aware
    """
    schedule = RecurrenceSchedule.parse(schedule)
    version = CalculationVersion.parse(version)

    if anchor is None:
        return add_periods(now, schedule, 1, version)
    if (anchor.tzinfo is None) != (now.tzinfo is None):
        raise ValueError("anchor and now must both be timezone-aware or both naive")

    if version == CalculationVersion.LEGACY:
        candidate = add_periods(anchor, schedule, 1, version)
        while candidate <= now:
            candidate = add_periods(candidate, schedule, 1, version)
        return candidate

    count = 1
    candidate = add_periods(anchor, schedule, count, version)
    while candidate <= now:
        count += 1
        candidate = add_periods(anchor, schedule, count, version)
    return candidate
