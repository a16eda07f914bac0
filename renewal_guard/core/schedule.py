"""
Recurrence schedules and calculation versions.

Closed sets of values accepted by the recurrence engine.
"""

from enum import Enum, IntEnum
from typing import Optional, Union


class InvalidScheduleError(ValueError):
    """Raised when a value does not name a known recurrence schedule."""


class InvalidVersionError(ValueError):
    """Raised when a calculation version is not 1 or 2."""


class RecurrenceSchedule(Enum):
    """Supported billing schedules."""
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUAL = "Annual"

    @property
    def days(self) -> Optional[int]:
        """Period length in days for day-based schedules, else None."""
        return _PERIOD_DAYS.get(self)

    @property
    def months(self) -> Optional[int]:
        """Period length in calendar months for month-based schedules, else None."""
        return _PERIOD_MONTHS.get(self)

    @classmethod
    def parse(cls, value: Union["RecurrenceSchedule", str, None]) -> "RecurrenceSchedule":
        """Resolve a schedule from a member or its name.

        Matching is case-insensitive. Unknown or empty values are
        rejected rather than mapped to a default schedule.

        Raises:
            InvalidScheduleError: If the value is not a known schedule
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise InvalidScheduleError(f"Unknown recurrence schedule: {value!r}")

        wanted = value.strip().lower()
        for schedule in cls:
            if schedule.value.lower() == wanted:
                return schedule

        valid = [schedule.value for schedule in cls]
        raise InvalidScheduleError(
            f"Unknown recurrence schedule: {value!r} (expected one of {valid})"
        )


_PERIOD_DAYS = {
    RecurrenceSchedule.DAILY: 1,
    RecurrenceSchedule.WEEKLY: 7,
}

_PERIOD_MONTHS = {
    RecurrenceSchedule.MONTHLY: 1,
    RecurrenceSchedule.QUARTERLY: 3,
    RecurrenceSchedule.ANNUAL: 12,
}


class CalculationVersion(IntEnum):
    """Algorithm used to resolve month-end overflow."""
    LEGACY = 1       # Overflow spills into the following month
    ANNIVERSARY = 2  # Overflow clamps to the last day of the month

    @classmethod
    def parse(cls, value) -> "CalculationVersion":
        """Resolve a version from an integer.

        Raises:
            InvalidVersionError: If the value is anything other than 1 or 2
        """
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidVersionError(
                f"calculation version must be the integer 1 or 2, got {value!r}"
            )
        try:
            return cls(value)
        except ValueError:
            raise InvalidVersionError(
                f"calculation version must be 1 or 2, got {value!r}"
            )
