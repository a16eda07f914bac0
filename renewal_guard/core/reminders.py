"""
Reminder windows.

Decides which records are due a renewal or cancellation reminder. A
reminder is sent at most once per date: the date it was last sent for
is stored on the record and compared with the current date.
"""

import math
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from renewal_guard.storage.models import BillingRecord, RecordStatus


def days_until(target: datetime, now: datetime) -> int:
    """Whole days from ``now`` until ``target``, never negative."""
    hours = (target - now).total_seconds() / 3600
    return max(0, math.floor(hours / 24))


def _due(
    records: Iterable[BillingRecord],
    reminder_days: int,
    now: datetime,
    status: RecordStatus,
    date_field: str,
    sent_field: str
) -> List[Tuple[BillingRecord, int]]:
    if reminder_days <= 0:
        return []

    window_end = now + timedelta(days=reminder_days)
    due = []
    for record in records:
        if record.status != status:
            continue
        target: Optional[datetime] = getattr(record, date_field)
        if target is None or target < now or target > window_end:
            continue
        if getattr(record, sent_field) == target:
            continue  # Already reminded for this exact date
        due.append((record, days_until(target, now)))

    due.sort(key=lambda item: getattr(item[0], date_field))
    return due


def due_renewal_reminders(
    records: Iterable[BillingRecord],
    reminder_days: int,
    now: datetime
) -> List[Tuple[BillingRecord, int]]:
    """Active records renewing within ``reminder_days`` and not yet reminded.

    Returns:
        (record, days until renewal) pairs, soonest first
    """
    return _due(
        records, reminder_days, now,
        RecordStatus.ACTIVE, "renewal_date", "last_reminder_renewal_date"
    )


def due_cancellation_reminders(
    records: Iterable[BillingRecord],
    reminder_days: int,
    now: datetime
) -> List[Tuple[BillingRecord, int]]:
    """Cancelled records ending within ``reminder_days`` and not yet reminded.

    Returns:
        (record, days until cancellation) pairs, soonest first
    """
    return _due(
        records, reminder_days, now,
        RecordStatus.CANCELLED, "cancellation_date", "last_cancellation_reminder_date"
    )
