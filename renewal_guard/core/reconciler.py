"""
Schedule-change reconciliation.

Keeps a record's renewal date consistent with its schedule on the
create and update paths. Only three things may change a renewal date:
a schedule change (handled here), a calculation version change
(handled by the migration manager) or an explicit user edit.
"""

from datetime import datetime

from .recurrence import next_occurrence
from .schedule import RecurrenceSchedule
from renewal_guard.storage.models import BillingRecord


def assign_initial_renewal(record: BillingRecord, now: datetime) -> BillingRecord:
    """Fill in the renewal date of a record about to be created.

    Only Active records without a renewal date are computed; anything
    else is returned as given.
    """
    if not record.is_active or record.renewal_date is not None:
        return record
    renewal = next_occurrence(
        record.anchor_date, record.schedule, record.calculation_version, now
    )
    return record.with_changes(renewal_date=renewal)


def reconcile_schedule_change(record: BillingRecord, new_schedule, now: datetime) -> BillingRecord:
    """Apply a schedule change, preserving the billing anniversary.

    The renewal date is recomputed from the original anchor date (not
    from the previous renewal date) under the new schedule and the
    record's current calculation version, so Monthly -> Annual keeps the
    same day of month. Records without an anchor are computed from
    ``now``.

    Args:
        record: Record as currently stored
        new_schedule: Schedule being applied (member or name)
        now: Reference instant

    Returns:
        The same object when the schedule is unchanged, otherwise an
        updated copy

    Raises:
        InvalidScheduleError: If new_schedule is unknown
    """
    new_schedule = RecurrenceSchedule.parse(new_schedule)
    if new_schedule == record.schedule:
        return record

    updated = record.with_changes(schedule=new_schedule)
    if not updated.is_active:
        return updated

    renewal = next_occurrence(
        record.anchor_date, new_schedule, record.calculation_version, now
    )
    return updated.with_changes(renewal_date=renewal)


def apply_record_edit(original: BillingRecord, edited: BillingRecord, now: datetime) -> BillingRecord:
    """Merge an ordinary edit into a stored record.

    A schedule change goes through the reconciler. An Active record left
    without a renewal date gets one computed. Any other renewal date on
    the edit is kept as an explicit user override; field edits such as
    name or status never trigger a recomputation. The calculation
    version always stays that of the stored record.

    Raises:
        ValueError: If the edit targets a different record
    """
    if edited.id != original.id:
        raise ValueError(f"Cannot apply edit of record {edited.id} to record {original.id}")

    merged = edited.with_changes(
        calculation_version=original.calculation_version,
        schedule=original.schedule
    )
    if edited.schedule != original.schedule:
        merged = reconcile_schedule_change(merged, edited.schedule, now)
    if merged.renewal_date is None:
        merged = assign_initial_renewal(merged, now)
    return merged
