"""
Data models for storage layer.

Defines billing records and audit log entries.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from renewal_guard.core.schedule import CalculationVersion, RecurrenceSchedule


class RecordStatus(Enum):
    """Lifecycle status of a billing record."""
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    PAUSED = "Paused"
    TRIAL = "Trial"

    @classmethod
    def parse(cls, value: Union["RecordStatus", str]) -> "RecordStatus":
        """Resolve a status from a member or its case-insensitive name.

        Raises:
            ValueError: If the value is not a known status
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            wanted = value.strip().lower()
            for status in cls:
                if status.value.lower() == wanted:
                    return status
        valid = [status.value for status in cls]
        raise ValueError(f"Unknown record status: {value!r} (expected one of {valid})")


class AuditAction(Enum):
    """Kind of audit log entry."""
    MIGRATE = "migrate"
    ROLLBACK = "rollback"
    SIGNIFICANT_DIFFERENCE = "significant_difference"


ROLLBACK_PREFIX = "ROLLBACK: "

# Actions that move a record's calculation version
VERSION_CHANGING_ACTIONS = (AuditAction.MIGRATE, AuditAction.ROLLBACK)


def _require_aware(name: str, value: Optional[datetime]) -> None:
    if value is not None and value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")


@dataclass(frozen=True)
class BillingRecord:
    """Date-relevant view of a recurring billing obligation.

    ``calculation_version`` is never stored on the record row. It is
    derived from the record's audit stream when the record is loaded.
    """
    name: str
    schedule: RecurrenceSchedule
    status: RecordStatus = RecordStatus.ACTIVE
    anchor_date: Optional[datetime] = None
    renewal_date: Optional[datetime] = None
    calculation_version: CalculationVersion = CalculationVersion.LEGACY
    cancellation_date: Optional[datetime] = None
    last_reminder_renewal_date: Optional[datetime] = None
    last_cancellation_reminder_date: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        """Normalise enum fields and validate dates carry an offset."""
        object.__setattr__(self, "schedule", RecurrenceSchedule.parse(self.schedule))
        object.__setattr__(self, "status", RecordStatus.parse(self.status))
        object.__setattr__(
            self, "calculation_version", CalculationVersion.parse(self.calculation_version)
        )
        if not self.name:
            raise ValueError("name cannot be empty")
        _require_aware("anchor_date", self.anchor_date)
        _require_aware("renewal_date", self.renewal_date)
        _require_aware("cancellation_date", self.cancellation_date)
        _require_aware("last_reminder_renewal_date", self.last_reminder_renewal_date)
        _require_aware(
            "last_cancellation_reminder_date", self.last_cancellation_reminder_date
        )

    @property
    def is_active(self) -> bool:
        return self.status == RecordStatus.ACTIVE

    def with_changes(self, **changes) -> "BillingRecord":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable record of a calculation version transition.

    Entries are append-only: once written they are never modified or
    deleted. They are the only source of a record's pre-migration
    renewal date.
    """
    record_id: int
    old_version: CalculationVersion
    new_version: CalculationVersion
    old_renewal_date: Optional[datetime]
    new_renewal_date: Optional[datetime]
    reason: str
    action: AuditAction
    migrated_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        """Normalise versions and action."""
        object.__setattr__(self, "old_version", CalculationVersion.parse(self.old_version))
        object.__setattr__(self, "new_version", CalculationVersion.parse(self.new_version))
        object.__setattr__(self, "action", AuditAction(self.action))
