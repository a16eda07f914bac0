"""
Calculation version migration.

Moves billing records between the legacy (v1) and anniversary (v2)
date algorithms, one explicit operator action at a time.

Safety properties:
1. Every version change and its audit entry are written in one transaction
2. Compare and dry-run batches never touch a record
3. Rollback restores the exact pre-migration renewal date when the audit
   log has it, and only recomputes when it does not
4. One bad record never stops a batch
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from .recurrence import next_occurrence
from .schedule import CalculationVersion
from renewal_guard.storage.models import (
    ROLLBACK_PREFIX,
    AuditAction,
    AuditLogEntry,
    BillingRecord,
)
from renewal_guard.storage.repository import BillingRepository

logger = logging.getLogger(__name__)

DEFAULT_BATCH_REASON = "Batch migration to V2"
SIGNIFICANT_DIFFERENCE_REASON = "Batch migration - significant difference detected"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VersionComparison:
    """Renewal dates one record would get under each version."""
    record_id: int
    v1_date: datetime
    v2_date: datetime

    @property
    def difference(self) -> timedelta:
        return abs(self.v2_date - self.v1_date)

    @property
    def difference_days(self) -> float:
        """Signed v2 - v1 difference in days."""
        return (self.v2_date - self.v1_date).total_seconds() / 86400


@dataclass
class BatchMigrationReport:
    """Outcome of a batch migration run."""
    dry_run: bool
    processed: int = 0
    migrated: int = 0
    flagged: List[int] = field(default_factory=list)
    failures: List[Tuple[int, str]] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.failures)


@dataclass(frozen=True)
class MigrationStats:
    """Aggregate migration counts."""
    v1_count: int
    v2_count: int
    total_audit_entries: int
    rollback_count: int


class MigrationManager:
    """Orchestrates calculation version transitions for billing records."""

    def __init__(
        self,
        repository: BillingRepository,
        clock: Callable[[], datetime] = utc_now,
        significant_difference_days: int = 7
    ):
        """Create a manager.

        Args:
            repository: Store for records and the audit log
            clock: Source of "now" for every computation
            significant_difference_days: Batch reporting threshold in days
        """
        self.repository = repository
        self.clock = clock
        self.significant_difference = timedelta(days=significant_difference_days)

    def compare(self, record_id: int) -> VersionComparison:
        """Compute a record's renewal date under both versions.

        Read-only: nothing is persisted and no audit entry is written.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        record = self.repository.get_record(record_id)
        return self._compare_record(record, self.clock())

    def _compare_record(self, record: BillingRecord, now: datetime) -> VersionComparison:
        return VersionComparison(
            record_id=record.id,
            v1_date=next_occurrence(
                record.anchor_date, record.schedule, CalculationVersion.LEGACY, now
            ),
            v2_date=next_occurrence(
                record.anchor_date, record.schedule, CalculationVersion.ANNIVERSARY, now
            )
        )

    def migrate_one(self, record_id: int, reason: str) -> Optional[AuditLogEntry]:
        """Move one record to version 2.

        Returns:
            The MIGRATE audit entry, or None if the record was already at v2

        Raises:
            RecordNotFoundError: If the record does not exist
            VersionConflictError: If another writer changed the version first
            sqlite3.Error: If the transaction fails; nothing is written
        """
        record = self.repository.get_record(record_id)
        if record.calculation_version == CalculationVersion.ANNIVERSARY:
            logger.debug("Record %s already at version 2, skipping", record_id)
            return None

        now = self.clock()
        new_renewal = next_occurrence(
            record.anchor_date, record.schedule, CalculationVersion.ANNIVERSARY, now
        )
        entry = self.repository.apply_version_change(
            record_id,
            expected_version=record.calculation_version,
            renewal_date=new_renewal,
            entry=AuditLogEntry(
                record_id=record_id,
                old_version=record.calculation_version,
                new_version=CalculationVersion.ANNIVERSARY,
                old_renewal_date=record.renewal_date,
                new_renewal_date=new_renewal,
                reason=reason,
                action=AuditAction.MIGRATE,
                migrated_at=now
            )
        )
        logger.info(
            "Migrated record %s to version 2: %s -> %s",
            record_id, record.renewal_date, new_renewal
        )
        return entry

    def batch_migrate(self, dry_run: bool, reason: str = DEFAULT_BATCH_REASON) -> BatchMigrationReport:
        """Migrate every version 1 record, or only report in dry-run mode.

        Records whose v1 and v2 dates differ by more than the threshold
        get a SIGNIFICANT_DIFFERENCE entry whether or not this is a dry
        run. Outside dry-run mode such a record therefore ends up with
        two entries: the report and the migration itself.

        Each record is its own transaction. Failures are logged and
        collected in the report; they never abort the batch.
        """
        report = BatchMigrationReport(dry_run=dry_run)
        candidates = self.repository.list_records(version=CalculationVersion.LEGACY)
        logger.info(
            "Starting batch migration of %d records (dry_run=%s)", len(candidates), dry_run
        )

        for record in candidates:
            report.processed += 1
            try:
                self._batch_step(record, dry_run, reason, report)
            except Exception as e:
                logger.exception("Batch migration failed for record %s", record.id)
                report.failures.append((record.id, str(e)))

        logger.info(
            "Batch migration finished: %d processed, %d migrated, %d flagged, %d skipped",
            report.processed, report.migrated, len(report.flagged), report.skipped
        )
        return report

    def _batch_step(
        self,
        record: BillingRecord,
        dry_run: bool,
        reason: str,
        report: BatchMigrationReport
    ) -> None:
        comparison = self.compare(record.id)
        if comparison.difference > self.significant_difference:
            logger.warning(
                "Record %s: v1 %s and v2 %s are %.1f days apart",
                record.id, comparison.v1_date, comparison.v2_date,
                comparison.difference.total_seconds() / 86400
            )
            self.repository.append_audit_entry(AuditLogEntry(
                record_id=record.id,
                old_version=CalculationVersion.LEGACY,
                new_version=CalculationVersion.ANNIVERSARY,
                old_renewal_date=comparison.v1_date,
                new_renewal_date=comparison.v2_date,
                reason=SIGNIFICANT_DIFFERENCE_REASON,
                action=AuditAction.SIGNIFICANT_DIFFERENCE,
                migrated_at=self.clock()
            ))
            report.flagged.append(record.id)

        if not dry_run and self.migrate_one(record.id, reason) is not None:
            report.migrated += 1

    def rollback_one(self, record_id: int, reason: str) -> Optional[AuditLogEntry]:
        """Return one record to version 1.

        The renewal date stored before the latest promotion to v2 is
        restored exactly. Only when no such date exists in the audit log
        is a fresh version 1 date computed.

        Returns:
            The ROLLBACK audit entry, or None if the record was already at v1

        Raises:
            RecordNotFoundError: If the record does not exist
            VersionConflictError: If another writer changed the version first
            sqlite3.Error: If the transaction fails; nothing is written
        """
        record = self.repository.get_record(record_id)
        if record.calculation_version == CalculationVersion.LEGACY:
            logger.debug("Record %s already at version 1, skipping", record_id)
            return None

        now = self.clock()
        promotion = self.repository.latest_promotion(record_id)
        if promotion is not None and promotion.old_renewal_date is not None:
            restored = promotion.old_renewal_date
            logger.info("Restoring record %s renewal date from audit entry %s", record_id, promotion.id)
        else:
            restored = next_occurrence(
                record.anchor_date, record.schedule, CalculationVersion.LEGACY, now
            )
            logger.info("No audit history for record %s, recomputing under version 1", record_id)

        entry = self.repository.apply_version_change(
            record_id,
            expected_version=record.calculation_version,
            renewal_date=restored,
            entry=AuditLogEntry(
                record_id=record_id,
                old_version=record.calculation_version,
                new_version=CalculationVersion.LEGACY,
                old_renewal_date=record.renewal_date,
                new_renewal_date=restored,
                reason=ROLLBACK_PREFIX + reason,
                action=AuditAction.ROLLBACK,
                migrated_at=now
            )
        )
        logger.info(
            "Rolled back record %s to version 1: %s -> %s",
            record_id, record.renewal_date, restored
        )
        return entry

    def stats(self) -> MigrationStats:
        """Aggregate record and audit log counts."""
        by_version = self.repository.count_by_version()
        return MigrationStats(
            v1_count=by_version.get(int(CalculationVersion.LEGACY), 0),
            v2_count=by_version.get(int(CalculationVersion.ANNIVERSARY), 0),
            total_audit_entries=self.repository.count_audit_entries(),
            rollback_count=self.repository.count_audit_entries(AuditAction.ROLLBACK)
        )
