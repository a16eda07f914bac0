"""
Unit tests for storage layer.

Tests schema creation, record persistence, version folding and the
append-only audit log.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from renewal_guard.core.schedule import CalculationVersion, RecurrenceSchedule
from renewal_guard.storage.db import get_connection
from renewal_guard.storage.models import (
    AuditAction,
    AuditLogEntry,
    BillingRecord,
    RecordStatus,
)
from renewal_guard.storage.repository import (
    BillingRepository,
    RecordNotFoundError,
    VersionConflictError,
    get_repository,
    initialize_schema,
)

UTC = timezone.utc


def dt(year, month, day):
    return datetime(year, month, day, tzinfo=UTC)


class StorageTestCase:
    """Shared temporary database setup."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.db")
        initialize_schema(self.db_path)
        self.repository = BillingRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        self.temp_dir.cleanup()

    def create_record(self, **overrides) -> BillingRecord:
        fields = dict(
            name="Streaming",
            schedule=RecurrenceSchedule.MONTHLY,
            anchor_date=dt(2025, 1, 31),
            renewal_date=dt(2025, 3, 3),
        )
        fields.update(overrides)
        return self.repository.create_record(BillingRecord(**fields))

    def migrate_entry(self, record, new_renewal, action=AuditAction.MIGRATE) -> AuditLogEntry:
        return AuditLogEntry(
            record_id=record.id,
            old_version=CalculationVersion.LEGACY,
            new_version=CalculationVersion.ANNIVERSARY,
            old_renewal_date=record.renewal_date,
            new_renewal_date=new_renewal,
            reason="test migration",
            action=action
        )


class TestStorageSchema(StorageTestCase):
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            )
            tables = {row[0] for row in cursor.fetchall()}
            assert {"billing_record", "calculation_audit_log"} <= tables

            cursor = conn.execute("PRAGMA table_info(billing_record)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert "calculation_version" not in column_names
        finally:
            conn.close()

    def test_schema_creation_is_idempotent(self):
        initialize_schema(self.db_path)
        initialize_schema(self.db_path)


class TestRecordPersistence(StorageTestCase):
    """Test record insertion and retrieval."""

    def test_create_and_get_record(self):
        created = self.create_record()
        assert created.id is not None

        loaded = self.repository.get_record(created.id)
        assert loaded.name == "Streaming"
        assert loaded.schedule == RecurrenceSchedule.MONTHLY
        assert loaded.status == RecordStatus.ACTIVE
        assert loaded.anchor_date == dt(2025, 1, 31)
        assert loaded.renewal_date == dt(2025, 3, 3)
        assert loaded.calculation_version == CalculationVersion.LEGACY

    def test_offsets_survive_round_trip(self):
        offset = timezone(timedelta(hours=5, minutes=30))
        anchor = datetime(2025, 1, 31, 9, 15, tzinfo=offset)
        created = self.create_record(anchor_date=anchor)

        loaded = self.repository.get_record(created.id)
        assert loaded.anchor_date == anchor
        assert loaded.anchor_date.utcoffset() == timedelta(hours=5, minutes=30)

    def test_naive_dates_are_rejected(self):
        with pytest.raises(ValueError, match="timezone-aware"):
            BillingRecord(
                name="Naive",
                schedule=RecurrenceSchedule.MONTHLY,
                anchor_date=datetime(2025, 1, 31)
            )

    def test_missing_record_raises(self):
        with pytest.raises(RecordNotFoundError):
            self.repository.get_record(999)

    def test_save_record_keeps_version(self):
        created = self.create_record(calculation_version=CalculationVersion.ANNIVERSARY)
        edited = created.with_changes(name="Music", calculation_version=CalculationVersion.LEGACY)

        self.repository.save_record(edited, expected_version=CalculationVersion.ANNIVERSARY)

        loaded = self.repository.get_record(created.id)
        assert loaded.name == "Music"
        assert loaded.calculation_version == CalculationVersion.ANNIVERSARY

    def test_save_record_refuses_version_mismatch(self):
        created = self.create_record()
        edited = created.with_changes(renewal_date=dt(2025, 4, 1))

        with pytest.raises(VersionConflictError):
            self.repository.save_record(edited, expected_version=CalculationVersion.ANNIVERSARY)

        assert self.repository.get_record(created.id).renewal_date == dt(2025, 3, 3)

    def test_save_missing_record_raises(self):
        record = BillingRecord(id=42, name="Ghost", schedule=RecurrenceSchedule.DAILY)
        with pytest.raises(RecordNotFoundError):
            self.repository.save_record(record, expected_version=CalculationVersion.LEGACY)

    def test_list_records_by_version(self):
        first = self.create_record(name="first")
        second = self.create_record(name="second", calculation_version=CalculationVersion.ANNIVERSARY)

        assert [r.id for r in self.repository.list_records()] == [first.id, second.id]
        assert [r.id for r in self.repository.list_records(version=1)] == [first.id]
        assert [r.id for r in self.repository.list_records(version=2)] == [second.id]

    def test_reminder_bookkeeping(self):
        created = self.create_record()
        self.repository.mark_renewal_reminder_sent(created.id, dt(2025, 3, 3))
        self.repository.mark_cancellation_reminder_sent(created.id, dt(2025, 4, 1))

        loaded = self.repository.get_record(created.id)
        assert loaded.last_reminder_renewal_date == dt(2025, 3, 3)
        assert loaded.last_cancellation_reminder_date == dt(2025, 4, 1)

    def test_get_repository_is_shared_per_path(self):
        assert get_repository(self.db_path) is get_repository(self.db_path)


class TestVersionFolding(StorageTestCase):
    """Test that the current version is derived from the audit stream."""

    def test_record_created_at_v2_has_migrate_entry(self):
        created = self.create_record(calculation_version=CalculationVersion.ANNIVERSARY)

        entries = self.repository.list_audit_entries(created.id)
        assert len(entries) == 1
        assert entries[0].action == AuditAction.MIGRATE
        assert entries[0].old_renewal_date is None
        assert self.repository.get_record(created.id).calculation_version == 2

    def test_apply_version_change_updates_record_and_log(self):
        created = self.create_record()
        stored = self.repository.apply_version_change(
            created.id,
            expected_version=1,
            renewal_date=dt(2025, 2, 28),
            entry=self.migrate_entry(created, dt(2025, 2, 28))
        )

        assert stored.id is not None
        assert stored.migrated_at is not None
        loaded = self.repository.get_record(created.id)
        assert loaded.calculation_version == CalculationVersion.ANNIVERSARY
        assert loaded.renewal_date == dt(2025, 2, 28)
        assert self.repository.latest_promotion(created.id) == stored

    def test_stale_expected_version_writes_nothing(self):
        created = self.create_record()

        with pytest.raises(VersionConflictError):
            self.repository.apply_version_change(
                created.id,
                expected_version=2,
                renewal_date=dt(2025, 2, 28),
                entry=self.migrate_entry(created, dt(2025, 2, 28))
            )

        loaded = self.repository.get_record(created.id)
        assert loaded.renewal_date == dt(2025, 3, 3)
        assert self.repository.list_audit_entries(created.id) == []

    def test_failed_audit_insert_rolls_back_record_update(self):
        """An audit entry that cannot be written leaves the record untouched."""
        created = self.create_record()
        orphan = AuditLogEntry(
            record_id=created.id + 100,
            old_version=1,
            new_version=2,
            old_renewal_date=None,
            new_renewal_date=dt(2025, 2, 28),
            reason="orphan",
            action=AuditAction.MIGRATE
        )

        with pytest.raises(sqlite3.IntegrityError):
            self.repository.apply_version_change(
                created.id, expected_version=1, renewal_date=dt(2025, 2, 28), entry=orphan
            )

        loaded = self.repository.get_record(created.id)
        assert loaded.renewal_date == dt(2025, 3, 3)
        assert loaded.calculation_version == CalculationVersion.LEGACY

    def test_version_change_on_missing_record(self):
        created = self.create_record()
        with pytest.raises(RecordNotFoundError):
            self.repository.apply_version_change(
                999, expected_version=1, renewal_date=None,
                entry=self.migrate_entry(created, None)
            )

    def test_reporting_entries_do_not_move_version(self):
        created = self.create_record()
        self.repository.append_audit_entry(
            self.migrate_entry(created, dt(2025, 2, 28), action=AuditAction.SIGNIFICANT_DIFFERENCE)
        )

        assert self.repository.get_record(created.id).calculation_version == 1
        assert self.repository.latest_promotion(created.id) is None

    def test_entry_kinds_go_through_the_right_call(self):
        created = self.create_record()
        with pytest.raises(ValueError):
            self.repository.append_audit_entry(self.migrate_entry(created, dt(2025, 2, 28)))
        with pytest.raises(ValueError):
            self.repository.apply_version_change(
                created.id, 1, dt(2025, 2, 28),
                self.migrate_entry(created, dt(2025, 2, 28), action=AuditAction.SIGNIFICANT_DIFFERENCE)
            )

    def test_counts(self):
        self.create_record()
        self.create_record(calculation_version=CalculationVersion.ANNIVERSARY)
        self.create_record(calculation_version=CalculationVersion.ANNIVERSARY)

        assert self.repository.count_by_version() == {1: 1, 2: 2}
        assert self.repository.count_audit_entries() == 2
        assert self.repository.count_audit_entries(AuditAction.ROLLBACK) == 0


class TestAppendOnlyNature(StorageTestCase):
    """Test that the audit log maintains append-only behavior."""

    def test_update_is_rejected_by_database(self):
        created = self.create_record(calculation_version=CalculationVersion.ANNIVERSARY)
        conn = get_connection(self.db_path)
        try:
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("UPDATE calculation_audit_log SET reason = 'edited'")
        finally:
            conn.close()
        assert self.repository.list_audit_entries(created.id)[0].reason != "edited"

    def test_delete_is_rejected_by_database(self):
        self.create_record(calculation_version=CalculationVersion.ANNIVERSARY)
        conn = get_connection(self.db_path)
        try:
            with pytest.raises(sqlite3.DatabaseError, match="append-only"):
                conn.execute("DELETE FROM calculation_audit_log")
        finally:
            conn.close()
        assert self.repository.count_audit_entries() == 1

    def test_no_audit_mutation_methods_exist(self):
        """The repository exposes no way to edit or remove audit entries."""
        methods = [name for name in dir(BillingRepository) if not name.startswith('_')]
        for name in methods:
            lowered = name.lower()
            assert 'delete' not in lowered
            assert 'remove' not in lowered
            if 'audit' in lowered:
                assert 'update' not in lowered
