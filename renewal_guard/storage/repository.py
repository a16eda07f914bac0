"""
Repository pattern for data access.

Handles database operations for billing records and the audit log.

A record's calculation version is not a column. It is folded from the
record's audit stream: the new version of its latest MIGRATE or
ROLLBACK entry, or 1 when it has none. Writing a version change and
its audit entry is therefore a single append plus a renewal date
update inside one transaction.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    VERSION_CHANGING_ACTIONS,
    AuditAction,
    AuditLogEntry,
    BillingRecord,
)
from renewal_guard.core.schedule import CalculationVersion


class RecordNotFoundError(LookupError):
    """Raised when a billing record id does not exist."""

    def __init__(self, record_id: int):
        super().__init__(f"Billing record {record_id} not found")
        self.record_id = record_id


class VersionConflictError(RuntimeError):
    """Raised when a record's version changed underneath a pending write."""

    def __init__(self, record_id: int, expected: int, actual: int):
        super().__init__(
            f"Billing record {record_id} is at calculation version {actual}, "
            f"expected {expected}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


_CHANGING_ACTIONS_SQL = ", ".join(f"'{action.value}'" for action in VERSION_CHANGING_ACTIONS)

# Fold of the audit stream into the current calculation version
_CURRENT_VERSION_SQL = f"""
    COALESCE((
        SELECT a.new_version FROM calculation_audit_log a
        WHERE a.record_id = r.id AND a.action IN ({_CHANGING_ACTIONS_SQL})
        ORDER BY a.id DESC LIMIT 1
    ), 1)
"""

_RECORD_COLUMNS = """
    r.id, r.name, r.schedule, r.status, r.anchor_date, r.renewal_date,
    r.cancellation_date, r.last_reminder_renewal_date,
    r.last_cancellation_reminder_date
"""

_AUDIT_COLUMNS = """
    id, record_id, old_version, new_version, old_renewal_date,
    new_renewal_date, reason, action, migrated_at
"""


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _row_to_record(row) -> BillingRecord:
    return BillingRecord(
        id=row[0],
        name=row[1],
        schedule=row[2],
        status=row[3],
        anchor_date=_from_text(row[4]),
        renewal_date=_from_text(row[5]),
        cancellation_date=_from_text(row[6]),
        last_reminder_renewal_date=_from_text(row[7]),
        last_cancellation_reminder_date=_from_text(row[8]),
        calculation_version=row[9]
    )


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row[0],
        record_id=row[1],
        old_version=row[2],
        new_version=row[3],
        old_renewal_date=_from_text(row[4]),
        new_renewal_date=_from_text(row[5]),
        reason=row[6],
        action=row[7],
        migrated_at=_from_text(row[8])
    )


def _current_version(conn, record_id: int) -> int:
    """Fold the audit stream of one record inside an open connection."""
    cursor = conn.execute(
        f"SELECT {_CURRENT_VERSION_SQL} FROM billing_record r WHERE r.id = ?",
        (record_id,)
    )
    row = cursor.fetchone()
    if row is None:
        raise RecordNotFoundError(record_id)
    return row[0]


def _insert_entry(conn, entry: AuditLogEntry) -> AuditLogEntry:
    migrated_at = entry.migrated_at or datetime.now(timezone.utc)
    cursor = conn.execute("""
        INSERT INTO calculation_audit_log
        (record_id, old_version, new_version, old_renewal_date,
         new_renewal_date, reason, action, migrated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        entry.record_id,
        int(entry.old_version),
        int(entry.new_version),
        _to_text(entry.old_renewal_date),
        _to_text(entry.new_renewal_date),
        entry.reason,
        entry.action.value,
        migrated_at.isoformat()
    ))
    return replace(entry, id=cursor.lastrowid, migrated_at=migrated_at)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the billing record and audit log tables if they don't exist.

    The audit log is append-only: triggers abort any UPDATE or DELETE
    against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS billing_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                schedule TEXT NOT NULL,
                status TEXT NOT NULL,
                anchor_date TEXT,
                renewal_date TEXT,
                cancellation_date TEXT,
                last_reminder_renewal_date TEXT,
                last_cancellation_reminder_date TEXT
            );

            CREATE TABLE IF NOT EXISTS calculation_audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id INTEGER NOT NULL REFERENCES billing_record(id),
                old_version INTEGER NOT NULL CHECK (old_version IN (1, 2)),
                new_version INTEGER NOT NULL CHECK (new_version IN (1, 2)),
                old_renewal_date TEXT,
                new_renewal_date TEXT,
                reason TEXT NOT NULL,
                action TEXT NOT NULL,
                migrated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_record
                ON calculation_audit_log (record_id, id);

            CREATE TRIGGER IF NOT EXISTS audit_log_no_update
            BEFORE UPDATE ON calculation_audit_log
            BEGIN
                SELECT RAISE(ABORT, 'calculation_audit_log is append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
            BEFORE DELETE ON calculation_audit_log
            BEGIN
                SELECT RAISE(ABORT, 'calculation_audit_log is append-only');
            END;
        """)
    finally:
        conn.close()


class BillingRepository:
    """Repository for billing records and their calculation audit log.

    Every public method opens its own connection, so one repository
    instance can be shared between threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def create_record(self, record: BillingRecord) -> BillingRecord:
        """Insert a new billing record and return it with its id.

        A record created directly at version 2 gets its first MIGRATE
        entry in the same transaction, with no previous renewal date.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                INSERT INTO billing_record
                (name, schedule, status, anchor_date, renewal_date,
                 cancellation_date, last_reminder_renewal_date,
                 last_cancellation_reminder_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.name,
                record.schedule.value,
                record.status.value,
                _to_text(record.anchor_date),
                _to_text(record.renewal_date),
                _to_text(record.cancellation_date),
                _to_text(record.last_reminder_renewal_date),
                _to_text(record.last_cancellation_reminder_date)
            ))
            record_id = cursor.lastrowid
            if record.calculation_version != CalculationVersion.LEGACY:
                _insert_entry(conn, AuditLogEntry(
                    record_id=record_id,
                    old_version=CalculationVersion.LEGACY,
                    new_version=record.calculation_version,
                    old_renewal_date=None,
                    new_renewal_date=record.renewal_date,
                    reason=f"Created with calculation version {int(record.calculation_version)}",
                    action=AuditAction.MIGRATE
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return record.with_changes(id=record_id)

    def get_record(self, record_id: int) -> BillingRecord:
        """Load one record with its derived calculation version.

        Raises:
            RecordNotFoundError: If no record has this id
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_RECORD_COLUMNS}, {_CURRENT_VERSION_SQL} "
                f"FROM billing_record r WHERE r.id = ?",
                (record_id,)
            )
            row = cursor.fetchone()
        finally:
            conn.close()
        if row is None:
            raise RecordNotFoundError(record_id)
        return _row_to_record(row)

    def list_records(self, version: Optional[int] = None) -> List[BillingRecord]:
        """List records ordered by id, optionally only those at one version."""
        query = f"SELECT {_RECORD_COLUMNS}, {_CURRENT_VERSION_SQL} FROM billing_record r"
        params = []
        if version is not None:
            query += f" WHERE {_CURRENT_VERSION_SQL} = ?"
            params.append(int(CalculationVersion.parse(version)))
        query += " ORDER BY r.id"

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [_row_to_record(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def save_record(self, record: BillingRecord, expected_version: int) -> None:
        """Persist every field of an existing record except its version.

        The version only moves through ``apply_version_change``. The
        renewal date being saved was computed under ``expected_version``,
        so the write is refused if the record has moved since it was read.

        Raises:
            RecordNotFoundError: If the record does not exist
            VersionConflictError: If the record is no longer at expected_version
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            actual = _current_version(conn, record.id)
            if actual != int(expected_version):
                raise VersionConflictError(record.id, int(expected_version), actual)
            conn.execute("""
                UPDATE billing_record
                SET name = ?, schedule = ?, status = ?, anchor_date = ?,
                    renewal_date = ?, cancellation_date = ?,
                    last_reminder_renewal_date = ?,
                    last_cancellation_reminder_date = ?
                WHERE id = ?
            """, (
                record.name,
                record.schedule.value,
                record.status.value,
                _to_text(record.anchor_date),
                _to_text(record.renewal_date),
                _to_text(record.cancellation_date),
                _to_text(record.last_reminder_renewal_date),
                _to_text(record.last_cancellation_reminder_date),
                record.id
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def apply_version_change(
        self,
        record_id: int,
        expected_version: int,
        renewal_date: Optional[datetime],
        entry: AuditLogEntry
    ) -> AuditLogEntry:
        """Atomically update a renewal date and append its audit entry.

        The write lock is taken before the current version is read, so
        two concurrent changes to the same record cannot both apply.

        Args:
            record_id: Record being changed
            expected_version: Version the caller computed against
            renewal_date: New renewal date to store
            entry: Version-changing audit entry to append

        Returns:
            The stored entry with its id and timestamp

        Raises:
            RecordNotFoundError: If the record does not exist
            VersionConflictError: If the record is no longer at expected_version
        """
        if entry.action not in VERSION_CHANGING_ACTIONS:
            raise ValueError(f"{entry.action.value} entries do not change versions")

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            actual = _current_version(conn, record_id)
            if actual != int(expected_version):
                raise VersionConflictError(record_id, int(expected_version), actual)
            conn.execute(
                "UPDATE billing_record SET renewal_date = ? WHERE id = ?",
                (_to_text(renewal_date), record_id)
            )
            stored = _insert_entry(conn, entry)
            conn.commit()
            return stored
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append a reporting entry that leaves the record untouched."""
        if entry.action in VERSION_CHANGING_ACTIONS:
            raise ValueError(
                f"{entry.action.value} entries must go through apply_version_change"
            )
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            _current_version(conn, entry.record_id)
            stored = _insert_entry(conn, entry)
            conn.commit()
            return stored
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_audit_entries(self, record_id: Optional[int] = None) -> List[AuditLogEntry]:
        """List audit entries in insertion order."""
        query = f"SELECT {_AUDIT_COLUMNS} FROM calculation_audit_log"
        params = []
        if record_id is not None:
            query += " WHERE record_id = ?"
            params.append(record_id)
        query += " ORDER BY id"

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def latest_promotion(self, record_id: int) -> Optional[AuditLogEntry]:
        """Most recent MIGRATE entry that moved this record to version 2."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_AUDIT_COLUMNS} FROM calculation_audit_log
                WHERE record_id = ? AND action = ? AND new_version = ?
                ORDER BY id DESC LIMIT 1
            """, (record_id, AuditAction.MIGRATE.value, int(CalculationVersion.ANNIVERSARY)))
            row = cursor.fetchone()
        finally:
            conn.close()
        return _row_to_entry(row) if row is not None else None

    def count_by_version(self) -> Dict[int, int]:
        """Count records per derived calculation version."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT version, COUNT(*) FROM (
                    SELECT {_CURRENT_VERSION_SQL} AS version FROM billing_record r
                ) GROUP BY version
            """)
            counts = {int(version): 0 for version in CalculationVersion}
            for version, count in cursor.fetchall():
                counts[version] = count
            return counts
        finally:
            conn.close()

    def count_audit_entries(self, action: Optional[AuditAction] = None) -> int:
        """Count audit entries, optionally of a single action."""
        query = "SELECT COUNT(*) FROM calculation_audit_log"
        params = []
        if action is not None:
            query += " WHERE action = ?"
            params.append(action.value)

        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchone()[0]
        finally:
            conn.close()

    def mark_renewal_reminder_sent(self, record_id: int, renewal_date: datetime) -> None:
        """Remember that a reminder went out for this renewal date."""
        self._set_date_column(record_id, "last_reminder_renewal_date", renewal_date)

    def mark_cancellation_reminder_sent(self, record_id: int, cancellation_date: datetime) -> None:
        """Remember that a reminder went out for this cancellation date."""
        self._set_date_column(record_id, "last_cancellation_reminder_date", cancellation_date)

    def _set_date_column(self, record_id: int, column: str, value: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE billing_record SET {column} = ? WHERE id = ?",
                (_to_text(value), record_id)
            )
            if cursor.rowcount != 1:
                raise RecordNotFoundError(record_id)
        finally:
            conn.close()


_repositories: Dict[str, BillingRepository] = {}


def get_repository(db_path: str = DEFAULT_DB_PATH) -> BillingRepository:
    """Get the shared repository instance for a database path.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of BillingRepository
    """
    if db_path not in _repositories:
        _repositories[db_path] = BillingRepository(db_path)
    return _repositories[db_path]
