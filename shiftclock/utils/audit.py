"""Audit trail for punch and enrollment changes.

Every ledger write (kiosk punch, supervisor edit, manual entry, manual
delete) and every enrollment change is appended to the ``audit_log``
table so corrections can always be traced to an editor.
"""

import sqlite3
from datetime import datetime

from ..database import format_timestamp
from .logger import setup_logger

logger = setup_logger(__name__)

_INSERT = """
    INSERT INTO audit_log (action, enrollment_id, punch_id, actor, details, ip_address)
    VALUES (?, ?, ?, ?, ?, ?)
"""

ACTIONS = (
    "record_punch",
    "edit_punch",
    "manual_punch",
    "delete_punch",
    "enroll",
    "update_descriptor",
)


class AuditLogger:
    """Append-only audit log backed by SQLite.

    Args:
        db_path: Path to the SQLite database file.
        transactions: Store whose open write transaction, if any, the audit
            row joins (``PunchDatabase``), so a punch and its trail commit
            or roll back together.
    """

    def __init__(self, db_path: str, transactions=None) -> None:
        self.db_path = db_path
        self.transactions = transactions

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def log(
        self,
        action: str,
        enrollment_id: int | None = None,
        punch_id: int | None = None,
        actor: str | None = None,
        details: str | None = None,
        ip_address: str | None = None,
    ) -> int:
        """Append one event.

        Args:
            action: One of ``ACTIONS``.
            enrollment_id: Enrollment the event concerns.
            punch_id: Punch the event concerns.
            actor: Employee or editor identity behind the change.
            details: Human-readable summary, e.g. old and new punch time.
            ip_address: Client IP address.

        Returns:
            ID of the created audit entry.
        """
        if action not in ACTIONS:
            logger.warning("Unrecognized audit action %r", action)

        row = (action, enrollment_id, punch_id, actor, details, ip_address)
        active = None if self.transactions is None else self.transactions.active_connection()
        if active is not None:
            cursor = active.execute(_INSERT, row)
        else:
            conn = self._get_connection()
            try:
                cursor = conn.execute(_INSERT, row)
                conn.commit()
            finally:
                conn.close()
        logger.debug(
            "Audit %s by %s (enrollment_id=%s, punch_id=%s)", action, actor, enrollment_id, punch_id
        )
        return cursor.lastrowid

    def get_audit_log(
        self,
        enrollment_id: int | None = None,
        punch_id: int | None = None,
        action: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query the audit trail, newest first.

        ``start_date`` and ``end_date`` bound the entry timestamp inclusively.
        """
        conditions = [
            ("enrollment_id = ?", enrollment_id),
            ("punch_id = ?", punch_id),
            ("action = ?", action),
            ("timestamp >= ?", format_timestamp(start_date)),
            ("timestamp <= ?", format_timestamp(end_date)),
        ]
        active = [(clause, value) for clause, value in conditions if value is not None]
        where = " AND ".join(clause for clause, _ in active) or "1=1"
        params = [value for _, value in active] + [limit]

        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM audit_log WHERE {where} ORDER BY id DESC LIMIT ?", params
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()
