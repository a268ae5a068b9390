"""Punch storage for the time-clock ledger.

Punches live in SQLite ordered by ``(punch_time, id)``. The ledger runs
its read-then-append checks inside ``transaction()``, which takes the
SQLite write lock up front (``BEGIN IMMEDIATE``) so two processes cannot
both append a clock-in for the same enrollment.
"""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from ..errors import StateConflict, ValidationError
from ..models import Punch, PunchType, VerificationMethod
from ..utils.logger import setup_logger
from . import format_timestamp, parse_timestamp

logger = setup_logger(__name__)

_COLUMNS = (
    "enrollment_id",
    "punch_type",
    "punch_time",
    "verification_method",
    "face_confidence",
    "latitude",
    "longitude",
    "accuracy",
    "address",
    "user_agent",
    "ip_address",
    "is_manual",
    "manual_note",
    "edited_by_id",
    "edited_at",
    "original_punch_time",
    "created_at",
)
_TIMESTAMP_COLUMNS = {"punch_time", "edited_at", "original_punch_time", "created_at"}
_UPDATABLE = {"punch_time", "manual_note", "edited_by_id", "edited_at", "original_punch_time"}


def _row_to_punch(row: sqlite3.Row) -> Punch:
    return Punch(
        id=row["id"],
        enrollment_id=row["enrollment_id"],
        punch_type=PunchType(row["punch_type"]),
        punch_time=parse_timestamp(row["punch_time"]),
        verification_method=VerificationMethod(row["verification_method"]),
        face_confidence=row["face_confidence"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        accuracy=row["accuracy"],
        address=row["address"],
        user_agent=row["user_agent"],
        ip_address=row["ip_address"],
        is_manual=bool(row["is_manual"]),
        manual_note=row["manual_note"],
        edited_by_id=row["edited_by_id"],
        edited_at=parse_timestamp(row["edited_at"]),
        original_punch_time=parse_timestamp(row["original_punch_time"]),
        created_at=parse_timestamp(row["created_at"]),
    )


def _to_db(name: str, value: Any) -> Any:
    if name in _TIMESTAMP_COLUMNS:
        return format_timestamp(value)
    if name == "is_manual":
        return int(bool(value))
    if isinstance(value, (PunchType, VerificationMethod)):
        return value.value
    return value


class PunchDatabase:
    """SQLite-backed punch ledger storage.

    Args:
        db_path: Path to the SQLite database file.
        busy_timeout: Seconds to wait for the SQLite write lock before
            reporting a ``StateConflict``.
    """

    def __init__(self, db_path: str, busy_timeout: float = 5.0) -> None:
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._local = threading.local()

    def _get_connection(self, autocommit: bool = False) -> sqlite3.Connection:
        """Get a database connection with row factory.

        Args:
            autocommit: Open without implicit transactions so the caller
                controls ``BEGIN``/``COMMIT`` explicitly.

        Returns:
            SQLite connection with Row factory.
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            isolation_level=None if autocommit else "",
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed reads and writes as one write transaction.

        Raises:
            StateConflict: If another writer holds the database lock.
        """
        if getattr(self._local, "conn", None) is not None:
            yield
            return

        conn = self._get_connection(autocommit=True)
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            conn.close()
            raise StateConflict("Punch ledger is busy, retry shortly") from e

        self._local.conn = conn
        try:
            yield
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.conn = None
            conn.close()

    def active_connection(self) -> sqlite3.Connection | None:
        """Connection of the write transaction open on this thread, if any."""
        return getattr(self._local, "conn", None)

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return

        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def create(self, fields: dict[str, Any]) -> Punch:
        """Insert a punch.

        Args:
            fields: Column values; ``enrollment_id``, ``punch_type``,
                ``punch_time`` and ``verification_method`` are required.

        Returns:
            The stored punch.
        """
        values = {name: fields.get(name) for name in _COLUMNS}
        values["is_manual"] = fields.get("is_manual", False)
        if values["created_at"] is None:
            values["created_at"] = datetime.now()

        with self._session() as conn:
            cursor = conn.execute(
                f"INSERT INTO punches ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                [_to_db(name, values[name]) for name in _COLUMNS],
            )
            row = conn.execute("SELECT * FROM punches WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return _row_to_punch(row)

    def get(self, punch_id: int) -> Punch | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM punches WHERE id = ?", (punch_id,)).fetchone()
            return _row_to_punch(row) if row else None

    def update(self, punch_id: int, **fields: Any) -> Punch | None:
        """Update editable punch columns.

        Returns:
            The updated punch, or None if it does not exist.

        Raises:
            ValidationError: If a non-editable column is supplied.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Punch fields are not editable: {sorted(unknown)}")

        with self._session() as conn:
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                conn.execute(
                    f"UPDATE punches SET {assignments} WHERE id = ?",
                    (*(_to_db(name, value) for name, value in fields.items()), punch_id),
                )
            row = conn.execute("SELECT * FROM punches WHERE id = ?", (punch_id,)).fetchone()
            return _row_to_punch(row) if row else None

    def delete(self, punch_id: int) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM punches WHERE id = ?", (punch_id,))
            return cursor.rowcount > 0

    def latest(self, enrollment_id: int) -> Punch | None:
        """Most recent punch for an enrollment by punch time."""
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM punches WHERE enrollment_id = ?
                ORDER BY punch_time DESC, id DESC LIMIT 1
            """,
                (enrollment_id,),
            ).fetchone()
            return _row_to_punch(row) if row else None

    def latest_before(self, enrollment_id: int, before: datetime) -> Punch | None:
        """Most recent punch strictly earlier than ``before``."""
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM punches WHERE enrollment_id = ? AND punch_time < ?
                ORDER BY punch_time DESC, id DESC LIMIT 1
            """,
                (enrollment_id, format_timestamp(before)),
            ).fetchone()
            return _row_to_punch(row) if row else None

    def neighbors(self, enrollment_id: int, at: datetime) -> tuple[Punch | None, Punch | None]:
        """Find the time-ordered neighbours of a moment.

        Args:
            enrollment_id: Enrollment whose ledger is searched.
            at: Moment of interest.

        Returns:
            ``(predecessor, successor)`` where the predecessor is the latest
            punch at or before ``at`` and the successor the earliest after it.
        """
        stamp = format_timestamp(at)
        with self._session() as conn:
            before = conn.execute(
                """
                SELECT * FROM punches WHERE enrollment_id = ? AND punch_time <= ?
                ORDER BY punch_time DESC, id DESC LIMIT 1
            """,
                (enrollment_id, stamp),
            ).fetchone()
            after = conn.execute(
                """
                SELECT * FROM punches WHERE enrollment_id = ? AND punch_time > ?
                ORDER BY punch_time ASC, id ASC LIMIT 1
            """,
                (enrollment_id, stamp),
            ).fetchone()
            return (
                _row_to_punch(before) if before else None,
                _row_to_punch(after) if after else None,
            )

    @staticmethod
    def _filters(
        enrollment_id: int | None,
        employee_id: str | None,
        start: datetime | None,
        end: datetime | None,
        punch_type: PunchType | None,
        verification_method: VerificationMethod | None,
    ) -> tuple[str, list]:
        clause = " WHERE 1=1"
        params: list = []
        if enrollment_id is not None:
            clause += " AND p.enrollment_id = ?"
            params.append(enrollment_id)
        if employee_id is not None:
            clause += " AND a.employee_id = ?"
            params.append(employee_id)
        if start is not None:
            clause += " AND p.punch_time >= ?"
            params.append(format_timestamp(start))
        if end is not None:
            clause += " AND p.punch_time <= ?"
            params.append(format_timestamp(end))
        if punch_type is not None:
            clause += " AND p.punch_type = ?"
            params.append(PunchType(punch_type).value)
        if verification_method is not None:
            clause += " AND p.verification_method = ?"
            params.append(VerificationMethod(verification_method).value)
        return clause, params

    def list(
        self,
        enrollment_id: int | None = None,
        employee_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        punch_type: PunchType | None = None,
        verification_method: VerificationMethod | None = None,
        limit: int | None = None,
        offset: int = 0,
        descending: bool = False,
    ) -> list[Punch]:
        """List punches matching the filters, ordered by punch time.

        Args:
            enrollment_id: Restrict to one enrollment.
            employee_id: Restrict to the enrollment of one employee.
            start: Inclusive lower bound on punch time.
            end: Inclusive upper bound on punch time.
            punch_type: Restrict to one punch type.
            verification_method: Restrict to one verification method.
            limit: Maximum number of punches.
            offset: Number of punches to skip.
            descending: Newest first when True.

        Returns:
            List of punches.
        """
        clause, params = self._filters(
            enrollment_id, employee_id, start, end, punch_type, verification_method
        )
        direction = "DESC" if descending else "ASC"
        query = (
            "SELECT p.* FROM punches p "
            "JOIN enrollments e ON p.enrollment_id = e.id "
            "JOIN agents a ON e.agent_id = a.id"
            f"{clause} ORDER BY p.punch_time {direction}, p.id {direction}"
        )
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        with self._session() as conn:
            return [_row_to_punch(row) for row in conn.execute(query, params).fetchall()]

    def count(
        self,
        enrollment_id: int | None = None,
        employee_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        punch_type: PunchType | None = None,
        verification_method: VerificationMethod | None = None,
    ) -> int:
        """Count punches matching the same filters as ``list``."""
        clause, params = self._filters(
            enrollment_id, employee_id, start, end, punch_type, verification_method
        )
        query = (
            "SELECT COUNT(*) FROM punches p "
            "JOIN enrollments e ON p.enrollment_id = e.id "
            "JOIN agents a ON e.agent_id = a.id" + clause
        )
        with self._session() as conn:
            return conn.execute(query, params).fetchone()[0]
