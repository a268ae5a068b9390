"""Schedule store: per-agent, per-day shift entries.

The schedule grid owns these rows; reconciliation only lists them.
Overlap between an agent's entries is validated by the grid, not here.
"""

import sqlite3
from datetime import date

import pydantic

from ..errors import NotFoundError, ValidationError
from ..models import ScheduleEntry
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

_ENTRY_FIELDS = {"agent_id", "activity_type_id", "date", "start_time", "end_time"}


def _row_to_entry(row: sqlite3.Row) -> ScheduleEntry:
    return ScheduleEntry(
        id=row["id"],
        agent_id=row["agent_id"],
        activity_type_id=row["activity_type_id"],
        date=date.fromisoformat(row["date"]),
        start_time=row["start_time"],
        end_time=row["end_time"],
    )


def _validated(**values) -> ScheduleEntry:
    try:
        return ScheduleEntry(**values)
    except pydantic.ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise ValidationError("Invalid schedule entry", details={"errors": errors}) from e


class ScheduleDatabase:
    """SQLite-backed schedule entry store.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def create(
        self,
        agent_id: int,
        entry_date: date,
        start_time: str,
        end_time: str,
        activity_type_id: int | None = None,
    ) -> ScheduleEntry:
        """Add a schedule entry.

        Args:
            agent_id: Scheduled agent.
            entry_date: Calendar day of the entry.
            start_time: Start as ``HH:MM``.
            end_time: Exclusive end as ``HH:MM`` (``24:00`` allowed).
            activity_type_id: Activity performed during the block.

        Returns:
            The stored entry.

        Raises:
            ValidationError: If the times are malformed or out of order.
        """
        entry = _validated(
            agent_id=agent_id,
            activity_type_id=activity_type_id,
            date=entry_date,
            start_time=start_time,
            end_time=end_time,
        )
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO schedule_entries
                    (agent_id, activity_type_id, date, start_time, end_time)
                VALUES (?, ?, ?, ?, ?)
            """,
                (
                    entry.agent_id,
                    entry.activity_type_id,
                    entry.date.isoformat(),
                    entry.start_time,
                    entry.end_time,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise NotFoundError(f"Agent {agent_id} not found") from e
        finally:
            conn.close()
        logger.debug(
            "Scheduled agent_id=%d on %s %s-%s", agent_id, entry.date, start_time, end_time
        )
        return entry.model_copy(update={"id": cursor.lastrowid})

    def get(self, entry_id: int) -> ScheduleEntry | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM schedule_entries WHERE id = ?", (entry_id,)
            ).fetchone()
            return _row_to_entry(row) if row else None
        finally:
            conn.close()

    def list(
        self,
        entry_date: date | None = None,
        agent_id: int | None = None,
        department_id: int | None = None,
    ) -> list[ScheduleEntry]:
        """List entries ordered by agent and start time.

        Args:
            entry_date: Restrict to one calendar day.
            agent_id: Restrict to one agent.
            department_id: Restrict to agents of one department.

        Returns:
            List of schedule entries.
        """
        query = (
            "SELECT s.* FROM schedule_entries s "
            "JOIN agents a ON s.agent_id = a.id WHERE 1=1"
        )
        params: list = []
        if entry_date is not None:
            query += " AND s.date = ?"
            params.append(entry_date.isoformat())
        if agent_id is not None:
            query += " AND s.agent_id = ?"
            params.append(agent_id)
        if department_id is not None:
            query += " AND a.department_id = ?"
            params.append(department_id)
        query += " ORDER BY s.agent_id, s.date, s.start_time"

        conn = self._get_connection()
        try:
            return [_row_to_entry(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def update(self, entry_id: int, **fields) -> ScheduleEntry:
        """Change columns of an entry, revalidating the interval.

        Raises:
            NotFoundError: If the entry does not exist.
            ValidationError: If the result is not a valid entry.
        """
        unknown = set(fields) - _ENTRY_FIELDS
        if unknown:
            raise ValidationError(f"Unknown schedule fields: {sorted(unknown)}")
        current = self.get(entry_id)
        if current is None:
            raise NotFoundError(f"Schedule entry {entry_id} not found")

        entry = _validated(**{**current.model_dump(), **fields})
        conn = self._get_connection()
        try:
            conn.execute(
                """
                UPDATE schedule_entries
                SET agent_id = ?, activity_type_id = ?, date = ?, start_time = ?, end_time = ?
                WHERE id = ?
            """,
                (
                    entry.agent_id,
                    entry.activity_type_id,
                    entry.date.isoformat(),
                    entry.start_time,
                    entry.end_time,
                    entry_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return entry

    def delete(self, entry_id: int) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM schedule_entries WHERE id = ?", (entry_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()
