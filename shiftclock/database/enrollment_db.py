"""Enrollment store: agents, departments and time-clock enrollments.

SQLite-backed storage for the records identity verification reads.
Agents and departments are owned by the staffing subsystem; the core
only reads them, the write methods exist for that subsystem and tests.
Reference descriptors are stored as raw float32 bytes.
"""

import sqlite3
from datetime import datetime
from pathlib import Path

import numpy as np

from ..errors import NotFoundError, ValidationError
from ..models import Agent, Department, Enrollment
from ..utils.logger import setup_logger
from . import format_timestamp, parse_timestamp

logger = setup_logger(__name__)

_AGENT_FIELDS = {"employee_id", "first_name", "last_name", "department_id", "is_active"}


def descriptor_to_bytes(descriptor: np.ndarray | list[float]) -> bytes:
    """Serialize a face descriptor to bytes.

    Args:
        descriptor: Numeric vector of any length.

    Returns:
        Raw float32 bytes representation.
    """
    return np.asarray(descriptor, dtype=np.float32).tobytes()


def bytes_to_descriptor(data: bytes) -> list[float]:
    """Deserialize bytes to a face descriptor.

    Args:
        data: Raw float32 bytes.

    Returns:
        Descriptor as a list of floats.
    """
    return np.frombuffer(data, dtype=np.float32).astype(float).tolist()


def _row_to_agent(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        employee_id=row["employee_id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        department_id=row["department_id"],
        is_active=bool(row["is_active"]),
    )


def _row_to_enrollment(row: sqlite3.Row) -> Enrollment:
    descriptor = row["reference_descriptor"]
    return Enrollment(
        id=row["id"],
        agent_id=row["agent_id"],
        pin_hash=row["pin_hash"],
        reference_descriptor=bytes_to_descriptor(descriptor) if descriptor is not None else None,
        reference_photo_url=row["reference_photo_url"],
        enrolled_by=row["enrolled_by"],
        enrolled_at=parse_timestamp(row["enrolled_at"]),
    )


class EnrollmentDatabase:
    """SQLite-backed store for agents, departments and enrollments.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._ensure_db_exists()

    def _ensure_db_exists(self) -> None:
        """Initialize database if it doesn't exist."""
        from . import init_database

        if not Path(self.db_path).exists():
            init_database(self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory enabled.

        Returns:
            SQLite connection with Row factory.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    # Departments

    def create_department(self, name: str) -> Department:
        conn = self._get_connection()
        try:
            cursor = conn.execute("INSERT INTO departments (name) VALUES (?)", (name,))
            conn.commit()
            return Department(id=cursor.lastrowid, name=name)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Department '{name}' already exists") from e
        finally:
            conn.close()

    def get_department(self, department_id: int) -> Department | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT id, name FROM departments WHERE id = ?", (department_id,)
            ).fetchone()
            return Department(id=row["id"], name=row["name"]) if row else None
        finally:
            conn.close()

    def list_departments(self) -> list[Department]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT id, name FROM departments ORDER BY name").fetchall()
            return [Department(id=row["id"], name=row["name"]) for row in rows]
        finally:
            conn.close()

    # Agents

    def create_agent(
        self,
        employee_id: str,
        first_name: str,
        last_name: str,
        department_id: int | None = None,
        is_active: bool = True,
    ) -> Agent:
        """Register an agent record.

        Args:
            employee_id: Unique employee identifier typed at the kiosk.
            first_name: Agent first name.
            last_name: Agent last name.
            department_id: Owning department, if any.
            is_active: Whether the agent may punch.

        Returns:
            The created agent.
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO agents (employee_id, first_name, last_name, department_id, is_active)
                VALUES (?, ?, ?, ?, ?)
            """,
                (employee_id, first_name, last_name, department_id, int(is_active)),
            )
            conn.commit()
            logger.info("Created agent %s (id=%d)", employee_id, cursor.lastrowid)
            return Agent(
                id=cursor.lastrowid,
                employee_id=employee_id,
                first_name=first_name,
                last_name=last_name,
                department_id=department_id,
                is_active=is_active,
            )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Employee ID '{employee_id}' already exists") from e
        finally:
            conn.close()

    def get_agent(self, agent_id: int) -> Agent | None:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
            return _row_to_agent(row) if row else None
        finally:
            conn.close()

    def get_agent_by_employee_id(self, employee_id: str) -> Agent | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM agents WHERE employee_id = ?", (employee_id,)
            ).fetchone()
            return _row_to_agent(row) if row else None
        finally:
            conn.close()

    def list_agents(
        self,
        department_id: int | None = None,
        active_only: bool = False,
    ) -> list[Agent]:
        """List agents, optionally filtered by department and status."""
        conn = self._get_connection()
        try:
            query = "SELECT * FROM agents WHERE 1=1"
            params: list = []
            if department_id is not None:
                query += " AND department_id = ?"
                params.append(department_id)
            if active_only:
                query += " AND is_active = 1"
            query += " ORDER BY last_name, first_name"
            return [_row_to_agent(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def update_agent(self, agent_id: int, **fields) -> Agent:
        """Update agent columns.

        Raises:
            ValidationError: If an unknown field is supplied.
            NotFoundError: If the agent does not exist.
        """
        unknown = set(fields) - _AGENT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown agent fields: {sorted(unknown)}")
        if "is_active" in fields:
            fields["is_active"] = int(fields["is_active"])
        conn = self._get_connection()
        try:
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                conn.execute(
                    f"UPDATE agents SET {assignments} WHERE id = ?",
                    (*fields.values(), agent_id),
                )
                conn.commit()
        finally:
            conn.close()
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")
        return agent

    def delete_agent(self, agent_id: int) -> bool:
        """Delete an agent and its enrollment.

        Raises:
            ValidationError: If the agent has recorded punches; deactivate
                the agent instead.
        """
        return self._delete("agents", agent_id)

    # Enrollments

    def create_enrollment(
        self,
        agent_id: int,
        pin_hash: str,
        descriptor: list[float] | None = None,
        reference_photo_url: str | None = None,
        enrolled_by: str | None = None,
    ) -> Enrollment:
        """Enroll an agent in the time clock.

        Args:
            agent_id: ID of the agent being enrolled.
            pin_hash: bcrypt hash of the fallback PIN.
            descriptor: Optional reference face descriptor.
            reference_photo_url: Optional reference photo location.
            enrolled_by: Identity of the administrator.

        Returns:
            The created enrollment.

        Raises:
            NotFoundError: If the agent does not exist.
            ValidationError: If the agent is already enrolled.
        """
        if self.get_agent(agent_id) is None:
            raise NotFoundError(f"Agent {agent_id} not found")

        enrolled_at = datetime.now().replace(microsecond=0)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO enrollments
                    (agent_id, pin_hash, reference_descriptor, reference_photo_url,
                     enrolled_by, enrolled_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    agent_id,
                    pin_hash,
                    descriptor_to_bytes(descriptor) if descriptor is not None else None,
                    reference_photo_url,
                    enrolled_by,
                    format_timestamp(enrolled_at),
                ),
            )
            conn.commit()
            enrollment_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Agent {agent_id} is already enrolled") from e
        finally:
            conn.close()

        logger.info("Enrolled agent_id=%d as enrollment_id=%d", agent_id, enrollment_id)
        return self.get_enrollment(enrollment_id)

    def get_enrollment(self, enrollment_id: int) -> Enrollment | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM enrollments WHERE id = ?", (enrollment_id,)
            ).fetchone()
            return _row_to_enrollment(row) if row else None
        finally:
            conn.close()

    def get_enrollment_by_agent(self, agent_id: int) -> Enrollment | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM enrollments WHERE agent_id = ?", (agent_id,)
            ).fetchone()
            return _row_to_enrollment(row) if row else None
        finally:
            conn.close()

    def list_enrollments(self) -> list[Enrollment]:
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT * FROM enrollments ORDER BY id").fetchall()
            return [_row_to_enrollment(row) for row in rows]
        finally:
            conn.close()

    def replace_descriptor(self, enrollment_id: int, descriptor: list[float]) -> Enrollment:
        """Replace the reference descriptor of an enrollment.

        Raises:
            NotFoundError: If the enrollment does not exist.
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE enrollments SET reference_descriptor = ?, updated_at = ?
                WHERE id = ?
            """,
                (
                    descriptor_to_bytes(descriptor),
                    format_timestamp(datetime.now()),
                    enrollment_id,
                ),
            )
            conn.commit()
            updated = cursor.rowcount > 0
        finally:
            conn.close()
        if not updated:
            raise NotFoundError(f"Enrollment {enrollment_id} not found")
        logger.info("Replaced reference descriptor for enrollment_id=%d", enrollment_id)
        return self.get_enrollment(enrollment_id)

    def delete_enrollment(self, enrollment_id: int) -> bool:
        """Delete an enrollment that has no recorded punches.

        Raises:
            ValidationError: If punches reference the enrollment.
        """
        return self._delete("enrollments", enrollment_id)

    def _delete(self, table: str, row_id: int) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
            conn.commit()
            return cursor.rowcount > 0
        except sqlite3.IntegrityError as e:
            raise ValidationError(
                "Punch history exists; deactivate the agent instead",
                details={"table": table, "id": row_id},
            ) from e
        finally:
            conn.close()
