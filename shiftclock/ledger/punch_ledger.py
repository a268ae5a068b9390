"""Punch ledger service.

Accepts kiosk punches and supervisor corrections while keeping every
enrollment's punches alternating CLOCK_IN, CLOCK_OUT, ... by punch time.
Writes for one enrollment are serialized by an in-process lock and the
store's write transaction; different enrollments never wait on each other.
"""

import math
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from ..errors import (
    AccountInactiveError,
    NotFoundError,
    SequenceError,
    StateConflict,
    ValidationError,
    VerificationError,
)
from ..models import (
    Agent,
    Enrollment,
    Location,
    Punch,
    PunchType,
    RequestMetadata,
    VerificationMethod,
    VerificationResult,
)
from ..utils.logger import setup_logger
from .state_machine import PunchState, next_state, state_after

logger = setup_logger(__name__)

RECENT_PUNCH_LIMIT = 10


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


def _require_note(note: str | None) -> str:
    note = (note or "").strip()
    if not note:
        raise ValidationError("A note explaining the change is required")
    return note


def _coerce_punch_type(punch_type: PunchType | str) -> PunchType:
    try:
        return PunchType(punch_type)
    except ValueError as e:
        raise ValidationError(f"Unknown punch type {punch_type!r}") from e


def _coerce_time(value: datetime | str, field: str) -> datetime:
    """Parse a supervisor-supplied time into naive site-local time.

    Offset-aware values are converted to the server's local zone before the
    offset is dropped, so ``...T04:00Z`` and ``...T09:00+05:00`` land on the
    same instant.
    """
    if not isinstance(value, datetime):
        try:
            if value.endswith("Z"):
                value = value[:-1] + "+00:00"
            value = datetime.fromisoformat(value)
        except (AttributeError, TypeError, ValueError) as e:
            raise ValidationError(f"{field} must be an ISO datetime") from e
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.replace(microsecond=0)


def _advisory_location(location: Location | None, enrollment_id: int) -> dict:
    """Location fields to store, with implausible readings blanked."""
    if location is None:
        return {}
    place = location.model_dump()
    checks = {
        "latitude": lambda v: -90 <= v <= 90,
        "longitude": lambda v: -180 <= v <= 180,
        "accuracy": lambda v: v > 0,
    }
    for name, plausible in checks.items():
        value = place[name]
        if value is None:
            continue
        if not math.isfinite(value) or not plausible(value):
            logger.warning(
                "Ignoring %s=%r on punch for enrollment_id=%d", name, value, enrollment_id
            )
            place[name] = None
    return place


class PunchLedger:
    """Append-only punch ledger with administrator corrections.

    Args:
        punch_store: Punch storage (``PunchDatabase`` or a compatible fake).
        enrollment_store: Enrollment and agent lookups.
        audit: Optional audit logger receiving every write.
        lock_timeout: Seconds to wait for another punch of the same
            enrollment before giving up with ``StateConflict``.
        clock: Server clock; punch times never come from the client.
    """

    def __init__(
        self,
        punch_store,
        enrollment_store,
        audit=None,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.punch_store = punch_store
        self.enrollment_store = enrollment_store
        self.audit = audit
        self.lock_timeout = lock_timeout
        self.clock = clock
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, enrollment_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(enrollment_id, threading.Lock())

    @contextmanager
    def _serialized(self, enrollment_id: int) -> Iterator[None]:
        lock = self._lock_for(enrollment_id)
        if not lock.acquire(timeout=self.lock_timeout):
            raise StateConflict(
                "Another punch for this enrollment is in progress, retry shortly",
                details={"enrollment_id": enrollment_id},
            )
        try:
            with self.punch_store.transaction():
                yield
        finally:
            lock.release()

    def _audit(
        self,
        action: str,
        punch: Punch,
        actor: str | None,
        details: str,
        ip_address: str | None = None,
    ) -> None:
        if self.audit is not None:
            self.audit.log(
                action,
                enrollment_id=punch.enrollment_id,
                punch_id=punch.id,
                actor=actor,
                details=details,
                ip_address=ip_address,
            )

    def load_enrollment(self, enrollment_id: int) -> tuple[Enrollment, Agent]:
        """Fetch an enrollment and its agent.

        Raises:
            NotFoundError: If either record is missing.
        """
        enrollment = self.enrollment_store.get_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFoundError("Enrollment not found", details={"enrollment_id": enrollment_id})
        agent = self.enrollment_store.get_agent(enrollment.agent_id)
        if agent is None:
            raise NotFoundError("Agent not found", details={"agent_id": enrollment.agent_id})
        return enrollment, agent

    def record_punch(
        self,
        enrollment_id: int,
        punch_type: PunchType | str,
        evidence: VerificationResult,
        location: Location | None = None,
        metadata: RequestMetadata | None = None,
    ) -> Punch:
        """Append a kiosk punch stamped with the server clock.

        Args:
            enrollment_id: Enrollment punching.
            punch_type: CLOCK_IN or CLOCK_OUT.
            evidence: Successful result from the identity verifier.
            location: Advisory geolocation; never validated against a site.
            metadata: User agent and IP address for audit.

        Returns:
            The stored punch.

        Raises:
            NotFoundError: Unknown enrollment.
            AccountInactiveError: The agent is deactivated.
            VerificationError: The evidence is not a successful verification.
            SequenceError: The punch does not follow the current state.
            StateConflict: A concurrent punch for the enrollment won the race.
        """
        punch_type = _coerce_punch_type(punch_type)
        _, agent = self.load_enrollment(enrollment_id)
        if not agent.is_active:
            raise AccountInactiveError(
                "Employee account is inactive", details={"agent_id": agent.id}
            )
        if evidence is None or not evidence.success:
            raise VerificationError(
                "Identity verification failed",
                details={"confidence": evidence.confidence if evidence else None},
            )

        place = _advisory_location(location, enrollment_id)
        metadata = metadata or RequestMetadata()
        face_confidence = (
            evidence.confidence
            if evidence.method is VerificationMethod.FACE_VERIFIED
            else None
        )

        with self._serialized(enrollment_id):
            last = self.punch_store.latest(enrollment_id)
            try:
                next_state(state_after(last), punch_type, first=last is None)
            except SequenceError:
                logger.warning(
                    "Rejected %s for enrollment_id=%d (last=%s)",
                    punch_type.value,
                    enrollment_id,
                    last.punch_type.value if last else None,
                )
                raise
            now = self.clock()
            punch = self.punch_store.create(
                {
                    "enrollment_id": enrollment_id,
                    "punch_type": punch_type,
                    "punch_time": now,
                    "verification_method": evidence.method,
                    "face_confidence": face_confidence,
                    "latitude": place.get("latitude"),
                    "longitude": place.get("longitude"),
                    "accuracy": place.get("accuracy"),
                    "address": place.get("address"),
                    "user_agent": metadata.user_agent,
                    "ip_address": metadata.ip_address,
                    "is_manual": False,
                    "created_at": now,
                }
            )
            self._audit(
                "record_punch",
                punch,
                actor=agent.employee_id,
                details=f"{punch_type.value} via {evidence.method.value}",
                ip_address=metadata.ip_address,
            )

        logger.info(
            "Recorded %s for enrollment_id=%d via %s",
            punch_type.value,
            enrollment_id,
            evidence.method.value,
        )
        return punch

    def edit_punch(
        self,
        punch_id: int,
        new_time: datetime | str,
        note: str,
        editor_id: str,
    ) -> Punch:
        """Correct the time of an existing punch.

        The first edit copies the system-recorded time into
        ``original_punch_time``; later edits leave it untouched.
        ``is_manual`` is never changed here.

        Raises:
            ValidationError: Missing note or malformed time.
            NotFoundError: Unknown punch.
        """
        note = _require_note(note)
        new_time = _coerce_time(new_time, "punch_time")
        existing = self.punch_store.get(punch_id)
        if existing is None:
            raise NotFoundError("Punch not found", details={"punch_id": punch_id})

        with self._serialized(existing.enrollment_id):
            current = self.punch_store.get(punch_id)
            if current is None:
                raise NotFoundError("Punch not found", details={"punch_id": punch_id})
            original = current.original_punch_time or current.punch_time
            punch = self.punch_store.update(
                punch_id,
                punch_time=new_time,
                original_punch_time=original,
                manual_note=note,
                edited_by_id=editor_id,
                edited_at=self.clock(),
            )
            self._audit(
                "edit_punch",
                punch,
                actor=editor_id,
                details=f"{current.punch_time} -> {new_time}: {note}",
            )

        logger.info(
            "Punch id=%d moved from %s to %s by %s",
            punch_id,
            current.punch_time,
            new_time,
            editor_id,
        )
        return punch

    def create_manual_punch(
        self,
        enrollment_id: int,
        punch_type: PunchType | str,
        punch_time: datetime | str,
        note: str,
        editor_id: str,
    ) -> Punch:
        """Insert an administrative punch at an arbitrary time.

        Skips identity verification and is marked ``PIN_FALLBACK`` with
        ``is_manual=True``. Alternation is checked against the punches
        immediately before and after ``punch_time``.

        Raises:
            ValidationError: Missing note, malformed time, or a punch
                already exists at that exact time.
            NotFoundError: Unknown enrollment.
            SequenceError: The punch breaks alternation with a neighbour.
        """
        note = _require_note(note)
        punch_type = _coerce_punch_type(punch_type)
        punch_time = _coerce_time(punch_time, "punch_time")
        self.load_enrollment(enrollment_id)

        with self._serialized(enrollment_id):
            predecessor, successor = self.punch_store.neighbors(enrollment_id, punch_time)
            if predecessor is not None and predecessor.punch_time == punch_time:
                raise ValidationError(
                    "A punch already exists at this time",
                    details={"punch_id": predecessor.id},
                )
            state = next_state(state_after(predecessor), punch_type, first=predecessor is None)
            if successor is not None:
                self._check_successor(state, successor)

            now = self.clock()
            punch = self.punch_store.create(
                {
                    "enrollment_id": enrollment_id,
                    "punch_type": punch_type,
                    "punch_time": punch_time,
                    "verification_method": VerificationMethod.PIN_FALLBACK,
                    "is_manual": True,
                    "manual_note": note,
                    "edited_by_id": editor_id,
                    "edited_at": now,
                    "created_at": now,
                }
            )
            self._audit("manual_punch", punch, actor=editor_id, details=note)

        logger.info(
            "Manual %s at %s for enrollment_id=%d by %s",
            punch_type.value,
            punch_time,
            enrollment_id,
            editor_id,
        )
        return punch

    @staticmethod
    def _check_successor(state: PunchState, successor: Punch) -> None:
        try:
            next_state(state, successor.punch_type)
        except SequenceError as e:
            raise SequenceError(
                f"Conflicts with the following {successor.punch_type.value} "
                f"at {successor.punch_time.isoformat()}",
                details={**e.details, "successor_id": successor.id},
            ) from e

    def delete_punch(self, punch_id: int, editor_id: str) -> Punch:
        """Hard-delete an erroneous manual punch.

        Raises:
            NotFoundError: Unknown punch.
            ValidationError: The punch was recorded at the kiosk.
        """
        punch = self.punch_store.get(punch_id)
        if punch is None:
            raise NotFoundError("Punch not found", details={"punch_id": punch_id})
        if not punch.is_manual:
            raise ValidationError(
                "Only manual punches can be deleted", details={"punch_id": punch_id}
            )

        with self._serialized(punch.enrollment_id):
            self.punch_store.delete(punch_id)
            self._audit(
                "delete_punch",
                punch,
                actor=editor_id,
                details=f"{punch.punch_type.value} at {punch.punch_time}",
            )

        logger.info("Deleted manual punch id=%d by %s", punch_id, editor_id)
        return punch

    def get_punch(self, punch_id: int) -> Punch:
        punch = self.punch_store.get(punch_id)
        if punch is None:
            raise NotFoundError("Punch not found", details={"punch_id": punch_id})
        return punch

    def list_punches(self, **filters: Any) -> list[Punch]:
        return self.punch_store.list(**filters)

    def current_status(self, enrollment_id: int) -> dict:
        """Derive clock status from the ledger's last punch.

        Returns:
            Dict with ``status`` (clocked_in / clocked_out), ``last_punch``
            and up to ten ``recent_punches`` newest first.
        """
        recent = self.punch_store.list(
            enrollment_id=enrollment_id, limit=RECENT_PUNCH_LIMIT, descending=True
        )
        last = recent[0] if recent else None
        state = state_after(last)
        return {
            "enrollment_id": enrollment_id,
            "status": "clocked_in" if state is PunchState.IN else "clocked_out",
            "last_punch": last,
            "recent_punches": recent,
        }

    def clock_status(self) -> list[dict]:
        """Current status of every active enrolled agent.

        Returns:
            One dict per agent, ordered by name.
        """
        board = []
        for enrollment in self.enrollment_store.list_enrollments():
            agent = self.enrollment_store.get_agent(enrollment.agent_id)
            if agent is None or not agent.is_active:
                continue
            last = self.punch_store.latest(enrollment.id)
            board.append(
                {
                    "agent_id": agent.id,
                    "enrollment_id": enrollment.id,
                    "first_name": agent.first_name,
                    "last_name": agent.last_name,
                    "department_id": agent.department_id,
                    "is_clocked_in": state_after(last) is PunchState.IN,
                    "last_punch_time": last.punch_time if last else None,
                    "last_punch_type": last.punch_type if last else None,
                }
            )
        board.sort(key=lambda row: (row["last_name"], row["first_name"]))
        return board
