"""Domain types shared by the verifier, the punch ledger and reconciliation.

Stores return these models; the API reuses them as response schemas.
All timestamps are naive datetimes in site-local time.
"""

import datetime as dt
import re
from enum import Enum

from pydantic import BaseModel, field_validator, model_validator

_CLOCK_PATTERN = re.compile(r"^(\d{2}):(\d{2})$")


class PunchType(str, Enum):
    """Kind of time-clock event."""

    CLOCK_IN = "CLOCK_IN"
    CLOCK_OUT = "CLOCK_OUT"

    @property
    def counterpart(self) -> "PunchType":
        """The punch type that should follow this one."""
        if self is PunchType.CLOCK_IN:
            return PunchType.CLOCK_OUT
        return PunchType.CLOCK_IN


class VerificationMethod(str, Enum):
    """How the agent's identity was established for a punch.

    ``PIN_FALLBACK`` doubles as the marker for unverified administrative
    punches created by supervisors.
    """

    FACE_VERIFIED = "FACE_VERIFIED"
    PIN_FALLBACK = "PIN_FALLBACK"


def parse_clock(value: str) -> int:
    """Convert an ``HH:MM`` wall-clock string to minutes since midnight.

    ``24:00`` is accepted and means the end of the day.

    Args:
        value: Time string in ``HH:MM`` form.

    Returns:
        Minutes since midnight (0 to 1440).

    Raises:
        ValueError: If the string is malformed or out of range.
    """
    match = _CLOCK_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if minutes > 59 or hours > 24 or (hours == 24 and minutes != 0):
        raise ValueError(f"Invalid time {value!r}")
    return hours * 60 + minutes


class Department(BaseModel):
    """Organizational unit agents belong to."""

    id: int
    name: str


class Agent(BaseModel):
    """Employee record owned by the staffing subsystem."""

    id: int
    employee_id: str
    first_name: str
    last_name: str
    department_id: int | None = None
    is_active: bool = True

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Enrollment(BaseModel):
    """Time-clock enrollment for one agent."""

    id: int
    agent_id: int
    pin_hash: str
    reference_descriptor: list[float] | None = None
    reference_photo_url: str | None = None
    enrolled_by: str | None = None
    enrolled_at: dt.datetime | None = None

    @property
    def has_descriptor(self) -> bool:
        return self.reference_descriptor is not None


class Location(BaseModel):
    """Advisory geolocation captured by the kiosk.

    Readings are stored as sent; implausible values are dropped by the
    ledger rather than rejecting the punch.
    """

    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    address: str | None = None


class RequestMetadata(BaseModel):
    """Client details stored on a punch for audit."""

    user_agent: str | None = None
    ip_address: str | None = None


class VerificationResult(BaseModel):
    """Outcome of an identity check."""

    method: VerificationMethod
    success: bool
    confidence: float | None = None
    distance: float | None = None


class Punch(BaseModel):
    """A single clock-in or clock-out event in the ledger."""

    id: int
    enrollment_id: int
    punch_type: PunchType
    punch_time: dt.datetime
    verification_method: VerificationMethod
    face_confidence: float | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy: float | None = None
    address: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    is_manual: bool = False
    manual_note: str | None = None
    edited_by_id: str | None = None
    edited_at: dt.datetime | None = None
    original_punch_time: dt.datetime | None = None
    created_at: dt.datetime | None = None


class ScheduleEntry(BaseModel):
    """A scheduled activity block ``[start_time, end_time)`` on one day."""

    id: int | None = None
    agent_id: int
    activity_type_id: int | None = None
    date: dt.date
    start_time: str
    end_time: str

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_clock(cls, value: str) -> str:
        parse_clock(value)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "ScheduleEntry":
        if parse_clock(self.end_time) <= parse_clock(self.start_time):
            raise ValueError("end_time must be after start_time")
        if parse_clock(self.start_time) >= 24 * 60:
            raise ValueError("start_time must be before 24:00")
        return self

    @property
    def start(self) -> dt.datetime:
        midnight = dt.datetime.combine(self.date, dt.time())
        return midnight + dt.timedelta(minutes=parse_clock(self.start_time))

    @property
    def end(self) -> dt.datetime:
        midnight = dt.datetime.combine(self.date, dt.time())
        return midnight + dt.timedelta(minutes=parse_clock(self.end_time))
