"""Pydantic schemas for API request/response validation."""

from datetime import datetime

from pydantic import BaseModel, Field

from ..models import Agent, Location, Punch, PunchType, ScheduleEntry, VerificationResult


class ErrorResponse(BaseModel):
    """Body of every failed request."""

    error: str
    error_code: str
    details: dict = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response for health check."""

    status: str
    version: str
    database: str


class EnrollRequest(BaseModel):
    """Create a time-clock enrollment for an agent."""

    agent_id: int
    pin: str
    face_descriptor: list[float] | None = None
    reference_photo_url: str | None = None
    enrolled_by: str | None = None


class DescriptorUpdateRequest(BaseModel):
    face_descriptor: list[float]
    editor_id: str | None = None


class EnrollmentResponse(BaseModel):
    """Enrollment details; the PIN hash and descriptor never leave the server."""

    id: int
    agent_id: int
    has_face_descriptor: bool
    reference_photo_url: str | None = None
    enrolled_by: str | None = None
    enrolled_at: datetime | None = None


class IdentifyRequest(BaseModel):
    employee_id: str = Field(min_length=1)


class LastPunch(BaseModel):
    id: int
    punch_type: PunchType
    punch_time: datetime
    verification_method: str


class IdentifyResponse(BaseModel):
    """Kiosk lookup of an employee by badge number."""

    enrollment: EnrollmentResponse
    agent: Agent
    last_punch: LastPunch | None = None
    current_status: str


class VerifyPinRequest(BaseModel):
    enrollment_id: int
    pin: str


class VerifyPinResponse(BaseModel):
    verified: bool


class PunchRequest(BaseModel):
    """Kiosk punch with exactly one of a live face descriptor or a PIN."""

    enrollment_id: int
    punch_type: PunchType
    face_descriptor: list[float] | None = None
    pin: str | None = None
    location: Location | None = None


class PunchResponse(BaseModel):
    """Response for a recorded kiosk punch."""

    punch: Punch
    agent: Agent
    verification: VerificationResult
    message: str


class StatusResponse(BaseModel):
    """Current clock status derived from the last punch."""

    enrollment_id: int
    status: str
    last_punch: Punch | None = None
    recent_punches: list[Punch]


class PunchEditRequest(BaseModel):
    """Supervisor correction of a punch time."""

    punch_time: datetime
    note: str
    editor_id: str = Field(min_length=1)


class ManualPunchRequest(BaseModel):
    """Administrative punch inserted at an arbitrary time."""

    enrollment_id: int
    punch_type: PunchType
    punch_time: datetime
    note: str
    editor_id: str = Field(min_length=1)


class PunchListResponse(BaseModel):
    punches: list[Punch]
    total: int
    limit: int
    offset: int


class DeleteResponse(BaseModel):
    """Response for manual punch deletion."""

    success: bool
    message: str
    punch_id: int


class ClockStatusEntry(BaseModel):
    """One row of the live clock status board."""

    agent_id: int
    enrollment_id: int
    first_name: str
    last_name: str
    department_id: int | None = None
    is_clocked_in: bool
    last_punch_time: datetime | None = None
    last_punch_type: PunchType | None = None


class ClockStatusResponse(BaseModel):
    agents: list[ClockStatusEntry]


class ScheduleListResponse(BaseModel):
    date: str
    entries: list[ScheduleEntry]


class AuditLogEntry(BaseModel):
    """Single audit log entry."""

    id: int
    action: str
    enrollment_id: int | None = None
    punch_id: int | None = None
    actor: str | None = None
    details: str | None = None
    timestamp: str
    ip_address: str | None = None
