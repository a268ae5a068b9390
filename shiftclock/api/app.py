"""FastAPI application for the shiftclock attendance service.

Provides REST endpoints for the kiosk (identify, PIN check, punch,
status), supervisor punch corrections, schedule and exception queries,
hours reports, enrollment management, the audit trail and health checks.
"""

from contextlib import asynccontextmanager
from datetime import datetime, time

from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .. import __version__
from ..database import init_database
from ..database.enrollment_db import EnrollmentDatabase
from ..database.punch_db import PunchDatabase
from ..database.schedule_db import ScheduleDatabase
from ..errors import AccountInactiveError, AttendanceError, NotFoundError, ValidationError
from ..ledger import PunchLedger
from ..models import Enrollment, PunchType, RequestMetadata, VerificationMethod
from ..reconciliation import ExceptionSet, ReconciliationEngine, parse_date
from ..reporting.report_generator import ReportGenerator
from ..utils.audit import AuditLogger
from ..utils.config import get_settings
from ..utils.logger import set_log_level, setup_logger
from ..verification import DescriptorMatcher, IdentityVerifier, PinHasher
from .schemas import (
    AuditLogEntry,
    ClockStatusEntry,
    ClockStatusResponse,
    DeleteResponse,
    DescriptorUpdateRequest,
    EnrollmentResponse,
    EnrollRequest,
    HealthResponse,
    IdentifyRequest,
    IdentifyResponse,
    LastPunch,
    ManualPunchRequest,
    PunchEditRequest,
    PunchListResponse,
    PunchRequest,
    PunchResponse,
    ScheduleListResponse,
    StatusResponse,
    VerifyPinRequest,
    VerifyPinResponse,
)

logger = setup_logger(__name__)

_state: dict = {}

REPORT_FORMATS = {"json", "csv", "markdown"}


def build_components(config: dict) -> dict:
    """Wire stores and services from a configuration dictionary.

    Args:
        config: Merged configuration (see ``utils.config``).

    Returns:
        Component dictionary in the shape ``_state`` expects.
    """
    db_path = config["database"]["path"]
    init_database(db_path)

    verification_cfg = config["verification"]
    attendance_cfg = config["attendance"]

    enrollment_db = EnrollmentDatabase(db_path)
    punch_db = PunchDatabase(db_path, busy_timeout=config["ledger"]["lock_timeout_seconds"])
    schedule_db = ScheduleDatabase(db_path)
    audit = AuditLogger(db_path, transactions=punch_db)

    matcher = DescriptorMatcher(
        min_confidence=verification_cfg["min_face_confidence"],
        distance_scale=verification_cfg["distance_scale"],
        expected_dim=verification_cfg["descriptor_dim"],
    )
    pin_hasher = PinHasher(rounds=verification_cfg["bcrypt_rounds"])
    engine = ReconciliationEngine(
        schedule_db,
        punch_db,
        enrollment_db,
        tolerance_minutes=attendance_cfg["tolerance_minutes"],
        no_show_grace_minutes=attendance_cfg["no_show_grace_minutes"],
        cache_ttl_seconds=config["reconciliation"]["cache_ttl_seconds"],
    )

    return {
        "config": config,
        "enrollment_db": enrollment_db,
        "punch_db": punch_db,
        "schedule_db": schedule_db,
        "audit": audit,
        "matcher": matcher,
        "pin_hasher": pin_hasher,
        "verifier": IdentityVerifier(matcher, pin_hasher),
        "ledger": PunchLedger(
            punch_db,
            enrollment_db,
            audit=audit,
            lock_timeout=config["ledger"]["lock_timeout_seconds"],
        ),
        "engine": engine,
        "report_generator": ReportGenerator(punch_db, enrollment_db, engine),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and clean up application components."""
    settings = get_settings()
    config = settings.load_config()
    set_log_level(config["logging"]["level"])

    _state.update(build_components(config))

    logger.info("Application started")
    yield
    logger.info("Application shutting down")
    _state.clear()


app = FastAPI(
    title="Shiftclock Attendance API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError) -> JSONResponse:
    """Render any domain error as ``{"error", "error_code", "details"}``."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info(
            "%s %s rejected (%s): %s",
            request.method,
            request.url.path,
            exc.error_code,
            exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies and parameters as ``ValidationFailed``."""
    error = ValidationError("Invalid input", details={"errors": exc.errors()})
    return JSONResponse(status_code=error.status_code, content=jsonable_encoder(error.to_dict()))


def _get_client_ip(request: Request) -> str | None:
    """Extract client IP, preferring proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else None


def _enrollment_response(enrollment: Enrollment) -> EnrollmentResponse:
    return EnrollmentResponse(
        id=enrollment.id,
        agent_id=enrollment.agent_id,
        has_face_descriptor=enrollment.has_descriptor,
        reference_photo_url=enrollment.reference_photo_url,
        enrolled_by=enrollment.enrolled_by,
        enrolled_at=enrollment.enrolled_at,
    )


def _check_format(format: str) -> str:
    if format not in REPORT_FORMATS:
        raise ValidationError(
            f"Unknown format {format!r}", details={"allowed": sorted(REPORT_FORMATS)}
        )
    return format


def _ledger_changed() -> None:
    engine: ReconciliationEngine = _state["engine"]
    engine.invalidate_cache()


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check API health and component status."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        database="connected" if "punch_db" in _state else "unavailable",
    )


# Enrollment management


@app.post("/enrollments", response_model=EnrollmentResponse, status_code=201)
async def create_enrollment(body: EnrollRequest, request: Request) -> EnrollmentResponse:
    """Enroll an agent with a PIN and an optional reference descriptor."""
    matcher: DescriptorMatcher = _state["matcher"]
    pin_hasher: PinHasher = _state["pin_hasher"]
    enrollment_db: EnrollmentDatabase = _state["enrollment_db"]

    descriptor = None
    if body.face_descriptor is not None:
        descriptor = matcher.to_vector(body.face_descriptor).tolist()
    enrollment = enrollment_db.create_enrollment(
        body.agent_id,
        pin_hasher.hash(body.pin),
        descriptor=descriptor,
        reference_photo_url=body.reference_photo_url,
        enrolled_by=body.enrolled_by,
    )

    audit: AuditLogger = _state["audit"]
    audit.log(
        "enroll",
        enrollment_id=enrollment.id,
        actor=body.enrolled_by,
        details=f"Enrolled agent_id={body.agent_id}",
        ip_address=_get_client_ip(request),
    )
    return _enrollment_response(enrollment)


@app.get("/enrollments/{enrollment_id}", response_model=EnrollmentResponse)
async def get_enrollment(enrollment_id: int) -> EnrollmentResponse:
    """Get an enrollment without its PIN hash or descriptor."""
    enrollment_db: EnrollmentDatabase = _state["enrollment_db"]
    enrollment = enrollment_db.get_enrollment(enrollment_id)
    if enrollment is None:
        raise NotFoundError("Enrollment not found", details={"enrollment_id": enrollment_id})
    return _enrollment_response(enrollment)


@app.put("/enrollments/{enrollment_id}/descriptor", response_model=EnrollmentResponse)
async def replace_descriptor(
    enrollment_id: int, body: DescriptorUpdateRequest, request: Request
) -> EnrollmentResponse:
    """Replace the reference face descriptor of an enrollment."""
    matcher: DescriptorMatcher = _state["matcher"]
    enrollment_db: EnrollmentDatabase = _state["enrollment_db"]

    descriptor = matcher.to_vector(body.face_descriptor).tolist()
    enrollment = enrollment_db.replace_descriptor(enrollment_id, descriptor)

    audit: AuditLogger = _state["audit"]
    audit.log(
        "update_descriptor",
        enrollment_id=enrollment_id,
        actor=body.editor_id,
        details="Reference descriptor replaced",
        ip_address=_get_client_ip(request),
    )
    return _enrollment_response(enrollment)


# Kiosk


@app.post("/tech-portal/identify", response_model=IdentifyResponse)
async def identify(body: IdentifyRequest) -> IdentifyResponse:
    """Look up an employee at the kiosk and report their clock status."""
    enrollment_db: EnrollmentDatabase = _state["enrollment_db"]
    agent = enrollment_db.get_agent_by_employee_id(body.employee_id)
    if agent is None:
        raise NotFoundError("Employee not found", details={"employee_id": body.employee_id})
    if not agent.is_active:
        raise AccountInactiveError("Employee account is inactive", details={"agent_id": agent.id})
    enrollment = enrollment_db.get_enrollment_by_agent(agent.id)
    if enrollment is None:
        raise NotFoundError(
            "Employee is not enrolled in time clock system",
            details={"employee_id": body.employee_id},
        )

    ledger: PunchLedger = _state["ledger"]
    status = ledger.current_status(enrollment.id)
    last = status["last_punch"]
    return IdentifyResponse(
        enrollment=_enrollment_response(enrollment),
        agent=agent,
        last_punch=LastPunch(
            id=last.id,
            punch_type=last.punch_type,
            punch_time=last.punch_time,
            verification_method=last.verification_method.value,
        )
        if last
        else None,
        current_status=status["status"],
    )


@app.get("/tech-portal/status", response_model=StatusResponse)
async def tech_status(enrollment_id: int) -> StatusResponse:
    """Current status and the last ten punches of an enrollment."""
    ledger: PunchLedger = _state["ledger"]
    ledger.load_enrollment(enrollment_id)
    return StatusResponse(**ledger.current_status(enrollment_id))


@app.post("/tech-portal/verify-pin", response_model=VerifyPinResponse)
async def verify_pin(body: VerifyPinRequest) -> VerifyPinResponse:
    """Check a fallback PIN without recording a punch."""
    ledger: PunchLedger = _state["ledger"]
    enrollment, agent = ledger.load_enrollment(body.enrollment_id)
    if not agent.is_active:
        raise AccountInactiveError("Employee account is inactive", details={"agent_id": agent.id})

    verifier: IdentityVerifier = _state["verifier"]
    verifier.verify_pin(enrollment, body.pin)
    return VerifyPinResponse(verified=True)


@app.post("/tech-portal/punch", response_model=PunchResponse)
async def record_punch(body: PunchRequest, request: Request) -> PunchResponse:
    """Verify the agent and append a kiosk punch stamped with server time."""
    ledger: PunchLedger = _state["ledger"]
    verifier: IdentityVerifier = _state["verifier"]

    enrollment, agent = ledger.load_enrollment(body.enrollment_id)
    if not agent.is_active:
        raise AccountInactiveError("Employee account is inactive", details={"agent_id": agent.id})

    evidence = verifier.verify(enrollment, descriptor=body.face_descriptor, pin=body.pin)
    metadata = RequestMetadata(
        user_agent=request.headers.get("user-agent"),
        ip_address=_get_client_ip(request),
    )
    punch = ledger.record_punch(
        body.enrollment_id, body.punch_type, evidence, location=body.location, metadata=metadata
    )
    _ledger_changed()

    action = "clocked in" if punch.punch_type is PunchType.CLOCK_IN else "clocked out"
    return PunchResponse(
        punch=punch,
        agent=agent,
        verification=evidence,
        message=f"Successfully {action}",
    )


@app.get("/clock-status", response_model=ClockStatusResponse)
async def clock_status() -> ClockStatusResponse:
    """Live clocked-in board for every active enrolled agent."""
    ledger: PunchLedger = _state["ledger"]
    return ClockStatusResponse(agents=[ClockStatusEntry(**row) for row in ledger.clock_status()])


# Supervisor punch administration


@app.get("/punches", response_model=PunchListResponse)
async def list_punches(
    start_date: str | None = Query(None, description="Start date (YYYY-MM-DD)"),
    end_date: str | None = Query(None, description="End date (YYYY-MM-DD)"),
    enrollment_id: int | None = None,
    employee_id: str | None = None,
    punch_type: PunchType | None = None,
    verification_method: VerificationMethod | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> PunchListResponse:
    """List punches with filters and pagination, oldest first."""
    filters = {
        "enrollment_id": enrollment_id,
        "employee_id": employee_id,
        "start": datetime.combine(parse_date(start_date), time.min) if start_date else None,
        "end": datetime.combine(parse_date(end_date), time(23, 59, 59)) if end_date else None,
        "punch_type": punch_type,
        "verification_method": verification_method,
    }
    ledger: PunchLedger = _state["ledger"]
    punch_db: PunchDatabase = _state["punch_db"]
    return PunchListResponse(
        punches=ledger.list_punches(limit=limit, offset=offset, **filters),
        total=punch_db.count(**filters),
        limit=limit,
        offset=offset,
    )


@app.post("/punches/manual", status_code=201)
async def create_manual_punch(body: ManualPunchRequest):
    """Insert an administrative punch at a supervisor-chosen time."""
    ledger: PunchLedger = _state["ledger"]
    punch = ledger.create_manual_punch(
        body.enrollment_id, body.punch_type, body.punch_time, body.note, body.editor_id
    )
    _ledger_changed()
    return punch


@app.get("/punches/{punch_id}")
async def get_punch(punch_id: int):
    """Get a single punch."""
    ledger: PunchLedger = _state["ledger"]
    return ledger.get_punch(punch_id)


@app.patch("/punches/{punch_id}")
async def edit_punch(punch_id: int, body: PunchEditRequest):
    """Correct a punch time, keeping the first system-recorded time."""
    ledger: PunchLedger = _state["ledger"]
    punch = ledger.edit_punch(punch_id, body.punch_time, body.note, body.editor_id)
    _ledger_changed()
    return punch


@app.delete("/punches/{punch_id}", response_model=DeleteResponse)
async def delete_punch(punch_id: int, editor_id: str = Query(..., min_length=1)) -> DeleteResponse:
    """Hard-delete an erroneous manual punch."""
    ledger: PunchLedger = _state["ledger"]
    ledger.delete_punch(punch_id, editor_id)
    _ledger_changed()
    return DeleteResponse(success=True, message="Punch deleted", punch_id=punch_id)


# Schedule, exceptions and reports


@app.get("/schedule", response_model=ScheduleListResponse)
async def get_schedule(date: str | None = None, agent_id: int | None = None):
    """Schedule entries for a date."""
    day = parse_date(date)
    schedule_db: ScheduleDatabase = _state["schedule_db"]
    return ScheduleListResponse(
        date=day.isoformat(),
        entries=schedule_db.list(entry_date=day, agent_id=agent_id),
    )


@app.get("/exceptions", response_model=ExceptionSet)
async def get_exceptions(
    date: str | None = Query(None, description="Date (YYYY-MM-DD)"),
    agent_id: int | None = None,
    department_id: int | None = None,
    format: str = Query("json", description="Output format: json, csv, or markdown"),
):
    """Reconcile schedule against punches for a date."""
    _check_format(format)
    report_gen: ReportGenerator = _state["report_generator"]
    if format == "csv":
        content = report_gen.generate_exceptions_csv(date, agent_id, department_id)
        return PlainTextResponse(content, media_type="text/csv")
    elif format == "markdown":
        content = report_gen.generate_exceptions_markdown(date, agent_id, department_id)
        return PlainTextResponse(content, media_type="text/markdown")

    engine: ReconciliationEngine = _state["engine"]
    return engine.compute_exceptions(date, agent_id, department_id)


@app.get("/reports/hours")
async def get_hours_report(
    start: str = Query(..., description="Start date (YYYY-MM-DD)"),
    end: str | None = Query(None, description="End date (YYYY-MM-DD), default start + 6 days"),
    format: str = Query("json", description="Output format: json, csv, or markdown"),
):
    """Worked hours per employee for a date range."""
    _check_format(format)
    start_date = parse_date(start)
    end_date = parse_date(end) if end else None

    report_gen: ReportGenerator = _state["report_generator"]
    if format == "csv":
        content = report_gen.generate_hours_csv(start_date, end_date)
        return PlainTextResponse(content, media_type="text/csv")
    elif format == "markdown":
        content = report_gen.generate_hours_markdown(start_date, end_date)
        return PlainTextResponse(content, media_type="text/markdown")

    summaries = report_gen.hours_summary(start_date, end_date)
    return {"start": start, "end": end, "employees": jsonable_encoder(summaries)}


@app.get("/audit", response_model=dict[str, list[AuditLogEntry]])
async def get_audit_log(
    enrollment_id: int | None = None,
    punch_id: int | None = None,
    action: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """Get audit log entries, newest first."""
    audit: AuditLogger = _state["audit"]
    entries = audit.get_audit_log(
        enrollment_id=enrollment_id, punch_id=punch_id, action=action, limit=limit
    )
    return {"entries": entries}
