"""Shared fixtures: in-memory stores standing in for the SQLite databases."""

from contextlib import contextmanager
from datetime import date, datetime

import pytest

from shiftclock.models import (
    Agent,
    Enrollment,
    Punch,
    PunchType,
    ScheduleEntry,
    VerificationMethod,
)


class FakeEnrollmentStore:
    """Agents and enrollments kept in dictionaries."""

    def __init__(self) -> None:
        self.agents: dict[int, Agent] = {}
        self.enrollments: dict[int, Enrollment] = {}

    def add_agent(
        self,
        first_name: str,
        last_name: str,
        department_id: int | None = None,
        is_active: bool = True,
    ) -> Agent:
        agent_id = len(self.agents) + 1
        agent = Agent(
            id=agent_id,
            employee_id=f"E{agent_id:03d}",
            first_name=first_name,
            last_name=last_name,
            department_id=department_id,
            is_active=is_active,
        )
        self.agents[agent_id] = agent
        return agent

    def enroll(
        self, agent_id: int, pin_hash: str = "unused", descriptor: list[float] | None = None
    ) -> Enrollment:
        enrollment_id = len(self.enrollments) + 1
        enrollment = Enrollment(
            id=enrollment_id,
            agent_id=agent_id,
            pin_hash=pin_hash,
            reference_descriptor=descriptor,
        )
        self.enrollments[enrollment_id] = enrollment
        return enrollment

    def get_agent(self, agent_id: int) -> Agent | None:
        return self.agents.get(agent_id)

    def get_agent_by_employee_id(self, employee_id: str) -> Agent | None:
        return next((a for a in self.agents.values() if a.employee_id == employee_id), None)

    def get_enrollment(self, enrollment_id: int) -> Enrollment | None:
        return self.enrollments.get(enrollment_id)

    def get_enrollment_by_agent(self, agent_id: int) -> Enrollment | None:
        return next((e for e in self.enrollments.values() if e.agent_id == agent_id), None)

    def list_enrollments(self) -> list[Enrollment]:
        return list(self.enrollments.values())


class FakePunchStore:
    """Punches kept in a dictionary, ordered by ``(punch_time, id)`` on read."""

    def __init__(self, enrollment_store: FakeEnrollmentStore) -> None:
        self.enrollment_store = enrollment_store
        self.punches: dict[int, Punch] = {}
        self._next_id = 1

    @contextmanager
    def transaction(self):
        yield

    def create(self, fields: dict) -> Punch:
        values = {k: v for k, v in fields.items() if v is not None}
        values.setdefault("created_at", datetime.now())
        punch = Punch(id=self._next_id, **values)
        self.punches[punch.id] = punch
        self._next_id += 1
        return punch

    def add(
        self,
        enrollment_id: int,
        punch_type: PunchType,
        punch_time: datetime,
        **extra,
    ) -> Punch:
        """Insert a punch directly, bypassing ledger checks."""
        fields = {
            "enrollment_id": enrollment_id,
            "punch_type": punch_type,
            "punch_time": punch_time,
            "verification_method": VerificationMethod.FACE_VERIFIED,
        }
        fields.update(extra)
        return self.create(fields)

    def get(self, punch_id: int) -> Punch | None:
        return self.punches.get(punch_id)

    def update(self, punch_id: int, **fields) -> Punch | None:
        if punch_id not in self.punches:
            return None
        self.punches[punch_id] = self.punches[punch_id].model_copy(update=fields)
        return self.punches[punch_id]

    def delete(self, punch_id: int) -> bool:
        return self.punches.pop(punch_id, None) is not None

    def _ordered(self, enrollment_id: int) -> list[Punch]:
        return sorted(
            (p for p in self.punches.values() if p.enrollment_id == enrollment_id),
            key=lambda p: (p.punch_time, p.id),
        )

    def latest(self, enrollment_id: int) -> Punch | None:
        ordered = self._ordered(enrollment_id)
        return ordered[-1] if ordered else None

    def latest_before(self, enrollment_id: int, before: datetime) -> Punch | None:
        earlier = [p for p in self._ordered(enrollment_id) if p.punch_time < before]
        return earlier[-1] if earlier else None

    def neighbors(self, enrollment_id: int, at: datetime):
        ordered = self._ordered(enrollment_id)
        before = [p for p in ordered if p.punch_time <= at]
        after = [p for p in ordered if p.punch_time > at]
        return (before[-1] if before else None, after[0] if after else None)

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
        result = []
        for p in self.punches.values():
            if enrollment_id is not None and p.enrollment_id != enrollment_id:
                continue
            if employee_id is not None:
                enrollment = self.enrollment_store.get_enrollment(p.enrollment_id)
                agent = self.enrollment_store.get_agent(enrollment.agent_id)
                if agent.employee_id != employee_id:
                    continue
            if start is not None and p.punch_time < start:
                continue
            if end is not None and p.punch_time > end:
                continue
            if punch_type is not None and p.punch_type is not PunchType(punch_type):
                continue
            if verification_method is not None and p.verification_method is not (
                VerificationMethod(verification_method)
            ):
                continue
            result.append(p)
        result.sort(key=lambda p: (p.punch_time, p.id), reverse=descending)
        result = result[offset:]
        return result[:limit] if limit is not None else result

    def count(self, **filters) -> int:
        return len(self.list(**filters))


class FakeScheduleStore:
    """Schedule entries kept in a list."""

    def __init__(self, enrollment_store: FakeEnrollmentStore) -> None:
        self.enrollment_store = enrollment_store
        self.entries: list[ScheduleEntry] = []

    def add(self, agent_id: int, day: date, start_time: str, end_time: str) -> ScheduleEntry:
        entry = ScheduleEntry(
            id=len(self.entries) + 1,
            agent_id=agent_id,
            date=day,
            start_time=start_time,
            end_time=end_time,
        )
        self.entries.append(entry)
        return entry

    def list(
        self,
        entry_date: date | None = None,
        agent_id: int | None = None,
        department_id: int | None = None,
    ) -> list[ScheduleEntry]:
        result = []
        for entry in self.entries:
            if entry_date is not None and entry.date != entry_date:
                continue
            if agent_id is not None and entry.agent_id != agent_id:
                continue
            if department_id is not None:
                agent = self.enrollment_store.get_agent(entry.agent_id)
                if agent is None or agent.department_id != department_id:
                    continue
            result.append(entry)
        return sorted(result, key=lambda e: (e.agent_id, e.date, e.start_time))


@pytest.fixture
def enrollment_store() -> FakeEnrollmentStore:
    """Provide an empty in-memory enrollment store."""
    return FakeEnrollmentStore()


@pytest.fixture
def punch_store(enrollment_store: FakeEnrollmentStore) -> FakePunchStore:
    """Provide an empty in-memory punch store."""
    return FakePunchStore(enrollment_store)


@pytest.fixture
def schedule_store(enrollment_store: FakeEnrollmentStore) -> FakeScheduleStore:
    """Provide an empty in-memory schedule store."""
    return FakeScheduleStore(enrollment_store)
