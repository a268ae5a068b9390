"""Worked-hours calculation from punch pairs."""

from collections import defaultdict
from datetime import date

from pydantic import BaseModel

from ..models import Agent, Punch, PunchType, VerificationMethod


class PunchPair(BaseModel):
    """A clock-in and its clock-out on one day.

    Incomplete pairs have no ``clock_out`` and no ``hours``; an orphan
    clock-out is reported as the ``clock_in`` of an incomplete pair.
    """

    clock_in: Punch
    clock_out: Punch | None = None
    hours: float | None = None
    is_complete: bool = False


class DailyHours(BaseModel):
    date: date
    pairs: list[PunchPair]
    total_hours: float
    has_incomplete: bool


class EmployeeHours(BaseModel):
    """Hours worked by one enrolled agent over a period."""

    enrollment_id: int
    employee_id: str
    first_name: str
    last_name: str
    daily_hours: list[DailyHours]
    total_hours: float
    unverified_count: int
    manual_count: int


def hours_between(start: Punch, end: Punch) -> float:
    """Decimal hours between two punches, rounded to two places."""
    return round((end.punch_time - start.punch_time).total_seconds() / 3600, 2)


def pair_day(punches: list[Punch]) -> list[PunchPair]:
    """Pair one day's punches, each clock-in with the next clock-out."""
    pairs = []
    current = None
    for punch in sorted(punches, key=lambda p: (p.punch_time, p.id)):
        if punch.punch_type is PunchType.CLOCK_IN:
            if current is not None:
                pairs.append(PunchPair(clock_in=current))
            current = punch
        elif current is not None:
            pairs.append(
                PunchPair(
                    clock_in=current,
                    clock_out=punch,
                    hours=hours_between(current, punch),
                    is_complete=True,
                )
            )
            current = None
        else:
            pairs.append(PunchPair(clock_in=punch))
    if current is not None:
        pairs.append(PunchPair(clock_in=current))
    return pairs


def daily_hours(punches: list[Punch]) -> list[DailyHours]:
    """Group punches by calendar day and total each day."""
    by_day: dict[date, list[Punch]] = defaultdict(list)
    for punch in punches:
        by_day[punch.punch_time.date()].append(punch)

    days = []
    for day in sorted(by_day):
        pairs = pair_day(by_day[day])
        days.append(
            DailyHours(
                date=day,
                pairs=pairs,
                total_hours=round(sum(p.hours or 0 for p in pairs), 2),
                has_incomplete=any(not p.is_complete for p in pairs),
            )
        )
    return days


def summarize(enrollment_id: int, agent: Agent, punches: list[Punch]) -> EmployeeHours:
    days = daily_hours(punches)
    return EmployeeHours(
        enrollment_id=enrollment_id,
        employee_id=agent.employee_id,
        first_name=agent.first_name,
        last_name=agent.last_name,
        daily_hours=days,
        total_hours=round(sum(d.total_hours for d in days), 2),
        unverified_count=sum(
            1 for p in punches if p.verification_method is VerificationMethod.PIN_FALLBACK
        ),
        manual_count=sum(1 for p in punches if p.is_manual),
    )


def format_hours(hours: float) -> str:
    """Render decimal hours as ``H:MM`` (8.5 -> ``8:30``)."""
    total_minutes = round(hours * 60)
    return f"{total_minutes // 60}:{total_minutes % 60:02d}"
