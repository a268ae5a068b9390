"""Attendance exceptions produced by reconciliation.

These are value objects computed per request and never stored.
``minutes_diff`` is signed: positive means later than scheduled,
negative means earlier.
"""

import datetime as dt

from pydantic import BaseModel, Field

from ..models import PunchType


class TimeException(BaseModel):
    """Arrival compared with a scheduled start."""

    agent_id: int
    agent_name: str
    scheduled_start: dt.datetime
    actual_start: dt.datetime
    minutes_diff: int


class ArrivedEarly(TimeException):
    pass


class ArrivedLate(TimeException):
    pass


class DepartureException(BaseModel):
    """Departure compared with a scheduled end."""

    agent_id: int
    agent_name: str
    scheduled_end: dt.datetime
    actual_end: dt.datetime
    minutes_diff: int


class LeftEarly(DepartureException):
    pass


class LeftLate(DepartureException):
    pass


class NoShow(BaseModel):
    """Scheduled block with no matching punches."""

    agent_id: int
    agent_name: str
    scheduled_start: dt.datetime
    scheduled_end: dt.datetime


class MissedPunch(BaseModel):
    """Alternation gap in the ledger needing supervisor attention.

    ``punch_type`` is the type of the punch that is missing.
    """

    agent_id: int
    agent_name: str
    punch_type: PunchType
    punch_times: list[dt.datetime]
    message: str


class ExceptionSet(BaseModel):
    """All exceptions for one date, grouped by variant."""

    date: dt.date
    arrived_early: list[ArrivedEarly] = Field(default_factory=list)
    arrived_late: list[ArrivedLate] = Field(default_factory=list)
    left_early: list[LeftEarly] = Field(default_factory=list)
    left_late: list[LeftLate] = Field(default_factory=list)
    no_shows: list[NoShow] = Field(default_factory=list)
    missed_punches: list[MissedPunch] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.arrived_early)
            + len(self.arrived_late)
            + len(self.left_early)
            + len(self.left_late)
            + len(self.no_shows)
            + len(self.missed_punches)
        )

    def sort(self) -> None:
        """Order every list by agent name, ties by time."""
        self.arrived_early.sort(key=lambda e: (e.agent_name, e.scheduled_start))
        self.arrived_late.sort(key=lambda e: (e.agent_name, e.scheduled_start))
        self.left_early.sort(key=lambda e: (e.agent_name, e.scheduled_end))
        self.left_late.sort(key=lambda e: (e.agent_name, e.scheduled_end))
        self.no_shows.sort(key=lambda e: (e.agent_name, e.scheduled_start))
        self.missed_punches.sort(key=lambda e: (e.agent_name, e.punch_times[0]))
