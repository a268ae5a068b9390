"""Reconciliation of schedules against the punch ledger."""

from .engine import ReconciliationEngine, parse_date
from .exception_set import (
    ArrivedEarly,
    ArrivedLate,
    ExceptionSet,
    LeftEarly,
    LeftLate,
    MissedPunch,
    NoShow,
)
from .intervals import PunchInterval, find_alternation_gaps, pair_punches

__all__ = [
    "ArrivedEarly",
    "ArrivedLate",
    "ExceptionSet",
    "LeftEarly",
    "LeftLate",
    "MissedPunch",
    "NoShow",
    "PunchInterval",
    "ReconciliationEngine",
    "find_alternation_gaps",
    "pair_punches",
    "parse_date",
]
