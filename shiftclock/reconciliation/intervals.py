"""Pairing punches into worked intervals and finding alternation gaps."""

from datetime import datetime
from typing import NamedTuple

from ..models import Punch, PunchType


class PunchInterval(NamedTuple):
    """A ``[clock_in, clock_out)`` span of work.

    ``clock_out`` is None for open intervals (still clocked in) and for
    broken ones, where another CLOCK_IN arrived first. A broken interval
    runs up to ``next_punch_time`` for overlap purposes, but its real
    departure is unknown.
    """

    clock_in: Punch
    clock_out: Punch | None = None
    next_punch_time: datetime | None = None

    @property
    def start(self) -> datetime:
        return self.clock_in.punch_time

    @property
    def is_open(self) -> bool:
        return self.clock_out is None and self.next_punch_time is None

    @property
    def is_broken(self) -> bool:
        return self.clock_out is None and self.next_punch_time is not None

    def effective_end(self, now: datetime) -> datetime:
        if self.clock_out is not None:
            return self.clock_out.punch_time
        if self.next_punch_time is not None:
            return self.next_punch_time
        return max(now, self.start)


class AlternationGap(NamedTuple):
    """A run of punches that breaks CLOCK_IN / CLOCK_OUT alternation."""

    missing_type: PunchType
    punches: list[Punch]
    message: str


def pair_punches(punches: list[Punch], horizon: datetime | None = None) -> list[PunchInterval]:
    """Pair a time-ordered punch sequence into intervals.

    Orphan CLOCK_OUTs close nothing and are skipped here; they surface as
    alternation gaps instead.

    Args:
        punches: Punches of one enrollment ordered by ``(punch_time, id)``.
        horizon: End of the day being reconciled. A clock-out after it
            leaves its clock-in open, as if it had not happened yet, and
            pairing stops there.

    Returns:
        Intervals in chronological order.
    """
    intervals = []
    pending = None
    for punch in punches:
        if punch.punch_type is PunchType.CLOCK_IN:
            if pending is not None:
                intervals.append(PunchInterval(pending, next_punch_time=punch.punch_time))
            pending = punch
        elif pending is not None:
            if horizon is not None and punch.punch_time > horizon:
                break
            intervals.append(PunchInterval(pending, clock_out=punch))
            pending = None
    if pending is not None:
        intervals.append(PunchInterval(pending))
    return intervals


def _label(punch_type: PunchType) -> str:
    return "clock-ins" if punch_type is PunchType.CLOCK_IN else "clock-outs"


def _missing_label(punch_type: PunchType) -> str:
    return "clock-in" if punch_type is PunchType.CLOCK_IN else "clock-out"


def find_alternation_gaps(punches: list[Punch], has_history: bool = True) -> list[AlternationGap]:
    """Scan a punch sequence for runs of the same punch type.

    Args:
        punches: Punches of one enrollment ordered by ``(punch_time, id)``.
        has_history: False when ``punches`` starts at the enrollment's very
            first punch, so a leading CLOCK_OUT is an orphan.

    Returns:
        One gap per run of two or more equal punch types, plus one for a
        leading orphan CLOCK_OUT.
    """
    gaps = []
    i = 0
    while i < len(punches):
        punch_type = punches[i].punch_type
        j = i
        while j < len(punches) and punches[j].punch_type is punch_type:
            j += 1
        run = punches[i:j]
        missing = punch_type.counterpart

        if len(run) >= 2:
            gaps.append(
                AlternationGap(
                    missing,
                    run,
                    f"{len(run)} consecutive {_label(punch_type)} "
                    f"without {_missing_label(missing)}",
                )
            )
        elif i == 0 and not has_history and punch_type is PunchType.CLOCK_OUT:
            gaps.append(AlternationGap(missing, run, "Clock-out without clock-in"))
        i = j
    return gaps
