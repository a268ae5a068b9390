"""Two-state clock machine behind punch alternation.

An enrollment is ``OUT`` before its first punch and after a clock-out,
``IN`` after a clock-in. The only legal moves are listed in
``TRANSITIONS``; everything else is a ``SequenceError``.
"""

from enum import Enum

from ..errors import SequenceError
from ..models import Punch, PunchType


class PunchState(str, Enum):
    OUT = "OUT"
    IN = "IN"


TRANSITIONS: dict[tuple[PunchState, PunchType], PunchState] = {
    (PunchState.OUT, PunchType.CLOCK_IN): PunchState.IN,
    (PunchState.IN, PunchType.CLOCK_OUT): PunchState.OUT,
}

_REJECTIONS = {
    (PunchState.IN, PunchType.CLOCK_IN): "Already clocked in. Please clock out first.",
    (PunchState.OUT, PunchType.CLOCK_OUT): "Already clocked out. Please clock in first.",
}


def state_after(punch: Punch | None) -> PunchState:
    """Derive the clock state left behind by a punch (None = no history)."""
    if punch is not None and punch.punch_type is PunchType.CLOCK_IN:
        return PunchState.IN
    return PunchState.OUT


def expected_punch(state: PunchState) -> PunchType:
    """The only punch type accepted from ``state``."""
    for (source, punch_type), _ in TRANSITIONS.items():
        if source is state:
            return punch_type
    raise ValueError(f"No transition from {state}")


def next_state(state: PunchState, punch_type: PunchType, first: bool = False) -> PunchState:
    """Apply a punch to a state.

    Args:
        state: Current clock state.
        punch_type: Requested punch.
        first: True when the enrollment has no earlier punch.

    Returns:
        The resulting state.

    Raises:
        SequenceError: If the transition is not allowed.
    """
    punch_type = PunchType(punch_type)
    target = TRANSITIONS.get((state, punch_type))
    if target is not None:
        return target

    if first:
        message = "No clock in record found. Please clock in first."
    else:
        message = _REJECTIONS[(state, punch_type)]
    raise SequenceError(
        message,
        details={
            "state": state.value,
            "requested": punch_type.value,
            "expected": expected_punch(state).value,
        },
    )
