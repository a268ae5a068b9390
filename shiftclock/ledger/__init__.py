"""Punch ledger: the clock state machine and the service enforcing it."""

from .punch_ledger import PunchLedger
from .state_machine import TRANSITIONS, PunchState, next_state, state_after

__all__ = ["PunchLedger", "PunchState", "TRANSITIONS", "next_state", "state_after"]
