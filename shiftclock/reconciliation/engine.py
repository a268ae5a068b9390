"""Reconciliation of scheduled activity against recorded punches.

For one calendar date the engine pairs each agent's punches into worked
intervals, matches them to the agent's schedule entries by overlap and
reports the differences as an ``ExceptionSet``. It only reads the stores.
"""

import threading
from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime, timedelta
from time import monotonic

from ..errors import ValidationError
from ..models import Agent, Punch, PunchType, ScheduleEntry
from ..utils.logger import setup_logger
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

logger = setup_logger(__name__)

Span = tuple[datetime, datetime]


def parse_date(value: date | str | None) -> date:
    """Coerce a request date.

    Raises:
        ValidationError: If the date is missing or not ``YYYY-MM-DD``.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError("date is required")
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def _overlap(a: Span, b: Span) -> float:
    return max(0.0, (min(a[1], b[1]) - max(a[0], b[0])).total_seconds())


def _subtract(span: Span, holes: list[Span]) -> list[Span]:
    """Remove ``holes`` from ``span``, returning the non-empty pieces."""
    pieces = [span]
    for hole_start, hole_end in holes:
        remaining = []
        for start, end in pieces:
            if hole_end <= start or hole_start >= end:
                remaining.append((start, end))
                continue
            if start < hole_start:
                remaining.append((start, hole_start))
            if hole_end < end:
                remaining.append((hole_end, end))
        pieces = remaining
    return pieces


class ReconciliationEngine:
    """Compute attendance exceptions for a date.

    Args:
        schedule_store: Schedule entries (``ScheduleDatabase`` or a fake).
        punch_store: Punch ledger storage.
        enrollment_store: Agent and enrollment lookups.
        tolerance_minutes: Deltas shorter than this are treated as zero.
        no_show_grace_minutes: Minutes past a scheduled start before a
            missing agent is reported.
        cache_ttl_seconds: Lifetime of cached results; 0 disables caching.
        clock: Source of "now" for open intervals and no-shows.
    """

    def __init__(
        self,
        schedule_store,
        punch_store,
        enrollment_store,
        tolerance_minutes: float = 1,
        no_show_grace_minutes: float = 30,
        cache_ttl_seconds: float = 30,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.schedule_store = schedule_store
        self.punch_store = punch_store
        self.enrollment_store = enrollment_store
        self.tolerance = timedelta(minutes=tolerance_minutes)
        self.no_show_grace = timedelta(minutes=no_show_grace_minutes)
        self.cache_ttl = cache_ttl_seconds
        self.clock = clock
        self._cache: dict[tuple, tuple[float, ExceptionSet]] = {}
        self._cache_lock = threading.Lock()

    def invalidate_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def compute_exceptions(
        self,
        target_date: date | str | None,
        agent_id: int | None = None,
        department_id: int | None = None,
    ) -> ExceptionSet:
        """Reconcile one date.

        Args:
            target_date: Calendar date to reconcile.
            agent_id: Restrict to one agent.
            department_id: Restrict to agents of one department.

        Returns:
            The exceptions found, each list ordered by agent name then time.

        Raises:
            ValidationError: If the date is missing or invalid.
        """
        day = parse_date(target_date)
        key = (day, agent_id, department_id)

        if self.cache_ttl > 0:
            with self._cache_lock:
                cached = self._cache.get(key)
            if cached is not None and cached[0] > monotonic():
                logger.debug("Exception cache hit for %s", key)
                return cached[1].model_copy(deep=True)

        result = self._compute(day, agent_id, department_id)

        if self.cache_ttl > 0:
            stored_at = monotonic()
            with self._cache_lock:
                self._cache = {k: v for k, v in self._cache.items() if v[0] > stored_at}
                self._cache[key] = (stored_at + self.cache_ttl, result)
            result = result.model_copy(deep=True)
        return result

    def _compute(self, day: date, agent_id: int | None, department_id: int | None) -> ExceptionSet:
        now = self.clock()
        day_start = datetime.combine(day, datetime.min.time())
        day_end = day_start + timedelta(days=1)

        entries_by_agent: dict[int, list[ScheduleEntry]] = defaultdict(list)
        for entry in self.schedule_store.list(
            entry_date=day, agent_id=agent_id, department_id=department_id
        ):
            entries_by_agent[entry.agent_id].append(entry)

        punches_by_agent = self._load_punches(day_start, day_end, agent_id)

        exceptions = ExceptionSet(date=day)
        for current_id in sorted(set(entries_by_agent) | set(punches_by_agent)):
            agent = self.enrollment_store.get_agent(current_id)
            if agent is None or not agent.is_active:
                continue
            if department_id is not None and agent.department_id != department_id:
                continue

            punches, has_history = punches_by_agent.get(current_id, ([], False))
            if not entries_by_agent.get(current_id) and not any(
                day_start <= p.punch_time < day_end for p in punches
            ):
                continue

            entries = sorted(entries_by_agent.get(current_id, []), key=lambda e: e.start)
            self._reconcile_agent(agent, entries, punches, now, day_end, exceptions)
            self._scan_gaps(agent, punches, has_history, day_start, day_end, exceptions)

        exceptions.sort()
        logger.info(
            "Reconciled %s: %d exceptions (agent_id=%s, department_id=%s)",
            day,
            exceptions.total,
            agent_id,
            department_id,
        )
        return exceptions

    def _load_punches(
        self, day_start: datetime, day_end: datetime, agent_id: int | None
    ) -> dict[int, tuple[list[Punch], bool]]:
        """Punches from the day before to the day after, per agent.

        Each sequence is prefixed with the enrollment's last punch before
        that window so pairing starts from the true predecessor. An
        enrollment with nothing in the window is still loaded when that
        predecessor is a CLOCK_IN, since it may still be on the clock.

        Returns:
            ``{agent_id: (punches, has_history)}`` where ``has_history`` is
            True when the sequence is prefixed with that predecessor; a
            leading CLOCK_OUT inside the window is then not an orphan.
        """
        window_start = day_start - timedelta(days=1)
        window_end = day_end + timedelta(days=1)

        if agent_id is not None:
            enrollment = self.enrollment_store.get_enrollment_by_agent(agent_id)
            enrollments = [enrollment] if enrollment is not None else []
        else:
            enrollments = self.enrollment_store.list_enrollments()

        loaded = {}
        for enrollment in enrollments:
            punches = self.punch_store.list(
                enrollment_id=enrollment.id, start=window_start, end=window_end
            )
            punches = [p for p in punches if p.punch_time < window_end]
            prior = self.punch_store.latest_before(enrollment.id, window_start)
            if not punches and (prior is None or prior.punch_type is not PunchType.CLOCK_IN):
                continue
            if prior is not None:
                punches.insert(0, prior)
            loaded[enrollment.agent_id] = (punches, prior is not None)
        return loaded

    def _reconcile_agent(
        self,
        agent: Agent,
        entries: list[ScheduleEntry],
        punches: list[Punch],
        now: datetime,
        day_end: datetime,
        exceptions: ExceptionSet,
    ) -> None:
        intervals = pair_punches(punches, horizon=day_end)
        assigned = self._assign(entries, intervals, now)

        for index, entry in enumerate(entries):
            match = assigned.get(index)
            if match is None:
                if entry.date <= now.date() and now > entry.start + self.no_show_grace:
                    exceptions.no_shows.append(
                        NoShow(
                            agent_id=agent.id,
                            agent_name=agent.name,
                            scheduled_start=entry.start,
                            scheduled_end=entry.end,
                        )
                    )
                continue

            interval, (seg_start, seg_end) = match
            self._classify_arrival(agent, entry, seg_start, exceptions)

            untrimmed = seg_end == interval.effective_end(now)
            if untrimmed and interval.is_broken:
                continue
            if untrimmed and interval.is_open:
                if now < entry.end:
                    continue
                seg_end = now
            self._classify_departure(agent, entry, seg_end, exceptions)

    def _assign(
        self,
        entries: list[ScheduleEntry],
        intervals: list[PunchInterval],
        now: datetime,
    ) -> dict[int, tuple[PunchInterval, Span]]:
        """Match schedule entries to intervals.

        Every entry picks the interval it overlaps most. When several
        entries pick one interval the larger overlap claims first (ties to
        the earlier entry); later entries only see what is left outside
        the claimants' windows. Each claimant is then measured against the
        interval minus the other claimants' windows.

        Returns:
            ``{entry index: (interval, segment)}`` for matched entries.
        """
        spans = [(iv.start, iv.effective_end(now)) for iv in intervals]
        windows = [(entry.start, entry.end) for entry in entries]

        chosen: dict[int, list[tuple[float, int]]] = defaultdict(list)
        for e_index, window in enumerate(windows):
            best, best_overlap = None, 0.0
            for i_index, span in enumerate(spans):
                overlap = _overlap(window, span)
                if overlap > best_overlap:
                    best, best_overlap = i_index, overlap
            if best is not None:
                chosen[best].append((best_overlap, e_index))

        assigned = {}
        for i_index, candidates in chosen.items():
            candidates.sort(key=lambda c: (-c[0], windows[c[1]][0]))
            claimants: list[int] = []
            for _, e_index in candidates:
                remainder = _subtract(spans[i_index], [windows[c] for c in claimants])
                if any(_overlap(windows[e_index], piece) > 0 for piece in remainder):
                    claimants.append(e_index)
                else:
                    logger.debug(
                        "Entry %s lost its interval to a larger overlap", entries[e_index].id
                    )

            for e_index in claimants:
                others = [windows[c] for c in claimants if c != e_index]
                pieces = _subtract(spans[i_index], others)
                segment = max(
                    pieces, key=lambda p: (_overlap(windows[e_index], p), -p[0].timestamp())
                )
                assigned[e_index] = (intervals[i_index], segment)
        return assigned

    def _minutes(self, scheduled: datetime, actual: datetime) -> int:
        delta = actual - scheduled
        if abs(delta) < self.tolerance:
            return 0
        return int(delta.total_seconds() / 60)

    def _classify_arrival(
        self, agent: Agent, entry: ScheduleEntry, actual: datetime, exceptions: ExceptionSet
    ) -> None:
        minutes = self._minutes(entry.start, actual)
        if minutes == 0:
            return
        fields = {
            "agent_id": agent.id,
            "agent_name": agent.name,
            "scheduled_start": entry.start,
            "actual_start": actual,
            "minutes_diff": minutes,
        }
        if minutes > 0:
            exceptions.arrived_late.append(ArrivedLate(**fields))
        else:
            exceptions.arrived_early.append(ArrivedEarly(**fields))

    def _classify_departure(
        self, agent: Agent, entry: ScheduleEntry, actual: datetime, exceptions: ExceptionSet
    ) -> None:
        minutes = self._minutes(entry.end, actual)
        if minutes == 0:
            return
        fields = {
            "agent_id": agent.id,
            "agent_name": agent.name,
            "scheduled_end": entry.end,
            "actual_end": actual,
            "minutes_diff": minutes,
        }
        if minutes > 0:
            exceptions.left_late.append(LeftLate(**fields))
        else:
            exceptions.left_early.append(LeftEarly(**fields))

    def _scan_gaps(
        self,
        agent: Agent,
        punches: list[Punch],
        has_history: bool,
        day_start: datetime,
        day_end: datetime,
        exceptions: ExceptionSet,
    ) -> None:
        for gap in find_alternation_gaps(punches, has_history):
            if not any(day_start <= p.punch_time < day_end for p in gap.punches):
                continue
            exceptions.missed_punches.append(
                MissedPunch(
                    agent_id=agent.id,
                    agent_name=agent.name,
                    punch_type=gap.missing_type,
                    punch_times=[p.punch_time for p in gap.punches],
                    message=gap.message,
                )
            )
