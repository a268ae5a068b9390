"""Hours and exception reports in CSV and Markdown formats.

Hours reports pair each enrollment's punches per day into worked time
with period totals and counts of unverified and manual punches.
Exception reports render one date's ``ExceptionSet``.
"""

import csv
import io
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from pathlib import Path

from ..errors import ValidationError
from ..models import Punch
from ..reconciliation import ExceptionSet, ReconciliationEngine
from ..utils.logger import setup_logger
from .hours import EmployeeHours, format_hours, summarize

logger = setup_logger(__name__)

TIME_FORMAT = "%H:%M"


def _clock(value: datetime | None) -> str:
    return value.strftime(TIME_FORMAT) if value else "-"


class ReportGenerator:
    """Generate attendance reports in CSV and Markdown formats.

    Args:
        punch_store: Punch ledger storage.
        enrollment_store: Agent and enrollment lookups.
        engine: Reconciliation engine for exception reports.
    """

    def __init__(self, punch_store, enrollment_store, engine: ReconciliationEngine) -> None:
        self.punch_store = punch_store
        self.enrollment_store = enrollment_store
        self.engine = engine

    def hours_summary(self, start_date: date, end_date: date | None = None) -> list[EmployeeHours]:
        """Compute worked hours per enrolled agent.

        Args:
            start_date: First day of the period.
            end_date: Last day of the period, inclusive (default: start + 6 days).

        Returns:
            One summary per agent with punches, ordered by last then first name.

        Raises:
            ValidationError: If the period ends before it starts.
        """
        if end_date is None:
            end_date = start_date + timedelta(days=6)
        if end_date < start_date:
            raise ValidationError("end date must not be before start date")

        punches = self.punch_store.list(
            start=datetime.combine(start_date, time.min),
            end=datetime.combine(end_date, time.max).replace(microsecond=0),
        )
        by_enrollment: dict[int, list[Punch]] = defaultdict(list)
        for punch in punches:
            by_enrollment[punch.enrollment_id].append(punch)

        summaries = []
        for enrollment_id, group in by_enrollment.items():
            enrollment = self.enrollment_store.get_enrollment(enrollment_id)
            agent = self.enrollment_store.get_agent(enrollment.agent_id) if enrollment else None
            if agent is None:
                logger.warning("Skipping punches of unknown enrollment_id=%d", enrollment_id)
                continue
            summaries.append(summarize(enrollment_id, agent, group))

        summaries.sort(key=lambda s: (s.last_name, s.first_name))
        logger.debug(
            "Hours summary %s..%s: %d employees", start_date, end_date, len(summaries)
        )
        return summaries

    def generate_hours_csv(self, start_date: date, end_date: date | None = None) -> str:
        """Generate a CSV hours report with one row per punch pair.

        Returns:
            CSV-formatted string.
        """
        summaries = self.hours_summary(start_date, end_date)
        output = io.StringIO()
        writer = csv.writer(output)

        writer.writerow(
            [
                "Employee ID",
                "Last Name",
                "First Name",
                "Date",
                "Clock In",
                "Clock Out",
                "Hours",
                "Complete",
            ]
        )
        for summary in summaries:
            for day in summary.daily_hours:
                for pair in day.pairs:
                    writer.writerow(
                        [
                            summary.employee_id,
                            summary.last_name,
                            summary.first_name,
                            day.date.isoformat(),
                            _clock(pair.clock_in.punch_time),
                            _clock(pair.clock_out.punch_time if pair.clock_out else None),
                            f"{pair.hours:.2f}" if pair.hours is not None else "",
                            "yes" if pair.is_complete else "no",
                        ]
                    )

        writer.writerow([])
        writer.writerow(["Employee ID", "Name", "Total Hours", "Unverified", "Manual"])
        for summary in summaries:
            writer.writerow(
                [
                    summary.employee_id,
                    f"{summary.first_name} {summary.last_name}",
                    f"{summary.total_hours:.2f}",
                    summary.unverified_count,
                    summary.manual_count,
                ]
            )
        return output.getvalue()

    def generate_hours_markdown(self, start_date: date, end_date: date | None = None) -> str:
        """Generate a Markdown hours report.

        Returns:
            Markdown-formatted string.
        """
        if end_date is None:
            end_date = start_date + timedelta(days=6)
        summaries = self.hours_summary(start_date, end_date)

        lines = [
            "# Hours Report",
            f"**Period:** {start_date.isoformat()} to {end_date.isoformat()}",
            "",
            "## Totals",
            "",
            "| Employee | Name | Hours | Unverified | Manual |",
            "|----------|------|-------|------------|--------|",
        ]
        for s in summaries:
            lines.append(
                f"| {s.employee_id} | {s.first_name} {s.last_name} "
                f"| {format_hours(s.total_hours)} | {s.unverified_count} | {s.manual_count} |"
            )

        for s in summaries:
            lines.extend(["", f"## {s.last_name}, {s.first_name}", ""])
            lines.append("| Date | Clock In | Clock Out | Hours |")
            lines.append("|------|----------|-----------|-------|")
            for day in s.daily_hours:
                for pair in day.pairs:
                    out = pair.clock_out.punch_time if pair.clock_out else None
                    hours = format_hours(pair.hours) if pair.hours is not None else "incomplete"
                    lines.append(
                        f"| {day.date.isoformat()} | {_clock(pair.clock_in.punch_time)} "
                        f"| {_clock(out)} | {hours} |"
                    )
        return "\n".join(lines)

    def generate_exceptions_csv(
        self,
        target_date: date | str,
        agent_id: int | None = None,
        department_id: int | None = None,
    ) -> str:
        """Generate a CSV listing every exception for a date.

        Returns:
            CSV-formatted string.
        """
        exceptions = self.engine.compute_exceptions(target_date, agent_id, department_id)
        output = io.StringIO()
        writer = csv.writer(output)

        writer.writerow(["Exception Report", exceptions.date.isoformat()])
        writer.writerow([])
        writer.writerow(["Type", "Agent", "Scheduled", "Actual", "Minutes", "Details"])
        for row in self._exception_rows(exceptions):
            writer.writerow(row)

        writer.writerow([])
        writer.writerow(["Total", exceptions.total])
        return output.getvalue()

    def generate_exceptions_markdown(
        self,
        target_date: date | str,
        agent_id: int | None = None,
        department_id: int | None = None,
    ) -> str:
        """Generate a Markdown exception report for a date.

        Returns:
            Markdown-formatted string.
        """
        exceptions = self.engine.compute_exceptions(target_date, agent_id, department_id)
        lines = [
            f"# Exception Report: {exceptions.date.isoformat()}",
            "",
            "## Summary",
            f"- **Arrived Early:** {len(exceptions.arrived_early)}",
            f"- **Arrived Late:** {len(exceptions.arrived_late)}",
            f"- **Left Early:** {len(exceptions.left_early)}",
            f"- **Left Late:** {len(exceptions.left_late)}",
            f"- **No Shows:** {len(exceptions.no_shows)}",
            f"- **Missed Punches:** {len(exceptions.missed_punches)}",
            "",
            "## Details",
            "",
            "| Type | Agent | Scheduled | Actual | Minutes | Details |",
            "|------|-------|-----------|--------|---------|---------|",
        ]
        for row in self._exception_rows(exceptions):
            lines.append("| " + " | ".join(str(cell) for cell in row) + " |")
        return "\n".join(lines)

    @staticmethod
    def _exception_rows(exceptions: ExceptionSet) -> list[list]:
        rows = []
        for label, items in (
            ("Arrived Early", exceptions.arrived_early),
            ("Arrived Late", exceptions.arrived_late),
        ):
            for e in items:
                scheduled, actual = _clock(e.scheduled_start), _clock(e.actual_start)
                rows.append([label, e.agent_name, scheduled, actual, e.minutes_diff, ""])
        for label, items in (
            ("Left Early", exceptions.left_early),
            ("Left Late", exceptions.left_late),
        ):
            for e in items:
                scheduled, actual = _clock(e.scheduled_end), _clock(e.actual_end)
                rows.append([label, e.agent_name, scheduled, actual, e.minutes_diff, ""])
        for e in exceptions.no_shows:
            window = f"{_clock(e.scheduled_start)}-{_clock(e.scheduled_end)}"
            rows.append(["No Show", e.agent_name, window, "-", "", ""])
        for e in exceptions.missed_punches:
            times = ", ".join(_clock(t) for t in e.punch_times)
            rows.append([f"Missed {e.punch_type.value}", e.agent_name, "-", times, "", e.message])
        return rows

    def save_report(self, content: str, filepath: Path) -> None:
        """Save report content to a file.

        Args:
            content: Report content string.
            filepath: Output file path.
        """
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w") as f:
            f.write(content)
        logger.info("Report saved to %s", filepath)
