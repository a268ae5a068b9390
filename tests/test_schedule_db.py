"""Tests for the SQLite schedule store."""

from datetime import date, datetime
from pathlib import Path

import pytest

from shiftclock.database import init_database
from shiftclock.database.enrollment_db import EnrollmentDatabase
from shiftclock.database.schedule_db import ScheduleDatabase
from shiftclock.errors import NotFoundError, ValidationError

DAY = date(2024, 3, 4)


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Provide an initialized database with agents in two departments."""
    path = str(tmp_path / "test.db")
    init_database(path)
    enrollments = EnrollmentDatabase(path)
    support = enrollments.create_department("Support")
    sales = enrollments.create_department("Sales")
    enrollments.create_agent("E1", "Ada", "Lovelace", department_id=support.id)
    enrollments.create_agent("E2", "Grace", "Hopper", department_id=sales.id)
    return path


@pytest.fixture
def schedule(db_path: str) -> ScheduleDatabase:
    return ScheduleDatabase(db_path)


class TestScheduleEntries:
    """Tests for schedule entry storage."""

    def test_create_and_get(self, schedule: ScheduleDatabase) -> None:
        entry = schedule.create(1, DAY, "09:00", "17:00", activity_type_id=3)

        assert entry.id is not None
        assert schedule.get(entry.id) == entry
        assert entry.start == datetime(2024, 3, 4, 9, 0)
        assert entry.end == datetime(2024, 3, 4, 17, 0)

    def test_end_of_day(self, schedule: ScheduleDatabase) -> None:
        """Test 24:00 ends at midnight of the next day."""
        entry = schedule.create(1, DAY, "22:00", "24:00")
        assert entry.end == datetime(2024, 3, 5, 0, 0)

    @pytest.mark.parametrize(
        "start, end",
        [("17:00", "09:00"), ("09:00", "09:00"), ("9am", "17:00"), ("09:00", "24:30")],
    )
    def test_invalid_times(self, schedule: ScheduleDatabase, start: str, end: str) -> None:
        with pytest.raises(ValidationError):
            schedule.create(1, DAY, start, end)

    def test_unknown_agent(self, schedule: ScheduleDatabase) -> None:
        with pytest.raises(NotFoundError):
            schedule.create(99, DAY, "09:00", "17:00")

    def test_list_filters(self, schedule: ScheduleDatabase) -> None:
        """Test date, agent and department filters."""
        schedule.create(1, DAY, "13:00", "17:00")
        schedule.create(1, DAY, "09:00", "12:00")
        schedule.create(2, DAY, "09:00", "17:00")
        schedule.create(1, date(2024, 3, 5), "09:00", "17:00")

        today = schedule.list(entry_date=DAY)
        assert [(e.agent_id, e.start_time) for e in today] == [
            (1, "09:00"),
            (1, "13:00"),
            (2, "09:00"),
        ]
        assert len(schedule.list(agent_id=1)) == 3
        assert [e.agent_id for e in schedule.list(entry_date=DAY, department_id=2)] == [2]

    def test_update_revalidates(self, schedule: ScheduleDatabase) -> None:
        entry = schedule.create(1, DAY, "09:00", "17:00")

        assert schedule.update(entry.id, end_time="18:00").end_time == "18:00"
        with pytest.raises(ValidationError):
            schedule.update(entry.id, start_time="19:00")
        assert schedule.get(entry.id).end_time == "18:00"

    def test_update_missing(self, schedule: ScheduleDatabase) -> None:
        with pytest.raises(NotFoundError):
            schedule.update(7, end_time="18:00")

    def test_delete(self, schedule: ScheduleDatabase) -> None:
        entry = schedule.create(1, DAY, "09:00", "17:00")
        assert schedule.delete(entry.id)
        assert schedule.get(entry.id) is None
