"""Tests for FastAPI REST API endpoints."""

from datetime import date
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from shiftclock.api.app import _state, app, build_components
from shiftclock.utils.config import _default_config

REFERENCE = [0.05] * 128
STRANGER = [-0.05] * 128
DAY = "2024-03-04"


@pytest.fixture
def components(tmp_path: Path) -> dict:
    """Wire real components on a temporary database and seed three agents."""
    config = _default_config()
    config["database"]["path"] = str(tmp_path / "test.db")
    config["verification"]["bcrypt_rounds"] = 4
    config["reconciliation"]["cache_ttl_seconds"] = 0
    components = build_components(config)

    enrollment_db = components["enrollment_db"]
    pin_hasher = components["pin_hasher"]
    support = enrollment_db.create_department("Support")
    ada = enrollment_db.create_agent("E100", "Ada", "Lovelace", department_id=support.id)
    old = enrollment_db.create_agent("E200", "Old", "Timer", is_active=False)
    enrollment_db.create_agent("E300", "New", "Hire")
    enrollment_db.create_enrollment(ada.id, pin_hasher.hash("1234"), descriptor=REFERENCE)
    enrollment_db.create_enrollment(old.id, pin_hasher.hash("1234"))
    return components


@pytest.fixture
def client(components: dict) -> TestClient:
    """Provide a test client with all components initialized."""
    _state.update(components)
    yield TestClient(app, raise_server_exceptions=False)
    _state.clear()


def _manual(client: TestClient, punch_type: str, when: str, enrollment_id: int = 1):
    return client.post(
        "/punches/manual",
        json={
            "enrollment_id": enrollment_id,
            "punch_type": punch_type,
            "punch_time": when,
            "note": "Badge reader down",
            "editor_id": "sup1",
        },
    )


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_health_check(self, client: TestClient) -> None:
        """Test health endpoint returns healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"


class TestEnrollmentEndpoints:
    """Tests for enrollment management."""

    def test_enroll(self, client: TestClient) -> None:
        response = client.post(
            "/enrollments",
            json={"agent_id": 3, "pin": "4321", "face_descriptor": REFERENCE, "enrolled_by": "hr"},
        )
        assert response.status_code == 201
        data = response.json()
        assert data["has_face_descriptor"] is True
        assert "pin_hash" not in data

        audit = client.get("/audit", params={"action": "enroll"}).json()["entries"]
        assert audit[0]["actor"] == "hr"

    def test_enroll_twice(self, client: TestClient) -> None:
        response = client.post("/enrollments", json={"agent_id": 1, "pin": "4321"})
        assert response.status_code == 400

    def test_enroll_bad_pin(self, client: TestClient) -> None:
        response = client.post("/enrollments", json={"agent_id": 3, "pin": "12"})
        assert response.status_code == 400
        assert response.json()["error_code"] == "ValidationFailed"

    def test_enroll_wrong_dimension(self, client: TestClient) -> None:
        response = client.post(
            "/enrollments", json={"agent_id": 3, "pin": "4321", "face_descriptor": [0.1] * 64}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "DimensionMismatch"

    def test_get_enrollment(self, client: TestClient) -> None:
        assert client.get("/enrollments/1").json()["agent_id"] == 1
        assert client.get("/enrollments/99").status_code == 404

    def test_replace_descriptor(self, client: TestClient) -> None:
        response = client.put(
            "/enrollments/2/descriptor", json={"face_descriptor": REFERENCE, "editor_id": "hr"}
        )
        assert response.status_code == 200
        assert response.json()["has_face_descriptor"] is True


class TestKioskEndpoints:
    """Tests for the tech portal."""

    def test_identify(self, client: TestClient) -> None:
        response = client.post("/tech-portal/identify", json={"employee_id": "E100"})
        assert response.status_code == 200
        data = response.json()
        assert data["agent"]["first_name"] == "Ada"
        assert data["current_status"] == "clocked_out"
        assert data["last_punch"] is None

    @pytest.mark.parametrize(
        "employee_id, status_code, error_code",
        [("E999", 404, "NotFound"), ("E200", 403, "AccountInactive"), ("E300", 404, "NotFound")],
    )
    def test_identify_rejections(
        self, client: TestClient, employee_id: str, status_code: int, error_code: str
    ) -> None:
        response = client.post("/tech-portal/identify", json={"employee_id": employee_id})
        assert response.status_code == status_code
        assert response.json()["error_code"] == error_code

    def test_face_punch_then_double_clock_in(self, client: TestClient) -> None:
        """Test a second clock-in is rejected and nothing is stored."""
        body = {"enrollment_id": 1, "punch_type": "CLOCK_IN", "face_descriptor": REFERENCE}
        first = client.post("/tech-portal/punch", json=body)
        assert first.status_code == 200
        data = first.json()
        assert data["message"] == "Successfully clocked in"
        assert data["punch"]["verification_method"] == "FACE_VERIFIED"
        assert data["verification"]["confidence"] == pytest.approx(1.0)

        second = client.post("/tech-portal/punch", json=body)
        assert second.status_code == 409
        assert second.json()["error_code"] == "InvalidSequence"
        assert client.get("/punches").json()["total"] == 1

    def test_pin_clock_out(self, client: TestClient) -> None:
        client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 1, "punch_type": "CLOCK_IN", "pin": "1234"},
        )
        response = client.post(
            "/tech-portal/punch",
            json={
                "enrollment_id": 1,
                "punch_type": "CLOCK_OUT",
                "pin": "1234",
                "location": {"latitude": 51.5, "longitude": -0.12, "accuracy": 20},
            },
            headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1"},
        )
        assert response.status_code == 200
        punch = response.json()["punch"]
        assert punch["verification_method"] == "PIN_FALLBACK"
        assert punch["face_confidence"] is None
        assert punch["latitude"] == 51.5
        assert punch["ip_address"] == "203.0.113.9"

    def test_bad_location_still_punches(self, client: TestClient) -> None:
        """Test an implausible geolocation reading does not reject the punch."""
        response = client.post(
            "/tech-portal/punch",
            json={
                "enrollment_id": 1,
                "punch_type": "CLOCK_IN",
                "pin": "1234",
                "location": {"latitude": 51.5, "longitude": -0.12, "accuracy": 0},
            },
        )
        assert response.status_code == 200
        punch = response.json()["punch"]
        assert punch["latitude"] == 51.5
        assert punch["accuracy"] is None

    def test_first_punch_clock_out(self, client: TestClient) -> None:
        response = client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 1, "punch_type": "CLOCK_OUT", "pin": "1234"},
        )
        assert response.status_code == 409
        assert "No clock in record found" in response.json()["error"]

    def test_face_mismatch(self, client: TestClient) -> None:
        response = client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 1, "punch_type": "CLOCK_IN", "face_descriptor": STRANGER},
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "VerificationFailed"

    def test_wrong_pin(self, client: TestClient) -> None:
        response = client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 1, "punch_type": "CLOCK_IN", "pin": "9999"},
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "InvalidCredential"

    def test_face_without_reference(self, client: TestClient) -> None:
        """Test an enrollment without a descriptor must use its PIN."""
        client.post("/enrollments", json={"agent_id": 3, "pin": "4321"})
        response = client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 3, "punch_type": "CLOCK_IN", "face_descriptor": REFERENCE},
        )
        assert response.status_code == 401
        assert response.json()["error_code"] == "NoReferenceDescriptor"

    def test_inactive_agent(self, client: TestClient) -> None:
        response = client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 2, "punch_type": "CLOCK_IN", "pin": "1234"},
        )
        assert response.status_code == 403

    def test_both_credentials(self, client: TestClient) -> None:
        response = client.post(
            "/tech-portal/punch",
            json={
                "enrollment_id": 1,
                "punch_type": "CLOCK_IN",
                "pin": "1234",
                "face_descriptor": REFERENCE,
            },
        )
        assert response.status_code == 400

    def test_malformed_body(self, client: TestClient) -> None:
        response = client.post(
            "/tech-portal/punch", json={"enrollment_id": 1, "punch_type": "BREAK", "pin": "1234"}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "ValidationFailed"

    def test_verify_pin(self, client: TestClient) -> None:
        ok = client.post("/tech-portal/verify-pin", json={"enrollment_id": 1, "pin": "1234"})
        assert ok.json() == {"verified": True}
        bad = client.post("/tech-portal/verify-pin", json={"enrollment_id": 1, "pin": "0000"})
        assert bad.status_code == 401

    def test_status_and_board(self, client: TestClient) -> None:
        client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 1, "punch_type": "CLOCK_IN", "pin": "1234"},
        )
        status = client.get("/tech-portal/status", params={"enrollment_id": 1}).json()
        assert status["status"] == "clocked_in"
        assert len(status["recent_punches"]) == 1

        board = client.get("/clock-status").json()["agents"]
        assert [(a["last_name"], a["is_clocked_in"]) for a in board] == [("Lovelace", True)]

    def test_status_unknown_enrollment(self, client: TestClient) -> None:
        assert client.get("/tech-portal/status", params={"enrollment_id": 99}).status_code == 404


class TestPunchAdministration:
    """Tests for supervisor punch corrections."""

    def test_manual_punches_and_listing(self, client: TestClient) -> None:
        assert _manual(client, "CLOCK_IN", f"{DAY}T09:12:00").status_code == 201
        out = _manual(client, "CLOCK_OUT", f"{DAY}T17:00:00").json()
        assert out["is_manual"] is True
        assert out["verification_method"] == "PIN_FALLBACK"

        listing = client.get("/punches", params={"start_date": DAY, "end_date": DAY}).json()
        assert listing["total"] == 2
        assert [p["punch_type"] for p in listing["punches"]] == ["CLOCK_IN", "CLOCK_OUT"]
        assert client.get("/punches", params={"start_date": "2024-03-05"}).json()["total"] == 0

    def test_manual_punch_breaks_sequence(self, client: TestClient) -> None:
        _manual(client, "CLOCK_IN", f"{DAY}T09:00:00")
        response = _manual(client, "CLOCK_IN", f"{DAY}T10:00:00")
        assert response.status_code == 409

    def test_manual_punches_with_utc_offsets(self, client: TestClient) -> None:
        """Test a later instant written in another offset is a valid clock-out."""
        assert _manual(client, "CLOCK_IN", f"{DAY}T09:00:00+05:00").status_code == 201
        assert _manual(client, "CLOCK_OUT", f"{DAY}T04:00:01Z").status_code == 201

    def test_manual_punch_requires_note(self, client: TestClient) -> None:
        response = client.post(
            "/punches/manual",
            json={
                "enrollment_id": 1,
                "punch_type": "CLOCK_IN",
                "punch_time": f"{DAY}T09:00:00",
                "note": "  ",
                "editor_id": "sup1",
            },
        )
        assert response.status_code == 400

    def test_edit_keeps_original_time(self, client: TestClient) -> None:
        punch_id = _manual(client, "CLOCK_IN", f"{DAY}T09:12:00").json()["id"]

        first = client.patch(
            f"/punches/{punch_id}",
            json={"punch_time": f"{DAY}T09:00:00", "note": "Was on time", "editor_id": "sup1"},
        ).json()
        second = client.patch(
            f"/punches/{punch_id}",
            json={"punch_time": f"{DAY}T09:01:00", "note": "Typo", "editor_id": "sup2"},
        ).json()

        assert first["original_punch_time"] == f"{DAY}T09:12:00"
        assert second["original_punch_time"] == f"{DAY}T09:12:00"
        assert second["punch_time"] == f"{DAY}T09:01:00"
        assert second["edited_by_id"] == "sup2"
        assert client.get(f"/punches/{punch_id}").json()["manual_note"] == "Typo"

    def test_edit_missing_punch(self, client: TestClient) -> None:
        response = client.patch(
            "/punches/99",
            json={"punch_time": f"{DAY}T09:00:00", "note": "x", "editor_id": "sup1"},
        )
        assert response.status_code == 404

    def test_delete_manual_only(self, client: TestClient) -> None:
        manual_id = _manual(client, "CLOCK_IN", f"{DAY}T09:00:00").json()["id"]
        kiosk = client.post(
            "/tech-portal/punch",
            json={"enrollment_id": 1, "punch_type": "CLOCK_OUT", "pin": "1234"},
        ).json()["punch"]

        rejected = client.delete(f"/punches/{kiosk['id']}", params={"editor_id": "sup1"})
        assert rejected.status_code == 400

        deleted = client.delete(f"/punches/{manual_id}", params={"editor_id": "sup1"})
        assert deleted.json()["success"] is True
        assert deleted.json()["punch_id"] == manual_id
        assert client.get(f"/punches/{manual_id}").status_code == 404

        actions = [e["action"] for e in client.get("/audit").json()["entries"]]
        assert actions[:3] == ["delete_punch", "record_punch", "manual_punch"]


class TestReconciliationEndpoints:
    """Tests for schedule, exceptions and hours reports."""

    @pytest.fixture
    def scheduled(self, client: TestClient, components: dict) -> TestClient:
        components["schedule_db"].create(1, date(2024, 3, 4), "09:00", "17:00")
        _manual(client, "CLOCK_IN", f"{DAY}T09:12:00")
        _manual(client, "CLOCK_OUT", f"{DAY}T17:00:00")
        return client

    def test_schedule(self, scheduled: TestClient) -> None:
        data = scheduled.get("/schedule", params={"date": DAY}).json()
        assert data["date"] == DAY
        assert [(e["start_time"], e["end_time"]) for e in data["entries"]] == [("09:00", "17:00")]

    def test_late_arrival(self, scheduled: TestClient) -> None:
        data = scheduled.get("/exceptions", params={"date": DAY}).json()
        assert data["date"] == DAY
        assert [e["minutes_diff"] for e in data["arrived_late"]] == [12]
        assert data["arrived_late"][0]["agent_name"] == "Ada Lovelace"
        assert data["no_shows"] == []

    def test_edit_clears_exception(self, scheduled: TestClient) -> None:
        """Test a correction is reflected in the next reconciliation."""
        scheduled.get("/exceptions", params={"date": DAY})
        scheduled.patch(
            "/punches/1",
            json={"punch_time": f"{DAY}T09:00:00", "note": "Clock drift", "editor_id": "sup1"},
        )
        assert scheduled.get("/exceptions", params={"date": DAY}).json()["arrived_late"] == []

    def test_no_show(self, client: TestClient, components: dict) -> None:
        components["schedule_db"].create(1, date(2024, 3, 5), "09:00", "17:00")
        data = client.get("/exceptions", params={"date": "2024-03-05"}).json()
        assert len(data["no_shows"]) == 1

    def test_department_filter(self, scheduled: TestClient) -> None:
        data = scheduled.get("/exceptions", params={"date": DAY, "department_id": 99}).json()
        assert data["arrived_late"] == []

    def test_exceptions_csv(self, scheduled: TestClient) -> None:
        response = scheduled.get("/exceptions", params={"date": DAY, "format": "csv"})
        assert response.status_code == 200
        assert "text/csv" in response.headers["content-type"]
        assert "Arrived Late,Ada Lovelace,09:00,09:12,12," in response.text

    def test_exceptions_markdown(self, scheduled: TestClient) -> None:
        response = scheduled.get("/exceptions", params={"date": DAY, "format": "markdown"})
        assert response.text.startswith(f"# Exception Report: {DAY}")

    @pytest.mark.parametrize("params", [{}, {"date": "03/04/2024"}, {"date": DAY, "format": "pdf"}])
    def test_exceptions_bad_request(self, client: TestClient, params: dict) -> None:
        response = client.get("/exceptions", params=params)
        assert response.status_code == 400
        assert response.json()["error_code"] == "ValidationFailed"

    def test_hours_json(self, scheduled: TestClient) -> None:
        data = scheduled.get("/reports/hours", params={"start": DAY, "end": DAY}).json()
        (employee,) = data["employees"]
        assert employee["employee_id"] == "E100"
        assert employee["total_hours"] == 7.8
        assert employee["manual_count"] == 2

    def test_hours_csv(self, scheduled: TestClient) -> None:
        response = scheduled.get("/reports/hours", params={"start": DAY, "format": "csv"})
        assert "E100,Lovelace,Ada,2024-03-04,09:12,17:00,7.80,yes" in response.text

    def test_hours_bad_range(self, client: TestClient) -> None:
        response = client.get("/reports/hours", params={"start": DAY, "end": "2024-03-01"})
        assert response.status_code == 400
