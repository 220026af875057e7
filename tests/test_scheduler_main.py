from datetime import datetime, timezone

from fastapi.testclient import TestClient

from app.config import Settings
from services.scheduler.main import TickRequest, create_app


MEDICATION = {
    "user_id": "user-1",
    "name": "Atorvastatin",
    "dosage": "20mg",
    "continuous": True,
    "clock_times": ["08:00", "20:00"],
}


def _client(clock) -> TestClient:
    return TestClient(create_app(Settings(database_url="sqlite+aiosqlite:///:memory:"), clock=clock))


def test_create_update_and_delete_medication_keeps_alerts_in_step(clock):
    with _client(clock) as client:
        assert client.post("/permissions", json={"status": "granted"}).status_code == 200

        created = client.post("/medications", json=MEDICATION)
        assert created.status_code == 201
        medication_id = created.json()["medication"]["id"]
        assert [o["fire_at"] for o in created.json()["armed"]] == ["2026-03-10T20:00:00", "2026-03-11T08:00:00"]

        updated = client.put(f"/medications/{medication_id}", json={**MEDICATION, "clock_times": ["09:30"]})
        assert updated.status_code == 200
        alerts = client.get("/alerts", params={"medication_id": medication_id}).json()
        assert [o["clock_time"] for o in (a["payload"] for a in alerts)] == ["09:30"]

        deleted = client.delete(f"/medications/{medication_id}")
        assert deleted.json() == {"deleted": medication_id, "cancelled_alerts": 1}
        assert client.get("/alerts").json() == []
        assert client.delete(f"/medications/{medication_id}").status_code == 404


def test_scheduling_without_permission_is_forbidden(clock):
    with _client(clock) as client:
        response = client.post("/medications", json=MEDICATION)
        assert response.status_code == 403
        assert "notification permissions" in response.json()["detail"]
        assert client.get("/alerts").json() == []


def test_update_unknown_medication_returns_404(clock):
    with _client(clock) as client:
        assert client.put("/medications/missing", json=MEDICATION).status_code == 404


def test_tick_delivers_due_alerts_as_opened_events(clock):
    with _client(clock) as client:
        client.post("/permissions", json={"status": "granted"})
        client.post("/medications", json={**MEDICATION, "continuous": False, "treatment_duration_days": 1})

        events = client.post("/jobs/tick", json={"now": "2026-03-10T20:00:00"}).json()

        assert len(events) == 1
        assert events[0]["action"] == "none"
        assert events[0]["payload"]["clock_time"] == "20:00"
        assert events[0]["payload"]["one_shot"] is True
        assert events[0]["handle"]
        assert client.post("/jobs/tick", json={"now": "2026-03-10T20:00:00"}).json() == []


def test_cancel_all_alerts(clock):
    with _client(clock) as client:
        client.post("/permissions", json={"status": "granted"})
        client.post("/medications", json=MEDICATION)
        client.post("/medications", json={**MEDICATION, "clock_times": ["12:00"]})

        assert client.delete("/alerts").json() == {"cancelled_alerts": 3}
        assert client.get("/alerts").json() == []


def test_health():
    with _client(lambda: datetime(2026, 3, 10, 9, 0)) as client:
        assert client.get("/health").json() == {"status": "ok", "service": "scheduler"}


def test_tick_accepts_timezone_aware_now(clock):
    aware = datetime(2026, 3, 12, 20, 0, tzinfo=timezone.utc)
    normalized = TickRequest(now=aware).now
    assert normalized.tzinfo is None
    assert normalized == aware.astimezone().replace(tzinfo=None)

    with _client(clock) as client:
        client.post("/permissions", json={"status": "granted"})
        client.post("/medications", json={**MEDICATION, "continuous": False, "treatment_duration_days": 1})

        response = client.post("/jobs/tick", json={"now": "2026-03-12T20:00:00+00:00"})

        assert response.status_code == 200
        assert len(response.json()) == 3
