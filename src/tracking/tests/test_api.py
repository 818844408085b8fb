"""Tests for the HTTP surface: routing, auth and error mapping."""

from __future__ import annotations

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from src.dependencies import AuthContext, get_current_user
from src.main import create_app
from src.tracking.errors import ConflictError
from src.tracking.service import CycleService
from src.tracking.tests.conftest import TEST_USER_ID

PERIOD_START = "2026-03-01T10:00:00+02:00"


@pytest.fixture
def client(service: CycleService) -> TestClient:
    """Client against a fresh app wired to the in-memory service.

    The lifespan is not entered, so no database pool is opened.
    """
    app = create_app()
    app.state.cycle_service = service
    app.dependency_overrides[get_current_user] = lambda: AuthContext(user_id=TEST_USER_ID)
    return TestClient(app)


def _create(client: TestClient) -> dict:
    response = client.post("/api/v1/cycles", json={"period_start": PERIOD_START})
    assert response.status_code == 201
    return response.json()


class TestCycleEndpoints:
    def test_create_and_fetch(self, client: TestClient) -> None:
        created = _create(client)
        assert created["status"] == "niddah"
        assert created["timezone"] == "Asia/Jerusalem"

        fetched = client.get(f"/api/v1/cycles/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == created["id"]

        listed = client.get("/api/v1/cycles")
        assert [c["id"] for c in listed.json()] == [created["id"]]

    def test_create_rejects_naive_timestamp(self, client: TestClient) -> None:
        response = client.post("/api/v1/cycles", json={"period_start": "2026-03-01T10:00:00"})
        assert response.status_code == 422

    def test_record_event(self, client: TestClient) -> None:
        cycle = _create(client)
        response = client.post(
            f"/api/v1/cycles/{cycle['id']}/events",
            json={"event_type": "hefsek_tahara", "timestamp": "2026-03-06T17:00:00+02:00"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["changed"] is True
        assert body["cycle"]["version"] == 2

    def test_policy_violation_is_400_with_reason(self, client: TestClient) -> None:
        cycle = _create(client)
        response = client.post(
            f"/api/v1/cycles/{cycle['id']}/events",
            json={"event_type": "hefsek_tahara", "timestamp": "2026-03-02T17:00:00+02:00"},
        )
        assert response.status_code == 400
        assert "5 days" in response.json()["detail"]

    def test_out_of_order_event_is_400(self, client: TestClient) -> None:
        cycle = _create(client)
        response = client.post(
            f"/api/v1/cycles/{cycle['id']}/events",
            json={"event_type": "mikvah", "timestamp": "2026-03-20T20:00:00+02:00"},
        )
        assert response.status_code == 400

    def test_duplicate_onset_is_400(self, client: TestClient) -> None:
        _create(client)
        response = client.post("/api/v1/cycles", json={"period_start": PERIOD_START})
        assert response.status_code == 400
        assert "already exists" in response.json()["detail"]

    def test_unknown_cycle_is_404(self, client: TestClient) -> None:
        assert client.get(f"/api/v1/cycles/{uuid4()}").status_code == 404

    def test_conflict_is_409(
        self, client: TestClient, service: CycleService, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        cycle = _create(client)

        async def conflicted(*args, **kwargs):
            raise ConflictError("modified concurrently")

        monkeypatch.setattr(service, "apply_event", conflicted)
        response = client.post(
            f"/api/v1/cycles/{cycle['id']}/events",
            json={"event_type": "hefsek_tahara", "timestamp": "2026-03-06T17:00:00+02:00"},
        )
        assert response.status_code == 409

    def test_delete(self, client: TestClient) -> None:
        cycle = _create(client)
        assert client.delete(f"/api/v1/cycles/{cycle['id']}").status_code == 204
        assert client.get(f"/api/v1/cycles/{cycle['id']}").status_code == 404

    def test_predictions(self, client: TestClient) -> None:
        _create(client)
        response = client.get("/api/v1/cycles/predictions")
        assert response.status_code == 200
        [prediction] = response.json()
        assert prediction["rule"] == "veset_hachodesh"
        assert prediction["onah"] == "day"
        assert prediction["hebrew_date"]


class TestNotificationEndpoints:
    def test_lists_scheduled_reminders(self, client: TestClient) -> None:
        _create(client)
        response = client.get("/api/v1/notifications", params={"status": "pending"})
        assert response.status_code == 200
        types = {n["type"] for n in response.json()}
        assert "hefsek_tahara" in types

    def test_sent_filter(self, client: TestClient) -> None:
        _create(client)
        response = client.get("/api/v1/notifications", params={"status": "sent"})
        assert response.json() == []


class TestAuthAndHealth:
    def test_requires_authentication(self, service: CycleService) -> None:
        app = create_app()
        app.state.cycle_service = service
        response = TestClient(app).get("/api/v1/cycles")
        assert response.status_code == 401

    def test_health_without_database(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "unreachable"
        assert response.json()["sweeps"] == {"enabled": False, "jobs": {}}
