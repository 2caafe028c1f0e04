"""Integration tests for API endpoints"""

import pytest
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from fastapi.testclient import TestClient

from tests.helpers import NOW


def _create_plan(client: TestClient, credit_id: str = "CR-1001", days: int = 2, **overrides):
    body = {
        "credit_id": credit_id,
        "borrower_id": "B-1",
        "due_date": (NOW + timedelta(days=days)).isoformat(),
        "amount": "500.00",
        "currency": "eur",
    }
    body.update(overrides)
    return client.post("/v1/plans", json=body)


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    _create_plan(client)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "dunning_notifications_scheduled_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_create_plan(client: TestClient):
    """Test POST /v1/plans schedules the reminder timetable"""
    response = _create_plan(client)

    assert response.status_code == 201
    data = response.json()
    assert data["scheduled_notifications"] == 34
    assert data["plan"]["credit_id"] == "CR-1001"
    assert data["plan"]["currency"] == "EUR"
    assert data["plan"]["status"] == "active"
    assert Decimal(data["plan"]["amount"]) == Decimal("500")
    assert datetime.fromisoformat(data["plan"]["due_date"]) == NOW + timedelta(days=2)


def test_create_duplicate_plan_conflicts(client: TestClient):
    """Test a second live plan for the same credit is rejected"""
    assert _create_plan(client).status_code == 201

    response = _create_plan(client)

    assert response.status_code == 409
    assert response.json()["error"] == "DuplicatePlanError"


@pytest.mark.parametrize(
    "overrides",
    [
        {"due_date": "2026-03-13T10:00:00"},
        {"amount": "0"},
        {"currency": "EURO"},
        {"credit_id": ""},
    ],
)
def test_create_plan_validation(client: TestClient, overrides):
    response = _create_plan(client, **overrides)
    assert response.status_code == 422


def test_get_plan(client: TestClient):
    _create_plan(client)

    response = client.get("/v1/plans/CR-1001")

    assert response.status_code == 200
    assert response.json()["borrower_id"] == "B-1"


def test_get_missing_plan(client: TestClient):
    response = client.get("/v1/plans/CR-0000")
    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_list_plans_paginates_and_filters(client: TestClient):
    for index in range(3):
        _create_plan(client, credit_id=f"CR-{index}")
    client.delete("/v1/plans/CR-0")

    response = client.get("/v1/plans", params={"page": 1, "limit": 2})
    data = response.json()
    assert data["total"] == 3
    assert data["pages"] == 2
    assert len(data["items"]) == 2

    response = client.get("/v1/plans", params={"status": "cancelled"})
    assert [item["credit_id"] for item in response.json()["items"]] == ["CR-0"]


def test_list_notifications(client: TestClient):
    _create_plan(client)

    response = client.get("/v1/plans/CR-1001/notifications", params={"limit": 20})
    data = response.json()

    assert data["total"] == 34
    assert data["pages"] == 2
    first = data["items"][0]
    assert first["stage"] == "preventive"
    assert first["day"] == -1
    assert first["status"] == "scheduled"
    assert first["task_id"].startswith(first["record_id"])

    response = client.get("/v1/plans/CR-1001/notifications", params={"status": "sent"})
    assert response.json()["total"] == 0


def test_update_plan_due_date_replans(client: TestClient):
    """Test PUT with a new due date cancels and replans reminders"""
    _create_plan(client)

    response = client.put(
        "/v1/plans/CR-1001",
        json={"due_date": (NOW + timedelta(days=10)).isoformat(), "amount": "650.00"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["notifications_cancelled"] == 34
    assert data["notifications_scheduled"] == 37
    assert Decimal(data["plan"]["amount"]) == Decimal("650")

    listing = client.get("/v1/plans/CR-1001/notifications", params={"status": "scheduled", "limit": 100}).json()
    assert listing["total"] == 37
    assert "650" in listing["items"][0]["message_content"]


def test_update_plan_without_due_date_change(client: TestClient):
    _create_plan(client)

    response = client.put("/v1/plans/CR-1001", json={"status": "completed"})

    assert response.status_code == 200
    assert response.json()["plan"]["status"] == "completed"
    assert response.json()["notifications_cancelled"] == 0


def test_delete_plan_cancels_notifications(client: TestClient):
    _create_plan(client)

    response = client.delete("/v1/plans/CR-1001")

    assert response.status_code == 200
    assert response.json()["total_cancelled"] == 34
    assert client.get("/v1/plans/CR-1001").json()["status"] == "cancelled"
    # A cancelled plan frees the credit for a new one
    assert _create_plan(client).status_code == 201


def test_cancel_notifications_keeps_plan(client: TestClient):
    _create_plan(client)

    response = client.post("/v1/plans/CR-1001/notifications/cancel")

    assert response.status_code == 200
    data = response.json()
    assert data["total_cancelled"] == 34
    assert data["total_failed"] == 0
    assert all(detail["success"] for detail in data["details"])
    assert client.get("/v1/plans/CR-1001").json()["status"] == "active"


def test_status_check_endpoint(client: TestClient, credit_client):
    _create_plan(client)
    credit_client.add("CR-1001", status="closed")

    response = client.post("/v1/plans/CR-1001/status-check")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "closed"
    assert data["notifications_cancelled"] == 34
    assert client.get("/v1/plans/CR-1001").json()["credit_status"] == "closed"


def test_status_check_upstream_failure(client: TestClient):
    _create_plan(client)

    response = client.post("/v1/plans/CR-1001/status-check")

    assert response.status_code == 502
    assert response.json()["error"] == "UpstreamLookupError"


def test_reschedule_notification(client: TestClient):
    _create_plan(client)
    record = client.get("/v1/plans/CR-1001/notifications").json()["items"][0]
    new_time = NOW + timedelta(days=5, hours=2)

    response = client.post(
        f"/v1/notifications/{record['record_id']}/reschedule",
        json={"scheduled_for": new_time.isoformat()},
    )

    assert response.status_code == 200
    data = response.json()
    assert datetime.fromisoformat(data["scheduled_for"]) == new_time
    assert data["task_id"] != record["task_id"]


def test_reschedule_rejects_naive_timestamp(client: TestClient):
    _create_plan(client)
    record = client.get("/v1/plans/CR-1001/notifications").json()["items"][0]

    response = client.post(
        f"/v1/notifications/{record['record_id']}/reschedule",
        json={"scheduled_for": "2026-03-20T12:00:00"},
    )

    assert response.status_code == 400


def test_reschedule_unknown_notification(client: TestClient):
    response = client.post(
        f"/v1/notifications/{uuid.uuid4()}/reschedule",
        json={"scheduled_for": NOW.isoformat()},
    )
    assert response.status_code == 404


def test_test_scenario_endpoint(client: TestClient):
    """Test POST /v1/test/scenario queues the filtered timetable"""
    response = client.post(
        "/v1/test/scenario",
        json={
            "credit_id": "CR-TEST",
            "borrower_id": "B-9",
            "amount": "99.90",
            "minute_interval": 3,
            "stage": "early_delay",
            "channels": ["sms"],
        },
    )

    assert response.status_code == 201
    assert response.json()["scheduled_notifications"] == 3
    items = client.get("/v1/plans/CR-TEST/notifications").json()["items"]
    assert [item["day"] for item in items] == [1, 3, 7]
    assert all(item["metadata"] == {"test": True} for item in items)


def test_api_key_required_when_configured(client: TestClient, deps):
    deps.settings.api_key = "secret"

    assert client.get("/v1/plans").status_code == 401
    assert client.get("/v1/plans", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get("/v1/plans", headers={"X-API-Key": "secret"}).status_code == 200
    assert client.get("/health").status_code == 200
