"""HTTP tests for the analytics and audit endpoints."""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import InMemoryTelemetryGateway, make_anomaly, make_device, make_reading
from error_handler import UpstreamUnavailableError
from main import app
from metrics import metrics
from schemas import ReadingType
from sql_gateway import get_gateway

API = "/api/v2"


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    metrics.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


class BrokenGateway(InMemoryTelemetryGateway):
    def find_devices(self, filter, page=None, limit=None):
        raise UpstreamUnavailableError("Telemetry store failed to answer device query")


class ExplodingGateway(InMemoryTelemetryGateway):
    def find_devices(self, filter, page=None, limit=None):
        raise RuntimeError("connection reset by peer")


def _now():
    return datetime.now(timezone.utc)


def test_app_routes() -> None:
    paths = {route.path for route in app.routes}

    assert {"/", "/health", "/metrics"} <= paths
    assert f"{API}/analytics/health" in paths
    assert f"{API}/analytics/maintenance-forecast" in paths
    assert f"{API}/analytics/anomalies" in paths
    assert f"{API}/analytics/temperature-correlation" in paths
    assert f"{API}/analytics/energy" in paths
    assert f"{API}/audit" in paths
    assert f"{API}/devices/{{device_id}}/history" in paths


def test_health_endpoint_envelope(client, gateway) -> None:
    gateway.add_device(make_device("d1"))
    gateway.add_device(make_device("d2", status="offline"))

    response = client.get(f"{API}/analytics/health", params={"building_id": "bldg-a"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["summary"]["health_score"] == 50
    assert body["data"]["filters_applied"]["building_id"] == "bldg-a"


def test_maintenance_forecast_endpoint(client, gateway) -> None:
    gateway.add_device(make_device("d1", battery_level=5))

    response = client.get(f"{API}/analytics/maintenance-forecast", params={"severity_threshold": "critical"})

    assert response.status_code == 200
    assert [d["id"] for d in response.json()["data"]["critical"]] == ["d1"]


def test_anomalies_endpoint_accepts_comma_separated_filters(client, gateway) -> None:
    now = _now()
    gateway.add_readings([
        make_anomaly("D1", now - timedelta(hours=1), 0.9),
        make_anomaly("D2", now - timedelta(hours=2), 0.8),
        make_anomaly("D3", now - timedelta(hours=3), 0.7),
    ])

    response = client.get(
        f"{API}/analytics/anomalies",
        params={"device_id": "D1,D2", "bucket_granularity": "day", "limit": 1},
    )

    data = response.json()["data"]
    assert data["summary"]["total_anomalies"] == 2
    assert len(data["anomalies"]) == 1
    assert data["pagination"]["has_next"] is True
    assert sum(t["count"] for t in data["trends"]) == 2


def test_anomalies_rejects_inverted_range(client) -> None:
    response = client.get(
        f"{API}/analytics/anomalies",
        params={"startDate": "2024-02-01T00:00:00Z", "endDate": "2024-01-01T00:00:00Z"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"


def test_query_type_errors_use_error_envelope(client) -> None:
    response = client.get(f"{API}/analytics/health", params={"floor": "ground"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_temperature_correlation_endpoint(client, gateway) -> None:
    now = _now()
    gateway.add_device(make_device("temp-01"))
    gateway.add_readings([
        make_reading("temp-01", now - timedelta(hours=2), 70.0, ambient_temp=21.0),
        make_reading("temp-01", now - timedelta(hours=1), 80.0, ambient_temp=22.0),
    ])

    response = client.get(f"{API}/analytics/temperature-correlation", params={"device_id": "temp-01"})

    data = response.json()["data"]
    assert data["diagnosis"] == "device_failure"
    assert data["status"] == "ok"


def test_temperature_correlation_unknown_device(client) -> None:
    response = client.get(f"{API}/analytics/temperature-correlation", params={"device_id": "ghost"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "DEVICE_NOT_FOUND"


def test_device_history_endpoint(client, gateway) -> None:
    created = _now() - timedelta(days=1)
    gateway.add_device(make_device(
        "dev-001",
        created_at=created,
        updated_at=created + timedelta(milliseconds=10),
        deleted_at=created + timedelta(milliseconds=20),
    ))

    response = client.get(f"{API}/devices/dev-001/history")

    actions = [e["action"] for e in response.json()["data"]["entries"]]
    assert actions == ["deleted", "updated", "created"]


def test_device_history_rejects_malformed_id(client) -> None:
    response = client.get(f"{API}/devices/bad$id/history")

    assert response.status_code == 400


def test_audit_feed_endpoint(client, gateway) -> None:
    gateway.add_device(make_device("dev-a", created_by="Alice"))
    gateway.add_device(make_device("dev-b", created_by="bob"))

    response = client.get(f"{API}/audit", params={"user": "alice", "action": "create"})

    data = response.json()["data"]
    assert [e["device_id"] for e in data["entries"]] == ["dev-a"]
    assert data["summary"]["by_action"] == {"created": 1}


def test_upstream_failure_maps_to_503(gateway) -> None:
    app.dependency_overrides[get_gateway] = lambda: BrokenGateway()
    try:
        response = TestClient(app).get(f"{API}/analytics/health")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "DATABASE_ERROR"


def test_metrics_record_requests_and_errors(client, gateway) -> None:
    client.get(f"{API}/analytics/health")
    client.get(f"{API}/analytics/temperature-correlation", params={"device_id": "ghost"})

    stats = client.get("/metrics").json()

    assert stats["requests"]["by_endpoint"]["analytics.health"] == 1
    assert stats["errors"]["by_type"] == {"DEVICE_NOT_FOUND": 1}
    assert stats["requests"]["by_status"]["404"] == 1


def test_root_and_health(client) -> None:
    assert client.get("/").json()["status"] == "running"
    assert client.get("/health").json()["status"] == "healthy"


def test_energy_endpoint_groups_and_compares(client, gateway) -> None:
    base = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
    gateway.add_readings([
        make_reading("meter-01", base - timedelta(days=1), 4.0, reading_type=ReadingType.POWER, unit="kW"),
        make_reading("meter-01", base, 10.0, reading_type=ReadingType.POWER, unit="kW"),
        make_reading("meter-02", base + timedelta(hours=1), 6.0, reading_type=ReadingType.POWER, unit="kW"),
    ])

    response = client.get(f"{API}/analytics/energy", params={
        "startDate": "2024-01-15T00:00:00Z",
        "endDate": "2024-01-15T23:59:59Z",
        "granularity": "day",
        "aggregation": "sum",
        "group_by": "device",
        "compare_with": "previous_period",
    })

    assert response.status_code == 200
    data = response.json()["data"]
    assert [(p["time_bucket"], p["device_id"], p["value"]) for p in data["results"]] == [
        ("2024-01-15", "meter-01", 10.0),
        ("2024-01-15", "meter-02", 6.0),
    ]
    assert data["comparison"]["summary"]["comparison_total"] == 4.0
    assert data["comparison"]["summary"]["trend"] == "increase"
    assert data["metadata"]["aggregation_type"] == "sum"
    assert data["metadata"]["excluded_invalid"] == 0


def test_energy_endpoint_rejects_unknown_aggregation(client) -> None:
    response = client.get(f"{API}/analytics/energy", params={"aggregation": "median"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_unexpected_failures_are_counted_as_500() -> None:
    metrics.reset()
    app.dependency_overrides[get_gateway] = lambda: ExplodingGateway()
    try:
        response = TestClient(app, raise_server_exceptions=False).get(f"{API}/analytics/health")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    stats = metrics.get_stats()
    assert stats["errors"]["by_type"] == {"RuntimeError": 1}
    assert stats["requests"]["by_status"] == {"500": 1}
