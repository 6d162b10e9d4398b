"""
Integration tests for health probes and metrics endpoints.
"""

from typing import Any, Dict

from fastapi.testclient import TestClient


class TestHealthEndpoints:
    """Liveness and readiness probes."""

    def test_liveness(self, test_client: TestClient) -> None:
        response = test_client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readiness(self, test_client: TestClient) -> None:
        response = test_client.get("/readyz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert set(data["checks"]) == {"services", "memory", "audit"}
        assert data["checks"]["services"]["details"]["pipeline_running"] is True

    def test_root(self, test_client: TestClient) -> None:
        assert test_client.get("/").json()["service"] == "LogNexus"


class TestMetricsEndpoints:
    """Prometheus scrape and JSON snapshot."""

    def test_prometheus_counts_ingested_records(
        self, test_client: TestClient, auth_headers: Dict[str, str], valid_record: Dict[str, Any]
    ) -> None:
        test_client.post("/v1/logs:ingest", json={"records": [valid_record]}, headers=auth_headers)

        response = test_client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'records_ingested_total{service="test-service",level="INFO"} 1.0' in response.text
        assert 'audit_entries_total{event_type="custom"} 1.0' in response.text
        assert "http_request_duration_seconds" in response.text

    def test_snapshot(
        self, test_client: TestClient, auth_headers: Dict[str, str], valid_record: Dict[str, Any]
    ) -> None:
        test_client.post("/v1/logs:ingest", json={"records": [valid_record]}, headers=auth_headers)

        data = test_client.get("/v1/metrics").json()

        assert data["buffered_records"] == 1
        assert data["optimizer"]["records_processed"] == 0
        assert data["audit"]["total_entries"] == 1
        assert data["rules"]["total_rules"] == 0
        assert isinstance(data["recommendations"], list)
