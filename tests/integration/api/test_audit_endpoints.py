"""
Integration tests for audit trail endpoints.
"""

import json
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

AUDIT_URL = "/v1/audit"


@pytest.fixture
def audit_event() -> Dict[str, Any]:
    return {
        "event_type": "data.export",
        "action": "export",
        "severity": "high",
        "description": "Quarterly report exported",
        "user_id": "u-1",
        "resource": "reports",
        "compliance_tags": ["SOX", "GDPR"],
    }


class TestAuditEvents:
    """Appending and querying entries."""

    def test_requires_admin(
        self, test_client: TestClient, auth_headers: Dict[str, str], audit_event: Dict[str, Any]
    ) -> None:
        response = test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=auth_headers)
        assert response.status_code == 401

    def test_append_links_hashes(
        self, test_client: TestClient, admin_headers: Dict[str, str], audit_event: Dict[str, Any]
    ) -> None:
        first = test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=admin_headers)
        second = test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=admin_headers)

        assert first.status_code == 201
        entry = test_client.get(f"{AUDIT_URL}/entries/{second.json()['id']}", headers=admin_headers).json()
        assert entry["previous_hash"] == first.json()["hash"]
        assert entry["hash"] == second.json()["hash"]

    def test_unknown_event_type_rejected(
        self, test_client: TestClient, admin_headers: Dict[str, str], audit_event: Dict[str, Any]
    ) -> None:
        audit_event["event_type"] = "made.up"
        response = test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=admin_headers)
        assert response.status_code == 422

    def test_query_filters(
        self, test_client: TestClient, admin_headers: Dict[str, str], audit_event: Dict[str, Any]
    ) -> None:
        test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=admin_headers)
        test_client.post(
            f"{AUDIT_URL}/events",
            json={"event_type": "user.login", "action": "login", "user_id": "u-2"},
            headers=admin_headers,
        )

        by_user = test_client.get(f"{AUDIT_URL}/entries", params={"user_id": "u-2"}, headers=admin_headers).json()
        assert [e["event_type"] for e in by_user] == ["user.login"]

        by_tag = test_client.get(
            f"{AUDIT_URL}/entries", params={"compliance_tag": "SOX"}, headers=admin_headers
        ).json()
        assert [e["user_id"] for e in by_tag] == ["u-1"]

        limited = test_client.get(f"{AUDIT_URL}/entries", params={"limit": 1}, headers=admin_headers).json()
        assert len(limited) == 1

    def test_unknown_entry(self, test_client: TestClient, admin_headers: Dict[str, str]) -> None:
        response = test_client.get(f"{AUDIT_URL}/entries/audit_missing", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "audit_entry_not_found"


class TestAuditIntegrityAndExport:
    """Verification, statistics and compliance export."""

    def test_verify_intact_chain(
        self, test_client: TestClient, admin_headers: Dict[str, str], audit_event: Dict[str, Any]
    ) -> None:
        for _ in range(3):
            test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=admin_headers)

        report = test_client.get(f"{AUDIT_URL}/verify", headers=admin_headers).json()
        assert report["is_valid"] is True
        assert report["total_checked"] == 3
        assert report["invalid_entries"] == []

        stats = test_client.get(f"{AUDIT_URL}/stats", headers=admin_headers).json()
        assert stats["total_entries"] == 3
        assert stats["integrity_checks_passed"] == 1
        assert stats["entries_by_severity"]["high"] == 3

    def test_json_export(
        self, test_client: TestClient, admin_headers: Dict[str, str], audit_event: Dict[str, Any]
    ) -> None:
        test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=admin_headers)

        response = test_client.get(f"{AUDIT_URL}/export", params={"format": "json"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        body = json.loads(response.text)
        assert body["integrity_check"]["is_valid"] is True
        assert len(body["entries"]) == 1

    def test_csv_export(
        self, test_client: TestClient, admin_headers: Dict[str, str], audit_event: Dict[str, Any]
    ) -> None:
        test_client.post(f"{AUDIT_URL}/events", json=audit_event, headers=admin_headers)

        response = test_client.get(f"{AUDIT_URL}/export", params={"format": "csv"}, headers=admin_headers)

        assert response.headers["content-type"].startswith("text/csv")
        header, row = response.text.split("\n")
        assert header.startswith("id,timestamp,eventType")
        assert '"Quarterly report exported"' in row
        assert row.endswith("SOX;GDPR")

    def test_unsupported_export_format(self, test_client: TestClient, admin_headers: Dict[str, str]) -> None:
        response = test_client.get(f"{AUDIT_URL}/export", params={"format": "xml"}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "export_format_error"
