"""
Integration tests for alert rule management endpoints.
"""

from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

RULES_URL = "/v1/alerts/rules"


@pytest.fixture
def rule_body() -> Dict[str, Any]:
    return {
        "id": "login-failures",
        "name": "Repeated login failures",
        "severity": "high",
        "conditions": [
            {"type": "pattern", "regex": "login failed", "windowMs": 60000, "minOccurrences": 3},
        ],
        "cooldownMs": 300000,
    }


class TestRuleAuthorization:
    """Rule management requires the admin token."""

    def test_api_key_rejected(self, test_client: TestClient, auth_headers: Dict[str, str]) -> None:
        response = test_client.get(RULES_URL, headers=auth_headers)

        assert response.status_code == 401
        assert response.json()["error"] == "authentication_error"

    def test_missing_token_rejected(self, test_client: TestClient) -> None:
        assert test_client.get(RULES_URL).status_code == 401


class TestRuleLifecycle:
    """Register, inspect, update and remove rules."""

    def test_create_and_get(
        self, test_client: TestClient, admin_headers: Dict[str, str], rule_body: Dict[str, Any]
    ) -> None:
        created = test_client.post(RULES_URL, json=rule_body, headers=admin_headers)

        assert created.status_code == 201
        config = created.json()["config"]
        assert config["id"] == "login-failures"
        assert config["cooldownMs"] == 300000

        fetched = test_client.get(f"{RULES_URL}/login-failures", headers=admin_headers).json()
        assert fetched["stats"]["total_triggered"] == 0

        listed = test_client.get(RULES_URL, headers=admin_headers).json()
        assert [rule["config"]["id"] for rule in listed] == ["login-failures"]

    def test_duplicate_id_conflicts(
        self, test_client: TestClient, admin_headers: Dict[str, str], rule_body: Dict[str, Any]
    ) -> None:
        test_client.post(RULES_URL, json=rule_body, headers=admin_headers)
        response = test_client.post(RULES_URL, json=rule_body, headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"] == "duplicate_rule"

    def test_invalid_rule_rejected(
        self, test_client: TestClient, admin_headers: Dict[str, str], rule_body: Dict[str, Any]
    ) -> None:
        rule_body["conditions"] = []
        response = test_client.post(RULES_URL, json=rule_body, headers=admin_headers)

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "rule_configuration_error"
        assert data["details"]["errors"]

    def test_unknown_rule(self, test_client: TestClient, admin_headers: Dict[str, str]) -> None:
        response = test_client.get(f"{RULES_URL}/nope", headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "rule_not_found"

    def test_patch_accepts_camel_case(
        self, test_client: TestClient, admin_headers: Dict[str, str], rule_body: Dict[str, Any]
    ) -> None:
        test_client.post(RULES_URL, json=rule_body, headers=admin_headers)

        response = test_client.patch(
            f"{RULES_URL}/login-failures",
            json={"cooldownMs": 1000, "enabled": False},
            headers=admin_headers,
        )

        assert response.status_code == 200
        config = response.json()["config"]
        assert config["cooldownMs"] == 1000
        assert config["enabled"] is False

    def test_delete(
        self, test_client: TestClient, admin_headers: Dict[str, str], rule_body: Dict[str, Any]
    ) -> None:
        test_client.post(RULES_URL, json=rule_body, headers=admin_headers)

        assert test_client.delete(f"{RULES_URL}/login-failures", headers=admin_headers).status_code == 204
        assert test_client.delete(f"{RULES_URL}/login-failures", headers=admin_headers).status_code == 404
        assert test_client.get(RULES_URL, headers=admin_headers).json() == []

    def test_reset_clears_trigger_state(
        self,
        test_client: TestClient,
        admin_headers: Dict[str, str],
        auth_headers: Dict[str, str],
        rule_body: Dict[str, Any],
        valid_record: Dict[str, Any],
    ) -> None:
        test_client.post(RULES_URL, json=rule_body, headers=admin_headers)
        valid_record["message"] = "login failed for alice"

        triggered = []
        for _ in range(4):
            response = test_client.post("/v1/logs:ingest", json={"records": [valid_record]}, headers=auth_headers)
            triggered.append(response.json()["alerts_triggered"])
        # third match fires, fourth lands in the cooldown
        assert triggered == [[], [], ["login-failures"], []]

        stats = test_client.get(f"{RULES_URL}/login-failures", headers=admin_headers).json()["stats"]
        assert stats["total_triggered"] == 1
        assert stats["total_suppressed"] == 1

        reset = test_client.post(f"{RULES_URL}/login-failures/reset", headers=admin_headers)
        assert reset.status_code == 200

        response = test_client.post("/v1/logs:ingest", json={"records": [valid_record]}, headers=auth_headers)
        assert response.json()["alerts_triggered"] == []

    def test_engine_stats(
        self, test_client: TestClient, admin_headers: Dict[str, str], rule_body: Dict[str, Any]
    ) -> None:
        test_client.post(RULES_URL, json=rule_body, headers=admin_headers)

        stats = test_client.get("/v1/alerts/stats", headers=admin_headers).json()
        assert stats["total_rules"] == 1
