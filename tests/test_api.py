# -*- coding: utf-8 -*-
"""
Test Suite for the Policy Engine REST API
=========================================

Exercises the FastAPI router end to end against a per-test database.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from insiderguard.policy_engine import (
    configure_policy_engine,
    get_policy_engine,
    get_router,
    reset_policy_engine,
)

PREFIX = "/api/v1/policy-engine"

POLICY = {
    "name": "R&D exfiltration",
    "scope": {"level": "group", "kind": "department", "value": "R&D"},
    "priority": 80,
    "conditions": [
        {"condition_type": "risk_score", "operator": "greater_than", "value": "85"},
    ],
    "actions": [
        {"action_type": "email_alert", "config": {"recipients": ["soc@example.com"]}},
        {"action_type": "escalate_incident", "delay_minutes": 10},
    ],
}


class TestPolicyEngineApi:
    """HTTP surface of the policy engine."""

    @pytest.fixture
    def app(self, config, database, directory, registry, clock):
        app = FastAPI()
        configure_policy_engine(
            app,
            config=config,
            start_executor=False,
            database=database,
            directory=directory,
            registry=registry,
            clock=clock,
        )
        yield app
        reset_policy_engine()

    @pytest.fixture
    def client(self, app):
        return TestClient(app)

    @pytest.fixture
    def policy(self, client):
        response = client.post(f"{PREFIX}/policies", json=POLICY, headers={"X-Actor": "alice"})
        assert response.status_code == 201
        return response.json()

    # =========================================================================
    # Policies
    # =========================================================================

    def test_create_and_get(self, client, policy):
        assert policy["created_by"] == "alice"
        assert [a["execution_order"] for a in policy["actions"]] == [1, 2]

        response = client.get(f"{PREFIX}/policies/{policy['id']}")
        assert response.status_code == 200
        assert response.json()["scope"] == POLICY["scope"]

    def test_list(self, client, policy):
        client.post(f"{PREFIX}/policies", json={"name": "Global", "priority": 10})
        names = [p["name"] for p in client.get(f"{PREFIX}/policies").json()]
        assert names == ["R&D exfiltration", "Global"]

        levels = client.get(f"{PREFIX}/policies", params={"level": "global"}).json()
        assert [p["name"] for p in levels] == ["Global"]

    def test_missing_policy_404(self, client):
        response = client.get(f"{PREFIX}/policies/999")
        assert response.status_code == 404
        assert response.json()["detail"]["error_type"] == "PolicyNotFoundError"

    def test_malformed_policy_rejected(self, client):
        response = client.post(
            f"{PREFIX}/policies",
            json={"name": "Bad", "scope": {"level": "global", "value": "R&D"}},
        )
        assert response.status_code == 422

    def test_update_and_delete(self, client, policy):
        url = f"{PREFIX}/policies/{policy['id']}"
        response = client.put(url, json={"priority": 99}, headers={"X-Actor": "bob"})
        assert response.status_code == 200
        assert response.json()["priority"] == 99

        assert client.delete(url).status_code == 204
        assert client.get(url).status_code == 404

    def test_scope_change_after_execution_400(self, client, policy):
        client.post(f"{PREFIX}/trigger/{policy['id']}", json={"subject_id": "emp-1"})
        response = client.put(
            f"{PREFIX}/policies/{policy['id']}",
            json={"scope": {"level": "global"}},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error_type"] == "ValidationError"

    # =========================================================================
    # Conditions and actions
    # =========================================================================

    def test_condition_crud(self, client, policy):
        base = f"{PREFIX}/policies/{policy['id']}/conditions"
        response = client.post(base, json={"condition_type": "severity", "value": "critical"})
        assert response.status_code == 201
        condition_id = response.json()["id"]

        assert client.delete(f"{base}/{condition_id}").status_code == 204
        assert client.delete(f"{base}/{condition_id}").status_code == 404

    def test_action_lifecycle(self, client, policy):
        action_id = policy["actions"][1]["id"]
        base = f"{PREFIX}/policies/{policy['id']}/actions/{action_id}"

        response = client.patch(base, json={"delay_minutes": 30})
        assert response.json()["delay_minutes"] == 30
        assert client.post(f"{base}/disable").json()["is_enabled"] is False
        assert client.post(f"{base}/enable").json()["is_enabled"] is True

        response = client.post(
            f"{PREFIX}/policies/{policy['id']}/actions",
            json={"action_type": "increase_monitoring"},
        )
        assert response.status_code == 201
        assert response.json()["execution_order"] == 3
        assert client.delete(base).status_code == 204

    def test_invalid_action_patch_400(self, client, policy):
        action_id = policy["actions"][0]["id"]
        response = client.patch(
            f"{PREFIX}/policies/{policy['id']}/actions/{action_id}",
            json={"config": {"recipients": []}},
        )
        assert response.status_code == 400

    # =========================================================================
    # Resolution, evaluation and execution
    # =========================================================================

    def test_effective_policies(self, client, policy):
        assert [p["id"] for p in client.get(f"{PREFIX}/effective/emp-1").json()] == [policy["id"]]
        assert client.get(f"{PREFIX}/effective/emp-2").json() == []

    def test_evaluate_and_execute(self, app, client, policy):
        response = client.post(
            f"{PREFIX}/evaluate",
            json={"event_id": "evt-1", "subject_id": "emp-1", "severity": "Critical", "risk_score": 90},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["matched_policy_ids"] == [policy["id"]]
        assert len(body["created_execution_record_ids"]) == 2

        get_policy_engine(app).run_pending()
        records = client.get(f"{PREFIX}/executions", params={"event_id": "evt-1"}).json()
        assert sorted(r["status"] for r in records) == ["pending", "success"]

        succeeded = client.get(f"{PREFIX}/executions", params={"status": "success"}).json()
        assert len(succeeded) == 1
        record = client.get(f"{PREFIX}/executions/{succeeded[0]['id']}").json()
        assert record["action_type"] == "email_alert"

    def test_trigger_and_retry(self, app, client, registry, policy):
        registry.unregister("email_alert")
        response = client.post(
            f"{PREFIX}/trigger/{policy['id']}",
            json={"subject_id": "emp-2"},
            headers={"X-Actor": "analyst"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["event_id"].startswith("manual-")
        first_id = body["execution_record_ids"][0]

        get_policy_engine(app).run_pending()
        assert client.get(f"{PREFIX}/executions/{first_id}").json()["status"] == "failed"

        response = client.post(f"{PREFIX}/executions/{first_id}/retry")
        assert response.status_code == 201
        assert response.json()["attempt"] == 2
        assert response.json()["retry_of"] == first_id

    def test_trigger_inactive_400(self, client, policy):
        client.put(f"{PREFIX}/policies/{policy['id']}", json={"is_active": False})
        response = client.post(f"{PREFIX}/trigger/{policy['id']}", json={"subject_id": "emp-1"})
        assert response.status_code == 400

    def test_missing_execution_404(self, client):
        assert client.get(f"{PREFIX}/executions/77").status_code == 404

    # =========================================================================
    # Ledger and health
    # =========================================================================

    def test_ledger_queries(self, client, policy):
        client.put(
            f"{PREFIX}/policies/{policy['id']}", json={"priority": 1}, headers={"X-Actor": "bob"},
        )
        entries = client.get(f"{PREFIX}/ledger", params={"actor": "bob"}).json()
        assert [e["event_type"] for e in entries] == ["updated"]

        history = client.get(f"{PREFIX}/ledger/policy/{policy['id']}").json()
        assert [e["event_type"] for e in history] == ["created", "updated"]

        verification = client.get(f"{PREFIX}/ledger/verify").json()
        assert verification == {"valid": True, "entries": 2}

    def test_health(self, client, policy):
        health = client.get(f"{PREFIX}/health").json()
        assert health["started"] is True
        assert health["executor_running"] is False
        assert health["policies_stored"] == 1
        assert "email_alert" in health["registered_handlers"]

    def test_unconfigured_app_503(self):
        app = FastAPI()
        app.include_router(get_router())
        response = TestClient(app).get(f"{PREFIX}/health")
        assert response.status_code == 503
