"""
Tests for the HTTP API.

The controller runs on the real clock with hour-long step
intervals, so deployments stay in flight for the whole test.
"""

import time

import pytest
from fastapi.testclient import TestClient

from bluegreen_controller.api import create_app
from bluegreen_controller.clock import SystemClock
from bluegreen_controller.engine import DeploymentController
from bluegreen_controller.metrics.memory import InMemoryMetricSource
from bluegreen_controller.repository import DeploymentRegistry
from bluegreen_controller.routing.memory import InMemoryRoutingBackend


SLOW_POLICY = {
    "step_size": 25,
    "step_interval_seconds": 3600,
    "bake_duration_seconds": 3600,
    "alarm_rules": [
        {
            "name": "error_rate",
            "metric_query": "error_rate",
            "comparator": ">",
            "threshold": 0.05,
            "sustained_for_seconds": 60,
        }
    ],
}


@pytest.fixture
def client(database, config):
    clock = SystemClock()
    controller = DeploymentController(
        registry=DeploymentRegistry(database, clock),
        routing=InMemoryRoutingBackend({"api": "api:v1"}),
        metric_source=InMemoryMetricSource({"error_rate": 0.0}),
        config=config,
        clock=clock,
    )
    with TestClient(create_app(controller)) as test_client:
        yield test_client


def _start(client, service_name="api", green_revision="api:v2", policy=None):
    return client.post(
        "/deployments",
        json={
            "service_name": service_name,
            "green_revision": green_revision,
            "policy": policy or SLOW_POLICY,
        },
    )


def _wait_for_state(client, deployment_id, state, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/deployments/{deployment_id}").json()
        if body["state"] == state:
            return body
        time.sleep(0.01)
    pytest.fail(f"deployment {deployment_id} never reached {state}")


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["running"] is True


class TestStartDeployment:

    def test_created(self, client):
        response = _start(client)

        assert response.status_code == 201
        deployment_id = response.json()["deployment_id"]

        body = client.get(f"/deployments/{deployment_id}").json()
        assert body["service_name"] == "api"
        assert body["blue_revision"] == "api:v1"
        assert body["green_revision"] == "api:v2"
        assert body["step_size"] == 25
        assert body["alarm_rules"] == ["error_rate"]

    def test_invalid_step_size(self, client):
        response = _start(client, policy={**SLOW_POLICY, "step_size": 30})

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_missing_field(self, client):
        response = client.post("/deployments", json={"service_name": "api"})

        assert response.status_code == 400

    def test_unknown_comparator(self, client):
        rule = {**SLOW_POLICY["alarm_rules"][0], "comparator": "=="}
        response = _start(client, policy={**SLOW_POLICY, "alarm_rules": [rule]})

        assert response.status_code == 400

    def test_conflict(self, client):
        assert _start(client).status_code == 201

        response = _start(client, green_revision="api:v3")

        assert response.status_code == 409
        assert len(client.get("/deployments", params={"service_name": "api"}).json()) == 1

    def test_default_alarm_rules(self, client):
        policy = {key: value for key, value in SLOW_POLICY.items() if key != "alarm_rules"}

        deployment_id = _start(client, policy=policy).json()["deployment_id"]

        body = client.get(f"/deployments/{deployment_id}").json()
        assert body["alarm_rules"] == ["error_rate", "latency_p95", "cpu_percent", "backend_up"]


class TestReadDeployments:

    def test_not_found(self, client):
        response = client.get("/deployments/does-not-exist")

        assert response.status_code == 404

    def test_history_is_exposed(self, client):
        deployment_id = _start(client).json()["deployment_id"]

        body = _wait_for_state(client, deployment_id, "Shifting")
        while body["traffic_percent_green"] < 25:
            time.sleep(0.01)
            body = client.get(f"/deployments/{deployment_id}").json()

        transitions = [(h["from_state"], h["to_state"]) for h in body["history"]]
        assert transitions[:2] == [("Pending", "Provisioning"), ("Provisioning", "Shifting")]
        assert body["history"][-1]["green_percent"] == 25

    def test_list_filters(self, client):
        _start(client)
        _start(client, service_name="web", green_revision="web:v2")

        everything = client.get("/deployments").json()
        api_only = client.get("/deployments", params={"service_name": "api"}).json()
        active = client.get("/deployments", params={"active_only": "true"}).json()

        assert len(everything) == 2
        assert [d["service_name"] for d in api_only] == ["api"]
        assert len(active) == 2


class TestAbort:

    def test_abort_then_terminal(self, client):
        deployment_id = _start(client).json()["deployment_id"]

        response = client.post(f"/deployments/{deployment_id}/abort")
        assert response.status_code == 204

        body = _wait_for_state(client, deployment_id, "Aborted")
        assert body["cause"] == "aborted by operator"
        assert body["traffic_percent_green"] == 0
        assert body["terminal_at"] is not None

        again = client.post(f"/deployments/{deployment_id}/abort")
        assert again.status_code == 409

    def test_abort_unknown(self, client):
        response = client.post("/deployments/does-not-exist/abort")

        assert response.status_code == 404
