"""
Tests for the admin HTTP API.
"""

import time

import pytest
from fastapi.testclient import TestClient

from flowgate.core.config import reset_config
from flowgate.errors import RetryableError
from flowgate.main import create_app

from conftest import AGENT, SERVICE, HandlerLog, failing, make_definition, make_step, returning


TERMINAL = {"completed", "failed", "cancelled"}


def _poll(client: TestClient, run_id: str, until, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        snapshot = client.get(f"/runs/{run_id}").json()
        if until(snapshot):
            return snapshot
        if time.monotonic() > deadline:
            raise AssertionError(f"run {run_id} stuck in {snapshot['status']}")
        time.sleep(0.01)


@pytest.fixture
def client(config, capabilities, notifier):
    log = HandlerLog()
    capabilities.register(AGENT, SERVICE, "detect", returning(log, {"count": 3}))
    capabilities.register(AGENT, SERVICE, "execute", returning(log, {"done": True}))
    capabilities.register(AGENT, SERVICE, "report", failing(log, RetryableError("mail relay down")))

    app = create_app(config=config, capabilities=capabilities, notifier=notifier)
    with TestClient(app) as test_client:
        yield test_client
    reset_config()


def _gated_definition(**extra):
    return make_definition(
        [
            make_step("detect"),
            make_step("execute", "execute", human_approval_required=True),
        ],
        **extra,
    )


class TestWorkflowRoutes:
    """Tests for definition routes."""

    def test_register_and_get(self, client):
        response = client.post("/workflows", json=_gated_definition())

        assert response.status_code == 200
        body = response.json()
        assert body["use_case_id"] == "uc_ops"
        assert body["created"] is True

        again = client.post("/workflows", json=_gated_definition())
        assert again.json()["created"] is False
        assert again.json()["id"] == body["id"]

        definition = client.get("/workflows/uc_ops").json()
        assert definition["version"] == "1.0.0"
        assert definition["versions"] == ["1.0.0"]
        assert [s["id"] for s in definition["steps"]] == ["detect", "execute"]

    def test_invalid_definition_lists_violations(self, client):
        broken = make_definition([
            make_step("detect"),
            make_step("detect", action="missing_action"),
        ], version="not-a-version")

        response = client.post("/workflows", json=broken)

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["kind"] == "validation_error"
        assert len(error["violations"]) >= 3

    def test_conflicting_definition(self, client):
        client.post("/workflows", json=_gated_definition())

        response = client.post("/workflows", json=_gated_definition(name="Something else"))

        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "definition_conflict"

    def test_list_filters(self, client):
        client.post("/workflows", json=_gated_definition(metadata={"tags": ["safety"]}))
        client.post("/workflows", json=make_definition([make_step("detect")], use_case_id="uc_scan"))

        assert client.get("/workflows").json()["count"] == 2
        assert client.get("/workflows", params={"tag": "safety"}).json()["count"] == 1
        assert client.get("/workflows", params={"criticality": "bogus"}).status_code == 422

    def test_unknown_workflow(self, client):
        assert client.get("/workflows/missing").status_code == 404

        response = client.post("/workflows/missing/runs", json={})
        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "unknown_workflow"


class TestRunRoutes:
    """Tests for run routes."""

    def test_approval_round_trip(self, client):
        client.post("/workflows", json=_gated_definition())

        run_id = client.post("/workflows/uc_ops/runs", json={"context": {"site": "plant-7"}}).json()["run_id"]
        snapshot = _poll(client, run_id, lambda s: s["status"] == "awaiting_approval")

        assert snapshot["pending_approval"]["step_id"] == "execute"
        assert snapshot["initial_context"] == {"site": "plant-7"}

        pending = client.get("/approvals").json()
        assert pending["count"] == 1
        assert pending["approvals"][0]["run_id"] == run_id

        response = client.post(
            f"/runs/{run_id}/approvals/execute",
            json={"decision": "approve", "actor": "operator-1"},
        )
        assert response.status_code == 200

        snapshot = _poll(client, run_id, lambda s: s["status"] in TERMINAL)
        assert snapshot["status"] == "completed"
        assert snapshot["outputs"]["execute"] == {"done": True}
        assert client.get("/approvals").json()["count"] == 0

    def test_reject(self, client):
        client.post("/workflows", json=_gated_definition())
        run_id = client.post("/workflows/uc_ops/runs", json={}).json()["run_id"]
        _poll(client, run_id, lambda s: s["status"] == "awaiting_approval")

        response = client.post(
            f"/runs/{run_id}/approvals/execute",
            json={"decision": "reject", "actor": "operator-1", "message": "not now"},
        )

        assert response.json()["status"] == "failed"
        assert response.json()["error"]["kind"] == "rejected_by_approver"

    def test_approval_errors(self, client):
        client.post("/workflows", json=_gated_definition())
        run_id = client.post("/workflows/uc_ops/runs", json={}).json()["run_id"]
        _poll(client, run_id, lambda s: s["status"] == "awaiting_approval")

        wrong_step = client.post(
            f"/runs/{run_id}/approvals/detect",
            json={"decision": "approve", "actor": "operator-1"},
        )
        assert wrong_step.status_code == 409

        bad_decision = client.post(
            f"/runs/{run_id}/approvals/execute",
            json={"decision": "maybe", "actor": "operator-1"},
        )
        assert bad_decision.status_code == 422

        unknown = client.post(
            "/runs/missing/approvals/execute",
            json={"decision": "approve", "actor": "operator-1"},
        )
        assert unknown.status_code == 404

    def test_cancel(self, client):
        client.post("/workflows", json=_gated_definition())
        run_id = client.post("/workflows/uc_ops/runs", json={}).json()["run_id"]
        _poll(client, run_id, lambda s: s["status"] == "awaiting_approval")

        response = client.post(f"/runs/{run_id}/cancel")

        assert response.json()["status"] == "cancelled"
        assert client.get(f"/runs/{run_id}").json()["status"] == "cancelled"

    def test_failed_run_escalation(self, client):
        client.post("/workflows", json=make_definition(
            [make_step("report", "report", error_handling={"retry": {"attempts": 2}, "escalate": True})],
            use_case_id="uc_report",
        ))

        run_id = client.post("/workflows/uc_report/runs", json={}).json()["run_id"]
        snapshot = _poll(client, run_id, lambda s: s["status"] in TERMINAL)

        assert snapshot["status"] == "failed"
        assert snapshot["escalated"] is True
        assert len(snapshot["history"]) == 2

        escalations = client.get("/escalations").json()
        assert escalations["count"] == 1
        assert escalations["escalations"][0]["run_id"] == run_id

        failed = client.get("/runs", params={"status": "failed"}).json()
        assert [r["run_id"] for r in failed["runs"]] == [run_id]

        assert client.get("/runs", params={"status": "bogus"}).status_code == 422

    def test_unknown_run(self, client):
        response = client.get("/runs/missing")

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "unknown_run"
        assert client.post("/runs/missing/cancel").status_code == 404


class TestTriggerRoutes:
    """Tests for metric and event inputs."""

    def test_metric_threshold(self, client):
        client.post("/workflows", json=make_definition(
            [make_step("detect")],
            triggers=[{"type": "threshold", "metric": "cpu", "operator": ">", "value": 80}],
        ))

        assert client.post("/metrics", json={"metric": "cpu", "value": 50}).json()["run_ids"] == []
        run_ids = client.post("/metrics", json={"metric": "cpu", "value": 95}).json()["run_ids"]
        assert len(run_ids) == 1
        assert client.post("/metrics", json={"metric": "cpu", "value": 97}).json()["run_ids"] == []

        snapshot = _poll(client, run_ids[0], lambda s: s["status"] in TERMINAL)
        assert snapshot["trigger_type"] == "threshold"

    def test_event(self, client):
        client.post("/workflows", json=make_definition(
            [make_step("detect")],
            triggers=[{"type": "event", "topic": "alarms"}],
        ))

        response = client.post("/events", json={"topic": "alarms", "payload": {"zone": 4}, "event_id": "e1"})
        client.post("/events", json={"topic": "alarms", "payload": {"zone": 4}, "event_id": "e1"})

        assert response.json() == {"published": True, "topic": "alarms"}
        assert client.get("/runs").json()["count"] == 1


class TestMonitoringRoutes:
    """Tests for monitoring routes."""

    def test_metrics_and_stats(self, client):
        client.post("/workflows", json=make_definition([make_step("detect")]))
        run_id = client.post("/workflows/uc_ops/runs", json={}).json()["run_id"]
        _poll(client, run_id, lambda s: s["status"] in TERMINAL)

        metrics = client.get("/metrics").json()
        assert metrics["summary"]["completed"] == 1
        assert metrics["workflows"]["uc_ops"]["success_rate"] == 1.0

        assert client.get("/metrics", params={"workflow_id": "uc_ops"}).json()["started"] == 1

        stats = client.get("/stats").json()
        assert stats["registry"]["total_definitions"] == 1
        assert stats["capabilities"] == 3

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
