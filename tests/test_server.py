"""Tests for the HTTP control surface."""

import time

import pytest
import yaml
from fastapi.testclient import TestClient

from runguard.collaborators import ApprovalBroker
from runguard.execution.controller import ExecutionController
from runguard.runbooks import RunbookRegistry
from runguard.server import create_app

SAFE_RUNBOOK = {
    "id": "restart",
    "name": "Restart",
    "steps": [
        {"id": "a", "name": "Check status"},
        {"id": "b", "name": "Restart service", "max_retries": 0},
    ],
}

RISKY_RUNBOOK = {
    "id": "drop",
    "name": "Drop",
    "steps": [{"id": "drop", "name": "Drop production database", "affects_production": True}],
}


@pytest.fixture
def broker():
    return ApprovalBroker()


@pytest.fixture
def client(tmp_path, repository, executor, broker, settings):
    (tmp_path / "restart.yaml").write_text(yaml.safe_dump(SAFE_RUNBOOK))
    controller = ExecutionController(repository, executor, broker, settings=settings)
    app = create_app(controller, broker, RunbookRegistry(tmp_path))
    with TestClient(app) as c:
        yield c


def _poll(client, path, predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(path).json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"timed out polling {path}: {body}")
        time.sleep(0.02)


def _execution_path(execution_id):
    return f"/api/executions/{execution_id}"


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"


def test_runbook_catalog(client):
    body = client.get("/api/runbooks").json()
    assert body["runbooks"] == [{"id": "restart", "name": "Restart", "file": "restart", "steps": 2}]

    assert client.get("/api/runbooks/restart").json()["runbook"]["id"] == "restart"
    missing = client.get("/api/runbooks/missing")
    assert missing.status_code == 404
    assert missing.json() == {"ok": False, "error": "Runbook not found: missing"}


def test_analyze_and_dry_run(client):
    runbook = dict(RISKY_RUNBOOK)
    runbook["steps"] = [dict(RISKY_RUNBOOK["steps"][0], has_approval_gate=True)]

    analysis = client.post("/api/runbooks/analyze", json=runbook).json()
    assert analysis["analysis"]["overall_risk"] == "critical"
    assert analysis["analysis"]["can_run_automatically"] is False
    assert [g["approval_type"] for g in analysis["gates"]] == ["multi_person"]

    dry = client.post("/api/runbooks/dry-run", json={"runbook": runbook}).json()
    assert dry["result"]["would_succeed"] is True
    assert dry["result"]["simulated_steps"][0]["requires_approval"] is True


def test_start_and_follow_execution(client):
    response = client.post("/api/executions", json={"runbook": SAFE_RUNBOOK})
    assert response.status_code == 202
    execution_id = response.json()["result"]["execution_id"]

    body = _poll(client, _execution_path(execution_id), lambda b: b["execution"]["status"] == "completed")
    assert [s["status"] for s in body["execution"]["steps"]] == ["completed", "completed"]
    assert client.get("/api/executions").json()["active"] == []


def test_blocked_start(client):
    response = client.post("/api/executions", json={
        "runbook": RISKY_RUNBOOK,
        "options": {"manual_trigger": False},
    })
    assert response.status_code == 409
    result = response.json()["result"]
    assert result["execution_id"] is None
    assert result["status"] == "blocked"


def test_unknown_execution_operations(client):
    assert client.get(_execution_path("missing")).status_code == 404
    assert client.post(_execution_path("missing") + "/pause", json={"reason": "x"}).status_code == 409
    assert client.post(_execution_path("missing") + "/resume").status_code == 409

    abort = client.post(_execution_path("missing") + "/abort")
    assert abort.status_code == 404
    assert abort.json()["error"] == "Execution not found"

    assert client.post(_execution_path("missing") + "/steps/a/retry").status_code == 404
    assert client.post(_execution_path("missing") + "/rollback").status_code == 404
    assert client.post("/api/approvals/missing/a", json={"approved": True, "actor": "alice"}).status_code == 404


def test_retry_exhausted_step(client, executor):
    executor.script("b", RuntimeError("boom"))
    execution_id = client.post("/api/executions", json={"runbook": SAFE_RUNBOOK}).json()["result"]["execution_id"]
    _poll(client, _execution_path(execution_id), lambda b: b["execution"]["status"] == "failed")

    response = client.post(_execution_path(execution_id) + "/steps/b/retry")
    assert response.status_code == 409
    assert response.json()["error"] == "Max retries (0) exceeded"


def test_approval_round_trip(client):
    runbook = {
        "id": "gated",
        "name": "Gated",
        "steps": [{"id": "scale", "name": "Scale workers", "has_approval_gate": True}],
    }
    execution_id = client.post("/api/executions", json={"runbook": runbook}).json()["result"]["execution_id"]

    pending = _poll(client, "/api/approvals", lambda b: len(b["pending"]) == 1)["pending"]
    assert pending[0]["execution_id"] == execution_id
    assert pending[0]["step_id"] == "scale"

    decision = client.post(f"/api/approvals/{execution_id}/scale", json={"approved": True, "actor": "alice"})
    assert decision.json() == {"ok": True, "approved": True}

    _poll(client, _execution_path(execution_id), lambda b: b["execution"]["status"] == "completed")


def test_denied_approval(client):
    runbook = {
        "id": "gated",
        "name": "Gated",
        "steps": [{"id": "scale", "name": "Scale workers", "has_approval_gate": True}],
    }
    execution_id = client.post("/api/executions", json={"runbook": runbook}).json()["result"]["execution_id"]
    _poll(client, "/api/approvals", lambda b: len(b["pending"]) == 1)

    client.post(f"/api/approvals/{execution_id}/scale", json={"approved": False, "actor": "bob"})

    body = _poll(client, _execution_path(execution_id),
                 lambda b: b["execution"]["status"] == "completed_with_errors")
    assert body["execution"]["steps"][0]["error"] == "Approval denied: Denied by bob"


def test_abort_pending_approval_and_rollback(client):
    runbook = {
        "id": "gated",
        "name": "Gated",
        "steps": [{"id": "scale", "name": "Scale workers", "has_approval_gate": True}],
    }
    execution_id = client.post("/api/executions", json={"runbook": runbook}).json()["result"]["execution_id"]
    _poll(client, "/api/approvals", lambda b: len(b["pending"]) == 1)

    abort = client.post(_execution_path(execution_id) + "/abort",
                        json={"reason": "no longer needed"})
    assert abort.status_code == 200
    assert abort.json()["result"]["compensation_triggered"] is False

    body = _poll(client, _execution_path(execution_id), lambda b: b["execution"]["status"] == "aborted")
    assert body["execution"]["abort_reason"] == "no longer needed"
    _poll(client, "/api/approvals", lambda b: b["pending"] == [])

    rollback = client.post(_execution_path(execution_id) + "/rollback", json={"dry_run": True})
    assert rollback.status_code == 200
    assert rollback.json()["result"]["message"] == "No compensation steps registered"


def test_app_shares_controller_broker(tmp_path, repository, executor, settings):
    controller = ExecutionController(repository, executor, ApprovalBroker(), settings=settings)
    runbook = {
        "id": "gated",
        "name": "Gated",
        "steps": [{"id": "scale", "name": "Scale workers", "has_approval_gate": True}],
    }
    with TestClient(create_app(controller, registry=RunbookRegistry(tmp_path))) as client:
        execution_id = client.post("/api/executions", json={"runbook": runbook}).json()["result"]["execution_id"]
        pending = _poll(client, "/api/approvals", lambda b: len(b["pending"]) == 1)["pending"]
        assert pending[0]["execution_id"] == execution_id

        decision = client.post(f"/api/approvals/{execution_id}/scale", json={"approved": True, "actor": "alice"})
        assert decision.status_code == 200

        _poll(client, _execution_path(execution_id), lambda b: b["execution"]["status"] == "completed")


def test_approval_routes_without_broker(tmp_path, repository, executor, approvals, settings):
    controller = ExecutionController(repository, executor, approvals, settings=settings)
    with TestClient(create_app(controller, registry=RunbookRegistry(tmp_path))) as client:
        listing = client.get("/api/approvals")
        assert listing.status_code == 404
        assert listing.json() == {"ok": False, "error": "Approvals are not handled by this server"}

        decision = client.post("/api/approvals/x/a", json={"approved": True, "actor": "alice"})
        assert decision.status_code == 404
