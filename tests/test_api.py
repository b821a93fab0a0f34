from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from fleet.main import app
from fleet.runtime import COORDINATOR_AGENT_ID, reset_runtime


@pytest.fixture
def client():
    reset_runtime()
    with TestClient(app) as test_client:
        yield test_client
    reset_runtime()


def _create_echo(client: TestClient, agent_id: str = "echo-1") -> dict:
    response = client.post("/agents", json={"id": agent_id, "name": "parrot", "role": "echo", "tags": ["demo"]})
    assert response.status_code == 201, response.text
    return response.json()


def _wait_for_execution(client: TestClient, execution_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/executions/{execution_id}").json()
        if body["status"] in {"completed", "failed", "cancelled"}:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"Execution {execution_id} still {body['status']}")
        time.sleep(0.02)


def test_startup_registers_the_coordinator(client: TestClient) -> None:
    agents = client.get("/agents").json()
    assert [agent["agent_id"] for agent in agents] == [COORDINATOR_AGENT_ID]
    assert agents[0]["status"] == "running"

    health = client.get("/health").json()
    assert health["agents"]["total"] == 1


def test_agent_lifecycle_and_tasks(client: TestClient) -> None:
    created = _create_echo(client)
    assert created["status"] == "running"
    assert "echo" in created["capabilities"]

    assert client.get("/agents", params={"tag": "demo"}).json()[0]["agent_id"] == "echo-1"
    assert client.get("/agents", params={"capability": "workflow-execution"}).json()[0]["agent_id"] == (
        COORDINATOR_AGENT_ID
    )

    accepted = client.post("/agents/echo-1/tasks", json={"type": "echo", "payload": {"content": "ping"}})
    assert accepted.status_code == 202
    task_id = accepted.json()["task_id"]

    result = client.get(f"/tasks/{task_id}/result", params={"timeout": 2}).json()
    assert result["status"] == "completed"
    assert result["result"] == {"echo": "parrot heard ping"}

    stopped = client.post("/agents/echo-1/stop").json()
    assert stopped["status"] == "stopped"

    updated = client.patch("/agents/echo-1/config", json={"timeout_ms": 500, "tags": ["quiet"]})
    assert updated.status_code == 200
    assert updated.json()["timeout_ms"] == 500

    assert client.delete("/agents/echo-1").status_code == 204
    assert client.get("/agents/echo-1").status_code == 404


def test_errors_carry_codes(client: TestClient) -> None:
    missing = client.get("/agents/nobody")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "AGENT_NOT_FOUND"

    _create_echo(client)
    duplicate = client.post("/agents", json={"id": "echo-1", "name": "again", "role": "echo"})
    assert duplicate.status_code == 409

    unknown_role = client.post("/agents", json={"name": "x", "role": "oracle"})
    assert unknown_role.status_code == 422
    assert unknown_role.json()["detail"]["code"] == "VALIDATION_ERROR"

    mismatch = client.post("/agents/echo-1/tasks", json={"type": "translate"})
    assert mismatch.status_code == 400
    assert mismatch.json()["detail"]["code"] == "CAPABILITY_MISMATCH"

    bad_workflow = client.post("/workflows", json={"name": "empty", "steps": []})
    assert bad_workflow.status_code == 422

    assert client.get("/executions/missing").json()["detail"]["code"] == "EXECUTION_NOT_FOUND"


def test_workflow_round_trip(client: TestClient) -> None:
    _create_echo(client)
    created = client.post(
        "/workflows",
        json={
            "name": "greet",
            "steps": [
                {
                    "id": "greet",
                    "type": "agent",
                    "agentId": "echo-1",
                    "config": {"task_type": "echo", "content": "${who}"},
                }
            ],
        },
    )
    assert created.status_code == 201
    workflow_id = created.json()["id"]
    assert [workflow["id"] for workflow in client.get("/workflows").json()] == [workflow_id]

    accepted = client.post(f"/workflows/{workflow_id}/execute", json={"input": {"who": "api"}, "user_id": "u-1"})
    assert accepted.status_code == 202
    execution_id = accepted.json()["execution_id"]

    status = _wait_for_execution(client, execution_id)
    assert status["status"] == "completed"
    assert status["progress"] == {"completed": 1, "failed": 0, "total": 1}

    history = client.get(f"/workflows/{workflow_id}/executions").json()
    assert [item["execution_id"] for item in history] == [execution_id]
    assert client.get("/executions", params={"limit": 5}).json()["total"] == 1

    paused = client.post(f"/executions/{execution_id}/pause")
    assert paused.status_code == 409
    assert paused.json()["detail"]["code"] == "INVALID_STATE"

    assert client.get("/metrics").json()["workflows"]["executions.completed"] == 1.0
    assert client.delete(f"/workflows/{workflow_id}").status_code == 204
    assert client.get(f"/workflows/{workflow_id}").status_code == 404


def test_templates_are_instantiated_per_run(client: TestClient) -> None:
    _create_echo(client)
    created = client.post(
        "/templates",
        json={
            "name": "hello",
            "parameters": [{"name": "agent", "required": True}, {"name": "who", "default": "world"}],
            "template": {
                "name": "hello-run",
                "steps": [
                    {
                        "id": "greet",
                        "type": "agent",
                        "agent_id": "{{agent}}",
                        "config": {"task_type": "echo", "content": "{{who}}"},
                    }
                ],
            },
        },
    )
    assert created.status_code == 201
    template_id = created.json()["id"]
    assert len(client.get("/templates").json()) == 1

    missing = client.post(f"/templates/{template_id}/execute", json={"parameters": {}})
    assert missing.status_code == 422

    accepted = client.post(f"/templates/{template_id}/execute", json={"parameters": {"agent": "echo-1"}})
    assert accepted.status_code == 202
    status = _wait_for_execution(client, accepted.json()["execution_id"])
    assert status["status"] == "completed"
