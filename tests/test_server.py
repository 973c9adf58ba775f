"""HTTP control plane tests using FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from flowci.controller import RunController
from flowci.server import create_app

GREET = """
jobs:
  greet:
    steps:
      - id: hello
        run: echo "hello ${{ github.ref_name }}"
      - id: out
        run: echo "who=world" >> "$FLOWCI_OUTPUT"
        outputs: [who]
"""

SLOW = """
jobs:
  slow:
    steps:
      - id: sleep
        run: sleep 30
"""


@pytest.fixture
def controller(tmp_path, host_env):
    return RunController(workspace_root=tmp_path / "work", host_env=host_env)


@pytest.fixture
def client(controller):
    return TestClient(create_app(controller))


def create(client, definition, **trigger):
    body = {"definition": definition, "trigger": {"repository": "octo/site", **trigger}}
    return client.post("/runs", json=body)


def test_create_and_fetch_run(client, controller):
    response = create(client, GREET, ref="refs/heads/dev")
    assert response.status_code == 201
    run_id = response.json()["run_id"]

    controller.wait(run_id, timeout=30)
    run = client.get(f"/runs/{run_id}").json()

    assert run["status"] == "succeeded"
    steps = {s["step_id"]: s for s in run["steps"]}
    assert steps["greet.hello"]["stdout"] == "hello dev\n"
    assert steps["greet.out"]["outputs"] == {"who": "world"}


def test_events_endpoint(client, controller):
    run_id = create(client, GREET).json()["run_id"]
    controller.wait(run_id, timeout=30)

    events = client.get(f"/runs/{run_id}/events").json()
    assert events[0]["kind"] == "RunStarted"
    assert events[-1]["kind"] == "RunCompleted"
    assert [e["seq"] for e in events] == list(range(len(events)))

    tail = client.get(f"/runs/{run_id}/events", params={"offset": len(events) - 1}).json()
    assert [e["kind"] for e in tail] == ["RunCompleted"]


def test_invalid_definition_is_rejected(client):
    response = create(client, "jobs: {}")

    assert response.status_code == 422
    assert "Invalid workflow" in response.json()["detail"]


def test_unknown_run_is_404(client):
    assert client.get("/runs/nope").status_code == 404
    assert client.post("/runs/nope/cancel").status_code == 404
    assert client.get("/runs/nope/events").status_code == 404


def test_cancel_run(client, controller):
    run_id = create(client, SLOW).json()["run_id"]
    time.sleep(0.3)

    assert client.post(f"/runs/{run_id}/cancel").status_code == 200
    controller.wait(run_id, timeout=30)
    assert client.get(f"/runs/{run_id}").json()["status"] == "cancelled"
    assert client.post(f"/runs/{run_id}/cancel").status_code == 409
