"""Tests for the HTTP run API, through FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from tickflow.api import create_app
from tickflow.config import EngineSettings
from tickflow.engine import RESUME_PAYLOAD_KEY, FlowEngine
from tickflow.models import EdgeDefinition, FlowDefinition, NodeDefinition, ok, wait
from tickflow.storage import InMemoryFlowStore


async def review(ctx):
    payload = ctx.state.get(RESUME_PAYLOAD_KEY)
    if payload and payload.get("approved"):
        return ok(output="approved")
    return wait(reason="needs review")


async def publish(ctx):
    return ok(output={"published": ctx.input["doc"]})


REVIEW_FLOW = FlowDefinition(
    "review",
    "1",
    "review",
    {"review": NodeDefinition("review", review), "publish": NodeDefinition("publish", publish)},
    (EdgeDefinition("review", "publish"),),
)


@pytest.fixture
def client():
    engine = FlowEngine(InMemoryFlowStore(), settings=EngineSettings(lock_poll_interval_ms=2))
    with TestClient(create_app(engine, definitions=[REVIEW_FLOW])) as test_client:
        yield test_client


def start(client, **body):
    body = {"flowId": "review", "version": "1", "input": {"doc": "d-1"}, **body}
    response = client.post("/v1/runs/start", json=body)
    assert response.status_code == 200
    return response.json()["runId"]


def test_start_run(client):
    response = client.post(
        "/v1/runs/start",
        json={"flowId": "review", "version": "1", "tenantId": "acme", "input": {"doc": "d-1"}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "RUNNING"

    run = client.get(f"/v1/runs/{body['runId']}").json()
    assert run["tenantId"] == "acme"
    assert run["currentNodeId"] == "review"
    assert run["input"] == {"doc": "d-1"}


@pytest.mark.parametrize("body", [{"version": "1"}, {"flowId": "review"}, {}])
def test_start_requires_flow_id_and_version(client, body):
    response = client.post("/v1/runs/start", json=body)

    assert response.status_code == 400
    assert response.json()["detail"] == "flowId and version are required"


def test_start_unknown_flow_is_404(client):
    response = client.post("/v1/runs/start", json={"flowId": "nope", "version": "9"})
    assert response.status_code == 404


def test_tick_resume_and_timeline(client):
    run_id = start(client)

    waiting = client.post(f"/v1/runs/{run_id}/tick").json()
    assert waiting["status"] == "WAITING"

    resumed = client.post(f"/v1/runs/{run_id}/resume", json={"payload": {"approved": True}})
    assert resumed.status_code == 200
    assert resumed.json()["status"] == "RUNNING"
    assert resumed.json()["outputs"] == {"review": "approved"}

    done = client.post(f"/v1/runs/{run_id}/tick").json()
    assert done["status"] == "COMPLETED"
    assert done["outputs"]["publish"] == {"published": "d-1"}

    timeline = client.get(f"/v1/runs/{run_id}/timeline").json()
    assert timeline[0]["type"] == "RUN_STARTED"
    assert timeline[-1]["type"] == "RUN_COMPLETED"
    assert [event["seq"] for event in timeline] == list(range(1, len(timeline) + 1))


def test_resume_without_body(client):
    run_id = start(client)
    client.post(f"/v1/runs/{run_id}/tick")

    response = client.post(f"/v1/runs/{run_id}/resume")

    assert response.status_code == 200
    assert response.json()["status"] == "WAITING"


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/v1/runs/missing"),
        ("get", "/v1/runs/missing/timeline"),
        ("post", "/v1/runs/missing/tick"),
        ("post", "/v1/runs/missing/resume"),
    ],
)
def test_unknown_run_is_404(client, method, path):
    assert getattr(client, method)(path).status_code == 404


def test_list_flows(client):
    flows = client.get("/v1/flows").json()

    assert flows == [
        {"flowId": "review", "version": "1", "definition": REVIEW_FLOW.to_json()},
    ]
