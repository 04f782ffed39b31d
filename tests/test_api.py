"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from converge.adapters.base import PermanentProviderError
from converge.main import app, get_engine


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_root_and_health(client):
    assert client.get("/").json()["name"] == "Converge"
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["state_locked"] is False


def test_dry_run_returns_plan(client, network_yaml, provider):
    response = client.post("/runs", json={"config_yaml": network_yaml, "dry_run": True})

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "created"
    assert body["plan_text"].endswith("Plan: 4 to add, 0 to change, 0 to destroy.")
    assert [e["action"] for e in body["plan"]["entries"]] == ["create"] * 4
    assert provider.call_log() == []

    plan = client.get(f"/runs/{body['run_id']}/plan").json()
    assert plan["plan"]["run_id"] == body["run_id"]


def test_apply_run(client, eks_yaml):
    response = client.post("/runs", json={"config_yaml": eks_yaml})
    assert response.status_code == 202
    run_id = response.json()["run_id"]

    # TestClient runs background tasks before returning
    status = client.get(f"/runs/{run_id}").json()
    assert status["status"] == "completed", status["message"]
    assert status["progress_percent"] == 100
    assert status["summary"]["failed"] == 0

    outputs = client.get("/state/outputs").json()
    assert outputs["cluster_endpoint"].startswith("https://")
    assert outputs["load_balancer_dns"].endswith(".elb.amazonaws.com")

    state = client.get("/state").json()
    addresses = {r["address"] for r in state["resources"]}
    assert "aws_subnet.eks_subnet[1]" in addresses
    assert state["serial"] > 0

    runs = client.get("/runs").json()
    assert run_id in [r["run_id"] for r in runs["runs"]]
    assert client.get("/health").json()["state_locked"] is False


def test_destroy_run(client, network_yaml, provider):
    client.post("/runs", json={"config_yaml": network_yaml})
    response = client.post("/runs", json={"config_yaml": network_yaml, "destroy": True})

    run_id = response.json()["run_id"]
    assert client.get(f"/runs/{run_id}").json()["summary"]["destroyed"] == 4
    assert provider.resource_ids() == []
    assert client.get("/state/outputs").json() == {}


def test_parse_error_is_400(client):
    response = client.post("/runs", json={"config_yaml": "module: {}"})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error"] == "Configuration validation failed"
    assert any("module" in error for error in detail["errors"])


def test_cycle_is_400(client):
    yaml_content = """
resource:
  aws_vpc:
    a: {cidr_block: "${aws_vpc.b.id}"}
    b: {cidr_block: "${aws_vpc.a.id}"}
"""
    response = client.post("/runs", json={"config_yaml": yaml_content})
    assert response.status_code == 400
    assert response.json()["detail"]["cycle"] == ["aws_vpc.a", "aws_vpc.b", "aws_vpc.a"]


def test_lock_held_is_409(client, store, network_yaml):
    token = store.acquire("apply", who="ci@runner")
    try:
        response = client.post("/runs", json={"config_yaml": network_yaml})
        assert response.status_code == 409
        assert response.json()["detail"]["lock"]["who"] == "ci@runner"
        assert client.get("/health").json()["state_locked"] is True

        unlock = client.delete("/state/lock", params={"lock_id": "wrong"})
        assert unlock.status_code == 409
        assert client.delete("/state/lock", params={"lock_id": token.id}).status_code == 200
    finally:
        if store.current_lock() is not None:
            store.release(token)


def test_taint_endpoints(client, network_yaml):
    client.post("/runs", json={"config_yaml": network_yaml})

    response = client.post("/state/resources/aws_vpc.main/taint")
    assert response.json() == {"address": "aws_vpc.main", "status": "tainted"}

    plan = client.post("/runs", json={"config_yaml": network_yaml, "dry_run": True}).json()
    assert "-/+ aws_vpc.main  (resource is tainted)" in plan["plan_text"]

    response = client.delete("/state/resources/aws_vpc.main/taint")
    assert response.json()["status"] == "created"

    assert client.post("/state/resources/aws_vpc.nope/taint").status_code == 404


def test_unknown_run(client):
    assert client.get("/runs/run_missing").status_code == 404
    assert client.get("/runs/run_missing/plan").status_code == 404
    assert client.delete("/runs/run_missing").status_code == 404
    assert client.post("/runs/run_missing/cancel").status_code == 409


def test_delete_run(client, network_yaml):
    run_id = client.post(
        "/runs", json={"config_yaml": network_yaml, "dry_run": True}
    ).json()["run_id"]
    assert client.delete(f"/runs/{run_id}").status_code == 200
    assert client.get(f"/runs/{run_id}/plan").status_code == 404


def test_dry_run_provider_failure_is_502(client, network_yaml, provider, store):
    client.post("/runs", json={"config_yaml": network_yaml})
    provider.inject_failure(
        "read",
        PermanentProviderError("Not authorized", code="AccessDenied"),
        resource_type="aws_vpc",
    )

    response = client.post("/runs", json={"config_yaml": network_yaml, "dry_run": True})

    assert response.status_code == 502
    assert response.json()["detail"] == {
        "error": "Provider error",
        "code": "AccessDenied",
        "message": "Not authorized",
    }
    assert store.current_lock() is None
