from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import FakeResponse
from vps_control.api.app import create_app
from vps_control.api.plane import ControlPlane
from vps_control.providers.vultr import API_BASE as VULTR

IP = "10.0.0.1"


@pytest.fixture
def client(plane: ControlPlane) -> TestClient:
    return TestClient(create_app(plane))


def test_health_is_open(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.headers["access-control-allow-origin"] == "*"


def test_preflight_request_gets_cors_headers(client: TestClient) -> None:
    r = client.options("/bot-lifecycle")
    assert r.status_code == 200
    assert "apikey" in r.headers["access-control-allow-headers"]


def test_api_key_is_enforced(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTROL_API_KEY", "sekret")

    denied = client.post("/trade-preflight")
    assert denied.status_code == 401
    assert denied.json() == {"success": False, "error": "Unauthorized"}
    assert denied.headers["access-control-allow-origin"] == "*"

    assert client.post("/trade-preflight", headers={"apikey": "sekret"}).status_code == 200
    assert client.post("/trade-preflight", headers={"Authorization": "Bearer sekret"}).status_code == 200
    assert client.post("/trade-preflight", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/health").status_code == 200


def test_bot_lifecycle_status(client: TestClient, agent, seed_host) -> None:
    agent("10.0.0.1").signal = True
    seed_host("10.0.0.1")

    body = client.post("/bot-lifecycle", json={"action": "status"}).json()

    assert body["success"] is True
    assert body["botStatus"] == "running"
    assert body["vpsIp"] == "10.0.0.1"
    assert body["persistedStatus"] == "stopped"
    assert "timeout" not in body


def test_bot_lifecycle_without_deployment(client: TestClient) -> None:
    body = client.post("/bot-lifecycle", json={"action": "stop"}).json()
    assert body["success"] is False
    assert body["vpsIp"] is None


def test_check_vps_health(client: TestClient, agent, seed_host) -> None:
    agent("10.0.0.1")
    seed_host("10.0.0.1")

    body = client.post("/check-vps-health", json={}).json()

    assert body["healthy"] is True
    assert body["ip"] == "10.0.0.1"
    assert body["status"] == "running"
    assert body["data"]["normalized"]["ram_percent"] == 41.5


def test_check_vps_health_without_host(client: TestClient) -> None:
    body = client.post("/check-vps-health").json()
    assert body["healthy"] is False
    assert body["error"] == "No VPS configured"


def test_ping_exchanges_stores_latency(client: TestClient, plane: ControlPlane, agent, seed_host) -> None:
    a = agent("10.0.0.1")
    a.pings = [{"exchange": "binance", "latency_ms": 3.2, "success": True}]
    seed_host("10.0.0.1")

    body = client.post("/check-vps-health", json={"action": "ping-exchanges"}).json()

    assert body["success"] is True
    assert body["pings"] == [{"exchange": "binance", "latency_ms": 3.2, "status": "healthy", "error": None}]


def test_trade_preflight_reports_reasons(client: TestClient) -> None:
    body = client.post("/trade-preflight").json()
    assert body["ok"] is False
    assert body["reasons"]


def test_sync_ip_whitelist(client: TestClient, connect_exchange) -> None:
    missing = client.post("/sync-ip-whitelist", json={})
    assert missing.status_code == 400
    assert missing.json()["error"] == "VPS IP is required"

    connect_exchange("binance")
    body = client.post("/sync-ip-whitelist", json={"vps_ip": "203.0.113.7"}).json()
    assert body["exchanges_synced"] == 1


def test_provision_unknown_provider_is_a_502(client: TestClient) -> None:
    r = client.post("/provision-vps", json={"provider": "linode"})
    assert r.status_code == 502
    assert r.json()["provider"] == "linode"
    assert r.json()["success"] is False


def test_migrate_requires_deployment_ids(client: TestClient) -> None:
    assert client.post("/migrate-vps", json={"action": "prepare"}).status_code == 422


def test_progression_endpoint(client: TestClient) -> None:
    recorded = client.post("/progression", json={"action": "record", "mode": "simulation", "pnl": 4.2}).json()
    assert recorded["counted"] is True

    status = client.post("/progression", json={"action": "status"}).json()
    assert status["success"] is True
    assert status["successfulSimulationTrades"] == 1

    assert client.post("/progression", json={"action": "record"}).status_code == 400
    assert client.post("/progression", json={"action": "wipe"}).status_code == 400


def test_exhausted_budget_sets_timeout_flag(client: TestClient, plane: ControlPlane) -> None:
    plane.cfg.api.handler_budget_seconds = 0
    body = client.post("/progression", json={"action": "status"}).json()
    assert body["timeout"] is True


def test_cloud_instance_destroy(client: TestClient, plane: ControlPlane, session, seed_host) -> None:
    host_id, _ = seed_host(IP)
    session.route("DELETE", f"{VULTR}/instances/inst-{IP}", FakeResponse(204, None))

    body = client.post("/cloud-instance", json={
        "provider": "vultr", "action": "destroy", "instanceId": f"inst-{IP}", "credentials": {"apiKey": "key"},
    }).json()

    assert body["success"] is True
    assert body["hostId"] == host_id
    assert plane.db.host_repo().get(host_id).status == "stopped"


def test_cloud_instance_unknown_provider_is_a_502(client: TestClient) -> None:
    r = client.post("/cloud-instance", json={"provider": "linode", "action": "validate"})
    assert r.status_code == 502
    assert r.json()["provider"] == "linode"
