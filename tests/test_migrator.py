from __future__ import annotations

import pytest

from vps_control.api.plane import ControlPlane
from vps_control.persistence.repos import DeploymentRepo

SRC_IP = "10.0.0.1"
TGT_IP = "10.0.0.2"


@pytest.fixture
def pair(plane: ControlPlane, agent, seed_host, connect_exchange):
    src_agent = agent(SRC_IP)
    src_agent.signal = True
    tgt_agent = agent(TGT_IP)
    _, src_id = seed_host(SRC_IP, provider="vultr", primary=True, bot_status="running")
    _, tgt_id = seed_host(TGT_IP, provider="digitalocean", primary=False)
    connect_exchange("binance")
    return src_agent, tgt_agent, src_id, tgt_id


def test_prepare_checks_target_health(plane: ControlPlane, pair) -> None:
    _, tgt_agent, src_id, tgt_id = pair

    ready = plane.migrator.prepare(src_id, tgt_id)
    assert ready["success"] is True
    assert ready["fromVPS"]["isPrimary"] is True
    assert ready["toVPS"]["ip"] == TGT_IP
    assert ready["toVPS"]["health"]["healthy"] is True

    tgt_agent.reachable = False
    down = plane.migrator.prepare(src_id, tgt_id)
    assert down["success"] is False
    assert down["error"] == f"Target VPS {TGT_IP} is not healthy"


def test_prepare_unknown_deployment(plane: ControlPlane, pair) -> None:
    _, _, src_id, _ = pair
    assert plane.migrator.prepare(src_id, "missing") == {
        "success": False,
        "error": "Could not find both VPS deployments",
    }


def test_execute_moves_primary(plane: ControlPlane, pair, sleeps) -> None:
    src_agent, tgt_agent, src_id, tgt_id = pair

    result = plane.migrator.execute(src_id, tgt_id)

    assert result["success"] is True
    assert result["message"] == "Migration completed successfully"
    assert result["newPrimary"] == {"id": tgt_id, "provider": "digitalocean", "ip": TGT_IP}
    assert [c["action"] for c in src_agent.control_calls] == ["stop"]
    assert [c["action"] for c in tgt_agent.control_calls] == ["start"]
    assert src_agent.signal is False
    assert tgt_agent.signal is True
    assert sleeps == [plane.cfg.migration.stop_wait_seconds]

    deps = plane.db.deployment_repo()
    assert deps.get(tgt_id).is_primary is True
    assert deps.get(src_id).is_primary is False
    assert [d.id for d in deps.list_primary()] == [tgt_id]
    assert plane.db.credential_repo().get("binance")["whitelisted_range"] == TGT_IP
    assert result["whitelist"]["exchanges_synced"] == 1

    tc = plane.db.trading_config_repo().get()
    assert tc.bot_status == "running"
    assert tc.trading_enabled is True
    assert plane.db.cloud_config_repo().get("digitalocean")["outbound_ip"] == TGT_IP
    events = [e for e in plane.db.timeline_repo().list_recent() if e["event_type"] == "migration"]
    assert [e["event_subtype"] for e in events] == ["executed"]


def test_execute_with_failed_target_start_keeps_primary(plane: ControlPlane, pair, ssh) -> None:
    src_agent, tgt_agent, src_id, tgt_id = pair
    tgt_agent.reachable = False
    ssh.unreachable.add(TGT_IP)

    result = plane.migrator.execute(src_id, tgt_id)

    assert result["success"] is False
    assert result["error"].startswith("Failed to start bot on target: ")
    deps = plane.db.deployment_repo()
    assert deps.get(src_id).is_primary is True
    assert deps.get(tgt_id).is_primary is False
    assert plane.db.credential_repo().get("binance") is None
    assert src_agent.signal is False

    rolled = plane.migrator.rollback(src_id, tgt_id)

    assert rolled["success"] is True
    assert rolled["message"] == "Rollback completed"
    assert src_agent.signal is True
    assert deps.get(src_id).is_primary is True
    assert deps.get(tgt_id).is_primary is False
    assert deps.get(src_id).bot_status == "running"
    assert not [e for e in plane.db.timeline_repo().list_recent() if e["event_type"] == "migration"]


def test_rollback_after_execute_restores_source(plane: ControlPlane, pair, sleeps) -> None:
    src_agent, tgt_agent, src_id, tgt_id = pair
    plane.migrator.execute(src_id, tgt_id)

    rolled = plane.migrator.rollback(src_id, tgt_id)

    assert rolled["success"] is True
    assert src_agent.signal is True
    assert tgt_agent.signal is False
    assert plane.db.deployment_repo().get(src_id).is_primary is True
    assert plane.db.deployment_repo().get(tgt_id).is_primary is False
    assert sleeps[-1] == plane.cfg.migration.rollback_wait_seconds


def test_rollback_failure_reports_error(plane: ControlPlane, pair, ssh) -> None:
    src_agent, _, src_id, tgt_id = pair
    src_agent.reachable = False
    ssh.unreachable.add(SRC_IP)
    plane.db.deployment_repo().set_bot_status(src_id, "stopped")

    rolled = plane.migrator.rollback(src_id, tgt_id)

    assert rolled["success"] is False
    assert rolled["error"].startswith("Failed to restart bot on source: ")


def test_dispatch_accepts_suffixed_actions(plane: ControlPlane, pair) -> None:
    _, _, src_id, tgt_id = pair
    assert plane.migrator.dispatch("prepare-migration", src_id, tgt_id)["success"] is True
    assert plane.migrator.dispatch("teleport", src_id, tgt_id) == {
        "success": False,
        "error": "Unknown action: teleport",
    }


def test_two_primaries_abort_with_alert(plane: ControlPlane, pair, monkeypatch: pytest.MonkeyPatch) -> None:
    src_agent, tgt_agent, src_id, tgt_id = pair
    deps = plane.db.deployment_repo()
    both = [deps.get(src_id), deps.get(tgt_id)]
    monkeypatch.setattr(DeploymentRepo, "list_primary", lambda self: both)

    result = plane.migrator.dispatch("execute", src_id, tgt_id)

    assert result["success"] is False
    assert result["fatal"] is True
    assert src_agent.control_calls == []
    assert tgt_agent.control_calls == []
    notes = plane.db.notification_repo().list_recent(type="invariant_violation")
    assert len(notes) == 1
    assert notes[0]["severity"] == "critical"
