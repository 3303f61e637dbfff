from __future__ import annotations

from vps_control.api.plane import ControlPlane
from vps_control.lifecycle.control import SIGNAL_NOT_CREATED
from vps_control.lifecycle.controller import NO_DEPLOYMENT, NO_IP, START_IN_PROGRESS, exchange_env_prefix

IP = "10.0.0.1"


def test_http_start_creates_signal_and_marks_running(plane: ControlPlane, agent, seed_host, connect_exchange) -> None:
    host = agent(IP)
    _, dep_id = seed_host(IP)
    connect_exchange("binance")
    plane.db.trading_config_repo().update(kill_switch_enabled=True)

    result = plane.controller.start(dep_id)

    assert result["success"] is True
    assert result["botStatus"] == "running"
    assert result["path"] == "http"
    assert result["signalExists"] is True
    assert result["tradeMode"] == "simulation"
    assert host.signal is True
    env = host.control_calls[0]["env"]
    assert env["STRATEGY_ENABLED"] == "true"
    assert env["BINANCE_API_KEY"] == "k" * 24
    assert env["BINANCE_API_SECRET"] == "s" * 24
    assert plane.db.deployment_repo().get(dep_id).bot_status == "running"
    tc = plane.db.trading_config_repo().get()
    assert tc.bot_status == "running"
    assert tc.trading_enabled is True
    assert tc.kill_switch_enabled is False


def test_stop_removes_signal(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    host.signal = True
    host_id, dep_id = seed_host(IP, bot_status="running")

    result = plane.controller.stop(dep_id)

    assert result["success"] is True
    assert result["botStatus"] == "stopped"
    assert host.signal is False
    assert plane.db.host_repo().get(host_id).bot_status == "stopped"
    assert plane.db.trading_config_repo().get().trading_enabled is False


def test_ssh_fallback_writes_env_and_signal(plane: ControlPlane, ssh, seed_host, connect_exchange) -> None:
    _, dep_id = seed_host(IP)
    connect_exchange("okx", passphrase="pass-phrase")

    result = plane.controller.start(dep_id)

    assert result["success"] is True
    assert result["path"] == "ssh"
    agent_cfg = plane.cfg.agent
    assert (IP, agent_cfg.signal_path) in ssh.files
    env_file = ssh.files[(IP, agent_cfg.env_path)]
    assert b"\\n" not in env_file
    lines = env_file.decode("utf-8").split("\n")
    assert lines[-1] == ""
    assert "OKX_PASSPHRASE=pass-phrase" in lines
    assert "TRADE_MODE=simulation" in lines
    assert ssh.commands[-1] == (IP, agent_cfg.bot_restart_command)


def test_ssh_stop_removes_signal_file(plane: ControlPlane, ssh, seed_host) -> None:
    _, dep_id = seed_host(IP, bot_status="running")
    ssh.files[(IP, plane.cfg.agent.signal_path)] = b"{}"

    result = plane.controller.stop(dep_id)

    assert result["success"] is True
    assert result["path"] == "ssh"
    assert (IP, plane.cfg.agent.signal_path) not in ssh.files
    assert ssh.commands == [(IP, plane.cfg.agent.bot_stop_command)]


def test_ssh_start_fails_when_bot_service_does_not_restart(plane: ControlPlane, ssh, seed_host) -> None:
    _, dep_id = seed_host(IP)
    ssh.failing.add(plane.cfg.agent.bot_restart_command)

    result = plane.controller.start(dep_id)

    assert result["success"] is False
    assert result["botStatus"] == "error"
    assert "ssh: bot restart failed" in result["message"]


def test_all_paths_failing_sets_error(plane: ControlPlane, ssh, seed_host) -> None:
    ssh.unreachable.add(IP)
    host_id, dep_id = seed_host(IP)

    result = plane.controller.start(dep_id)

    assert result["success"] is False
    assert result["botStatus"] == "error"
    assert result["vpsReachable"] is False
    assert [e.split(":")[0] for e in result["errors"]] == ["http", "ssh"]
    assert plane.db.deployment_repo().get(dep_id).bot_status == "error"
    assert plane.db.host_repo().get(host_id).bot_status == "error"
    failed = [e for e in plane.db.timeline_repo().list_recent() if e["event_subtype"] == "start_failed"]
    assert len(failed) == 1


def test_missing_signal_after_start_is_a_failure(plane: ControlPlane, agent, ssh, seed_host) -> None:
    host = agent(IP)
    host.create_signal = False
    ssh.unreachable.add(IP)
    _, dep_id = seed_host(IP)

    result = plane.controller.start(dep_id)

    assert result["success"] is False
    assert result["vpsReachable"] is True
    assert SIGNAL_NOT_CREATED in result["message"]
    assert plane.db.deployment_repo().get(dep_id).bot_status == "error"


def test_start_while_starting_is_rejected(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    _, dep_id = seed_host(IP)
    plane.db.deployment_repo().set_bot_status(dep_id, "starting")

    result = plane.controller.start(dep_id)

    assert result["success"] is False
    assert result["message"] == START_IN_PROGRESS
    assert host.control_calls == []


def test_start_when_already_running_reports_success(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    _, dep_id = seed_host(IP, bot_status="running")

    result = plane.controller.start(dep_id)

    assert result["success"] is True
    assert result["message"] == "Bot already running"
    assert host.control_calls == []


def test_restart_from_running(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    host.signal = True
    _, dep_id = seed_host(IP, bot_status="running")

    result = plane.controller.restart(dep_id)

    assert result["success"] is True
    assert host.control_calls[0]["action"] == "restart"
    assert host.signal is True


def test_missing_deployment_or_ip(plane: ControlPlane, seed_host) -> None:
    assert plane.controller.start()["message"] == NO_DEPLOYMENT
    _, dep_id = seed_host(None)
    assert plane.controller.stop(dep_id)["message"] == NO_IP


def test_status_prefers_live_signal(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    host.signal = True
    _, dep_id = seed_host(IP, bot_status="stopped")

    live = plane.controller.status(dep_id)
    assert live["botStatus"] == "running"
    assert live["persistedStatus"] == "stopped"

    host.reachable = False
    cached = plane.controller.status(dep_id)
    assert cached["botStatus"] == "stopped"
    assert cached["message"] == "cached"
    assert cached["vpsReachable"] is False


def test_trade_mode_follows_progression(plane: ControlPlane) -> None:
    db = plane.db
    db.trading_config_repo().update(trading_mode="live")
    assert plane.controller.effective_mode() == "simulation"

    db.execute("UPDATE progression_state SET paper_unlocked = 1 WHERE id = 1")
    assert plane.controller.effective_mode() == "paper"

    db.execute("UPDATE progression_state SET live_unlocked = 1 WHERE id = 1")
    assert plane.controller.effective_mode() == "live"

    db.trading_config_repo().update(trading_mode="simulation")
    assert plane.controller.effective_mode() == "simulation"


def test_exchange_env_prefix() -> None:
    assert exchange_env_prefix("binance") == "BINANCE"
    assert exchange_env_prefix("gate.io") == "GATE_IO"


def test_dispatch_unknown_action(plane: ControlPlane) -> None:
    assert plane.controller.dispatch("explode") == {"success": False, "message": "Unknown action: explode"}


def test_primary_start_blocked_by_preflight(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    seed_host(IP)

    result = plane.lifecycle("start")

    assert result["success"] is False
    assert result["message"].startswith("Preflight failed: ")
    assert "No exchange connections configured" in result["preflight"]["reasons"]
    assert host.control_calls == []
    assert plane.db.deployment_repo().get_primary().bot_status == "stopped"


def test_primary_start_after_preflight(plane: ControlPlane, agent, seed_host, connect_exchange) -> None:
    host = agent(IP)
    host.balances["binance"] = 250.0
    seed_host(IP)
    connect_exchange("binance")

    result = plane.lifecycle("start")

    assert result["success"] is True
    assert host.signal is True


def test_restart_of_stopped_bot_needs_preflight(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    seed_host(IP, bot_status="stopped")

    result = plane.lifecycle("restart")

    assert result["success"] is False
    assert result["action"] == "restart"
    assert "No exchange connections configured" in result["preflight"]["reasons"]
    assert host.control_calls == []
    assert host.signal is False
    assert plane.db.trading_config_repo().get().trading_enabled is False


def test_restart_of_running_bot_skips_preflight(plane: ControlPlane, agent, seed_host) -> None:
    host = agent(IP)
    host.signal = True
    seed_host(IP, bot_status="running")

    result = plane.lifecycle("restart")

    assert result["success"] is True
    assert "preflight" not in result
    assert host.control_calls[0]["action"] == "restart"
