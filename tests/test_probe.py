from __future__ import annotations

import pytest

from vps_control.agent.client import HostAgentClient
from vps_control.core.config import AppConfig
from vps_control.core.utils import Deadline
from vps_control.monitoring.metrics import CpuArray, CpuPercent, MemNested, MemRaw, normalize_health, parse_health_payload
from vps_control.monitoring.probe import HostProbe


@pytest.mark.parametrize(
    "payload",
    [
        {"cpu": [0.3, 0.2, 0.1], "memory": {"percent": 62.0}, "disk": {"percent": 40.0}, "uptime": 100},
        {"cpu_percent": 30.0, "ram_percent": 62.0, "disk_percent": 40.0, "uptime_seconds": 100},
        {"cpu": "30%", "memory_percent": "62", "disk": 40, "uptime": "100"},
        {"cpu": 30, "memory": 62.0, "disk_percent": 40.0, "uptime": 100},
    ],
)
def test_health_shapes_normalize_to_same_metrics(payload: dict) -> None:
    m = normalize_health(payload)
    assert m.cpu_percent == pytest.approx(30.0, rel=0.005)
    assert m.ram_percent == pytest.approx(62.0, rel=0.005)
    assert m.disk_percent == pytest.approx(40.0, rel=0.005)
    assert m.uptime_seconds == pytest.approx(100.0)


def test_parse_detects_shape_variants() -> None:
    assert isinstance(parse_health_payload({"cpu": [0.5]}).cpu, CpuArray)
    assert isinstance(parse_health_payload({"cpu": 12}).cpu, CpuPercent)
    assert isinstance(parse_health_payload({"memory": {"percent": 3}}).memory, MemNested)
    assert isinstance(parse_health_payload({"memory": 3}).memory, MemRaw)


def test_missing_and_garbage_fields_become_zero() -> None:
    m = normalize_health({"cpu": None, "memory": "n/a", "disk": True})
    assert (m.cpu_percent, m.ram_percent, m.disk_percent) == (0.0, 0.0, 0.0)
    assert m.network_in_mbps == 0.0

    m = normalize_health({"network": {"in_mbps": 2.5, "out_mbps": 1.0}}, latency_ms=12.346)
    assert m.network_in_mbps == 2.5
    assert m.network_out_mbps == 1.0
    assert m.latency_ms == 12.35


def test_probe_reads_metrics_and_signal(cfg: AppConfig, session, agent) -> None:
    host = agent("10.0.0.5")
    host.signal = True
    probe = HostProbe(HostAgentClient(cfg.agent, session=session), cfg.probe)

    result = probe.probe("10.0.0.5")

    assert result.reachable is True
    assert result.error is None
    assert result.metrics is not None
    assert result.metrics.cpu_percent == pytest.approx(25.0)
    assert result.metrics.ram_percent == pytest.approx(41.5)
    assert result.signal_endpoint_valid is True
    assert result.signal_exists is True
    assert result.docker_running is True
    assert result.latency_ms <= cfg.probe.deadline_seconds * 1000.0


def test_probe_without_signal_check(cfg: AppConfig, session, agent) -> None:
    agent("10.0.0.5")
    probe = HostProbe(HostAgentClient(cfg.agent, session=session), cfg.probe)

    result = probe.probe("10.0.0.5", check_signal=False)

    assert result.reachable is True
    assert result.signal_exists is None
    assert session.calls_to("GET", "http://10.0.0.5/signal-check") == []


def test_probe_unreachable_and_timeout(cfg: AppConfig, session, agent) -> None:
    probe = HostProbe(HostAgentClient(cfg.agent, session=session), cfg.probe)

    refused = probe.probe("10.9.9.9")
    assert refused.reachable is False
    assert refused.timed_out is False
    assert "connection refused" in (refused.error or "")

    slow = agent("10.0.0.6")
    slow.timeout = True
    timed_out = probe.probe("10.0.0.6")
    assert timed_out.reachable is False
    assert timed_out.timed_out is True
    assert timed_out.error and timed_out.error.startswith("Timeout after")


def test_probe_tolerates_broken_signal_endpoint(cfg: AppConfig, session, agent) -> None:
    agent("10.0.0.7")
    session.ok("GET", "http://10.0.0.7/signal-check", {"unexpected": True})
    probe = HostProbe(HostAgentClient(cfg.agent, session=session), cfg.probe)

    result = probe.probe("10.0.0.7")

    assert result.reachable is True
    assert result.signal_endpoint_valid is False
    assert result.signal_exists is None


def test_probe_respects_caller_deadline(cfg: AppConfig, session, agent) -> None:
    agent("10.0.0.8")
    probe = HostProbe(HostAgentClient(cfg.agent, session=session), cfg.probe)

    result = probe.probe("10.0.0.8", deadline=Deadline(0))

    assert result.reachable is False
    assert result.timed_out is True
    assert session.calls_to("GET", "http://10.0.0.8/health") == []


def test_health_check_passes_handler_deadline(plane, session, agent, seed_host) -> None:
    agent("10.0.0.1")
    seed_host("10.0.0.1")

    result = plane.health.check(deadline=Deadline(0))

    assert result["healthy"] is False
    assert result["status"] == "timeout"
    assert session.calls_to("GET", "http://10.0.0.1/health") == []
