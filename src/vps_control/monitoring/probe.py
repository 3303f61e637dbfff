from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from vps_control.agent.client import HostAgentClient
from vps_control.core.config import ProbeConfig
from vps_control.core.utils import Deadline
from vps_control.monitoring.metrics import Metrics, normalize_health


@dataclass(frozen=True)
class ProbeResult:
    ip: str
    reachable: bool
    latency_ms: float
    metrics: Metrics | None = None
    signal_exists: bool | None = None
    docker_running: bool | None = None
    signal_endpoint_valid: bool = False
    timed_out: bool = False
    error: str | None = None
    raw: dict[str, Any] | None = None


class HostProbe:
    """One reachability and metrics read against a host."""

    def __init__(self, client: HostAgentClient, cfg: ProbeConfig) -> None:
        self.client = client
        self.cfg = cfg
        self._log = logging.getLogger("vps_control.probe")

    def probe(self, ip: str, *, deadline_seconds: float | None = None, check_signal: bool = True,
              deadline: Deadline | None = None) -> ProbeResult:
        """Read ``/health`` (then ``/signal-check``) within the probe budget.

        A caller's ``deadline`` can only shorten that budget.
        """
        limit = float(deadline_seconds or self.cfg.deadline_seconds)
        if deadline is not None:
            limit = min(limit, deadline.remaining())
        health = self.client.health(ip, timeout=max(limit, 0.001), deadline=Deadline(limit))
        latency = min(health.elapsed_ms, limit * 1000.0)
        if not health.ok:
            self._log.info(
                "probe failed",
                extra={"ip": ip, "latency_ms": latency, "error": health.error, "timed_out": health.timed_out},
            )
            return ProbeResult(
                ip=ip,
                reachable=False,
                latency_ms=latency,
                timed_out=health.timed_out,
                error=health.error,
            )

        metrics = normalize_health(health.data, latency_ms=latency) if health.is_json else None
        signal_exists = docker_running = None
        signal_valid = False
        if check_signal:
            # Best effort: an unusable signal endpoint never fails the probe.
            sig_limit = self.client.cfg.signal_timeout
            if deadline is not None:
                sig_limit = min(sig_limit, deadline.remaining())
            sig = self.client.signal_check(ip, deadline=Deadline(sig_limit))
            if sig.ok and "signalExists" in sig.data:
                signal_valid = True
                signal_exists = bool(sig.data.get("signalExists"))
                if "dockerRunning" in sig.data:
                    docker_running = bool(sig.data.get("dockerRunning"))
        return ProbeResult(
            ip=ip,
            reachable=True,
            latency_ms=latency,
            metrics=metrics,
            signal_exists=signal_exists,
            docker_running=docker_running,
            signal_endpoint_valid=signal_valid,
            raw=health.data,
        )
