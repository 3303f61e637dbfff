from __future__ import annotations

import logging
from typing import Any

from vps_control.agent.client import HostAgentClient
from vps_control.core.utils import Deadline
from vps_control.monitoring.probe import HostProbe
from vps_control.monitoring.reconciler import Reconciler
from vps_control.persistence.db import Database
from vps_control.persistence.models import HostRow


class HealthService:
    """On-demand health checks for the primary (or a given) host."""

    def __init__(self, db: Database, probe: HostProbe, reconciler: Reconciler, client: HostAgentClient) -> None:
        self.db = db
        self.probe = probe
        self.reconciler = reconciler
        self.client = client
        self._log = logging.getLogger("vps_control.health")

    def resolve_host(self, ip: str | None = None) -> tuple[str | None, HostRow | None]:
        if ip:
            return ip, self.db.host_repo().find_by_ip(ip)
        primary = self.db.deployment_repo().get_primary()
        if primary is None:
            return None, None
        host = self.db.host_repo().get(primary.host_id)
        return (host.outbound_ip if host else None), host

    def check(self, ip: str | None = None, *, deadline: Deadline | None = None) -> dict[str, Any]:
        target, host = self.resolve_host(ip)
        if not target:
            return {"success": True, "healthy": False, "error": "No VPS configured", "ip": None, "provider": None}
        result = self.probe.probe(target, deadline=deadline)
        outcome = self.reconciler.apply(result, host)
        data: dict[str, Any] = dict(result.raw or {})
        if result.metrics is not None:
            data["normalized"] = result.metrics.as_dict()
        if result.signal_endpoint_valid:
            data["signalExists"] = result.signal_exists
        return {
            "success": True,
            "healthy": result.reachable,
            "ip": target,
            "provider": host.provider if host else None,
            "status": outcome.status,
            "consecutive_failures": outcome.consecutive_failures,
            "latency_ms": round(result.latency_ms, 2),
            "error": result.error,
            "data": data,
        }

    def ping_exchanges(self, ip: str | None = None, *, deadline: Deadline | None = None) -> dict[str, Any]:
        target, host = self.resolve_host(ip)
        if not target:
            return {"success": False, "error": "No VPS configured", "pings": []}
        resp = self.client.ping_exchanges(target, deadline=deadline)
        if not resp.ok:
            return {"success": False, "error": resp.error, "pings": [], "latency_ms": round(resp.elapsed_ms, 2)}

        pings: list[dict[str, Any]] = []
        raw = resp.data.get("pings") or resp.data.get("results") or []
        repo = self.db.exchange_repo()
        with self.db.transaction():
            for p in raw:
                name = str(p.get("exchange") or p.get("exchange_name") or "unknown")
                latency = p.get("latency_ms", p.get("latencyMs"))
                ok = p.get("success", str(p.get("status", "ok")).lower() in ("ok", "healthy")) is not False
                status = "healthy" if ok else "error"
                repo.record_ping(name, float(latency) if latency is not None else None, status, "vps")
                pings.append({"exchange": name, "latency_ms": latency, "status": status, "error": p.get("error")})
        self._log.info("exchange pings stored", extra={"ip": target, "count": len(pings)})
        return {
            "success": True,
            "ip": target,
            "provider": host.provider if host else None,
            "pings": pings,
            "latency_ms": round(resp.elapsed_ms, 2),
        }
