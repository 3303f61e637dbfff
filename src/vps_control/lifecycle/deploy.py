from __future__ import annotations

import logging
import time
from typing import Any, Callable

from vps_control.agent.client import AgentResponse, HostAgentClient
from vps_control.core.config import AgentConfig
from vps_control.core.utils import Deadline
from vps_control.persistence.db import Database
from vps_control.persistence.models import HostRow
from vps_control.providers.cloud_init import nginx_proxy_snippet

ENDPOINT_MISSING = "Endpoint not found (404) - API needs update"


def manual_install_commands(ip: str, agent_port: int) -> str:
    return (
        f"# SSH to the VPS ({ip}) and run:\n"
        "systemctl daemon-reload\n"
        "systemctl enable --now hft-agent hft-bot\n"
        f"curl -sS http://127.0.0.1:{agent_port}/health\n"
        f"curl -sS http://127.0.0.1:{agent_port}/signal-check\n"
        + nginx_proxy_snippet(agent_port=agent_port)
    )


class DeployService:
    """Verifies the host agent install and pushes bot code updates."""

    def __init__(
        self,
        db: Database,
        client: HostAgentClient,
        cfg: AgentConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.client = client
        self.cfg = cfg
        self.sleep = sleep
        self._log = logging.getLogger("vps_control.deploy")

    def _primary_host(self) -> HostRow | None:
        dep = self.db.deployment_repo().get_primary()
        return self.db.host_repo().get(dep.host_id) if dep is not None else None

    def _check_port(self, ip: str, port: int, deadline: Deadline | None) -> dict[str, Any]:
        health = self.client.health(ip, port=port, deadline=deadline)
        out: dict[str, Any] = {
            "port": port,
            "healthOk": health.ok,
            "version": health.data.get("version") if health.ok else None,
            "healthError": None if health.ok else health.error,
            "signalEndpointOk": False,
            "signalError": None,
        }
        if health.status_code is None:
            out["signalError"] = health.error
            return out
        sig = self.client.signal_check(ip, port=port, deadline=deadline)
        if sig.ok and "signalExists" in sig.data:
            out["signalEndpointOk"] = True
        elif sig.status_code == 404:
            out["signalError"] = ENDPOINT_MISSING
        elif sig.ok:
            out["signalError"] = "Endpoint exists but returns invalid response"
        else:
            out["signalError"] = sig.error
        return out

    def verify(self, *, deadline: Deadline | None = None) -> dict[str, Any]:
        host = self._primary_host()
        if host is None or not host.outbound_ip:
            return {
                "success": False,
                "error": "No active VPS found",
                "healthOk": False,
                "signalEndpointOk": False,
            }
        ip = host.outbound_ip
        canonical = self._check_port(ip, self.cfg.port, deadline)
        fallback = self._check_port(ip, self.cfg.fallback_port, deadline)
        ok = canonical["healthOk"] and canonical["signalEndpointOk"]
        report: dict[str, Any] = {
            "success": ok,
            "ip": ip,
            "provider": host.provider,
            "port80": canonical,
            "port8080": fallback,
            "healthOk": canonical["healthOk"],
            "signalEndpointOk": canonical["signalEndpointOk"],
        }
        if not ok:
            if fallback["healthOk"]:
                # Agent answers directly but nothing fronts it on the canonical port.
                report["manualFixCommands"] = nginx_proxy_snippet(agent_port=self.cfg.fallback_port)
            else:
                report["manualFixCommands"] = manual_install_commands(ip, self.cfg.fallback_port)
        self._log.info(
            "deployment verified",
            extra={"ip": ip, "ok": ok, "fallback_health": fallback["healthOk"]},
        )
        return report

    def update_bot(self, code: str, *, deadline: Deadline | None = None) -> dict[str, Any]:
        if not code:
            return {"success": False, "error": "Bot code is required"}
        secret = self.cfg.update_secret()
        if not secret:
            return {"success": False, "error": f"{self.cfg.update_secret_env} is not configured"}
        host = self._primary_host()
        if host is None or not host.outbound_ip:
            return {"success": False, "error": "No active VPS found"}
        ip = host.outbound_ip

        health = self.client.health(ip, deadline=deadline)
        if not health.ok:
            return {"success": False, "vps_ip": ip, "error": f"VPS unreachable at {ip}: {health.error}"}
        previous = health.data.get("version") or "unknown"

        resp = self.client.update_bot(ip, code=code, secret=secret, deadline=deadline)
        if resp.status_code == 404:
            return {
                "success": False,
                "vps_ip": ip,
                "needs_manual_update": True,
                "current_version": previous,
                "error": f"VPS bot (v{previous}) doesn't have remote update capability",
            }
        if not (resp.ok and resp.data.get("success")):
            error = resp.data.get("error") or resp.error or f"Update failed with status {resp.status_code}"
            self._log.error("bot update failed", extra={"ip": ip, "error": error})
            return {"success": False, "vps_ip": ip, "error": str(error)}

        self.sleep(self.cfg.update_verify_wait_seconds)
        verify: AgentResponse = self.client.ping_exchanges(ip, deadline=deadline)
        self._log.info("bot updated", extra={"ip": ip, "verified": verify.ok})
        if verify.ok:
            return {
                "success": True,
                "message": "VPS bot updated and verified",
                "vps_ip": ip,
                "previous_version": previous,
                "new_version": verify.data.get("version") or resp.data.get("version"),
            }
        return {
            "success": True,
            "message": "VPS bot update initiated, container restarting",
            "vps_ip": ip,
            "previous_version": previous,
        }
