from __future__ import annotations

import logging
import time
from typing import Any, Callable

from vps_control.core.config import MigrationConfig
from vps_control.core.exceptions import ControlPlaneError, InvariantViolationError
from vps_control.core.utils import Deadline
from vps_control.lifecycle.controller import LifecycleController
from vps_control.lifecycle.whitelist import WhitelistSync
from vps_control.monitoring.probe import HostProbe
from vps_control.notifications.alerts import AlertManager
from vps_control.persistence.db import Database
from vps_control.persistence.models import BotStatus, DeploymentRow, HostRow


class Migrator:
    """Moves the primary designation from a source deployment to a target.

    The primary flag only flips after the target confirmed a bot start, and
    the flip itself (clear all, set one) runs inside one store transaction.
    """

    def __init__(
        self,
        db: Database,
        controller: LifecycleController,
        probe: HostProbe,
        whitelist: WhitelistSync,
        alerts: AlertManager,
        cfg: MigrationConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.controller = controller
        self.probe = probe
        self.whitelist = whitelist
        self.alerts = alerts
        self.cfg = cfg
        self.sleep = sleep
        self._log = logging.getLogger("vps_control.migrator")

    def _load(self, deployment_id: str) -> tuple[DeploymentRow | None, HostRow | None]:
        dep = self.db.deployment_repo().get(deployment_id) if deployment_id else None
        if dep is None:
            return None, None
        return dep, self.db.host_repo().get(dep.host_id)

    def _guard_single_primary(self) -> None:
        primaries = self.db.deployment_repo().list_primary()
        if len(primaries) <= 1:
            return
        ids = [p.id for p in primaries]
        self._log.error("multiple primary deployments", extra={"deployment_ids": ids})
        self.alerts.raise_alert(
            kind="invariant_violation",
            title="Multiple primary deployments",
            message=f"{len(ids)} deployments are marked primary; migration refused.",
            severity="critical",
            category="vps",
        )
        raise InvariantViolationError(f"{len(ids)} primary deployments: {', '.join(ids)}")

    def _flip_primary(self, dep: DeploymentRow, host: HostRow, subtype: str, description: str) -> None:
        with self.db.transaction():
            self.db.deployment_repo().clear_all_primary()
            self.db.deployment_repo().set_primary(dep.id)
            current = self.db.deployment_repo().get(dep.id)
            bot_status = current.bot_status if current else dep.bot_status
            self.db.trading_config_repo().update_checked(
                bot_status=bot_status, trading_enabled=bot_status == BotStatus.RUNNING.value
            )
            self.db.cloud_config_repo().upsert(
                host.provider,
                region=host.region,
                instance_type=host.instance_type,
                status="active",
                outbound_ip=host.outbound_ip,
            )
            self.db.timeline_repo().insert(
                provider=host.provider,
                event_type="migration",
                event_subtype=subtype,
                title=f"Primary moved to {host.provider} VPS",
                description=description,
                metadata={"deployment_id": dep.id, "ip": host.outbound_ip},
            )

    @staticmethod
    def _describe(dep: DeploymentRow, host: HostRow) -> dict[str, Any]:
        return {
            "id": dep.id,
            "provider": host.provider,
            "ip": host.outbound_ip,
            "botStatus": dep.bot_status,
            "isPrimary": dep.is_primary,
        }

    def prepare(self, source_id: str, target_id: str) -> dict[str, Any]:
        src, src_host = self._load(source_id)
        tgt, tgt_host = self._load(target_id)
        if src is None or tgt is None or src_host is None or tgt_host is None:
            return {"success": False, "error": "Could not find both VPS deployments"}
        if not src_host.outbound_ip:
            return {"success": False, "error": "Source VPS has no IP address"}
        if not tgt_host.outbound_ip:
            return {"success": False, "error": "Target VPS has no IP address"}

        result = self.probe.probe(tgt_host.outbound_ip, check_signal=False)
        target = self._describe(tgt, tgt_host)
        target["health"] = {
            "healthy": result.reachable,
            "latency_ms": round(result.latency_ms, 2),
            "error": result.error,
        }
        out: dict[str, Any] = {
            "success": result.reachable,
            "fromVPS": self._describe(src, src_host),
            "toVPS": target,
        }
        if not result.reachable:
            out["error"] = f"Target VPS {tgt_host.outbound_ip} is not healthy"
        return out

    def execute(self, source_id: str, target_id: str, *, deadline: Deadline | None = None) -> dict[str, Any]:
        self._guard_single_primary()
        src, src_host = self._load(source_id)
        tgt, tgt_host = self._load(target_id)
        if src is None or tgt is None or src_host is None or tgt_host is None:
            return {"success": False, "error": "Could not find both VPS deployments"}
        if not tgt_host.outbound_ip:
            return {"success": False, "error": "Target VPS has no IP address"}

        self._log.info("stopping source", extra={"deployment_id": src.id, "ip": src_host.outbound_ip})
        stopped = self.controller.stop(src.id, deadline=deadline)
        if not stopped.get("success"):
            # The source is often unreachable when a migration is needed.
            self._log.warning("source stop failed", extra={"deployment_id": src.id, "error": stopped.get("message")})
        self.sleep(self.cfg.stop_wait_seconds)

        self._log.info("starting target", extra={"deployment_id": tgt.id, "ip": tgt_host.outbound_ip})
        started = self.controller.start(tgt.id, deadline=deadline)
        if not started.get("success"):
            error = f"Failed to start bot on target: {started.get('message')}"
            self._log.error("migration aborted", extra={"deployment_id": tgt.id, "error": error})
            return {"success": False, "error": error, "sourceStop": stopped, "targetStart": started}

        self._flip_primary(tgt, tgt_host, "executed", f"Migrated from {src_host.outbound_ip} to {tgt_host.outbound_ip}")

        whitelist: dict[str, Any]
        try:
            whitelist = self.whitelist.sync(tgt_host.outbound_ip)
        except ControlPlaneError as exc:
            self._log.warning("whitelist sync after migration failed", extra={"error": str(exc)})
            whitelist = {"success": False, "error": str(exc)}

        self._log.info("migration complete", extra={"from": src.id, "to": tgt.id, "ip": tgt_host.outbound_ip})
        return {
            "success": True,
            "message": "Migration completed successfully",
            "newPrimary": {"id": tgt.id, "provider": tgt_host.provider, "ip": tgt_host.outbound_ip},
            "sourceStop": stopped,
            "targetStart": started,
            "whitelist": whitelist,
        }

    def rollback(self, source_id: str, target_id: str, *, deadline: Deadline | None = None) -> dict[str, Any]:
        self._guard_single_primary()
        src, src_host = self._load(source_id)
        tgt, tgt_host = self._load(target_id)
        if src is None or tgt is None or src_host is None or tgt_host is None:
            return {"success": False, "error": "Could not find both VPS deployments"}

        self._log.info("rolling back migration", extra={"from": src.id, "to": tgt.id})
        stopped = self.controller.stop(tgt.id, deadline=deadline)
        self.sleep(self.cfg.rollback_wait_seconds)
        started = self.controller.start(src.id, deadline=deadline)
        if not started.get("success"):
            return {
                "success": False,
                "error": f"Failed to restart bot on source: {started.get('message')}",
                "targetStop": stopped,
                "sourceStart": started,
            }

        current = self.db.deployment_repo().get(src.id)
        if current is not None and not current.is_primary:
            self._flip_primary(src, src_host, "rolled_back", f"Primary restored to {src_host.outbound_ip}")
        return {
            "success": True,
            "message": "Rollback completed",
            "targetStop": stopped,
            "sourceStart": started,
        }

    def dispatch(self, action: str, source_id: str, target_id: str, *,
                 deadline: Deadline | None = None) -> dict[str, Any]:
        name = action.replace("-migration", "")
        try:
            if name == "prepare":
                return self.prepare(source_id, target_id)
            if name == "execute":
                return self.execute(source_id, target_id, deadline=deadline)
            if name == "rollback":
                return self.rollback(source_id, target_id, deadline=deadline)
        except InvariantViolationError as exc:
            return {"success": False, "error": str(exc), "fatal": True}
        return {"success": False, "error": f"Unknown action: {action}"}
