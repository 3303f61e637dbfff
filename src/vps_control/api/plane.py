from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import requests

from vps_control.agent.client import HostAgentClient
from vps_control.agent.ssh import SshTransport
from vps_control.core.config import AppConfig
from vps_control.core.utils import Deadline, utc_now
from vps_control.engine.scheduler import ControlScheduler
from vps_control.lifecycle.control import HttpControl, SshControl
from vps_control.lifecycle.controller import LifecycleController
from vps_control.lifecycle.deploy import DeployService
from vps_control.lifecycle.migrator import Migrator
from vps_control.lifecycle.preflight import PreflightService
from vps_control.lifecycle.whitelist import WhitelistSync
from vps_control.monitoring.health import HealthService
from vps_control.monitoring.probe import HostProbe
from vps_control.monitoring.reconciler import Reconciler
from vps_control.notifications.alerts import AlertManager
from vps_control.persistence.db import Database
from vps_control.persistence.models import BotStatus
from vps_control.progression.tracker import ProgressionTracker
from vps_control.providers.provisioner import Provisioner
from vps_control.providers.registry import ProviderRegistry


@dataclass
class ControlPlane:
    """Everything a request handler, the scheduler or the CLI needs, wired once."""

    cfg: AppConfig
    db: Database
    client: HostAgentClient
    ssh: Any
    alerts: AlertManager
    probe: HostProbe
    reconciler: Reconciler
    health: HealthService
    controller: LifecycleController
    preflight: PreflightService
    whitelist: WhitelistSync
    migrator: Migrator
    provisioner: Provisioner
    deploy: DeployService
    progression: ProgressionTracker
    scheduler: ControlScheduler

    @classmethod
    def build(
        cls,
        cfg: AppConfig,
        *,
        db: Database | None = None,
        session: requests.Session | None = None,
        provider_session: requests.Session | None = None,
        ssh: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> "ControlPlane":
        if db is None:
            db = Database(Path(cfg.persistence.db_path))
        db.initialize()

        client = HostAgentClient(cfg.agent, session=session)
        ssh = ssh if ssh is not None else SshTransport(cfg.ssh)
        alerts = AlertManager(db, cfg.alerts, clock=clock)
        probe = HostProbe(client, cfg.probe)
        reconciler = Reconciler(db, alerts, cfg.probe, clock=clock)
        controller = LifecycleController(db, client, [HttpControl(client), SshControl(ssh, cfg.agent)], cfg)
        whitelist = WhitelistSync(db)
        registry = ProviderRegistry(cfg, session=provider_session, sleep=sleep)
        return cls(
            cfg=cfg,
            db=db,
            client=client,
            ssh=ssh,
            alerts=alerts,
            probe=probe,
            reconciler=reconciler,
            health=HealthService(db, probe, reconciler, client),
            controller=controller,
            preflight=PreflightService(db, client, cfg.preflight, clock=clock),
            whitelist=whitelist,
            migrator=Migrator(db, controller, probe, whitelist, alerts, cfg.migration, sleep=sleep),
            provisioner=Provisioner(db, registry, cfg, clock=clock),
            deploy=DeployService(db, client, cfg.agent, sleep=sleep),
            progression=ProgressionTracker(db, alerts, cfg.progression),
            scheduler=ControlScheduler(db, probe, reconciler, alerts, cfg.scheduler, clock=clock),
        )

    def new_deadline(self) -> Deadline:
        return Deadline(self.cfg.api.handler_budget_seconds)

    def lifecycle(self, action: str, deployment_id: str | None = None, *,
                  deadline: Deadline | None = None) -> dict[str, Any]:
        """Lifecycle entry point for operators.

        A start, or a restart of a bot that is not running, must pass preflight first.
        """
        deadline = deadline or self.new_deadline()
        if action in ("start", "restart"):
            dep, _ = self.controller.resolve(deployment_id)
            starts_bot = action == "start" or dep is None or dep.bot_status != BotStatus.RUNNING.value
            if starts_bot and (dep is None or dep.is_primary):
                report = self.preflight.run(deadline=deadline)
                if not report["ok"]:
                    logging.getLogger("vps_control.lifecycle").warning(
                        "start blocked by preflight", extra={"action": action, "reasons": report["reasons"]}
                    )
                    return {
                        "success": False,
                        "action": action,
                        "botStatus": dep.bot_status if dep else "unknown",
                        "vpsReachable": report["host"]["reachable"],
                        "vpsIp": report["host"]["ipAddress"],
                        "message": "Preflight failed: " + "; ".join(report["reasons"]),
                        "preflight": report,
                    }
        return self.controller.dispatch(action, deployment_id, deadline=deadline)
