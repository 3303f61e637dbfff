from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from vps_control.core.config import ProbeConfig
from vps_control.core.utils import iso_utc, utc_now
from vps_control.monitoring.probe import ProbeResult
from vps_control.notifications.alerts import AlertManager
from vps_control.persistence.db import Database
from vps_control.persistence.models import HostRow, HostStatus


@dataclass(frozen=True)
class ReconcileOutcome:
    ip: str
    previous_status: str | None
    status: str
    consecutive_failures: int
    cleared_error: bool = False
    alert_raised: bool = False


class Reconciler:
    """Turns a probe result into host state, health samples, metrics and alerts.

    A healthy probe only ever moves ``bot_status`` from ``error`` back to
    ``stopped``; starting the bot is left to the lifecycle controller.
    """

    def __init__(
        self,
        db: Database,
        alerts: AlertManager,
        cfg: ProbeConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.alerts = alerts
        self.cfg = cfg
        self.clock = clock
        self._log = logging.getLogger("vps_control.reconciler")

    def _next_status(self, result: ProbeResult, failures: int) -> str:
        if result.reachable:
            return HostStatus.RUNNING.value
        if failures >= self.cfg.failure_threshold:
            return HostStatus.OFFLINE.value
        if result.timed_out:
            return HostStatus.TIMEOUT.value
        return HostStatus.WARNING.value

    def apply(self, result: ProbeResult, host: HostRow | None = None) -> ReconcileOutcome:
        ip = result.ip
        if host is None:
            host = self.db.host_repo().find_by_ip(ip)
        provider = host.provider if host else "unknown"
        now_iso = iso_utc(self.clock())
        cleared = False

        with self.db.transaction():
            previous = self.db.health_repo().latest_for_ip(ip)
            prev_failures = previous.consecutive_failures if previous else 0
            failures = 0 if result.reachable else prev_failures + 1
            status = self._next_status(result, failures)

            self.db.health_repo().insert(
                host_ip=ip,
                is_healthy=result.reachable,
                latency_ms=result.latency_ms,
                consecutive_failures=failures,
                status=status,
                error_message=result.error,
                recorded_at=now_iso,
            )
            previous_status = host.status if host else (previous.status if previous else None)
            if host is not None:
                self.db.host_repo().set_status(host.id, status)
                self.db.deployment_repo().touch_health(host.id, now_iso)

            if result.reachable:
                n = self.db.host_repo().clear_error(ip)
                if host is not None:
                    n += self.db.deployment_repo().clear_error(host.id)
                    primary = self.db.deployment_repo().get_primary()
                    if primary is not None and primary.host_id == host.id:
                        n += self.db.trading_config_repo().clear_error()
                cleared = n > 0
                if result.metrics is not None:
                    self.db.metrics_repo().upsert(provider, result.metrics.as_dict())

            if previous_status != status and host is not None:
                self.db.timeline_repo().insert(
                    provider=provider,
                    event_type="health_check",
                    event_subtype="status_change",
                    title=f"{provider} VPS {status}",
                    description=f"VPS {ip} changed from {previous_status} to {status}",
                    metadata={
                        "ip": ip,
                        "latency_ms": result.latency_ms,
                        "consecutive_failures": failures,
                        "error": result.error,
                    },
                )

        alert_raised = False
        if not result.reachable and failures == self.cfg.failure_threshold:
            alert_raised = self.alerts.raise_alert(
                kind="vps_health",
                title="VPS Health Alert",
                message=f"VPS {ip} has failed {failures} consecutive health checks.",
                severity="error",
                category="vps",
            )

        self._log.info(
            "reconciled",
            extra={
                "ip": ip,
                "status": status,
                "previous_status": previous_status,
                "consecutive_failures": failures,
                "cleared_error": cleared,
                "alert_raised": alert_raised,
            },
        )
        return ReconcileOutcome(
            ip=ip,
            previous_status=previous_status,
            status=status,
            consecutive_failures=failures,
            cleared_error=cleared,
            alert_raised=alert_raised,
        )
