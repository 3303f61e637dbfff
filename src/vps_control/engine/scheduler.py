from __future__ import annotations

import logging
import signal
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Callable

from apscheduler.schedulers.blocking import BlockingScheduler

from vps_control.core.config import SchedulerConfig
from vps_control.core.utils import iso_utc, utc_now
from vps_control.monitoring.probe import HostProbe
from vps_control.monitoring.reconciler import ReconcileOutcome, Reconciler
from vps_control.notifications.alerts import AlertManager
from vps_control.persistence.db import Database
from vps_control.persistence.models import HostRow

HEALTH_SWEEP = "health_sweep"
COOLDOWN_SWEEP = "cooldown_sweep"
DAILY_AI_RESET = "daily_ai_reset"


def minute_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%dT%H:%M")


def date_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


class ControlScheduler:
    """Periodic drivers: health sweep, AI cooldown sweep and the daily AI quota reset.

    Each tick is recorded in ``task_runs`` under a (task, minute/date) key, so a
    double fire of the same tick does nothing the second time.
    """

    def __init__(
        self,
        db: Database,
        probe: HostProbe,
        reconciler: Reconciler,
        alerts: AlertManager,
        cfg: SchedulerConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.probe = probe
        self.reconciler = reconciler
        self.alerts = alerts
        self.cfg = cfg
        self.clock = clock
        self._log = logging.getLogger("vps_control.scheduler")
        self._scheduler: BlockingScheduler | None = None

    def _check_host(self, host: HostRow) -> ReconcileOutcome:
        try:
            result = self.probe.probe(host.outbound_ip or "")
            return self.reconciler.apply(result, host)
        finally:
            self.db.close_thread_connection()

    def health_sweep(self, now: datetime | None = None) -> list[ReconcileOutcome]:
        now = now or self.clock()
        if not self.db.task_run_repo().try_mark(HEALTH_SWEEP, minute_key(now)):
            self._log.info("health sweep already ran", extra={"tick": minute_key(now)})
            return []

        hosts = [h for h in self.db.host_repo().list_non_terminal() if h.outbound_ip]
        if not hosts:
            return []
        outcomes: list[ReconcileOutcome] = []
        with ThreadPoolExecutor(max_workers=max(1, min(self.cfg.max_workers, len(hosts)))) as pool:
            futures = {pool.submit(self._check_host, h): h for h in hosts}
            for fut in as_completed(futures):
                host = futures[fut]
                try:
                    outcomes.append(fut.result())
                except Exception as exc:
                    self._log.error(
                        "health check failed",
                        extra={"ip": host.outbound_ip, "error": str(exc)},
                        exc_info=True,
                    )
        self._log.info(
            "health sweep complete",
            extra={"hosts": len(hosts), "reachable": sum(1 for o in outcomes if o.consecutive_failures == 0)},
        )
        return outcomes

    def cooldown_sweep(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self.clock()
        now_iso = iso_utc(now)
        cutoff = iso_utc(now - timedelta(seconds=60))
        repo = self.db.ai_provider_repo()
        with self.db.transaction():
            if not self.db.task_run_repo().try_mark(COOLDOWN_SWEEP, minute_key(now)):
                return {"skipped": True}
            cleared = repo.clear_expired_cooldowns(now_iso)
            counters = repo.reset_minute_counters(cutoff, now_iso)
        if cleared or counters:
            self._log.info("cooldowns swept", extra={"cleared": cleared, "counters_reset": counters})
        return {"skipped": False, "cooldowns_cleared": cleared, "counters_reset": counters}

    def daily_ai_reset(self, now: datetime | None = None) -> bool:
        now = now or self.clock()
        key = date_key(now)
        with self.db.transaction():
            if not self.db.task_run_repo().try_mark(DAILY_AI_RESET, key):
                self._log.info("daily AI reset already ran", extra={"tick": key})
                return False
            count = self.db.ai_provider_repo().daily_reset(iso_utc(now))
            self.alerts.notify(
                kind="ai_reset",
                title="Daily AI Provider Reset",
                message=f"Usage counters and cooldowns reset for {count} AI provider(s).",
                severity="info",
                category="ai",
            )
        self._log.info("daily AI reset", extra={"providers": count, "tick": key})
        return True

    def build(self) -> BlockingScheduler:
        scheduler = BlockingScheduler(timezone="UTC")
        scheduler.add_job(
            self.health_sweep,
            "interval",
            seconds=self.cfg.health_interval_seconds,
            id=HEALTH_SWEEP,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.cooldown_sweep,
            "interval",
            seconds=self.cfg.cooldown_sweep_seconds,
            id=COOLDOWN_SWEEP,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.daily_ai_reset,
            "cron",
            hour=self.cfg.daily_reset_hour_utc,
            minute=0,
            id=DAILY_AI_RESET,
            coalesce=True,
        )
        return scheduler

    def run(self) -> None:
        self._scheduler = self.build()

        def shutdown(signum: int, frame: Any) -> None:
            self._log.info("scheduler shutting down", extra={"signal": signum})
            if self._scheduler is not None:
                self._scheduler.shutdown(wait=False)

        signal.signal(signal.SIGTERM, shutdown)
        signal.signal(signal.SIGINT, shutdown)

        self._log.info(
            "scheduler started",
            extra={
                "health_interval_s": self.cfg.health_interval_seconds,
                "daily_reset_hour_utc": self.cfg.daily_reset_hour_utc,
            },
        )
        self.health_sweep()
        self._scheduler.start()
