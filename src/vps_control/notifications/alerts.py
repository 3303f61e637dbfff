from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from vps_control.core.config import AlertsConfig
from vps_control.core.utils import iso_utc, utc_now
from vps_control.persistence.db import Database


class AlertManager:
    """Writes operator alerts into the store, subject to a global cooldown.

    Cooldown state lives in ``alert_history`` so every handler process sees
    the same window.
    """

    def __init__(
        self,
        db: Database,
        cfg: AlertsConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.cfg = cfg
        self.clock = clock
        self._log = logging.getLogger("vps_control.alerts")

    def in_cooldown(self, now: datetime | None = None) -> bool:
        now = now or self.clock()
        since = iso_utc(now - timedelta(seconds=float(self.cfg.cooldown_seconds)))
        return self.db.alert_repo().count_since(since) > 0

    def raise_alert(
        self,
        *,
        kind: str,
        title: str,
        message: str,
        severity: str = "error",
        category: str | None = None,
        channel: str = "dashboard",
    ) -> bool:
        now = self.clock()
        with self.db.transaction():
            if self.in_cooldown(now):
                self._log.info("alert suppressed by cooldown", extra={"kind": kind, "alert_message": message})
                return False
            self.db.notification_repo().insert(
                type=kind, title=title, message=message, severity=severity, category=category
            )
            self.db.alert_repo().insert(
                kind=kind, channel=channel, message=message, severity=severity, sent_at=iso_utc(now)
            )
        self._log.warning("alert raised", extra={"kind": kind, "alert_message": message, "severity": severity})
        return True

    def notify(self, *, kind: str, title: str, message: str, severity: str = "info",
               category: str | None = None) -> None:
        """Informational notification; not subject to alert cooldown."""
        self.db.notification_repo().insert(
            type=kind, title=title, message=message, severity=severity, category=category
        )
        self._log.info("notification", extra={"kind": kind, "title": title})
