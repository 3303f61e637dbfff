from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from vps_control.agent.client import HostAgentClient
from vps_control.core.config import PreflightConfig
from vps_control.core.utils import Deadline, iso_utc, parse_iso, utc_now
from vps_control.persistence.db import Database
from vps_control.persistence.models import ExchangeConnectionRow

_WHITELIST_MARKERS = ("IP", "whitelist", "-2015")


def is_whitelist_error(error: str | None) -> bool:
    return bool(error) and any(m in str(error) for m in _WHITELIST_MARKERS)


class PreflightService:
    """Readiness gate evaluated before any bot start.

    Only an unreachable host or the absence of a usable exchange blocks a
    start; the kill switch and AI signals are reported for the operator.
    """

    def __init__(
        self,
        db: Database,
        client: HostAgentClient,
        cfg: PreflightConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.client = client
        self.cfg = cfg
        self.clock = clock
        self._log = logging.getLogger("vps_control.preflight")

    def run(self, *, deadline: Deadline | None = None) -> dict[str, Any]:
        reasons: list[str] = []
        host = self._check_host(reasons, deadline)
        exchanges = self._check_exchanges(host, reasons, deadline)
        ai = self._check_ai()
        risk = self._check_risk(reasons)

        has_host = bool(host["reachable"]) and host["ipAddress"] is not None
        has_exchange = any(e["usable"] for e in exchanges)
        ok = has_host and has_exchange
        if not ok and not reasons:
            reasons.append("Unknown failure - check logs")

        self._log.info("preflight evaluated", extra={"ok": ok, "reasons": reasons})
        return {
            "ok": ok,
            "reasons": reasons,
            "host": host,
            "vps": host,
            "exchanges": exchanges,
            "ai": ai,
            "risk": risk,
        }

    def _check_host(self, reasons: list[str], deadline: Deadline | None) -> dict[str, Any]:
        host: dict[str, Any] = {
            "reachable": False,
            "ipAddress": None,
            "dockerRunning": False,
            "signalExists": None,
            "provider": None,
            "region": None,
            "error": None,
        }
        dep = self.db.deployment_repo().get_primary()
        row = self.db.host_repo().get(dep.host_id) if dep is not None else None
        if dep is None or row is None:
            reasons.append("No active VPS deployment found")
            return host
        if not row.outbound_ip:
            reasons.append("VPS has no IP address assigned")
            return host

        ip = row.outbound_ip
        host.update(ipAddress=ip, provider=row.provider, region=row.region)
        health = self.client.health(ip, timeout=self.client.cfg.preflight_health_timeout, deadline=deadline)
        if not health.ok:
            host["error"] = f"VPS unreachable: {health.error}"
            reasons.append(f"VPS at {ip} is not responding")
            return host
        host["reachable"] = True
        host["dockerRunning"] = health.data.get("ok") is True or health.data.get("status") == "ok"

        sig = self.client.signal_check(ip, deadline=deadline)
        if sig.ok and "signalExists" in sig.data:
            host["signalExists"] = sig.data.get("signalExists") is True
            host["dockerRunning"] = sig.data.get("dockerRunning") is True or host["dockerRunning"]
        return host

    def _has_credentials(self, ex: ExchangeConnectionRow) -> bool:
        n = self.cfg.min_credential_length
        return bool(ex.api_key) and len(ex.api_key) > n and bool(ex.api_secret) and len(ex.api_secret) > n

    def _check_exchanges(self, host: dict[str, Any], reasons: list[str],
                         deadline: Deadline | None) -> list[dict[str, Any]]:
        rows = self.db.exchange_repo().list_connected()
        if not rows:
            reasons.append("No exchange connections configured")
            return []

        out: list[dict[str, Any]] = []
        repo = self.db.exchange_repo()
        ip = host["ipAddress"]
        for ex in rows:
            item: dict[str, Any] = {
                "name": ex.exchange_name,
                "connected": ex.is_connected,
                "hasCredentials": self._has_credentials(ex),
                "balanceUSDT": None,
                "error": None,
                "usable": False,
            }
            out.append(item)
            if not item["hasCredentials"]:
                item["error"] = "Missing API key or secret"
                reasons.append(f"{ex.exchange_name}: Missing API credentials")
                continue
            # unanswered balance checks leave the exchange usable; a rejection does not
            item["usable"] = True
            if not (host["reachable"] and ip):
                continue

            resp = self.client.balance(
                ip,
                exchange=ex.exchange_name,
                api_key=ex.api_key or "",
                api_secret=ex.api_secret or "",
                passphrase=ex.api_passphrase,
                deadline=deadline,
            )
            if resp.status_code is None:
                item["error"] = "Balance check timeout"
                continue
            if not resp.ok and not resp.data:
                item["error"] = resp.error
                continue
            if resp.data.get("success"):
                balance = float(resp.data.get("balance") or resp.data.get("totalUSDT") or 0)
                item["balanceUSDT"] = balance
                repo.record_balance(ex.id, balance)
                if balance < self.cfg.min_balance_usdt:
                    item["usable"] = False
                    item["error"] = f"Insufficient balance (< ${self.cfg.min_balance_usdt:g})"
                    reasons.append(f"{ex.exchange_name}: Balance too low (${balance:.2f})")
                continue

            error = str(resp.data.get("error") or "Balance check failed")
            item["error"] = error
            item["usable"] = False
            repo.record_error(ex.id, error)
            if is_whitelist_error(error):
                reasons.append(f"{ex.exchange_name}: VPS IP not whitelisted - add {ip} to API whitelist")
            else:
                reasons.append(f"{ex.exchange_name}: {error}")
        return out

    def _check_ai(self) -> dict[str, Any]:
        now = self.clock()
        since = iso_utc(now - timedelta(seconds=self.cfg.ai_max_signal_age_seconds))
        signals = self.db.ai_signal_repo().recent(
            since, min_confidence=self.cfg.ai_min_confidence, timeframes=list(self.cfg.ai_timeframes)
        )
        ai: dict[str, Any] = {
            "hasTradableSignal": bool(signals),
            "signalCount": len(signals),
            "topSignal": signals[0] if signals else None,
            "lastSignalAge": None,
        }
        if signals:
            newest = max(parse_iso(s["created_at"]) for s in signals)
            ai["lastSignalAge"] = f"{round((now - newest).total_seconds())}s ago"
        return ai

    def _check_risk(self, reasons: list[str]) -> dict[str, Any]:
        tc = self.db.trading_config_repo().get()
        risk = {
            "killSwitch": tc.kill_switch_enabled,
            "tradingEnabled": tc.trading_enabled,
            "maxPositionSize": tc.max_position_size or self.cfg.default_max_position_size,
        }
        if tc.kill_switch_enabled:
            reasons.append("Kill switch is enabled - will be disabled on start")
        return risk
