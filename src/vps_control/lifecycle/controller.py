from __future__ import annotations

import logging
import re
from typing import Any

from vps_control.agent.client import HostAgentClient
from vps_control.core.config import AppConfig
from vps_control.core.utils import Deadline
from vps_control.lifecycle.control import ControlOutcome, ControlStrategy
from vps_control.persistence.db import Database
from vps_control.persistence.models import BotStatus, DeploymentRow, HostRow, TradingMode

NO_DEPLOYMENT = "No active VPS deployment found"
NO_IP = "VPS has no IP address assigned"
START_IN_PROGRESS = "Bot start already in progress"

_STARTABLE = (BotStatus.STOPPED.value, BotStatus.ERROR.value, BotStatus.UNKNOWN.value)
_RESTARTABLE = _STARTABLE + (BotStatus.RUNNING.value,)


def exchange_env_prefix(name: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", name.upper())


class LifecycleController:
    """Start, stop, restart and status for the bot on a deployment's host.

    Strategies are tried in order (HTTP first, SSH second); the first success
    wins. Persisted ``bot_status`` only changes after the host confirmed the
    start-signal file state.
    """

    def __init__(
        self,
        db: Database,
        client: HostAgentClient,
        strategies: list[ControlStrategy],
        cfg: AppConfig,
    ) -> None:
        self.db = db
        self.client = client
        self.strategies = strategies
        self.cfg = cfg
        self._log = logging.getLogger("vps_control.lifecycle")

    def resolve(self, deployment_id: str | None = None) -> tuple[DeploymentRow | None, HostRow | None]:
        deps = self.db.deployment_repo()
        dep = deps.get(deployment_id) if deployment_id else deps.get_primary()
        if dep is None:
            return None, None
        return dep, self.db.host_repo().get(dep.host_id)

    def effective_mode(self) -> str:
        progression = self.db.progression_repo().get()
        requested = self.db.trading_config_repo().get().trading_mode
        if requested == TradingMode.LIVE.value and progression.live_unlocked:
            return TradingMode.LIVE.value
        if requested in (TradingMode.LIVE.value, TradingMode.PAPER.value) and progression.paper_unlocked:
            return TradingMode.PAPER.value
        return TradingMode.SIMULATION.value

    def build_env(self) -> dict[str, str]:
        env: dict[str, str] = {
            "STRATEGY_ENABLED": "true",
            "TRADE_MODE": self.effective_mode(),
        }
        for ex in self.db.exchange_repo().list_connected():
            prefix = exchange_env_prefix(ex.exchange_name)
            if ex.api_key:
                env[f"{prefix}_API_KEY"] = ex.api_key
            if ex.api_secret:
                env[f"{prefix}_API_SECRET"] = ex.api_secret
            if ex.api_passphrase:
                env[f"{prefix}_PASSPHRASE"] = ex.api_passphrase
        return env

    def _result(
        self,
        action: str,
        *,
        success: bool,
        bot_status: str,
        ip: str | None,
        reachable: bool,
        message: str,
        path: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        out = {
            "success": success,
            "action": action,
            "botStatus": bot_status,
            "vpsReachable": reachable,
            "vpsIp": ip,
            "message": message,
        }
        if path:
            out["path"] = path
        out.update(extra)
        return out

    def _run(self, ip: str, action: str, env: dict[str, str] | None, key_path: str | None,
             deadline: Deadline) -> tuple[ControlOutcome | None, list[str], bool]:
        errors: list[str] = []
        reachable = False
        for strategy in self.strategies:
            outcome = strategy.execute(ip, action, env=env, key_path=key_path, deadline=deadline)
            reachable = reachable or outcome.reachable
            if outcome.ok:
                return outcome, errors, True
            errors.append(f"{strategy.name}: {outcome.message or 'failed'}")
            self._log.warning(
                "control path failed",
                extra={"ip": ip, "action": action, "path": strategy.name, "error": outcome.message},
            )
        return None, errors, reachable

    def _set_bot_status(self, dep: DeploymentRow, host: HostRow, status: str, *,
                        trading_enabled: bool | None = None, kill_switch: bool | None = None,
                        expected: tuple[str, ...] | None = None) -> bool:
        with self.db.transaction():
            n = self.db.deployment_repo().set_bot_status(dep.id, status, expected=expected)
            if expected is not None and n == 0:
                return False
            self.db.host_repo().set_bot_status(host.id, status)
            changes: dict[str, Any] = {"bot_status": status}
            if trading_enabled is not None:
                changes["trading_enabled"] = trading_enabled
            if kill_switch is not None:
                changes["kill_switch_enabled"] = kill_switch
            if dep.is_primary:
                self.db.trading_config_repo().update_checked(**changes)
        return True

    def _timeline(self, host: HostRow, action: str, ok: bool, message: str) -> None:
        self.db.timeline_repo().insert(
            provider=host.provider,
            event_type="bot_lifecycle",
            event_subtype=action if ok else f"{action}_failed",
            title=f"Bot {action} {'succeeded' if ok else 'failed'}",
            description=message,
            metadata={"ip": host.outbound_ip},
        )

    def start(self, deployment_id: str | None = None, *, deadline: Deadline | None = None) -> dict[str, Any]:
        return self._start_like("start", deployment_id, deadline)

    def restart(self, deployment_id: str | None = None, *, deadline: Deadline | None = None) -> dict[str, Any]:
        return self._start_like("restart", deployment_id, deadline)

    def _start_like(self, action: str, deployment_id: str | None, deadline: Deadline | None) -> dict[str, Any]:
        deadline = deadline or Deadline(self.cfg.api.handler_budget_seconds)
        dep, host = self.resolve(deployment_id)
        if dep is None or host is None:
            return self._result(action, success=False, bot_status=BotStatus.UNKNOWN.value, ip=None,
                                reachable=False, message=NO_DEPLOYMENT)
        if not host.outbound_ip:
            return self._result(action, success=False, bot_status=dep.bot_status, ip=None,
                                reachable=False, message=NO_IP)
        ip = host.outbound_ip

        expected = _STARTABLE if action == "start" else _RESTARTABLE
        if not self._set_bot_status(dep, host, BotStatus.STARTING.value, expected=expected):
            current = self.db.deployment_repo().get(dep.id)
            current_status = current.bot_status if current else BotStatus.UNKNOWN.value
            if current_status == BotStatus.RUNNING.value:
                return self._result(action, success=True, bot_status=current_status, ip=ip,
                                    reachable=True, message="Bot already running")
            return self._result(action, success=False, bot_status=current_status, ip=ip,
                                reachable=True, message=START_IN_PROGRESS)

        env = self.build_env()
        outcome, errors, reachable = self._run(ip, action, env, host.ssh_key_ref, deadline)
        if outcome is None:
            message = "; ".join(errors) or f"Bot {action} failed"
            self._set_bot_status(dep, host, BotStatus.ERROR.value)
            self._timeline(host, action, False, message)
            self._log.error("bot start failed", extra={"ip": ip, "action": action, "errors": errors})
            return self._result(action, success=False, bot_status=BotStatus.ERROR.value, ip=ip,
                                reachable=reachable, message=message, errors=errors)

        self._set_bot_status(dep, host, BotStatus.RUNNING.value, trading_enabled=True, kill_switch=False)
        self._timeline(host, action, True, f"via {outcome.path}")
        self._log.info("bot started", extra={"ip": ip, "action": action, "path": outcome.path})
        return self._result(
            action, success=True, bot_status=BotStatus.RUNNING.value, ip=ip, reachable=True,
            message=f"Bot {action} successful", path=outcome.path, signalExists=outcome.signal_exists,
            tradeMode=env["TRADE_MODE"],
        )

    def stop(self, deployment_id: str | None = None, *, deadline: Deadline | None = None) -> dict[str, Any]:
        deadline = deadline or Deadline(self.cfg.api.handler_budget_seconds)
        dep, host = self.resolve(deployment_id)
        if dep is None or host is None:
            return self._result("stop", success=False, bot_status=BotStatus.UNKNOWN.value, ip=None,
                                reachable=False, message=NO_DEPLOYMENT)
        if not host.outbound_ip:
            return self._result("stop", success=False, bot_status=dep.bot_status, ip=None,
                                reachable=False, message=NO_IP)
        ip = host.outbound_ip

        outcome, errors, reachable = self._run(ip, "stop", None, host.ssh_key_ref, deadline)
        if outcome is None:
            message = "; ".join(errors) or "Bot stop failed"
            self._set_bot_status(dep, host, BotStatus.ERROR.value)
            self._timeline(host, "stop", False, message)
            self._log.error("bot stop failed", extra={"ip": ip, "errors": errors})
            return self._result("stop", success=False, bot_status=BotStatus.ERROR.value, ip=ip,
                                reachable=reachable, message=message, errors=errors)

        self._set_bot_status(dep, host, BotStatus.STOPPED.value, trading_enabled=False)
        self._timeline(host, "stop", True, f"via {outcome.path}")
        self._log.info("bot stopped", extra={"ip": ip, "path": outcome.path})
        return self._result("stop", success=True, bot_status=BotStatus.STOPPED.value, ip=ip,
                            reachable=True, message="Bot stop successful", path=outcome.path)

    def status(self, deployment_id: str | None = None, *, deadline: Deadline | None = None) -> dict[str, Any]:
        dep, host = self.resolve(deployment_id)
        if dep is None or host is None:
            return self._result("status", success=False, bot_status=BotStatus.UNKNOWN.value, ip=None,
                                reachable=False, message=NO_DEPLOYMENT)
        ip = host.outbound_ip
        if not ip:
            return self._result("status", success=True, bot_status=dep.bot_status, ip=None,
                                reachable=False, message="cached")

        resp = self.client.status(ip, deadline=deadline)
        if resp.ok and "botActive" in resp.data:
            live = BotStatus.RUNNING.value if resp.data.get("botActive") else BotStatus.STOPPED.value
            return self._result("status", success=True, bot_status=live, ip=ip, reachable=True,
                                message="status", persistedStatus=dep.bot_status)
        sig = self.client.signal_check(ip, deadline=deadline)
        if sig.ok and "signalExists" in sig.data:
            live = BotStatus.RUNNING.value if sig.data.get("signalExists") else BotStatus.STOPPED.value
            return self._result("status", success=True, bot_status=live, ip=ip, reachable=True,
                                message="signal-check", persistedStatus=dep.bot_status)
        reachable = resp.status_code is not None or sig.status_code is not None
        return self._result("status", success=True, bot_status=dep.bot_status, ip=ip,
                            reachable=reachable, message="cached")

    def dispatch(self, action: str, deployment_id: str | None = None, *,
                 deadline: Deadline | None = None) -> dict[str, Any]:
        handlers = {
            "start": self.start,
            "stop": self.stop,
            "restart": self.restart,
            "status": self.status,
        }
        handler = handlers.get(action)
        if handler is None:
            return {"success": False, "message": f"Unknown action: {action}"}
        return handler(deployment_id, deadline=deadline)
