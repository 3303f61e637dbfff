from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import requests

from vps_control.core.config import AgentConfig
from vps_control.core.utils import Deadline


@dataclass(frozen=True)
class AgentResponse:
    ok: bool
    status_code: int | None
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    elapsed_ms: float = 0.0
    timed_out: bool = False

    @property
    def is_json(self) -> bool:
        return bool(self.data)


class HostAgentClient:
    """HTTP client for the small agent running on every bot host.

    Calls never raise for transport problems; failures come back as an
    ``AgentResponse`` with ``ok=False`` so callers can account for them.
    """

    def __init__(self, cfg: AgentConfig, session: requests.Session | None = None) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()
        self._log = logging.getLogger("vps_control.agent")

    def health(self, ip: str, *, timeout: float | None = None, deadline: Deadline | None = None,
               port: int | None = None) -> AgentResponse:
        return self._request("GET", ip, "/health", timeout or self.cfg.health_timeout, deadline, port=port)

    def signal_check(self, ip: str, *, deadline: Deadline | None = None, port: int | None = None) -> AgentResponse:
        return self._request("GET", ip, "/signal-check", self.cfg.signal_timeout, deadline, port=port)

    def status(self, ip: str, *, deadline: Deadline | None = None) -> AgentResponse:
        return self._request("GET", ip, "/status", self.cfg.signal_timeout, deadline)

    def control(
        self,
        ip: str,
        action: str,
        *,
        create_signal: bool | None = None,
        env: dict[str, str] | None = None,
        deadline: Deadline | None = None,
    ) -> AgentResponse:
        body: dict[str, Any] = {"action": action}
        if create_signal is not None:
            body["createSignal"] = create_signal
        if env:
            body["env"] = env
        timeout = self.cfg.restart_timeout if action == "restart" else self.cfg.control_timeout
        return self._request("POST", ip, "/control", timeout, deadline, json_body=body)

    def balance(
        self,
        ip: str,
        *,
        exchange: str,
        api_key: str,
        api_secret: str,
        passphrase: str | None = None,
        deadline: Deadline | None = None,
    ) -> AgentResponse:
        body: dict[str, Any] = {
            "exchange": exchange.lower(),
            "apiKey": api_key,
            "apiSecret": api_secret,
        }
        if passphrase:
            body["passphrase"] = passphrase
        return self._request("POST", ip, "/balance", self.cfg.balance_timeout, deadline, json_body=body)

    def update_bot(self, ip: str, *, code: str, secret: str, deadline: Deadline | None = None) -> AgentResponse:
        return self._request(
            "POST", ip, "/update-bot", self.cfg.update_timeout, deadline,
            json_body={"code": code, "secret": secret},
        )

    def ping_exchanges(self, ip: str, *, deadline: Deadline | None = None) -> AgentResponse:
        return self._request("GET", ip, "/ping-exchanges", self.cfg.ping_timeout, deadline)

    def _request(
        self,
        method: str,
        ip: str,
        path: str,
        timeout: float,
        deadline: Deadline | None,
        *,
        json_body: dict[str, Any] | None = None,
        port: int | None = None,
    ) -> AgentResponse:
        if deadline is not None:
            if deadline.expired():
                return AgentResponse(ok=False, status_code=None, error="deadline exceeded", timed_out=True)
            timeout = deadline.bound(timeout)
        url = self.cfg.base_url(ip, port) + path
        t0 = time.monotonic()
        try:
            r = self.session.request(method, url, json=json_body, timeout=timeout)
        except requests.Timeout:
            elapsed = min((time.monotonic() - t0) * 1000.0, timeout * 1000.0)
            self._log.info("agent timeout", extra={"ip": ip, "path": path, "timeout_s": timeout})
            return AgentResponse(ok=False, status_code=None, error=f"Timeout after {timeout:g}s",
                                 elapsed_ms=elapsed, timed_out=True)
        except requests.RequestException as exc:
            elapsed = min((time.monotonic() - t0) * 1000.0, timeout * 1000.0)
            self._log.info("agent unreachable", extra={"ip": ip, "path": path, "error": str(exc)})
            return AgentResponse(ok=False, status_code=None, error=str(exc), elapsed_ms=elapsed)

        elapsed = (time.monotonic() - t0) * 1000.0
        data: dict[str, Any] = {}
        try:
            parsed = r.json()
            if isinstance(parsed, dict):
                data = parsed
        except ValueError:
            pass
        ok = 200 <= r.status_code < 300
        error = None
        if not ok:
            error = str(data.get("error") or f"HTTP {r.status_code}")
        return AgentResponse(ok=ok, status_code=r.status_code, data=data, error=error, elapsed_ms=elapsed)
