from __future__ import annotations

import json
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass

from vps_control.agent.client import HostAgentClient
from vps_control.agent.ssh import SshTransport, render_env_file
from vps_control.core.config import AgentConfig
from vps_control.core.utils import Deadline, iso_utc, utc_now

SIGNAL_NOT_CREATED = "VPS failed to create START_SIGNAL file"
SIGNAL_NOT_REMOVED = "VPS failed to remove START_SIGNAL file"


@dataclass(frozen=True)
class ControlOutcome:
    ok: bool
    path: str
    reachable: bool
    message: str | None = None
    signal_exists: bool | None = None


class ControlStrategy(ABC):
    name: str = ""

    @abstractmethod
    def execute(
        self,
        ip: str,
        action: str,
        *,
        env: dict[str, str] | None = None,
        key_path: str | None = None,
        deadline: Deadline | None = None,
    ) -> ControlOutcome: ...


class HttpControl(ControlStrategy):
    """POST ``/control`` on the host agent, then confirm via ``/signal-check``."""

    name = "http"

    def __init__(self, client: HostAgentClient) -> None:
        self.client = client
        self._log = logging.getLogger("vps_control.lifecycle.http")

    def execute(
        self,
        ip: str,
        action: str,
        *,
        env: dict[str, str] | None = None,
        key_path: str | None = None,
        deadline: Deadline | None = None,
    ) -> ControlOutcome:
        wants_signal = action in ("start", "restart")
        resp = self.client.control(
            ip,
            action,
            create_signal=True if wants_signal else None,
            env=env if wants_signal else None,
            deadline=deadline,
        )
        reachable = resp.status_code is not None
        if not resp.ok:
            return ControlOutcome(ok=False, path=self.name, reachable=reachable, message=resp.error)
        if not (resp.data.get("success") or resp.data.get("signalCreated")):
            return ControlOutcome(
                ok=False,
                path=self.name,
                reachable=True,
                message=str(resp.data.get("error") or f"Agent refused {action}"),
            )

        sig = self.client.signal_check(ip, deadline=deadline)
        if not (sig.ok and "signalExists" in sig.data):
            # Agents without a usable signal endpoint are trusted on their word.
            self._log.warning("signal verification unavailable", extra={"ip": ip, "action": action})
            return ControlOutcome(ok=True, path=self.name, reachable=True)
        exists = bool(sig.data["signalExists"])
        if wants_signal and not exists:
            return ControlOutcome(ok=False, path=self.name, reachable=True, message=SIGNAL_NOT_CREATED,
                                  signal_exists=False)
        if not wants_signal and exists:
            return ControlOutcome(ok=False, path=self.name, reachable=True, message=SIGNAL_NOT_REMOVED,
                                  signal_exists=True)
        return ControlOutcome(ok=True, path=self.name, reachable=True, signal_exists=exists)


class SshControl(ControlStrategy):
    """Manipulates the start-signal file directly over SSH.

    The bot service is restarted after a start so it picks up the new env file,
    and stopped after the signal is removed.
    """

    name = "ssh"

    def __init__(self, ssh: SshTransport, cfg: AgentConfig) -> None:
        self.ssh = ssh
        self.cfg = cfg

    def _signal_body(self) -> bytes:
        return json.dumps({"started_at": iso_utc(utc_now()), "source": "control-plane"}).encode("utf-8")

    def _start(self, ip: str, env: dict[str, str] | None, key_path: str | None) -> ControlOutcome:
        if env:
            try:
                content = render_env_file(env)
            except ValueError as exc:
                return ControlOutcome(ok=False, path=self.name, reachable=False, message=str(exc))
            res = self.ssh.write_file(ip, self.cfg.env_path, content, key_path=key_path)
            if not res.ok:
                return ControlOutcome(ok=False, path=self.name, reachable=False, message=res.stderr)
        res = self.ssh.write_file(ip, self.cfg.signal_path, self._signal_body(), key_path=key_path)
        if not res.ok:
            return ControlOutcome(ok=False, path=self.name, reachable=False, message=res.stderr)
        check = self.ssh.run(ip, f"test -f {shlex.quote(self.cfg.signal_path)}", key_path=key_path)
        if not check.ok:
            return ControlOutcome(ok=False, path=self.name, reachable=True, message=SIGNAL_NOT_CREATED,
                                  signal_exists=False)
        svc = self.ssh.run(ip, self.cfg.bot_restart_command, key_path=key_path)
        if not svc.ok:
            return ControlOutcome(ok=False, path=self.name, reachable=True, signal_exists=True,
                                  message=f"bot restart failed: {svc.stderr or svc.exit_code}")
        return ControlOutcome(ok=True, path=self.name, reachable=True, signal_exists=True)

    def _stop(self, ip: str, key_path: str | None) -> ControlOutcome:
        res = self.ssh.remove_file(ip, self.cfg.signal_path, key_path=key_path)
        if not res.ok:
            return ControlOutcome(ok=False, path=self.name, reachable=res.exit_code != -1,
                                  message=res.stderr or SIGNAL_NOT_REMOVED)
        svc = self.ssh.run(ip, self.cfg.bot_stop_command, key_path=key_path)
        if not svc.ok:
            return ControlOutcome(ok=False, path=self.name, reachable=True, signal_exists=False,
                                  message=f"bot stop failed: {svc.stderr or svc.exit_code}")
        return ControlOutcome(ok=True, path=self.name, reachable=True, signal_exists=False)

    def execute(
        self,
        ip: str,
        action: str,
        *,
        env: dict[str, str] | None = None,
        key_path: str | None = None,
        deadline: Deadline | None = None,
    ) -> ControlOutcome:
        if action == "start":
            return self._start(ip, env, key_path)
        if action == "stop":
            return self._stop(ip, key_path)
        if action == "restart":
            stopped = self._stop(ip, key_path)
            if not stopped.ok:
                return stopped
            return self._start(ip, env, key_path)
        raise ValueError(f"unsupported action: {action}")
