from __future__ import annotations

import json
import shlex
from pathlib import Path
from typing import Any, Callable

import pytest
import requests

from vps_control.agent.ssh import SshResult
from vps_control.api.plane import ControlPlane
from vps_control.core.config import AppConfig
from vps_control.persistence.db import Database
from vps_control.persistence.models import ExchangeConnectionRow

HEALTH_PAYLOAD = {
    "status": "ok",
    "version": "2.1.0",
    "cpu": [0.25, 0.2, 0.1],
    "memory": {"percent": 41.5},
    "disk": {"percent": 12.0},
    "uptime": 3600,
    "network": {"in_mbps": 1.5, "out_mbps": 0.5},
}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("response has no JSON body")
        return self._payload


class FakeSession:
    """Stands in for ``requests.Session``; answers from a (method, url) route table.

    A route holds a list of responses consumed in order, the last one repeating.
    Entries may be a ``FakeResponse``, an exception instance to raise, or a
    callable receiving the request kwargs. Unrouted URLs refuse the connection.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def route(self, method: str, url: str, *responses: Any) -> None:
        self.routes[(method.upper(), url)] = list(responses)

    def ok(self, method: str, url: str, payload: Any, status_code: int = 200) -> None:
        self.route(method, url, FakeResponse(status_code, payload))

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method.upper(), url, kwargs))
        queue = self.routes.get((method.upper(), url))
        if not queue:
            raise requests.ConnectionError(f"connection refused: {url}")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(**kwargs)
        return item

    def calls_to(self, method: str, url: str) -> list[dict[str, Any]]:
        return [kw for m, u, kw in self.calls if m == method.upper() and u == url]


class FakeAgent:
    """Host agent on one IP, keeping the start-signal file state in memory."""

    def __init__(self, session: FakeSession, ip: str, *, port: int = 80) -> None:
        self.ip = ip
        self.signal = False
        self.docker_running = True
        self.reachable = True
        self.timeout = False
        self.create_signal = True
        self.health_payload: dict[str, Any] = dict(HEALTH_PAYLOAD)
        self.balances: dict[str, Any] = {}
        self.pings: list[dict[str, Any]] = []
        self.update_response: FakeResponse | None = None
        self.control_calls: list[dict[str, Any]] = []
        base = f"http://{ip}" if port == 80 else f"http://{ip}:{port}"
        session.route("GET", base + "/health", self._health)
        session.route("GET", base + "/signal-check", self._signal_check)
        session.route("POST", base + "/control", self._control)
        session.route("POST", base + "/balance", self._balance)
        session.route("GET", base + "/ping-exchanges", self._ping)
        session.route("POST", base + "/update-bot", self._update)

    def _gate(self) -> None:
        if self.timeout:
            raise requests.Timeout("read timed out")
        if not self.reachable:
            raise requests.ConnectionError(f"connection refused: {self.ip}")

    def _health(self, **kwargs: Any) -> FakeResponse:
        self._gate()
        return FakeResponse(200, self.health_payload)

    def _signal_check(self, **kwargs: Any) -> FakeResponse:
        self._gate()
        return FakeResponse(200, {"signalExists": self.signal, "dockerRunning": self.docker_running})

    def _control(self, **kwargs: Any) -> FakeResponse:
        self._gate()
        body = kwargs.get("json") or {}
        self.control_calls.append(body)
        action = body.get("action")
        if action in ("start", "restart"):
            self.signal = self.create_signal
            return FakeResponse(200, {"success": True, "signalCreated": self.create_signal})
        if action == "stop":
            self.signal = False
            return FakeResponse(200, {"success": True})
        return FakeResponse(400, {"success": False, "error": f"unknown action {action}"})

    def _balance(self, **kwargs: Any) -> FakeResponse:
        self._gate()
        exchange = (kwargs.get("json") or {}).get("exchange")
        answer = self.balances.get(exchange)
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, FakeResponse):
            return answer
        if answer is None:
            return FakeResponse(200, {"success": False, "error": f"unsupported exchange {exchange}"})
        return FakeResponse(200, {"success": True, "balance": answer})

    def _ping(self, **kwargs: Any) -> FakeResponse:
        self._gate()
        return FakeResponse(200, {"success": True, "version": self.health_payload.get("version"), "pings": self.pings})

    def _update(self, **kwargs: Any) -> FakeResponse:
        self._gate()
        if self.update_response is not None:
            return self.update_response
        return FakeResponse(200, {"success": True, "version": "2.2.0"})


class FakeSsh:
    """Records SSH file writes per (ip, path); ``unreachable`` IPs refuse every call.

    Commands listed in ``failing`` exit non-zero.
    """

    def __init__(self) -> None:
        self.files: dict[tuple[str, str], bytes] = {}
        self.commands: list[tuple[str, str]] = []
        self.unreachable: set[str] = set()
        self.failing: set[str] = set()

    def _refused(self) -> SshResult:
        return SshResult(ok=False, exit_code=-1, stderr="connection refused")

    def run(self, ip: str, command: str, *, key_path: str | None = None, timeout: float | None = None) -> SshResult:
        if ip in self.unreachable:
            return self._refused()
        self.commands.append((ip, command))
        if command.startswith("test -f "):
            path = shlex.split(command)[2]
            exists = (ip, path) in self.files
            return SshResult(ok=exists, exit_code=0 if exists else 1)
        if command in self.failing:
            return SshResult(ok=False, exit_code=1, stderr=f"{command}: failed")
        return SshResult(ok=True, exit_code=0)

    def write_file(self, ip: str, path: str, content: bytes, *, key_path: str | None = None) -> SshResult:
        if ip in self.unreachable:
            return self._refused()
        self.files[(ip, path)] = content
        return SshResult(ok=True, exit_code=0)

    def remove_file(self, ip: str, path: str, *, key_path: str | None = None) -> SshResult:
        if ip in self.unreachable:
            return self._refused()
        self.files.pop((ip, path), None)
        return SshResult(ok=True, exit_code=0)


@pytest.fixture
def cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.persistence.db_path = str(tmp_path / "control.sqlite")
    cfg.runtime.log_dir = str(tmp_path / "logs")
    return cfg


@pytest.fixture
def db(cfg: AppConfig) -> Database:
    database = Database(Path(cfg.persistence.db_path))
    database.initialize()
    yield database
    database.close_thread_connection()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def ssh() -> FakeSsh:
    return FakeSsh()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def plane(cfg: AppConfig, db: Database, session: FakeSession, ssh: FakeSsh, sleeps: list[float],
          monkeypatch: pytest.MonkeyPatch) -> ControlPlane:
    monkeypatch.delenv(cfg.api.api_key_env, raising=False)
    return ControlPlane.build(cfg, db=db, session=session, provider_session=session, ssh=ssh,
                              sleep=sleeps.append)


@pytest.fixture
def agent(session: FakeSession) -> Callable[..., FakeAgent]:
    def _agent(ip: str, **kwargs: Any) -> FakeAgent:
        return FakeAgent(session, ip, **kwargs)

    return _agent


@pytest.fixture
def seed_host(db: Database) -> Callable[..., tuple[str, str]]:
    def _seed(
        ip: str | None = "10.0.0.1",
        *,
        provider: str = "vultr",
        primary: bool = True,
        bot_status: str = "stopped",
        status: str = "running",
    ) -> tuple[str, str]:
        host_id = db.host_repo().insert(
            provider=provider,
            outbound_ip=ip,
            region="nrt",
            instance_type="vc2-1c-1gb",
            instance_id=f"inst-{ip}",
            status=status,
            bot_status=bot_status,
        )
        dep_id = db.deployment_repo().insert(host_id=host_id, is_primary=primary)
        return host_id, dep_id

    return _seed


@pytest.fixture
def connect_exchange(db: Database) -> Callable[..., ExchangeConnectionRow]:
    def _connect(
        name: str = "binance",
        *,
        api_key: str | None = "k" * 24,
        api_secret: str | None = "s" * 24,
        passphrase: str | None = None,
    ) -> ExchangeConnectionRow:
        db.exchange_repo().upsert(
            exchange_name=name, api_key=api_key, api_secret=api_secret, api_passphrase=passphrase
        )
        return db.exchange_repo().get(name)

    return _connect
