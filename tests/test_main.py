from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from vps_control.main import (
    EXIT_FAILURE,
    EXIT_HOST_UNREACHABLE,
    EXIT_OK,
    EXIT_PREFLIGHT_DENIED,
    EXIT_PROVIDER_ERROR,
    main,
)
from vps_control.persistence.db import Database


@pytest.fixture
def config_path(tmp_path: Path) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(
        "runtime:\n"
        f"  log_dir: {tmp_path / 'logs'}\n"
        "persistence:\n"
        f"  db_path: {tmp_path / 'control.sqlite'}\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    saved = list(root.handlers)
    level = root.level
    yield
    for h in root.handlers:
        if h not in saved:
            h.close()
    root.handlers[:] = saved
    root.setLevel(level)


def test_missing_config_fails(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--config", str(tmp_path / "missing.yaml"), "preflight"]) == EXIT_FAILURE
    assert "[FAIL]" in capsys.readouterr().err


def test_preflight_without_host_is_denied(config_path: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--config", config_path, "preflight"]) == EXIT_PREFLIGHT_DENIED
    report = json.loads(capsys.readouterr().out)
    assert report["ok"] is False


def test_whitelist_with_explicit_ip(config_path: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--config", config_path, "sync-whitelist", "--ip", "203.0.113.7"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out)["exchanges_synced"] == 0


def test_lifecycle_without_deployment(config_path: str) -> None:
    assert main(["--config", config_path, "lifecycle", "status"]) == EXIT_FAILURE


def test_unknown_provider_exit_code(config_path: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--config", config_path, "provision", "linode"]) == EXIT_PROVIDER_ERROR
    out = json.loads(capsys.readouterr().out)
    assert out["provider"] == "linode"


def test_instance_command(config_path: str, monkeypatch: pytest.MonkeyPatch,
                          capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--config", config_path, "instance", "linode", "validate"]) == EXIT_PROVIDER_ERROR
    capsys.readouterr()

    monkeypatch.setenv("VULTR_API_KEY", "key")
    assert main(["--config", config_path, "instance", "vultr", "destroy"]) == EXIT_FAILURE
    assert json.loads(capsys.readouterr().out)["error"] == "instanceId is required"


def test_migrate_prepare_to_dead_target_is_unreachable(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db_path = tmp_path / "control.sqlite"
    path = tmp_path / "config.yaml"
    path.write_text(
        "runtime:\n"
        f"  log_dir: {tmp_path / 'logs'}\n"
        "persistence:\n"
        f"  db_path: {db_path}\n"
        "agent:\n"
        "  port: 1\n"
        "probe:\n"
        "  deadline_seconds: 1\n",
        encoding="utf-8",
    )
    db = Database(db_path)
    db.initialize()
    ids = []
    for ip, primary in (("127.0.0.1", True), ("127.0.0.2", False)):
        host_id = db.host_repo().insert(provider="vultr", outbound_ip=ip, status="running")
        ids.append(db.deployment_repo().insert(host_id=host_id, is_primary=primary))
    db.close_thread_connection()

    assert main(["--config", str(path), "migrate", "prepare", *ids]) == EXIT_HOST_UNREACHABLE
    assert json.loads(capsys.readouterr().out)["toVPS"]["health"]["healthy"] is False
