from __future__ import annotations

from pathlib import Path

import pytest

from vps_control.core.config import AgentConfig, load_config
from vps_control.core.exceptions import ConfigError

REPO_CONFIG = Path(__file__).resolve().parents[1] / "config" / "config.yaml"


def test_shipped_config_loads() -> None:
    cfg = load_config(REPO_CONFIG)
    assert cfg.agent.port == 80
    assert cfg.agent.fallback_port == 8080
    assert cfg.probe.failure_threshold == 3
    assert cfg.alerts.cooldown_seconds == 300
    assert cfg.preflight.ai_timeframes == [1, 3, 5]
    assert cfg.ssh.key_path == "~/.ssh/hft_bot_key"


def test_partial_config_keeps_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("progression:\n  paper_unlock_trades: 5\n", encoding="utf-8")

    cfg = load_config(path)

    assert cfg.progression.paper_unlock_trades == 5
    assert cfg.progression.live_unlock_trades == 50
    assert cfg.retry.max_attempts == 5


def test_empty_file_is_all_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path).api.port == 8000


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path / "nope.yaml")


def test_root_must_be_mapping(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(path)


@pytest.mark.parametrize(
    "body",
    [
        "agent:\n  health_timeout: 0\n",
        "progression:\n  live_unlock_trades: 0\n",
        "preflight:\n  ai_timeframes: []\n",
        "probe:\n  failure_threshold: 0\n",
        "scheduler:\n  daily_reset_hour_utc: 24\n",
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, body: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(body, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_agent_base_url_omits_default_port() -> None:
    agent = AgentConfig()
    assert agent.base_url("1.2.3.4") == "http://1.2.3.4"
    assert agent.base_url("1.2.3.4", 8080) == "http://1.2.3.4:8080"
    assert AgentConfig(port=3000).base_url("1.2.3.4") == "http://1.2.3.4:3000"


def test_secrets_come_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BOT_UPDATE_SECRET", raising=False)
    assert AgentConfig().update_secret() is None
    monkeypatch.setenv("BOT_UPDATE_SECRET", "shh")
    assert AgentConfig().update_secret() == "shh"
