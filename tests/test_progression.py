from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest

from vps_control.core.config import AlertsConfig, ProgressionConfig
from vps_control.notifications.alerts import AlertManager
from vps_control.persistence.db import Database
from vps_control.progression.tracker import ProgressionTracker


def _tracker(db: Database, paper: int = 3, live: int = 2) -> ProgressionTracker:
    cfg = ProgressionConfig(paper_unlock_trades=paper, live_unlock_trades=live)
    return ProgressionTracker(db, AlertManager(db, AlertsConfig()), cfg)


def test_only_profitable_simulation_and_paper_trades_count(db: Database) -> None:
    tracker = _tracker(db)

    assert tracker.record_trade("simulation", 12.5)["counted"] is True
    assert tracker.record_trade("simulation", -4.0)["counted"] is False
    assert tracker.record_trade("simulation", 0.0)["counted"] is False
    assert tracker.record_trade("live", 100.0)["counted"] is False
    assert tracker.record_trade("paper", 3.0)["counted"] is True

    state = tracker.status()
    assert state["successfulSimulationTrades"] == 1
    assert state["totalSimulationProfit"] == pytest.approx(12.5)
    assert state["successfulPaperTrades"] == 1
    assert state["paperUnlocked"] is False


def test_unlocks_in_order_with_notifications(db: Database) -> None:
    tracker = _tracker(db, paper=3, live=2)

    tracker.record_trade("paper", 5.0)
    tracker.record_trade("paper", 5.0)
    assert tracker.status()["liveUnlocked"] is False

    tracker.record_trade("simulation", 1.0)
    tracker.record_trade("simulation", 1.0)
    result = tracker.record_trade("simulation", 1.0)

    assert result["unlocked"] == ["paper", "live"]
    assert result["paperUnlocked"] is True
    assert result["liveUnlocked"] is True
    assert result["paperUnlockedAt"] is not None
    titles = sorted(n["title"] for n in db.notification_repo().list_recent(type="mode_unlock"))
    assert titles == ["Live Trading Unlocked!", "Paper Trading Unlocked!"]


def test_unlocks_are_monotone(db: Database) -> None:
    tracker = _tracker(db, paper=1, live=1)
    tracker.record_trade("simulation", 1.0)
    tracker.record_trade("paper", 1.0)
    first = tracker.status()

    for mode, pnl in [("simulation", -5.0), ("paper", -5.0), ("live", 9.0), ("paper", 2.0)]:
        result = tracker.record_trade(mode, pnl)
        assert result["paperUnlocked"] is True
        assert result["liveUnlocked"] is True
        assert result["unlocked"] == []

    assert tracker.status()["paperUnlockedAt"] == first["paperUnlockedAt"]
    assert len(db.notification_repo().list_recent(type="mode_unlock")) == 2


def test_admin_reset(db: Database) -> None:
    tracker = _tracker(db, paper=1, live=1)
    tracker.record_trade("simulation", 1.0)
    tracker.record_trade("paper", 1.0)
    db.trading_config_repo().update(trading_mode="live")

    state = tracker.admin_reset()

    assert state["paperUnlocked"] is False
    assert state["liveUnlocked"] is False
    assert state["successfulSimulationTrades"] == 0
    assert db.trading_config_repo().get().trading_mode == "simulation"
    assert db.timeline_repo().list_recent(limit=1)[0]["event_subtype"] == "admin_reset"


def test_reset_script_requires_confirmation(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    script = Path(__file__).resolve().parents[1] / "scripts" / "reset_progression.py"
    spec = importlib.util.spec_from_file_location("reset_progression", script)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    config = tmp_path / "config.yaml"
    config.write_text(f"persistence:\n  db_path: {tmp_path / 'control.sqlite'}\n", encoding="utf-8")

    assert module.main(["--config", str(config)]) == 2
    assert module.main(["--config", str(config), "--yes"]) == 0
    assert "Progression reset" in capsys.readouterr().out
