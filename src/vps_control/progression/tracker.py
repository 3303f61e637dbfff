from __future__ import annotations

import logging
from typing import Any

from vps_control.core.config import ProgressionConfig
from vps_control.notifications.alerts import AlertManager
from vps_control.persistence.db import Database
from vps_control.persistence.models import ProgressionRow, TradingMode

_COUNTED_MODES = (TradingMode.SIMULATION.value, TradingMode.PAPER.value)


def progression_view(row: ProgressionRow, cfg: ProgressionConfig) -> dict[str, Any]:
    return {
        "successfulSimulationTrades": row.successful_simulation_trades,
        "successfulPaperTrades": row.successful_paper_trades,
        "totalSimulationProfit": row.total_simulation_profit,
        "totalPaperProfit": row.total_paper_profit,
        "paperUnlocked": row.paper_unlocked,
        "paperUnlockedAt": row.paper_unlocked_at,
        "liveUnlocked": row.live_unlocked,
        "liveUnlockedAt": row.live_unlocked_at,
        "paperUnlockTrades": cfg.paper_unlock_trades,
        "liveUnlockTrades": cfg.live_unlock_trades,
    }


class ProgressionTracker:
    """Simulation -> paper -> live unlock gates.

    Flags only ever go from 0 to 1 through conditional updates; the one way
    back is ``admin_reset``.
    """

    def __init__(self, db: Database, alerts: AlertManager, cfg: ProgressionConfig) -> None:
        self.db = db
        self.alerts = alerts
        self.cfg = cfg
        self._log = logging.getLogger("vps_control.progression")

    def status(self) -> dict[str, Any]:
        return progression_view(self.db.progression_repo().get(), self.cfg)

    def record_trade(self, mode: str, pnl: float) -> dict[str, Any]:
        mode = (mode or "").strip().lower()
        unlocked: list[str] = []
        counted = pnl > 0 and mode in _COUNTED_MODES
        repo = self.db.progression_repo()
        with self.db.transaction():
            if counted:
                repo.add_successful_trade(mode, pnl)
            if repo.unlock_paper(self.cfg.paper_unlock_trades):
                unlocked.append(TradingMode.PAPER.value)
                self.alerts.notify(
                    kind="mode_unlock",
                    title="Paper Trading Unlocked!",
                    message=(
                        f"{self.cfg.paper_unlock_trades} successful simulation trades completed. "
                        "Paper trading is now available."
                    ),
                    severity="achievement",
                    category="progression",
                )
            if repo.unlock_live(self.cfg.live_unlock_trades):
                unlocked.append(TradingMode.LIVE.value)
                self.alerts.notify(
                    kind="mode_unlock",
                    title="Live Trading Unlocked!",
                    message=(
                        f"{self.cfg.live_unlock_trades} successful paper trades completed. "
                        "Live trading is now available."
                    ),
                    severity="achievement",
                    category="progression",
                )
        if unlocked:
            self._log.info("modes unlocked", extra={"unlocked": unlocked})
        out = self.status()
        out.update({"success": True, "counted": counted, "unlocked": unlocked})
        return out

    def admin_reset(self) -> dict[str, Any]:
        with self.db.transaction():
            self.db.progression_repo().reset()
            self.db.trading_config_repo().update(trading_mode=TradingMode.SIMULATION.value)
            self.db.timeline_repo().insert(
                provider=None,
                event_type="progression",
                event_subtype="admin_reset",
                title="Progression reset",
                description="Unlock gates and trade counters reset by administrator",
            )
        self._log.warning("progression reset by administrator")
        return self.status()
