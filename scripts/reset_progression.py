from __future__ import annotations

import argparse
import sys
from pathlib import Path

from vps_control.core.config import load_config
from vps_control.notifications.alerts import AlertManager
from vps_control.persistence.db import Database
from vps_control.progression.tracker import ProgressionTracker


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="reset_progression")
    p.add_argument("--config", type=str, default="config/config.yaml")
    p.add_argument("--yes", action="store_true", help="Confirm the reset")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    if not args.yes:
        print("Refusing to reset progression without --yes")
        return 2
    cfg = load_config(args.config)
    db = Database(Path(cfg.persistence.db_path))
    db.initialize()
    tracker = ProgressionTracker(db, AlertManager(db, cfg.alerts), cfg.progression)
    state = tracker.admin_reset()
    print(
        "Progression reset: "
        f"simulation={state['successfulSimulationTrades']} paper={state['successfulPaperTrades']} "
        f"paper_unlocked={state['paperUnlocked']} live_unlocked={state['liveUnlocked']}"
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
