from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from vps_control.agent.client import HostAgentClient
from vps_control.core.config import load_config
from vps_control.core.exceptions import ConfigError
from vps_control.core.utils import env_flag, monotonic_ms
from vps_control.persistence.db import Database
from vps_control.persistence.migrations import LATEST_VERSION, current_version

PROVIDER_ENV = {
    "vultr": ("VULTR_API_KEY",),
    "digitalocean": ("DIGITALOCEAN_API_TOKEN",),
    "contabo": ("CONTABO_CLIENT_ID", "CONTABO_CLIENT_SECRET", "CONTABO_API_USER", "CONTABO_API_PASSWORD"),
    "gcp": ("GCP_SERVICE_ACCOUNT_JSON",),
}


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="doctor")
    p.add_argument("--config", type=str, default="config/config.yaml")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    load_dotenv(override=False)

    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        print(f"[FAIL] Config: {exc}")
        return 2
    print(f"[OK] Config loaded from {args.config}")

    configured = [p for p, keys in PROVIDER_ENV.items() if all(os.getenv(k) for k in keys)]
    if configured:
        print(f"[OK] Provider credentials: {', '.join(configured)}")
    else:
        print("[WARN] No provider credentials in env; provisioning needs request credentials")
    if cfg.agent.update_secret():
        print(f"[OK] {cfg.agent.update_secret_env} present")
    else:
        print(f"[WARN] {cfg.agent.update_secret_env} missing; remote bot updates disabled")

    db = Database(Path(cfg.persistence.db_path))
    db.initialize()
    version = current_version(db.conn())
    if version != LATEST_VERSION:
        print(f"[FAIL] Schema version {version}, expected {LATEST_VERSION}")
        return 2
    print(f"[OK] Store at {db.path} (schema v{version})")

    primaries = db.deployment_repo().list_primary()
    if len(primaries) > 1:
        print(f"[FAIL] {len(primaries)} primary deployments")
        return 2
    if not primaries:
        print("[WARN] No primary deployment")
        return 0
    host = db.host_repo().get(primaries[0].host_id)
    if host is None or not host.outbound_ip:
        print("[WARN] Primary deployment has no IP address")
        return 0
    print(f"[OK] Primary: {host.provider} {host.outbound_ip} bot_status={primaries[0].bot_status}")

    if env_flag("DOCTOR_OFFLINE"):
        print("[OK] Skipping agent probe (DOCTOR_OFFLINE)")
        return 0
    client = HostAgentClient(cfg.agent)
    t0 = monotonic_ms()
    resp = client.health(host.outbound_ip)
    if not resp.ok:
        print(f"[FAIL] Agent /health at {host.outbound_ip}: {resp.error}")
        return 2
    print(f"[OK] Agent /health in {monotonic_ms() - t0} ms version={resp.data.get('version', 'unknown')}")
    sig = client.signal_check(host.outbound_ip)
    if sig.ok and "signalExists" in sig.data:
        print(f"[OK] /signal-check signalExists={sig.data['signalExists']}")
    else:
        print(f"[WARN] /signal-check unusable: {sig.error or 'invalid response'}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
