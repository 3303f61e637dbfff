from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from vps_control.api.plane import ControlPlane
from vps_control.core.config import load_config
from vps_control.core.exceptions import ConfigError, ControlPlaneError, HostUnreachableError, ProviderError
from vps_control.core.utils import platform_summary, safe_json_dumps, setup_logging
from vps_control.providers.provisioner import INSTANCE_ACTIONS

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PREFLIGHT_DENIED = 2
EXIT_HOST_UNREACHABLE = 3
EXIT_PROVIDER_ERROR = 4


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="vps-control")
    p.add_argument("--config", type=str, default="config/config.yaml", help="Path to config.yaml")
    p.add_argument("--log-level", type=str, default=None)
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP control surface")
    sub.add_parser("scheduler", help="Run the periodic drivers")

    probe = sub.add_parser("probe", help="Probe a host and reconcile its state")
    probe.add_argument("--ip", type=str, default=None)

    sub.add_parser("preflight", help="Run the trade preflight")

    lc = sub.add_parser("lifecycle", help="Start, stop, restart or query the bot")
    lc.add_argument("action", choices=["start", "stop", "restart", "status"])
    lc.add_argument("--deployment", type=str, default=None)

    mig = sub.add_parser("migrate", help="Move the primary role between deployments")
    mig.add_argument("phase", choices=["prepare", "execute", "rollback"])
    mig.add_argument("source")
    mig.add_argument("target")

    wl = sub.add_parser("sync-whitelist", help="Register the host IP for connected exchanges")
    wl.add_argument("--ip", type=str, default=None)

    prov = sub.add_parser("provision", help="Create or adopt a bot host")
    prov.add_argument("provider")
    prov.add_argument("--exchange", type=str, default=None)
    prov.add_argument("--ip", type=str, default=None)

    inst = sub.add_parser("instance", help="Act on a provider instance")
    inst.add_argument("provider")
    inst.add_argument("action", choices=list(INSTANCE_ACTIONS))
    inst.add_argument("--instance-id", type=str, default=None)
    return p.parse_args(argv)


def _emit(result: dict[str, Any]) -> None:
    print(json.dumps(json.loads(safe_json_dumps(result)), indent=2, sort_keys=True))


def _lifecycle_exit(result: dict[str, Any]) -> int:
    if result.get("success"):
        return EXIT_OK
    if "preflight" in result:
        return EXIT_PREFLIGHT_DENIED
    if result.get("vpsIp") and not result.get("vpsReachable"):
        return EXIT_HOST_UNREACHABLE
    return EXIT_FAILURE


def _migrate_exit(phase: str, result: dict[str, Any]) -> int:
    if result.get("success"):
        return EXIT_OK
    if phase == "prepare" and result.get("toVPS", {}).get("health", {}).get("healthy") is False:
        return EXIT_HOST_UNREACHABLE
    return EXIT_FAILURE


def _run(args: argparse.Namespace, plane: ControlPlane) -> int:
    if args.command == "serve":
        import uvicorn

        from vps_control.api.app import create_app

        uvicorn.run(create_app(plane), host=plane.cfg.api.host, port=plane.cfg.api.port, log_config=None)
        return EXIT_OK

    if args.command == "scheduler":
        plane.scheduler.run()
        return EXIT_OK

    if args.command == "probe":
        result = plane.health.check(args.ip)
        _emit(result)
        if result.get("ip") is None:
            return EXIT_FAILURE
        if not result.get("healthy"):
            raise HostUnreachableError(f"VPS {result['ip']} is not responding")
        return EXIT_OK

    if args.command == "preflight":
        report = plane.preflight.run(deadline=plane.new_deadline())
        _emit(report)
        return EXIT_OK if report["ok"] else EXIT_PREFLIGHT_DENIED

    if args.command == "lifecycle":
        result = plane.lifecycle(args.action, args.deployment)
        _emit(result)
        return _lifecycle_exit(result)

    if args.command == "migrate":
        result = plane.migrator.dispatch(args.phase, args.source, args.target, deadline=plane.new_deadline())
        _emit(result)
        return _migrate_exit(args.phase, result)

    if args.command == "sync-whitelist":
        result = plane.whitelist.sync(args.ip) if args.ip else plane.whitelist.sync_primary()
        _emit(result)
        return EXIT_OK if result.get("success") else EXIT_FAILURE

    if args.command == "provision":
        result = plane.provisioner.provision(args.provider, target_exchange=args.exchange, ip_address=args.ip)
        _emit(result)
        return EXIT_OK

    if args.command == "instance":
        result = plane.provisioner.instance_action(args.provider, args.action, instance_id=args.instance_id)
        _emit(result)
        return EXIT_OK if result.get("success") else EXIT_FAILURE

    return EXIT_FAILURE


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        print(f"[FAIL] {exc}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(cfg.runtime.log_dir, level=args.log_level or cfg.runtime.log_level)
    log = logging.getLogger("vps_control")
    log.info("starting", extra={"command": args.command, "platform": dict(platform_summary())})

    plane = ControlPlane.build(cfg)
    try:
        return _run(args, plane)
    except ProviderError as exc:
        log.error("provider error", extra={"provider": exc.provider, "error": exc.message})
        _emit({"success": False, "error": str(exc), "provider": exc.provider})
        return EXIT_PROVIDER_ERROR
    except HostUnreachableError as exc:
        log.error("host unreachable", extra={"error": str(exc)})
        return EXIT_HOST_UNREACHABLE
    except ControlPlaneError as exc:
        log.error("command failed", extra={"error": str(exc)})
        _emit({"success": False, "error": str(exc)})
        return EXIT_FAILURE
    finally:
        plane.db.close_thread_connection()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
