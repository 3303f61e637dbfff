from __future__ import annotations

import logging
from typing import Any

from vps_control.core.exceptions import PersistenceError
from vps_control.persistence.db import Database

WHITELIST_URLS: dict[str, str] = {
    "binance": "https://www.binance.com/en/my/settings/api-management",
    "bybit": "https://www.bybit.com/user/api-management",
    "okx": "https://www.okx.com/account/my-api",
    "kucoin": "https://www.kucoin.com/account/api",
    "gate": "https://www.gate.io/myaccount/apiv4keys",
    "gateio": "https://www.gate.io/myaccount/apiv4keys",
    "mexc": "https://www.mexc.com/user/openapi",
    "bitget": "https://www.bitget.com/en/account/newapi",
    "hyperliquid": "https://app.hyperliquid.xyz/account",
}


def whitelist_url(exchange_name: str) -> str | None:
    return WHITELIST_URLS.get(exchange_name.lower())


class WhitelistSync:
    """Registers the current host IP against every connected exchange credential.

    Exchanges do not allow programmatic whitelisting, so each result carries
    the settings page where the operator finishes the job by hand.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self._log = logging.getLogger("vps_control.whitelist")

    def sync(self, ip: str | None) -> dict[str, Any]:
        if not ip:
            return {"success": False, "error": "VPS IP is required"}

        results: list[dict[str, Any]] = []
        repo = self.db.credential_repo()
        for ex in self.db.exchange_repo().list_connected():
            try:
                repo.upsert_whitelist(ex.exchange_name, ip)
            except PersistenceError as exc:
                self._log.error(
                    "whitelist upsert failed",
                    extra={"exchange": ex.exchange_name, "ip": ip, "error": str(exc)},
                )
                results.append({"exchange": ex.exchange_name, "status": "error"})
                continue
            results.append(
                {
                    "exchange": ex.exchange_name,
                    "status": "ip_registered",
                    "whitelistUrl": whitelist_url(ex.exchange_name),
                }
            )

        if results:
            message = f"IP {ip} registered for {len(results)} exchange(s). Please whitelist manually in each exchange."
        else:
            message = "No connected exchanges found."
        self._log.info("whitelist synced", extra={"ip": ip, "exchanges_synced": len(results)})
        return {
            "success": True,
            "vps_ip": ip,
            "exchanges_synced": len(results),
            "results": results,
            "message": message,
        }

    def sync_primary(self) -> dict[str, Any]:
        dep = self.db.deployment_repo().get_primary()
        host = self.db.host_repo().get(dep.host_id) if dep is not None else None
        return self.sync(host.outbound_ip if host else None)
