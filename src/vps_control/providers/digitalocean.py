from __future__ import annotations

from typing import Any

from vps_control.core.exceptions import InvalidCredentialError, ProviderError
from vps_control.providers.base import (
    CreateResult,
    InstanceInfo,
    LookupResult,
    ProviderAdapter,
    ValidationResult,
)

API_BASE = "https://api.digitalocean.com/v2"
DEFAULT_IMAGE = "ubuntu-24-04-x64"


def _public_ipv4(droplet: dict[str, Any]) -> str | None:
    for net in (droplet.get("networks") or {}).get("v4") or []:
        if net.get("type") == "public" and net.get("ip_address"):
            return str(net["ip_address"])
    return None


class DigitalOceanAdapter(ProviderAdapter):
    name = "digitalocean"

    def __init__(self, token: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not token:
            raise InvalidCredentialError(self.name, "DigitalOcean API token not configured")
        self._headers = {"Authorization": f"Bearer {token}"}

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return self._json(method, f"{API_BASE}{path}", headers=self._headers, **kwargs)

    def validate(self) -> ValidationResult:
        try:
            self._call("GET", "/account")
        except InvalidCredentialError as exc:
            return ValidationResult(ok=False, error=exc.message)
        balance = None
        try:
            raw = self._call("GET", "/customers/my/balance").get("month_to_date_balance")
            balance = float(raw) if raw is not None else None
        except ProviderError as exc:
            self._log.info("balance unavailable", extra={"error": exc.message})
        return ValidationResult(ok=True, account_balance=balance)

    def create(
        self,
        *,
        region: str,
        plan: str,
        image: str | None,
        ssh_key: str | None,
        cloud_init: str,
        label: str,
    ) -> CreateResult:
        body: dict[str, Any] = {
            "name": label,
            "region": region,
            "size": plan,
            "image": image or DEFAULT_IMAGE,
            "user_data": cloud_init,
            "monitoring": True,
            "tags": ["hft-bot"],
        }
        if ssh_key:
            body["ssh_keys"] = [ssh_key]
        droplet = self._call("POST", "/droplets", json=body).get("droplet") or {}
        if not droplet.get("id"):
            raise ProviderError(self.name, "create returned no droplet id")
        return CreateResult(
            instance_id=str(droplet["id"]),
            initial_status=str(droplet.get("status") or "new"),
            ip=_public_ipv4(droplet),
        )

    def get_instance(self, instance_id: str) -> InstanceInfo:
        droplet = self._call("GET", f"/droplets/{instance_id}").get("droplet") or {}
        return InstanceInfo(
            instance_id=instance_id,
            status=str(droplet.get("status") or "new"),
            ip=_public_ipv4(droplet),
            region=(droplet.get("region") or {}).get("slug"),
            plan=droplet.get("size_slug"),
        )

    def lookup_by_ip(self, ip: str) -> LookupResult:
        droplets = self._call("GET", "/droplets", params={"per_page": 200}).get("droplets") or []
        for droplet in droplets:
            if _public_ipv4(droplet) == ip:
                return LookupResult(
                    found=True,
                    instance_id=str(droplet.get("id")),
                    status=droplet.get("status"),
                    region=(droplet.get("region") or {}).get("slug"),
                    plan=droplet.get("size_slug"),
                )
        return LookupResult(found=False)

    def _action(self, instance_id: str, action: str) -> bool:
        self._call("POST", f"/droplets/{instance_id}/actions", json={"type": action})
        return True

    def start(self, instance_id: str) -> bool:
        return self._action(instance_id, "power_on")

    def halt(self, instance_id: str) -> bool:
        return self._action(instance_id, "shutdown")

    def destroy(self, instance_id: str) -> bool:
        self._call("DELETE", f"/droplets/{instance_id}")
        return True
