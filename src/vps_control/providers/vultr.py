from __future__ import annotations

import base64
from typing import Any

from vps_control.core.exceptions import InvalidCredentialError, ProviderError
from vps_control.providers.base import (
    CreateResult,
    InstanceInfo,
    LookupResult,
    ProviderAdapter,
    ValidationResult,
)

API_BASE = "https://api.vultr.com/v2"
DEFAULT_OS_ID = 2284  # Ubuntu 24.04 LTS x64


class VultrAdapter(ProviderAdapter):
    name = "vultr"

    def __init__(self, api_key: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not api_key:
            raise InvalidCredentialError(self.name, "Vultr API key not configured")
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return self._json(method, f"{API_BASE}{path}", headers=self._headers, **kwargs)

    def validate(self) -> ValidationResult:
        try:
            data = self._call("GET", "/account")
        except InvalidCredentialError as exc:
            return ValidationResult(ok=False, error=exc.message)
        account = data.get("account") or {}
        balance = account.get("balance")
        return ValidationResult(ok=True, account_balance=float(balance) if balance is not None else None)

    def _ubuntu_os_id(self) -> int:
        try:
            data = self._call("GET", "/os")
        except ProviderError:
            return DEFAULT_OS_ID
        for os_row in data.get("os") or []:
            if "Ubuntu 24.04" in str(os_row.get("name", "")):
                return int(os_row["id"])
        return DEFAULT_OS_ID

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
            "region": region,
            "plan": plan,
            "os_id": int(image) if image else self._ubuntu_os_id(),
            "label": label,
            "hostname": label,
            "user_data": base64.b64encode(cloud_init.encode("utf-8")).decode("ascii"),
            "backups": "disabled",
            "enable_ipv6": False,
        }
        if ssh_key:
            body["sshkey_id"] = [ssh_key]
        data = self._call("POST", "/instances", json=body)
        inst = data.get("instance") or {}
        if not inst.get("id"):
            raise ProviderError(self.name, "create returned no instance id")
        return CreateResult(
            instance_id=str(inst["id"]),
            initial_status=str(inst.get("status") or "pending"),
            ip=_usable_ip(inst.get("main_ip")),
        )

    def get_instance(self, instance_id: str) -> InstanceInfo:
        inst = self._call("GET", f"/instances/{instance_id}").get("instance") or {}
        status = str(inst.get("status") or "pending")
        return InstanceInfo(
            instance_id=instance_id,
            status=status,
            ip=_usable_ip(inst.get("main_ip")) if status == "active" else None,
            region=inst.get("region"),
            plan=inst.get("plan"),
        )

    def lookup_by_ip(self, ip: str) -> LookupResult:
        data = self._call("GET", "/instances", params={"main_ip": ip})
        for inst in data.get("instances") or []:
            if inst.get("main_ip") == ip:
                return LookupResult(
                    found=True,
                    instance_id=str(inst.get("id")),
                    status=inst.get("status"),
                    region=inst.get("region"),
                    plan=inst.get("plan"),
                )
        return LookupResult(found=False)

    def start(self, instance_id: str) -> bool:
        self._call("POST", f"/instances/{instance_id}/start")
        return True

    def halt(self, instance_id: str) -> bool:
        self._call("POST", f"/instances/{instance_id}/halt")
        return True

    def destroy(self, instance_id: str) -> bool:
        self._call("DELETE", f"/instances/{instance_id}")
        return True


def _usable_ip(ip: Any) -> str | None:
    if not ip or ip == "0.0.0.0":
        return None
    return str(ip)
