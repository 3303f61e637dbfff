from __future__ import annotations

import uuid
from typing import Any

from vps_control.core.exceptions import InvalidCredentialError, ProviderError
from vps_control.providers.base import (
    CreateResult,
    InstanceInfo,
    LookupResult,
    ProviderAdapter,
    ValidationResult,
)

AUTH_URL = "https://auth.contabo.com/auth/realms/contabo/protocol/openid-connect/token"
API_BASE = "https://api.contabo.com/v1"
DEFAULT_IMAGE_ID = "afecbb85-e2fc-46f0-9684-b46b1faf00bb"  # Ubuntu 24.04


def _instance_ip(inst: dict[str, Any]) -> str | None:
    ip = ((inst.get("ipConfig") or {}).get("v4") or {}).get("ip")
    return str(ip) if ip else None


class ContaboAdapter(ProviderAdapter):
    name = "contabo"

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        api_user: str,
        api_password: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not (client_id and client_secret and api_user and api_password):
            raise InvalidCredentialError(self.name, "Contabo credentials not configured")
        self._form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "username": api_user,
            "password": api_password,
            "grant_type": "password",
        }
        self._token: str | None = None

    def _access_token(self) -> str:
        if self._token is None:
            data = self._json("POST", AUTH_URL, data=self._form)
            token = data.get("access_token")
            if not token:
                raise InvalidCredentialError(self.name, "Failed to get access token")
            self._token = str(token)
        return self._token

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "x-request-id": str(uuid.uuid4()),
        }
        return self._json(method, f"{API_BASE}{path}", headers=headers, **kwargs)

    def validate(self) -> ValidationResult:
        try:
            self._access_token()
        except InvalidCredentialError as exc:
            return ValidationResult(ok=False, error=exc.message)
        return ValidationResult(ok=True)

    def _ubuntu_image_id(self) -> str:
        try:
            images = self._call("GET", "/compute/images", params={"standardImage": "true"}).get("data") or []
        except ProviderError:
            return DEFAULT_IMAGE_ID
        for img in images:
            name = str(img.get("name", ""))
            if "ubuntu" in name.lower() and "24" in name:
                return str(img.get("imageId"))
        return DEFAULT_IMAGE_ID

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
            "imageId": image or self._ubuntu_image_id(),
            "productId": plan,
            "region": region,
            "displayName": label,
            "userData": cloud_init,
        }
        if ssh_key:
            body["sshKeys"] = [ssh_key]
        rows = self._call("POST", "/compute/instances", json=body).get("data") or []
        if not rows or rows[0].get("instanceId") is None:
            raise ProviderError(self.name, "create returned no instance id")
        inst = rows[0]
        return CreateResult(
            instance_id=str(inst["instanceId"]),
            initial_status=str(inst.get("status") or "provisioning"),
            ip=_instance_ip(inst),
        )

    def get_instance(self, instance_id: str) -> InstanceInfo:
        rows = self._call("GET", f"/compute/instances/{instance_id}").get("data") or []
        inst = rows[0] if rows else {}
        status = str(inst.get("status") or "provisioning")
        return InstanceInfo(
            instance_id=instance_id,
            status=status,
            ip=_instance_ip(inst) if status == "running" else None,
            region=inst.get("region"),
            plan=inst.get("productId"),
        )

    def lookup_by_ip(self, ip: str) -> LookupResult:
        rows = self._call("GET", "/compute/instances", params={"size": 100}).get("data") or []
        for inst in rows:
            if _instance_ip(inst) == ip:
                return LookupResult(
                    found=True,
                    instance_id=str(inst.get("instanceId")),
                    status=inst.get("status"),
                    region=inst.get("region"),
                    plan=inst.get("productId"),
                )
        return LookupResult(found=False)

    def start(self, instance_id: str) -> bool:
        self._call("POST", f"/compute/instances/{instance_id}/actions/start")
        return True

    def halt(self, instance_id: str) -> bool:
        self._call("POST", f"/compute/instances/{instance_id}/actions/stop")
        return True

    def destroy(self, instance_id: str) -> bool:
        self._call("POST", f"/compute/instances/{instance_id}/cancel")
        return True
