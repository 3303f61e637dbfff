from __future__ import annotations

import base64
import json
import time
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from vps_control.core.exceptions import InvalidCredentialError, ProviderError
from vps_control.providers.base import (
    CreateResult,
    InstanceInfo,
    LookupResult,
    ProviderAdapter,
    ValidationResult,
)

TOKEN_URL = "https://oauth2.googleapis.com/token"
COMPUTE_BASE = "https://compute.googleapis.com/compute/v1"
COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"
DEFAULT_IMAGE = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2404-lts-amd64"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def build_service_account_jwt(client_email: str, private_key_pem: str, *, now: int | None = None) -> str:
    """RS256-signed assertion for the OAuth2 JWT bearer grant."""
    issued = int(time.time()) if now is None else int(now)
    header = {"alg": "RS256", "typ": "JWT"}
    claims = {
        "iss": client_email,
        "sub": client_email,
        "aud": TOKEN_URL,
        "iat": issued,
        "exp": issued + 3600,
        "scope": COMPUTE_SCOPE,
    }
    signing_input = (
        _b64url(json.dumps(header, separators=(",", ":")).encode("utf-8"))
        + "."
        + _b64url(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    )
    key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    signature = key.sign(signing_input.encode("ascii"), padding.PKCS1v15(), hashes.SHA256())
    return f"{signing_input}.{_b64url(signature)}"


def _nat_ip(inst: dict[str, Any]) -> str | None:
    nics = inst.get("networkInterfaces") or []
    if not nics:
        return None
    configs = nics[0].get("accessConfigs") or []
    if not configs:
        return None
    ip = configs[0].get("natIP")
    return str(ip) if ip else None


class GcpAdapter(ProviderAdapter):
    """Compute Engine; instance ids are ``zone/name``."""

    name = "gcp"

    def __init__(self, service_account_json: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not service_account_json:
            raise InvalidCredentialError(self.name, "GCP service account key not configured")
        try:
            sa = json.loads(service_account_json)
        except ValueError as exc:
            raise InvalidCredentialError(self.name, "Invalid service account JSON") from exc
        for key in ("client_email", "private_key", "project_id"):
            if not sa.get(key):
                raise InvalidCredentialError(self.name, f"service account JSON missing {key}")
        self._sa = sa
        self.project_id = str(sa["project_id"])
        self._token: str | None = None

    def _access_token(self) -> str:
        if self._token is None:
            try:
                assertion = build_service_account_jwt(self._sa["client_email"], self._sa["private_key"])
            except (ValueError, TypeError) as exc:
                raise InvalidCredentialError(self.name, f"cannot sign token request: {exc}") from exc
            data = self._json(
                "POST",
                TOKEN_URL,
                data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
            )
            token = data.get("access_token")
            if not token:
                raise InvalidCredentialError(self.name, "Failed to get GCP access token")
            self._token = str(token)
        return self._token

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._access_token()}"}
        return self._json(method, f"{COMPUTE_BASE}/projects/{self.project_id}{path}", headers=headers, **kwargs)

    def validate(self) -> ValidationResult:
        try:
            self._access_token()
        except InvalidCredentialError as exc:
            return ValidationResult(ok=False, error=exc.message)
        return ValidationResult(ok=True)

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
        zone = region if region.count("-") >= 2 and region[-2] == "-" else f"{region}-a"
        metadata = [{"key": "startup-script", "value": cloud_init}]
        if ssh_key:
            metadata.append({"key": "ssh-keys", "value": f"root:{ssh_key}"})
        body = {
            "name": label,
            "machineType": f"zones/{zone}/machineTypes/{plan}",
            "disks": [
                {
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {
                        "sourceImage": image or DEFAULT_IMAGE,
                        "diskSizeGb": "10",
                        "diskType": f"zones/{zone}/diskTypes/pd-standard",
                    },
                }
            ],
            "networkInterfaces": [
                {
                    "network": "global/networks/default",
                    "accessConfigs": [
                        {"type": "ONE_TO_ONE_NAT", "name": "External NAT", "networkTier": "PREMIUM"}
                    ],
                }
            ],
            "metadata": {"items": metadata},
            "labels": {"purpose": "hft-bot"},
        }
        op = self._call("POST", f"/zones/{zone}/instances", json=body)
        if op.get("error"):
            raise ProviderError(self.name, str(op["error"]))
        return CreateResult(instance_id=f"{zone}/{label}", initial_status=str(op.get("status") or "PENDING"))

    def _split(self, instance_id: str) -> tuple[str, str]:
        if "/" not in instance_id:
            raise ProviderError(self.name, f"instance id must be zone/name: {instance_id}")
        zone, name = instance_id.split("/", 1)
        return zone, name

    def get_instance(self, instance_id: str) -> InstanceInfo:
        zone, name = self._split(instance_id)
        inst = self._call("GET", f"/zones/{zone}/instances/{name}")
        status = str(inst.get("status") or "PROVISIONING")
        return InstanceInfo(
            instance_id=instance_id,
            status=status,
            ip=_nat_ip(inst) if status == "RUNNING" else None,
            region=zone,
            plan=str(inst.get("machineType", "")).rsplit("/", 1)[-1] or None,
        )

    def lookup_by_ip(self, ip: str) -> LookupResult:
        data = self._call("GET", "/aggregated/instances")
        for scope, bucket in (data.get("items") or {}).items():
            for inst in bucket.get("instances") or []:
                if _nat_ip(inst) == ip:
                    zone = scope.split("/", 1)[-1]
                    return LookupResult(
                        found=True,
                        instance_id=f"{zone}/{inst.get('name')}",
                        status=inst.get("status"),
                        region=zone,
                        plan=str(inst.get("machineType", "")).rsplit("/", 1)[-1] or None,
                    )
        return LookupResult(found=False)

    def start(self, instance_id: str) -> bool:
        zone, name = self._split(instance_id)
        self._call("POST", f"/zones/{zone}/instances/{name}/start")
        return True

    def halt(self, instance_id: str) -> bool:
        zone, name = self._split(instance_id)
        self._call("POST", f"/zones/{zone}/instances/{name}/stop")
        return True

    def destroy(self, instance_id: str) -> bool:
        zone, name = self._split(instance_id)
        self._call("DELETE", f"/zones/{zone}/instances/{name}")
        return True
