from __future__ import annotations

import os
import time
from typing import Any, Callable

import requests

from vps_control.core.config import AppConfig
from vps_control.core.exceptions import ProviderNotSupportedError
from vps_control.providers.aws import AwsAdapter
from vps_control.providers.base import ProviderAdapter
from vps_control.providers.contabo import ContaboAdapter
from vps_control.providers.digitalocean import DigitalOceanAdapter
from vps_control.providers.gcp import GcpAdapter
from vps_control.providers.vultr import VultrAdapter

SUPPORTED_PROVIDERS = ("vultr", "digitalocean", "contabo", "gcp", "aws")


def _pick(credentials: dict[str, Any], *keys: str, env: str) -> str:
    for k in keys:
        v = credentials.get(k)
        if v:
            return str(v)
    return os.getenv(env, "")


class ProviderRegistry:
    """Builds adapters from request credentials, falling back to environment secrets."""

    def __init__(
        self,
        cfg: AppConfig,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.session = session
        self.sleep = sleep

    def build(self, provider: str, credentials: dict[str, Any] | None = None) -> ProviderAdapter:
        creds = credentials or {}
        name = (provider or "").strip().lower()
        common: dict[str, Any] = {
            "retry": self.cfg.retry,
            "provisioning": self.cfg.provisioning,
            "session": self.session,
            "sleep": self.sleep,
        }
        if name == "vultr":
            return VultrAdapter(_pick(creds, "apiKey", "api_key", env="VULTR_API_KEY"), **common)
        if name == "digitalocean":
            return DigitalOceanAdapter(_pick(creds, "token", "apiToken", env="DIGITALOCEAN_API_TOKEN"), **common)
        if name == "contabo":
            return ContaboAdapter(
                client_id=_pick(creds, "clientId", env="CONTABO_CLIENT_ID"),
                client_secret=_pick(creds, "clientSecret", env="CONTABO_CLIENT_SECRET"),
                api_user=_pick(creds, "apiUser", env="CONTABO_API_USER"),
                api_password=_pick(creds, "apiPassword", env="CONTABO_API_PASSWORD"),
                **common,
            )
        if name == "gcp":
            return GcpAdapter(
                _pick(creds, "serviceAccountKey", "serviceAccountJson", env="GCP_SERVICE_ACCOUNT_JSON"),
                **common,
            )
        if name == "aws":
            return AwsAdapter(
                _pick(creds, "accessKeyId", env="AWS_ACCESS_KEY_ID") or None,
                _pick(creds, "secretAccessKey", env="AWS_SECRET_ACCESS_KEY") or None,
                **common,
            )
        raise ProviderNotSupportedError(provider or "unknown", f"Provider {provider} not yet implemented")
