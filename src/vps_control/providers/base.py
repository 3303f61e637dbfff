from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import requests

from vps_control.core.config import ProvisioningConfig, RetryConfig
from vps_control.core.exceptions import (
    InvalidCredentialError,
    NotFoundError,
    ProviderError,
    QuotaError,
    TransientProviderError,
)
from vps_control.core.utils import Deadline
from vps_control.providers.retry import retry_with_config

PENDING_IP = "pending"

_QUOTA_MARKERS = ("quota", "limit exceeded", "insufficient funds", "rate limit")


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    account_balance: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class CreateResult:
    instance_id: str
    initial_status: str
    ip: str | None = None


@dataclass(frozen=True)
class InstanceInfo:
    instance_id: str
    status: str
    ip: str | None
    region: str | None = None
    plan: str | None = None


@dataclass(frozen=True)
class LookupResult:
    found: bool
    instance_id: str | None = None
    status: str | None = None
    region: str | None = None
    plan: str | None = None


def raise_for_provider_status(provider: str, response: requests.Response) -> None:
    code = response.status_code
    if code < 400:
        return
    text = (response.text or "")[:300]
    if code in (401, 403):
        raise InvalidCredentialError(provider, f"credentials rejected ({code})", code)
    if code in (402, 429) or any(m in text.lower() for m in _QUOTA_MARKERS):
        raise QuotaError(provider, f"quota or rate limit ({code}): {text}", code)
    if code == 404:
        raise NotFoundError(provider, "resource not found", code)
    if code >= 500:
        raise TransientProviderError(provider, f"server error ({code})", code)
    raise ProviderError(provider, f"request failed ({code}): {text}", code)


class ProviderAdapter(ABC):
    """Uniform facade over one cloud provider's REST API."""

    name: str = ""

    def __init__(
        self,
        *,
        retry: RetryConfig | None = None,
        provisioning: ProvisioningConfig | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        request_timeout: float = 15.0,
    ) -> None:
        self.retry = retry or RetryConfig()
        self.provisioning = provisioning or ProvisioningConfig()
        self.session = session or requests.Session()
        self.sleep = sleep
        self.request_timeout = request_timeout
        self._log = logging.getLogger(f"vps_control.providers.{self.name or 'base'}")

    def _http(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.request_timeout)

        def _once() -> requests.Response:
            try:
                r = self.session.request(method, url, **kwargs)
            except requests.Timeout as exc:
                raise TransientProviderError(self.name, f"timeout: {exc}") from exc
            except requests.ConnectionError as exc:
                raise TransientProviderError(self.name, f"connection error: {exc}") from exc
            raise_for_provider_status(self.name, r)
            return r

        return retry_with_config(_once, self.retry, sleep=self.sleep)

    def _json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        r = self._http(method, url, **kwargs)
        if r.status_code == 204 or not r.content:
            return {}
        try:
            data = r.json()
        except ValueError as exc:
            raise ProviderError(self.name, "invalid JSON response", r.status_code) from exc
        return data if isinstance(data, dict) else {"data": data}

    @abstractmethod
    def validate(self) -> ValidationResult: ...

    @abstractmethod
    def create(
        self,
        *,
        region: str,
        plan: str,
        image: str | None,
        ssh_key: str | None,
        cloud_init: str,
        label: str,
    ) -> CreateResult: ...

    @abstractmethod
    def get_instance(self, instance_id: str) -> InstanceInfo: ...

    @abstractmethod
    def lookup_by_ip(self, ip: str) -> LookupResult: ...

    @abstractmethod
    def start(self, instance_id: str) -> bool: ...

    @abstractmethod
    def halt(self, instance_id: str) -> bool: ...

    @abstractmethod
    def destroy(self, instance_id: str) -> bool: ...

    def poll_until_ip(self, instance_id: str, deadline: Deadline | None = None) -> str:
        attempts = int(self.provisioning.poll_attempts)
        interval = float(self.provisioning.poll_interval_seconds)
        if deadline is None:
            deadline = Deadline(attempts * interval * (attempts + 1) / 2.0)
        for attempt in range(1, attempts + 1):
            try:
                info = self.get_instance(instance_id)
            except (TransientProviderError, NotFoundError) as exc:
                self._log.info("instance not ready", extra={"instance_id": instance_id, "error": exc.message})
                info = None
            if info is not None and info.ip:
                return info.ip
            wait = min(interval * attempt, deadline.remaining())
            if wait <= 0:
                break
            self.sleep(wait)
        self._log.warning("instance ip still pending", extra={"instance_id": instance_id})
        return PENDING_IP
