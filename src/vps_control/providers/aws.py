from __future__ import annotations

from typing import Any, NoReturn

from vps_control.core.exceptions import ProviderNotSupportedError
from vps_control.providers.base import (
    CreateResult,
    InstanceInfo,
    LookupResult,
    ProviderAdapter,
    ValidationResult,
)


class AwsAdapter(ProviderAdapter):
    """Placeholder keeping the adapter surface for EC2; every call is refused."""

    name = "aws"

    def __init__(self, access_key_id: str | None = None, secret_access_key: str | None = None,
                 **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key

    def _unsupported(self, op: str) -> NoReturn:
        raise ProviderNotSupportedError(self.name, f"{op} is not implemented for AWS")

    def validate(self) -> ValidationResult:
        self._unsupported("validate")

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
        self._unsupported("create")

    def get_instance(self, instance_id: str) -> InstanceInfo:
        self._unsupported("get_instance")

    def lookup_by_ip(self, ip: str) -> LookupResult:
        self._unsupported("lookup_by_ip")

    def start(self, instance_id: str) -> bool:
        self._unsupported("start")

    def halt(self, instance_id: str) -> bool:
        self._unsupported("halt")

    def destroy(self, instance_id: str) -> bool:
        self._unsupported("destroy")
