from __future__ import annotations


class ControlPlaneError(Exception):
    """Base error for the VPS control plane."""


class ConfigError(ControlPlaneError):
    pass


class PersistenceError(ControlPlaneError):
    pass


class HostUnreachableError(ControlPlaneError):
    pass


class InvariantViolationError(ControlPlaneError):
    """A cross-row invariant no longer holds (e.g. two primary deployments)."""


class ProviderError(ControlPlaneError):
    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
        self.status_code = status_code


class InvalidCredentialError(ProviderError):
    pass


class QuotaError(ProviderError):
    pass


class NotFoundError(ProviderError):
    pass


class TransientProviderError(ProviderError):
    pass


class ProviderNotSupportedError(ProviderError):
    pass


class ConcurrentUpdateError(PersistenceError):
    """A singleton row kept changing underneath an optimistic update."""
