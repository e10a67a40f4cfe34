from __future__ import annotations

from collections.abc import Sequence
from typing import Optional


class GatewayError(Exception):
    """Base class for errors raised by the resolution engine."""


class ConfigError(GatewayError):
    """The global provider configuration is missing required data or is malformed."""


class RouteValidationError(GatewayError):
    """A request or a persisted route failed validation."""

    def __init__(self, message: str, *, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.details = details


class InvalidPersistedState(RouteValidationError):
    """A persisted route file exists but cannot be used."""


class ModelNotFound(GatewayError):
    """No configured provider could serve the requested model."""

    def __init__(self, model_name: str, attempted_providers: Sequence[str]):
        self.model_name = model_name
        self.attempted_providers = list(attempted_providers)
        super().__init__(f"No provider could serve model {model_name!r}")


class UpstreamError(GatewayError):
    """The proxied forward call to the resolved backend failed."""


class SecurityRejection(GatewayError):
    """A model name would escape the storage root."""


class CapacityExhausted(GatewayError):
    """A persisted local backend could not be readmitted under the memory budget."""

    def __init__(self, model_name: str, required_bytes: int):
        self.model_name = model_name
        self.required_bytes = required_bytes
        super().__init__(
            f"Not enough memory to start a backend for {model_name!r}"
        )


__all__ = [
    "CapacityExhausted",
    "ConfigError",
    "GatewayError",
    "InvalidPersistedState",
    "ModelNotFound",
    "RouteValidationError",
    "SecurityRejection",
    "UpstreamError",
]
