"""Port mapping negotiation exceptions."""

from __future__ import annotations

from typing import Any

from qbportsync.utils.exceptions import (
    TransientNetworkError,
    UnsupportedEnvironmentError,
)


class PortMappingError(TransientNetworkError):
    """Base exception for gateway negotiation errors.

    ``retryable`` is False when the gateway gave a definitive answer that
    repeating the same request cannot change.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        retryable: bool = True,
    ):
        """Initialize port mapping error."""
        super().__init__(message, details)
        self.retryable = retryable


class NATPMPError(PortMappingError):
    """NAT-PMP specific error."""


class PCPError(PortMappingError):
    """PCP specific error."""


class GatewayDiscoveryError(UnsupportedEnvironmentError):
    """No gateway address could be determined."""


class MappingUnsupportedError(UnsupportedEnvironmentError):
    """Every enabled negotiation backend was exhausted."""
