"""Port mapping value type."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from qbportsync.models import MappingSource, Transport

MIN_PORT = 1
MAX_PORT = 65535


def is_valid_port(port: int) -> bool:
    """Return True if ``port`` is a usable TCP/UDP port number."""
    return isinstance(port, int) and not isinstance(port, bool) and MIN_PORT <= port <= MAX_PORT


@dataclass(frozen=True)
class PortMapping:
    """A forwarded port, as granted by a gateway or read from the port file.

    Instances are immutable; each renewal negotiates a new mapping.
    """

    external_port: int
    internal_port: int
    transport: Transport
    source: MappingSource
    lease_lifetime: float | None = None  # seconds
    obtained_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        """Validate port ranges and lease lifetime."""
        for name in ("external_port", "internal_port"):
            value = getattr(self, name)
            if not is_valid_port(value):
                msg = f"{name} must be in {MIN_PORT}..{MAX_PORT}, got {value!r}"
                raise ValueError(msg)
        if self.lease_lifetime is not None and self.lease_lifetime <= 0:
            msg = f"lease_lifetime must be positive, got {self.lease_lifetime!r}"
            raise ValueError(msg)

    @property
    def port_changed_by_gateway(self) -> bool:
        """True when the gateway granted a different port than requested."""
        return self.external_port != self.internal_port
