"""Gateway port-mapping negotiation.

Provides PCP (RFC 6887) and NAT-PMP (RFC 6886) clients behind one backend
contract, and a negotiator that falls back between them.
"""

from qbportsync.nat.exceptions import (
    GatewayDiscoveryError,
    MappingUnsupportedError,
    NATPMPError,
    PCPError,
    PortMappingError,
)
from qbportsync.nat.gateway import GatewayConfig
from qbportsync.nat.negotiator import PortMappingNegotiator
from qbportsync.nat.port_mapping import PortMapping

__all__ = [
    "GatewayConfig",
    "GatewayDiscoveryError",
    "MappingUnsupportedError",
    "NATPMPError",
    "PCPError",
    "PortMapping",
    "PortMappingError",
    "PortMappingNegotiator",
]
