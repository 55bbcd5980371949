"""NAT-PMP (NAT Port Mapping Protocol) client implementation per RFC 6886."""

from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum

from qbportsync.models import MappingSource, Transport
from qbportsync.nat.backend import MappingBackend, SingleGrant
from qbportsync.nat.exceptions import NATPMPError
from qbportsync.nat.udp import GATEWAY_PORT, GatewayExchange

logger = logging.getLogger(__name__)

# RFC 6886 constants
NAT_PMP_PORT = GATEWAY_PORT
NAT_PMP_VERSION = 0
RESPONSE_OPCODE_OFFSET = 128


class NATPMPOpcode(IntEnum):
    """NAT-PMP opcodes from RFC 6886."""

    PUBLIC_ADDRESS_REQUEST = 0
    UDP_MAPPING_REQUEST = 1
    TCP_MAPPING_REQUEST = 2


class NATPMPResult(IntEnum):
    """NAT-PMP result codes from RFC 6886 section 3.5."""

    SUCCESS = 0
    UNSUPPORTED_VERSION = 1
    NOT_AUTHORIZED = 2  # e.g., gateway firewall disallows
    NETWORK_FAILURE = 3
    OUT_OF_RESOURCES = 4
    UNSUPPORTED_OPCODE = 5


# Answers repeating the request cannot change.
_DEFINITIVE_RESULTS = {
    NATPMPResult.UNSUPPORTED_VERSION,
    NATPMPResult.NOT_AUTHORIZED,
    NATPMPResult.UNSUPPORTED_OPCODE,
}


@dataclass
class NATPMPPortMapping:
    """Represents a NAT-PMP port mapping response."""

    internal_port: int
    external_port: int
    lifetime: int  # seconds
    protocol: str  # "tcp" or "udp"


def _opcode_for(protocol: str) -> NATPMPOpcode:
    return (
        NATPMPOpcode.TCP_MAPPING_REQUEST
        if protocol.lower() == "tcp"
        else NATPMPOpcode.UDP_MAPPING_REQUEST
    )


def _raise_for_result(result: int) -> None:
    if result == NATPMPResult.SUCCESS:
        return
    error_name = (
        NATPMPResult(result).name if result in range(6) else f"Unknown({result})"
    )
    msg = f"NAT-PMP error: {error_name}"
    raise NATPMPError(
        msg,
        {"result": result},
        retryable=result not in _DEFINITIVE_RESULTS,
    )


# Message encoding/decoding functions


def encode_port_mapping_request(
    internal_port: int,
    external_port: int,
    lifetime: int,
    protocol: str,
) -> bytes:
    """Encode port mapping request (RFC 6886 section 3.3).

    Args:
        internal_port: Internal port
        external_port: Suggested external port (0 for automatic)
        lifetime: Requested mapping lifetime in seconds
        protocol: "tcp" or "udp"

    Returns:
        Encoded NAT-PMP request message

    """
    # version(1), opcode(1), reserved(2), internal_port(2), external_port(2), lifetime(4)
    return struct.pack(
        "!BBHHHI",
        NAT_PMP_VERSION,
        _opcode_for(protocol),
        0,
        internal_port,
        external_port,
        lifetime,
    )


def decode_port_mapping_response(data: bytes) -> NATPMPPortMapping:
    """Decode port mapping response (RFC 6886 section 3.3).

    Raises:
        NATPMPError: If the response is malformed or reports an error

    """
    if len(data) >= 4:
        # Error replies may be truncated to the 8-byte header.
        _version, _opcode, result = struct.unpack("!BBH", data[:4])
        _raise_for_result(result)
    if len(data) < 16:
        msg = "NAT-PMP response too short"
        raise NATPMPError(msg)
    # version(1), opcode(1), result(2), seconds(4), internal(2), external(2), lifetime(4)
    version, opcode, _result, _seconds, internal, external, lifetime = struct.unpack(
        "!BBHIHHI",
        data[:16],
    )
    if version != NAT_PMP_VERSION:
        msg = f"NAT-PMP response has unexpected version {version}"
        raise NATPMPError(msg, retryable=False)
    request_opcode = opcode - RESPONSE_OPCODE_OFFSET
    protocol = "tcp" if request_opcode == NATPMPOpcode.TCP_MAPPING_REQUEST else "udp"
    return NATPMPPortMapping(internal, external, lifetime, protocol)


def _is_mapping_reply(protocol: str):
    expected = RESPONSE_OPCODE_OFFSET + _opcode_for(protocol)

    def accept(data: bytes) -> bool:
        return len(data) >= 2 and data[1] == expected

    return accept


class NATPMPClient(MappingBackend):
    """Async NAT-PMP client."""

    source = MappingSource.NATPMP

    def __init__(self, timeout: float = 2.0, port: int = NAT_PMP_PORT):
        """Initialize NAT-PMP client.

        Args:
            timeout: Per-request response timeout in seconds
            port: Gateway UDP port

        """
        super().__init__(timeout)
        self.port = port

    async def add_port_mapping(
        self,
        gateway: str,
        internal_port: int,
        external_port: int = 0,
        lifetime: int = 3600,
        protocol: str = "tcp",
    ) -> NATPMPPortMapping:
        """Add or renew a port mapping (RFC 6886 section 3.3).

        Raises:
            NATPMPError: If the gateway did not answer or refused the mapping

        """
        request = encode_port_mapping_request(
            internal_port, external_port, lifetime, protocol
        )
        try:
            async with GatewayExchange(
                gateway, self.port, accept=_is_mapping_reply(protocol)
            ) as exchange:
                response = await exchange.request(request, self.timeout)
        except asyncio.TimeoutError:
            msg = f"Timeout adding {protocol} port mapping"
            raise NATPMPError(msg) from None
        except OSError as e:
            msg = f"Error adding {protocol} port mapping: {e}"
            raise NATPMPError(msg) from e

        mapping = decode_port_mapping_response(response)
        self.logger.debug(
            "NAT-PMP mapped %s port %s -> %s (lifetime: %s s)",
            protocol,
            mapping.internal_port,
            mapping.external_port,
            mapping.lifetime,
        )
        return mapping

    async def map_single(
        self,
        internal_port: int,
        external_port: int,
        transport: Transport,
        lifetime: int,
        gateway: str,
    ) -> SingleGrant:
        """Send one NAT-PMP mapping request."""
        mapping = await self.add_port_mapping(
            gateway,
            internal_port,
            external_port,
            lifetime=lifetime,
            protocol=transport.value.lower(),
        )
        return SingleGrant(transport, mapping.external_port, mapping.lifetime)
