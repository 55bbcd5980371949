"""PCP (Port Control Protocol) MAP client implementation per RFC 6887."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import struct
from dataclasses import dataclass
from enum import IntEnum

from qbportsync.models import MappingSource, Transport
from qbportsync.nat.backend import MappingBackend, SingleGrant
from qbportsync.nat.exceptions import PCPError
from qbportsync.nat.udp import GATEWAY_PORT, GatewayExchange

logger = logging.getLogger(__name__)

# RFC 6887 constants
PCP_PORT = GATEWAY_PORT
PCP_VERSION = 2
PCP_RESPONSE_BIT = 0x80
PCP_HEADER_SIZE = 24
PCP_MAP_PAYLOAD_SIZE = 36
PCP_NONCE_SIZE = 12

IPPROTO_TCP = 6
IPPROTO_UDP = 17

_ANY_IPV4 = ipaddress.IPv6Address("::ffff:0.0.0.0")


class PCPOpcode(IntEnum):
    """PCP opcodes from RFC 6887 section 19.2."""

    ANNOUNCE = 0
    MAP = 1
    PEER = 2


class PCPResult(IntEnum):
    """PCP result codes from RFC 6887 section 7.4."""

    SUCCESS = 0
    UNSUPP_VERSION = 1
    NOT_AUTHORIZED = 2
    MALFORMED_REQUEST = 3
    UNSUPP_OPCODE = 4
    UNSUPP_OPTION = 5
    MALFORMED_OPTION = 6
    NETWORK_FAILURE = 7
    NO_RESOURCES = 8
    UNSUPP_PROTOCOL = 9
    USER_EX_QUOTA = 10
    CANNOT_PROVIDE_EXTERNAL = 11
    ADDRESS_MISMATCH = 12
    EXCESSIVE_REMOTE_PEERS = 13


# Long-term errors per RFC 6887 section 7.4; the rest are short-term.
_DEFINITIVE_RESULTS = {
    PCPResult.UNSUPP_VERSION,
    PCPResult.NOT_AUTHORIZED,
    PCPResult.MALFORMED_REQUEST,
    PCPResult.UNSUPP_OPCODE,
    PCPResult.UNSUPP_OPTION,
    PCPResult.MALFORMED_OPTION,
    PCPResult.UNSUPP_PROTOCOL,
    PCPResult.ADDRESS_MISMATCH,
}


@dataclass
class PCPMapResponse:
    """Decoded PCP MAP response."""

    nonce: bytes
    protocol: int
    internal_port: int
    external_port: int
    external_address: ipaddress.IPv4Address | ipaddress.IPv6Address
    lifetime: int  # seconds
    epoch: int


def ip_to_pcp_address(address: str) -> bytes:
    """Encode an address as the 16-byte field PCP uses (IPv4-mapped for IPv4)."""
    ip = ipaddress.ip_address(address)
    if isinstance(ip, ipaddress.IPv4Address):
        ip = ipaddress.IPv6Address(f"::ffff:{ip}")
    return ip.packed


def _pcp_address_to_ip(
    packed: bytes,
) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    ip = ipaddress.IPv6Address(packed)
    return ip.ipv4_mapped or ip


def protocol_number(transport: Transport) -> int:
    """IANA protocol number for a single transport."""
    if transport == Transport.TCP:
        return IPPROTO_TCP
    if transport == Transport.UDP:
        return IPPROTO_UDP
    msg = f"PCP maps one transport per request, got {transport.value}"
    raise ValueError(msg)


def new_nonce() -> bytes:
    """Random mapping nonce (RFC 6887 section 11.1)."""
    return os.urandom(PCP_NONCE_SIZE)


def encode_map_request(
    client_address: str,
    nonce: bytes,
    protocol: int,
    internal_port: int,
    external_port: int,
    lifetime: int,
) -> bytes:
    """Encode a MAP request (RFC 6887 sections 7.1 and 11.1).

    Args:
        client_address: Local address the request is sent from
        nonce: 12-byte mapping nonce
        protocol: IANA protocol number (6 TCP, 17 UDP)
        internal_port: Internal port
        external_port: Suggested external port (0 for no preference)
        lifetime: Requested lifetime in seconds

    Returns:
        Encoded 60-byte PCP request

    """
    if len(nonce) != PCP_NONCE_SIZE:
        msg = f"nonce must be {PCP_NONCE_SIZE} bytes"
        raise ValueError(msg)
    # version(1), R|opcode(1), reserved(2), lifetime(4), client address(16)
    header = struct.pack(
        "!BBHI16s",
        PCP_VERSION,
        PCPOpcode.MAP,
        0,
        lifetime,
        ip_to_pcp_address(client_address),
    )
    # nonce(12), protocol(1), reserved(3), internal port(2),
    # suggested external port(2), suggested external address(16)
    payload = struct.pack(
        "!12sB3xHH16s",
        nonce,
        protocol,
        internal_port,
        external_port,
        _ANY_IPV4.packed,
    )
    return header + payload


def decode_map_response(data: bytes) -> PCPMapResponse:
    """Decode a MAP response (RFC 6887 sections 7.2 and 11.1).

    Raises:
        PCPError: If the response is malformed or reports an error

    """
    if len(data) < 4:
        msg = "PCP response too short"
        raise PCPError(msg)
    version, r_opcode, _reserved, result = struct.unpack("!BBBB", data[:4])
    if version != PCP_VERSION:
        # A NAT-PMP-only gateway answers with version 0 / UNSUPP_VERSION.
        msg = f"gateway does not speak PCP (response version {version})"
        raise PCPError(msg, {"version": version}, retryable=False)
    if not r_opcode & PCP_RESPONSE_BIT or r_opcode & 0x7F != PCPOpcode.MAP:
        msg = f"unexpected PCP opcode {r_opcode:#x}"
        raise PCPError(msg)
    if result != PCPResult.SUCCESS:
        error_name = (
            PCPResult(result).name if result in range(14) else f"Unknown({result})"
        )
        msg = f"PCP error: {error_name}"
        raise PCPError(
            msg,
            {"result": result},
            retryable=result not in _DEFINITIVE_RESULTS,
        )
    if len(data) < PCP_HEADER_SIZE + PCP_MAP_PAYLOAD_SIZE:
        msg = "PCP MAP response too short"
        raise PCPError(msg)
    lifetime, epoch = struct.unpack("!II", data[4:12])
    nonce, protocol, internal, external, address = struct.unpack(
        "!12sB3xHH16s",
        data[PCP_HEADER_SIZE : PCP_HEADER_SIZE + PCP_MAP_PAYLOAD_SIZE],
    )
    return PCPMapResponse(
        nonce=nonce,
        protocol=protocol,
        internal_port=internal,
        external_port=external,
        external_address=_pcp_address_to_ip(address),
        lifetime=lifetime,
        epoch=epoch,
    )


def _is_map_reply(data: bytes) -> bool:
    # Version 0 replies come from NAT-PMP gateways rejecting the request.
    return len(data) >= 2 and (data[0] != PCP_VERSION or data[1] & PCP_RESPONSE_BIT)


class PCPClient(MappingBackend):
    """Async PCP client issuing MAP requests."""

    source = MappingSource.PCP

    def __init__(self, timeout: float = 2.0, port: int = PCP_PORT):
        """Initialize PCP client.

        Args:
            timeout: Per-request response timeout in seconds
            port: Gateway UDP port

        """
        super().__init__(timeout)
        self.port = port
        # One nonce per (protocol, internal port) so renewals refresh the same mapping.
        self._nonces: dict[tuple[int, int], bytes] = {}

    def _nonce_for(self, protocol: int, internal_port: int) -> bytes:
        key = (protocol, internal_port)
        if key not in self._nonces:
            self._nonces[key] = new_nonce()
        return self._nonces[key]

    async def map_single(
        self,
        internal_port: int,
        external_port: int,
        transport: Transport,
        lifetime: int,
        gateway: str,
    ) -> SingleGrant:
        """Send one PCP MAP request."""
        protocol = protocol_number(transport)
        nonce = self._nonce_for(protocol, internal_port)
        try:
            async with GatewayExchange(gateway, self.port, accept=_is_map_reply) as exchange:
                request = encode_map_request(
                    exchange.local_address,
                    nonce,
                    protocol,
                    internal_port,
                    external_port,
                    lifetime,
                )
                response = await exchange.request(request, self.timeout)
        except asyncio.TimeoutError:
            msg = f"Timeout waiting for PCP {transport.value} mapping"
            raise PCPError(msg) from None
        except OSError as e:
            msg = f"Error sending PCP {transport.value} mapping: {e}"
            raise PCPError(msg) from e

        decoded = decode_map_response(response)
        if decoded.nonce != nonce:
            msg = "PCP response nonce does not match request"
            raise PCPError(msg)
        if decoded.protocol != protocol or decoded.internal_port != internal_port:
            msg = "PCP response does not match the requested mapping"
            raise PCPError(msg)
        self.logger.debug(
            "PCP mapped %s port %s -> %s:%s (lifetime: %s s)",
            transport.value,
            decoded.internal_port,
            decoded.external_address,
            decoded.external_port,
            decoded.lifetime,
        )
        return SingleGrant(transport, decoded.external_port, decoded.lifetime)
