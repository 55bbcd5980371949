"""Gateway address resolution.

The gateway is either configured explicitly or derived from the default
network route, which is where both PCP and NAT-PMP servers listen.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import platform
import socket
import struct
import subprocess
from dataclasses import dataclass
from pathlib import Path

from qbportsync.nat.exceptions import GatewayDiscoveryError

logger = logging.getLogger(__name__)

PROC_NET_ROUTE = Path("/proc/net/route")


@dataclass(frozen=True)
class GatewayConfig:
    """Where to send mapping requests."""

    address: str | None = None
    autodiscover: bool = True


def parse_proc_net_route(text: str) -> ipaddress.IPv4Address | None:
    """Return the default gateway from the contents of ``/proc/net/route``."""
    for line in text.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 4:
            continue
        destination, gateway, flags = fields[1], fields[2], fields[3]
        try:
            # RTF_GATEWAY (0x2) on the 0.0.0.0 destination
            if destination != "00000000" or not int(flags, 16) & 0x2:
                continue
            packed = struct.pack("<L", int(gateway, 16))
        except ValueError:
            continue
        return ipaddress.IPv4Address(socket.inet_ntoa(packed))
    return None


def parse_route_output(output: str) -> ipaddress.IPv4Address | None:
    """Return the gateway from ``ip route`` or ``route -n get`` output.

    Linux ip: "default via 192.168.1.1 dev eth0"
    macOS route: "gateway: 192.168.1.1"
    """
    for line in output.splitlines():
        parts = line.split()
        for i, part in enumerate(parts):
            if part in ("via", "gateway:") and i + 1 < len(parts):
                try:
                    return ipaddress.IPv4Address(parts[i + 1].split("/")[0])
                except ValueError:
                    continue
    return None


def parse_windows_route_print(output: str) -> ipaddress.IPv4Address | None:
    """Return the gateway from ``route print 0.0.0.0`` output."""
    # Format: "0.0.0.0          0.0.0.0         192.168.1.1     192.168.1.100"
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0] == "0.0.0.0" and parts[1] == "0.0.0.0":  # nosec B104 - routing table parsing
            try:
                return ipaddress.IPv4Address(parts[2])
            except ValueError:
                continue
    return None


def _run(cmd: list[str]) -> str | None:
    try:
        result = subprocess.run(  # noqa: S603
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.debug("Route query %s failed: %s", cmd[0], e)
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def default_route_gateway() -> ipaddress.IPv4Address | None:
    """Get the default-route gateway using platform-specific methods."""
    system = platform.system()

    if system == "Linux" and PROC_NET_ROUTE.exists():
        try:
            gateway = parse_proc_net_route(PROC_NET_ROUTE.read_text(encoding="ascii"))
        except OSError as e:
            logger.debug("Could not read %s: %s", PROC_NET_ROUTE, e)
        else:
            if gateway is not None:
                return gateway

    if system == "Windows":
        output = _run(["route", "print", "0.0.0.0"])  # nosec B104 - routing table query, not bind
        return parse_windows_route_print(output) if output else None

    for cmd in (["ip", "route", "show", "default"], ["route", "-n", "get", "default"]):
        output = _run(cmd)
        if output:
            gateway = parse_route_output(output)
            if gateway is not None:
                return gateway
    return None


async def resolve_gateway(config: GatewayConfig) -> str:
    """Resolve the address mapping requests should be sent to.

    Raises:
        GatewayDiscoveryError: If autodiscovery is disabled without an
            address, or discovery failed and no address is configured

    """
    if not config.autodiscover:
        if not config.address:
            msg = "gateway discovery disabled and no gateway provided"
            raise GatewayDiscoveryError(msg)
        return config.address

    gateway = await asyncio.to_thread(default_route_gateway)
    if gateway is not None:
        logger.debug("Discovered gateway %s from default route", gateway)
        return str(gateway)

    if config.address:
        logger.info(
            "Default route has no gateway, using configured gateway %s",
            config.address,
        )
        return config.address

    msg = "failed to autodiscover gateway from the default route"
    raise GatewayDiscoveryError(msg)
