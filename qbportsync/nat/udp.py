"""Async UDP request/response exchange with a gateway."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)

GATEWAY_PORT = 5351
MAX_DATAGRAM = 1100


class GatewayProtocol(asyncio.DatagramProtocol):
    """UDP protocol handler that resolves a future with the first acceptable reply."""

    def __init__(self, accept: Callable[[bytes], bool] | None = None):
        """Initialize protocol handler.

        Args:
            accept: Optional predicate; datagrams it rejects are ignored

        """
        self.accept = accept
        self.response: asyncio.Future[bytes] = (
            asyncio.get_running_loop().create_future()
        )

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        """Handle incoming UDP datagram."""
        if self.response.done():
            return
        if self.accept is not None and not self.accept(data):
            logger.debug("Ignoring unrelated datagram from %s", addr)
            return
        self.response.set_result(data)

    def error_received(self, exc: Exception) -> None:
        """Handle UDP error (e.g. ICMP port unreachable)."""
        logger.debug("UDP error: %s", exc)
        if not self.response.done():
            self.response.set_exception(exc)

    def connection_lost(self, exc: Exception | None) -> None:
        """Fail a pending request if the transport closes underneath it."""
        if not self.response.done():
            self.response.set_exception(exc or ConnectionError("transport closed"))


class GatewayExchange:
    """One request/response round trip with the gateway.

    Used as an async context manager so the local address is known before
    the request is built (PCP embeds it in the request header)::

        async with GatewayExchange(gateway) as exchange:
            reply = await exchange.request(build(exchange.local_address), 2.0)

    """

    def __init__(
        self,
        gateway: str,
        port: int = GATEWAY_PORT,
        accept: Callable[[bytes], bool] | None = None,
    ):
        """Initialize exchange with the gateway address and UDP port."""
        self.gateway = gateway
        self.port = port
        self.accept = accept
        self.transport: asyncio.DatagramTransport | None = None
        self.protocol: GatewayProtocol | None = None

    async def __aenter__(self) -> GatewayExchange:
        """Open a connected UDP endpoint towards the gateway."""
        loop = asyncio.get_running_loop()
        self.transport, self.protocol = await loop.create_datagram_endpoint(
            lambda: GatewayProtocol(self.accept),
            remote_addr=(self.gateway, self.port),
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Close the UDP endpoint."""
        if self.transport is not None:
            self.transport.close()
            self.transport = None

    @property
    def local_address(self) -> str:
        """Local IP address the kernel picked to reach the gateway."""
        if self.transport is None:
            msg = "exchange is not open"
            raise RuntimeError(msg)
        sockname = self.transport.get_extra_info("sockname")
        return sockname[0]

    async def request(self, payload: bytes, timeout: float) -> bytes:
        """Send ``payload`` and wait up to ``timeout`` seconds for the reply.

        Raises:
            asyncio.TimeoutError: If no acceptable reply arrived in time
            OSError: If the network reported an error for the datagram

        """
        if self.transport is None or self.protocol is None:
            msg = "exchange is not open"
            raise RuntimeError(msg)
        self.transport.sendto(payload)
        return await asyncio.wait_for(self.protocol.response, timeout=timeout)
