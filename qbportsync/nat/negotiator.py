"""Port mapping negotiation with retry and backend fallback."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Sequence

from qbportsync.models import MappingSource, PortMapConfig, Transport
from qbportsync.nat.backend import MappingBackend
from qbportsync.nat.exceptions import MappingUnsupportedError, PortMappingError
from qbportsync.nat.gateway import GatewayConfig, resolve_gateway
from qbportsync.nat.natpmp import NATPMPClient
from qbportsync.nat.pcp import PCPClient
from qbportsync.nat.port_mapping import PortMapping
from qbportsync.utils.backoff import (
    ExponentialBackoff,
    raise_if_shutdown,
    wait_or_shutdown,
)
from qbportsync.utils.exceptions import ShutdownRequested

logger = logging.getLogger(__name__)

EPHEMERAL_PORT_RANGE = (49152, 65535)


def resolve_internal_port(configured: int) -> int:
    """Return the configured port, or a random ephemeral port for 0."""
    if configured:
        return configured
    return random.randint(*EPHEMERAL_PORT_RANGE)  # noqa: S311


class PortMappingNegotiator:
    """Obtain a mapping from the gateway, falling back between backends.

    Each backend gets ``max_attempts`` tries with exponential backoff in
    between. Backends are tried in the order given per call; the next one is
    only contacted once the previous one is exhausted.
    """

    def __init__(
        self,
        backends: dict[MappingSource, MappingBackend],
        gateway: GatewayConfig,
        internal_port: int,
        transport: Transport = Transport.TCP,
        lifetime_hint: int = 300,
        max_attempts: int = 3,
        backoff: ExponentialBackoff | None = None,
    ):
        """Initialize negotiator.

        Args:
            backends: Available backends by identity
            gateway: Gateway resolution settings
            internal_port: Local port to map (already resolved, non-zero)
            transport: Transport(s) to map
            lifetime_hint: Requested lease lifetime in seconds
            max_attempts: Attempts per backend
            backoff: Delay policy between attempts

        """
        self.backends = backends
        self.gateway = gateway
        self.internal_port = internal_port
        self.transport = transport
        self.lifetime_hint = lifetime_hint
        self.max_attempts = max_attempts
        self.backoff = backoff or ExponentialBackoff(base_delay=1.0, max_delay=8.0)
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: PortMapConfig) -> PortMappingNegotiator:
        """Build a negotiator with both backends from configuration."""
        return cls(
            backends={
                MappingSource.PCP: PCPClient(timeout=config.request_timeout),
                MappingSource.NATPMP: NATPMPClient(timeout=config.request_timeout),
            },
            gateway=GatewayConfig(
                address=config.gateway,
                autodiscover=config.autodiscover_gateway,
            ),
            internal_port=resolve_internal_port(config.internal_port),
            transport=config.protocol,
            lifetime_hint=config.refresh_secs,
            max_attempts=config.max_attempts,
        )

    async def negotiate(
        self,
        order: Sequence[MappingSource],
        shutdown: asyncio.Event | None = None,
    ) -> PortMapping:
        """Obtain a mapping, trying backends in ``order``.

        Raises:
            PortMappingError: If the only backend in ``order`` failed
            MappingUnsupportedError: If every backend in ``order`` failed
            GatewayDiscoveryError: If no gateway address is available
            ShutdownRequested: If shutdown was requested meanwhile

        """
        if not order:
            msg = "no port mapping backend enabled"
            raise MappingUnsupportedError(msg)

        raise_if_shutdown(shutdown)
        gateway = await resolve_gateway(self.gateway)

        failures: list[str] = []
        last_error: PortMappingError | None = None
        for index, source in enumerate(order):
            backend = self.backends[source]
            try:
                return await self._attempt_backend(backend, gateway, shutdown)
            except PortMappingError as e:
                last_error = e
                failures.append(f"{backend.name}: {e}")
                if index + 1 < len(order):
                    self.logger.warning(
                        "%s mapping failed: %s; trying %s fallback",
                        backend.name,
                        e,
                        self.backends[order[index + 1]].name,
                    )

        if len(order) == 1 and last_error is not None:
            raise last_error
        msg = "all port mapping backends exhausted"
        raise MappingUnsupportedError(msg, {"errors": "; ".join(failures)})

    async def _attempt_backend(
        self,
        backend: MappingBackend,
        gateway: str,
        shutdown: asyncio.Event | None,
    ) -> PortMapping:
        last_error: PortMappingError | None = None
        for attempt in range(self.max_attempts):
            if attempt > 0:
                delay = self.backoff.next_delay(attempt - 1)
                self.logger.debug(
                    "Retrying %s in %.1fs (attempt %d/%d)",
                    backend.name,
                    delay,
                    attempt + 1,
                    self.max_attempts,
                )
                if not await wait_or_shutdown(delay, shutdown):
                    msg = "shutdown requested"
                    raise ShutdownRequested(msg)
            raise_if_shutdown(shutdown)
            try:
                return await backend.request_mapping(
                    self.internal_port,
                    self.transport,
                    self.lifetime_hint,
                    gateway,
                )
            except PortMappingError as e:
                last_error = e
                self.logger.debug(
                    "%s attempt %d/%d failed: %s",
                    backend.name,
                    attempt + 1,
                    self.max_attempts,
                    e,
                )
                if not e.retryable:
                    break

        if last_error is None:  # pragma: no cover - max_attempts is at least 1
            msg = f"{backend.name} mapping was never attempted"
            raise PortMappingError(msg)
        raise last_error
