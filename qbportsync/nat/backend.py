"""Common contract for port-mapping negotiation backends."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from qbportsync.models import MappingSource, Transport
from qbportsync.nat.exceptions import PortMappingError
from qbportsync.nat.port_mapping import PortMapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleGrant:
    """Gateway answer for one transport."""

    transport: Transport
    external_port: int
    lifetime: int  # seconds, 0 when the gateway gave none


class MappingBackend(ABC):
    """A gateway port-mapping protocol.

    Subclasses implement one request for a single transport; this class
    fans a ``BOTH`` request out to TCP and UDP and folds the grants back into
    one logical :class:`PortMapping`.
    """

    source: MappingSource

    def __init__(self, timeout: float = 2.0):
        """Initialize backend.

        Args:
            timeout: Per-request response timeout in seconds

        """
        self.timeout = timeout
        self.logger = logging.getLogger(f"{__name__}.{type(self).__name__}")

    @property
    def name(self) -> str:
        """Backend identity used for logging and result tagging."""
        return self.source.value

    @abstractmethod
    async def map_single(
        self,
        internal_port: int,
        external_port: int,
        transport: Transport,
        lifetime: int,
        gateway: str,
    ) -> SingleGrant:
        """Send one mapping request for ``transport`` (TCP or UDP)."""

    async def request_mapping(
        self,
        internal_port: int,
        transport: Transport,
        lifetime_hint: int,
        gateway: str,
    ) -> PortMapping:
        """Request a mapping and return what the gateway granted.

        For ``Transport.BOTH`` TCP and UDP are requested separately; the
        mapping succeeds if at least one of them does.

        Raises:
            PortMappingError: If no transport could be mapped

        """
        transports = (
            [Transport.TCP, Transport.UDP] if transport == Transport.BOTH else [transport]
        )
        grants: list[SingleGrant] = []
        errors: list[PortMappingError] = []
        for single in transports:
            try:
                grants.append(
                    await self.map_single(
                        internal_port, internal_port, single, lifetime_hint, gateway
                    )
                )
            except PortMappingError as e:
                self.logger.debug("%s %s mapping failed: %s", self.name, single.value, e)
                errors.append(e)

        if not grants:
            raise errors[-1] if len(errors) == 1 else self._combine(errors)

        if errors:
            self.logger.warning(
                "%s mapped %s only; %s failed: %s",
                self.name,
                grants[0].transport.value,
                "UDP" if grants[0].transport == Transport.TCP else "TCP",
                errors[0],
            )

        # TCP is first in the request order, so it wins when both mapped.
        primary = grants[0]
        lifetimes = [g.lifetime for g in grants if g.lifetime > 0]
        for grant in grants[1:]:
            if grant.external_port != primary.external_port:
                self.logger.warning(
                    "%s granted different external ports for TCP (%d) and UDP (%d)",
                    self.name,
                    primary.external_port,
                    grant.external_port,
                )

        mapping = PortMapping(
            external_port=primary.external_port,
            internal_port=internal_port,
            transport=transport,
            source=self.source,
            lease_lifetime=float(min(lifetimes)) if lifetimes else None,
        )
        self.logger.info(
            "Mapped %s port %d -> %d via %s (lifetime: %s)",
            transport.value,
            mapping.internal_port,
            mapping.external_port,
            self.name,
            f"{int(mapping.lease_lifetime)}s" if mapping.lease_lifetime else "none",
        )
        return mapping

    def _combine(self, errors: list[PortMappingError]) -> PortMappingError:
        message = "; ".join(str(e) for e in errors)
        combined = type(errors[0])(
            message, retryable=any(e.retryable for e in errors)
        )
        combined.__cause__ = errors[-1]
        return combined
