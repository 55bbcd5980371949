"""Strategy resolution: file watch or negotiated mapping."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from qbportsync.models import MappingSource, PortMapConfig, Strategy
from qbportsync.nat.exceptions import MappingUnsupportedError
from qbportsync.utils.exceptions import UnsupportedEnvironmentError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    """Negotiation backends available to this process."""

    pcp: bool = True
    natpmp: bool = True

    @classmethod
    def from_config(cls, config: PortMapConfig) -> Capabilities:
        """Read the backend switches from configuration."""
        return cls(pcp=config.enable_pcp, natpmp=config.enable_natpmp)

    @property
    def any(self) -> bool:
        """True if at least one backend is enabled."""
        return self.pcp or self.natpmp


@dataclass(frozen=True)
class Environment:
    """What the host offers for the file strategy."""

    forwarded_port_path: Path | None = None

    @property
    def directory_exists(self) -> bool:
        """True if the forwarded port file's directory exists."""
        path = self.forwarded_port_path
        return path is not None and path.parent.is_dir()

    @property
    def file_readable(self) -> bool:
        """True if the forwarded port file exists and can be read."""
        path = self.forwarded_port_path
        return path is not None and path.is_file() and os.access(path, os.R_OK)


class StrategyResolver:
    """Choose the concrete strategy for a run."""

    def __init__(self):
        """Initialize strategy resolver."""
        self.logger = logging.getLogger(__name__)

    def resolve(
        self,
        configured: Strategy,
        capabilities: Capabilities,
        environment: Environment,
    ) -> Strategy:
        """Return the concrete strategy to run.

        Args:
            configured: Requested strategy (``auto`` picks one)
            capabilities: Enabled negotiation backends
            environment: Forwarded port file availability

        Returns:
            One of ``file``, ``pcp`` or ``natpmp``

        Raises:
            UnsupportedEnvironmentError: If the requested strategy cannot run

        """
        if configured == Strategy.FILE:
            if environment.forwarded_port_path is None:
                msg = "file strategy requires protonvpn.forwarded_port_path"
                raise UnsupportedEnvironmentError(msg)
            if not environment.directory_exists:
                msg = (
                    "forwarded port directory does not exist: "
                    f"{environment.forwarded_port_path.parent}"
                )
                raise UnsupportedEnvironmentError(msg)
            return Strategy.FILE

        if configured == Strategy.PCP:
            if not capabilities.pcp:
                msg = "PCP strategy requested but PCP support is disabled"
                raise UnsupportedEnvironmentError(msg)
            return Strategy.PCP

        if configured == Strategy.NATPMP:
            if not capabilities.natpmp:
                msg = "NAT-PMP strategy requested but NAT-PMP support is disabled"
                raise UnsupportedEnvironmentError(msg)
            return Strategy.NATPMP

        if environment.file_readable:
            self.logger.debug(
                "Forwarded port file %s is readable, using file strategy",
                environment.forwarded_port_path,
            )
            return Strategy.FILE
        return self.downgrade(capabilities)

    def downgrade(self, capabilities: Capabilities) -> Strategy:
        """Return the negotiated strategy to use once the file source is gone."""
        if capabilities.pcp:
            return Strategy.PCP
        if capabilities.natpmp:
            return Strategy.NATPMP
        msg = "no forwarded port file and no port mapping backend enabled"
        raise MappingUnsupportedError(msg)

    def negotiation_order(
        self,
        configured: Strategy,
        resolved: Strategy,
        capabilities: Capabilities,
    ) -> list[MappingSource]:
        """Backends to try, in order, for a negotiated strategy."""
        if resolved == Strategy.FILE:
            return []
        preferred = MappingSource(resolved.value)
        if configured != Strategy.AUTO:
            return [preferred]
        order = [preferred]
        if preferred == MappingSource.PCP and capabilities.natpmp:
            order.append(MappingSource.NATPMP)
        elif preferred == MappingSource.NATPMP and capabilities.pcp:
            order.append(MappingSource.PCP)
        return order
