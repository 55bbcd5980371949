"""Renewal timing for port mappings."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from qbportsync.nat.port_mapping import PortMapping

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Compute when the next sync cycle is due and arm a timer for it.

    Leased mappings are renewed at half their lifetime; mappings without a
    lease (file source) are refreshed at the fallback interval.
    """

    def __init__(
        self,
        fallback_interval: float,
        min_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize refresh scheduler.

        Args:
            fallback_interval: Delay used when no lease lifetime is known
            min_delay: Lower bound for lease-derived delays
            sleep: Coroutine used to wait (replaceable in tests)

        """
        self.fallback_interval = fallback_interval
        self.min_delay = min_delay
        self._sleep = sleep
        self.timer: asyncio.Task[None] | None = None

    def next_delay(self, mapping: PortMapping | None) -> float:
        """Seconds until the next cycle for ``mapping``."""
        if mapping is not None and mapping.lease_lifetime:
            return max(self.min_delay, mapping.lease_lifetime / 2)
        return self.fallback_interval

    def arm(self, delay: float) -> asyncio.Task[None]:
        """Start the timer, replacing any pending one."""
        self.cancel()
        logger.debug("Next sync cycle in %.1fs", delay)
        self.timer = asyncio.create_task(self._sleep(delay))
        return self.timer

    def cancel(self) -> None:
        """Cancel the pending timer, if any."""
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None

    @property
    def armed(self) -> bool:
        """True while a timer is pending."""
        return self.timer is not None and not self.timer.done()
