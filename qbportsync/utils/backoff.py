"""Backoff utilities for retry policies."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass

from qbportsync.utils.exceptions import ShutdownRequested


@dataclass
class ExponentialBackoff:
    """Simple exponential backoff with optional jitter."""

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter: float = 0.0

    def next_delay(self, retries: int) -> float:
        """Calculate the next delay for given retry count (0-based)."""
        delay = self.base_delay * (self.multiplier ** max(0, retries))
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            jitter_amt = delay * self.jitter
            delay = max(0.0, delay - jitter_amt) + random.random() * (2 * jitter_amt)  # noqa: S311
        return delay


async def wait_or_shutdown(delay: float, shutdown: asyncio.Event | None) -> bool:
    """Sleep for ``delay`` seconds unless ``shutdown`` fires first.

    Returns:
        True if the full delay elapsed, False if shutdown interrupted it

    """
    if shutdown is None:
        await asyncio.sleep(delay)
        return True
    if shutdown.is_set():
        return False
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False


def raise_if_shutdown(shutdown: asyncio.Event | None) -> None:
    """Raise :class:`ShutdownRequested` if the shutdown event is set."""
    if shutdown is not None and shutdown.is_set():
        msg = "shutdown requested"
        raise ShutdownRequested(msg)
