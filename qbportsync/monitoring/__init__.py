"""Health state and metrics endpoint."""

from __future__ import annotations

from qbportsync.monitoring.health import HealthServer, HealthState

__all__ = ["HealthServer", "HealthState"]
