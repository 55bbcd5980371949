"""Sync core: strategy resolution, scheduling and orchestration."""

from __future__ import annotations

from qbportsync.sync.orchestrator import SyncOrchestrator
from qbportsync.sync.report import SyncResult
from qbportsync.sync.scheduler import RefreshScheduler
from qbportsync.sync.strategy import Capabilities, Environment, StrategyResolver

__all__ = [
    "Capabilities",
    "Environment",
    "RefreshScheduler",
    "StrategyResolver",
    "SyncOrchestrator",
    "SyncResult",
]
