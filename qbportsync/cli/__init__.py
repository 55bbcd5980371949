"""Command line interface for qb-port-sync."""

from __future__ import annotations

from qbportsync.cli.main import main

__all__ = ["main"]
