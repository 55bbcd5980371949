"""Verbosity management for the qb-port-sync CLI.

Maps repeated ``-v`` flags onto logging levels.
"""

from __future__ import annotations

import logging
from enum import IntEnum


class VerbosityLevel(IntEnum):
    """Verbosity levels for the CLI."""

    NORMAL = 0  # Level from the config file
    VERBOSE = 1  # -v: info
    DEBUG = 2  # -vv: debug


class VerbosityManager:
    """Maps verbosity counts to logging levels."""

    LEVEL_TO_LOGGING: dict[VerbosityLevel, int | None] = {
        VerbosityLevel.NORMAL: None,
        VerbosityLevel.VERBOSE: logging.INFO,
        VerbosityLevel.DEBUG: logging.DEBUG,
    }

    def __init__(self, verbosity_count: int = 0):
        """Initialize verbosity manager.

        Args:
            verbosity_count: Number of -v flags

        """
        self.verbosity_count = max(0, min(2, verbosity_count))
        self.level = VerbosityLevel(self.verbosity_count)

    def get_logging_level(self) -> int | None:
        """Logging level override, or None to keep the configured level."""
        return self.LEVEL_TO_LOGGING[self.level]
