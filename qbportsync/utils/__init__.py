"""Shared utilities and infrastructure.

This module contains the exception hierarchy, logging setup and retry helpers.
"""

from __future__ import annotations

from qbportsync.utils.backoff import ExponentialBackoff, wait_or_shutdown
from qbportsync.utils.exceptions import (
    AuthError,
    ConfigurationError,
    ExitCode,
    NetworkError,
    QBPSError,
    UnsupportedEnvironmentError,
    classify_error,
)
from qbportsync.utils.logging_config import setup_logging

__all__ = [
    "AuthError",
    "ConfigurationError",
    "ExitCode",
    "ExponentialBackoff",
    "NetworkError",
    "QBPSError",
    "UnsupportedEnvironmentError",
    "classify_error",
    "setup_logging",
    "wait_or_shutdown",
]
