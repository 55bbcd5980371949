"""Exception hierarchy for qb-port-sync.

Every error raised by the package derives from :class:`QBPSError`. The CLI
layer maps the hierarchy onto process exit codes with :func:`classify_error`.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ExitCode(IntEnum):
    """Process exit codes consumed by service managers and scripts."""

    SUCCESS = 0
    TRANSIENT = 1
    CONFIG = 2
    UNSUPPORTED = 3


class QBPSError(Exception):
    """Base exception for all qb-port-sync errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize qb-port-sync error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ConfigurationError(QBPSError):
    """Configuration loading or validation errors."""


class UnsupportedEnvironmentError(QBPSError):
    """No viable strategy, or a required facility is missing on this host."""


class TransientNetworkError(QBPSError):
    """Network failure that outlived its retry budget."""


class NetworkError(TransientNetworkError):
    """HTTP transport errors talking to the torrent client."""


class AuthError(QBPSError):
    """Credentials rejected by the torrent client."""


class ApiResponseError(TransientNetworkError):
    """Unexpected HTTP status or payload from the torrent client."""

    def __init__(self, status: int, message: str):
        """Initialize with the HTTP status and response body."""
        super().__init__(
            f"unexpected response status: {status} {message}".rstrip(),
            {"status": status},
        )
        self.status = status


class VerificationMismatchError(QBPSError):
    """Torrent client reports a different listening port than requested."""

    def __init__(self, expected: int, actual: int | None):
        """Initialize with the expected and reported ports."""
        super().__init__(
            f"listen port mismatch: expected {expected}, reported {actual}"
        )
        self.expected = expected
        self.actual = actual


class InvalidPortFileError(QBPSError):
    """Forwarded port file holds something other than a port number."""


class ShutdownRequested(QBPSError):  # noqa: N818
    """Raised at a suspension point once shutdown has been requested."""


def classify_error(err: BaseException) -> ExitCode:
    """Map an exception onto the exit code reported to the caller."""
    if isinstance(err, ShutdownRequested):
        return ExitCode.SUCCESS
    if isinstance(err, ConfigurationError):
        return ExitCode.CONFIG
    if isinstance(err, UnsupportedEnvironmentError):
        return ExitCode.UNSUPPORTED
    return ExitCode.TRANSIENT
