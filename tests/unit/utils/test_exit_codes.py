"""Unit tests for the exception hierarchy and exit codes."""

from __future__ import annotations

import pytest

from qbportsync.nat.exceptions import (
    GatewayDiscoveryError,
    MappingUnsupportedError,
    NATPMPError,
    PCPError,
)
from qbportsync.utils.exceptions import (
    ApiResponseError,
    AuthError,
    ConfigurationError,
    ExitCode,
    InvalidPortFileError,
    NetworkError,
    QBPSError,
    ShutdownRequested,
    UnsupportedEnvironmentError,
    VerificationMismatchError,
    classify_error,
)

pytestmark = [pytest.mark.unit]


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (ConfigurationError("bad"), ExitCode.CONFIG),
        (UnsupportedEnvironmentError("no"), ExitCode.UNSUPPORTED),
        (MappingUnsupportedError("exhausted"), ExitCode.UNSUPPORTED),
        (GatewayDiscoveryError("no route"), ExitCode.UNSUPPORTED),
        (NetworkError("down"), ExitCode.TRANSIENT),
        (ApiResponseError(502, "Bad Gateway"), ExitCode.TRANSIENT),
        (NATPMPError("Timeout"), ExitCode.TRANSIENT),
        (PCPError("refused", retryable=False), ExitCode.TRANSIENT),
        (AuthError("Fails."), ExitCode.TRANSIENT),
        (InvalidPortFileError("abc"), ExitCode.TRANSIENT),
        (ShutdownRequested("stop"), ExitCode.SUCCESS),
    ],
)
def test_classify_error(error, code):
    """Test each error family maps to its exit code."""
    assert classify_error(error) == code


def test_exit_code_values():
    """Test the numeric codes scripts depend on."""
    assert [int(c) for c in ExitCode] == [0, 1, 2, 3]


def test_error_details_in_str():
    """Test details are appended to the message."""
    assert str(QBPSError("boom")) == "boom"
    assert str(QBPSError("boom", {"port": 1})) == "boom (Details: {'port': 1})"


def test_api_response_error():
    """Test status is kept on the error."""
    err = ApiResponseError(500, "oops")

    assert err.status == 500
    assert err.message == "unexpected response status: 500 oops"


def test_verification_mismatch_message():
    """Test the mismatch message names both ports."""
    err = VerificationMismatchError(51820, None)

    assert str(err) == "listen port mismatch: expected 51820, reported None"
    assert err.expected == 51820
    assert err.actual is None
