"""Unit tests for the qBittorrent Web API client against an in-process fake."""

from __future__ import annotations

import pytest
import pytest_asyncio

from qbportsync.client.qbittorrent import (
    Credentials,
    QbittorrentClient,
    VerifyStatus,
    matches_interface,
    origin_from_url,
)
from qbportsync.models import MappingSource, Transport
from qbportsync.nat.port_mapping import PortMapping
from qbportsync.utils.backoff import ExponentialBackoff
from qbportsync.utils.exceptions import ApiResponseError, AuthError, NetworkError

pytestmark = [pytest.mark.unit, pytest.mark.client]

CREDENTIALS = Credentials("admin", "secret")


def _mapping(port: int = 51820) -> PortMapping:
    return PortMapping(port, port, Transport.BOTH, MappingSource.FILE)


@pytest_asyncio.fixture
async def client(qbittorrent):
    """Client pointed at the fake Web UI."""
    qb = QbittorrentClient(
        qbittorrent.base_url,
        timeout=5.0,
        backoff=ExponentialBackoff(base_delay=0.01, max_delay=0.01),
    )
    yield qb
    await qb.close()


def test_origin_from_url():
    """Test origin keeps scheme, host and port only."""
    assert origin_from_url("http://127.0.0.1:8080/qb/") == "http://127.0.0.1:8080"
    assert origin_from_url("https://qb.example.org") == "https://qb.example.org"


def test_matches_interface():
    """Test interface entries match on name or id."""
    item = {"name": "WireGuard", "value": "wg0"}
    assert matches_interface(item, "wg0")
    assert matches_interface(item, " WireGuard ")
    assert not matches_interface(item, "eth0")
    assert not matches_interface(item, "  ")


def test_credentials_repr_hides_password():
    """Test the password never shows up in logs."""
    assert "secret" not in repr(CREDENTIALS)


@pytest.mark.asyncio
async def test_authenticate_success(client, qbittorrent):
    """Test login returns a session carrying the SID cookie."""
    session = await client.authenticate(CREDENTIALS)

    assert session.session_token == "sid-1"
    assert session.base_url == qbittorrent.base_url
    assert qbittorrent.login_calls == 1


@pytest.mark.asyncio
async def test_requests_carry_csrf_headers(client, qbittorrent):
    """Test Referer and Origin match the base URL."""
    await client.authenticate(CREDENTIALS)

    _method, _path, headers = qbittorrent.requests[0]
    assert headers["Referer"] == qbittorrent.base_url
    assert headers["Origin"] == qbittorrent.base_url.rstrip("/")


@pytest.mark.asyncio
async def test_authenticate_rejected(client, qbittorrent):
    """Test a "Fails." body is an authentication error."""
    qbittorrent.reject_logins = True

    with pytest.raises(AuthError, match="Fails"):
        await client.authenticate(CREDENTIALS)


@pytest.mark.asyncio
async def test_authenticate_unreachable():
    """Test connection failures surface as NetworkError after retries."""
    qb = QbittorrentClient(
        "http://127.0.0.1:9/",
        timeout=1.0,
        backoff=ExponentialBackoff(base_delay=0.0, max_delay=0.0),
    )
    try:
        with pytest.raises(NetworkError, match="unreachable"):
            await qb.authenticate(CREDENTIALS)
    finally:
        await qb.close()


@pytest.mark.asyncio
async def test_server_errors_are_retried(client, qbittorrent):
    """Test transient 5xx responses are retried."""
    qbittorrent.server_errors = 2

    session = await client.authenticate(CREDENTIALS)

    assert session.session_token
    assert len(qbittorrent.requests) == 3


@pytest.mark.asyncio
async def test_persistent_server_error(client, qbittorrent):
    """Test 5xx beyond the retry budget is reported with its status."""
    qbittorrent.server_errors = 10

    with pytest.raises(ApiResponseError) as exc_info:
        await client.authenticate(CREDENTIALS)

    assert exc_info.value.status == 500
    assert qbittorrent.login_calls == 0


@pytest.mark.asyncio
async def test_apply_writes_port_and_disables_random_and_upnp(client, qbittorrent):
    """Test apply sends only the keys that differ."""
    qbittorrent.prefs["upnp"] = True
    session = await client.authenticate(CREDENTIALS)

    result = await client.apply(session, _mapping())

    assert result.written is True
    assert qbittorrent.set_calls == [{"listen_port": 51820, "upnp": False}]
    assert qbittorrent.prefs["listen_port"] == 51820


@pytest.mark.asyncio
async def test_apply_is_idempotent(client, qbittorrent):
    """Test no write when qBittorrent already has the port."""
    qbittorrent.prefs["listen_port"] = 51820
    session = await client.authenticate(CREDENTIALS)

    result = await client.apply(session, _mapping())

    assert result.written is False
    assert qbittorrent.set_calls == []


@pytest.mark.asyncio
async def test_expired_session_reauthenticates_once(client, qbittorrent):
    """Test a 403 triggers one re-login and the call is repeated."""
    session = await client.authenticate(CREDENTIALS)
    qbittorrent.expire_sessions = 1

    result = await client.apply(session, _mapping())

    assert qbittorrent.login_calls == 2
    assert result.session.session_token == "sid-2"
    assert result.session != session
    assert qbittorrent.prefs["listen_port"] == 51820


@pytest.mark.asyncio
async def test_refreshed_session_rejected(client, qbittorrent):
    """Test a second 403 after re-login is an authentication error."""
    session = await client.authenticate(CREDENTIALS)
    qbittorrent.expire_sessions = 2

    with pytest.raises(AuthError, match="refreshed session"):
        await client.get_preferences(session)


@pytest.mark.asyncio
async def test_verify_success(client, qbittorrent):
    """Test verification after a successful apply."""
    session = await client.authenticate(CREDENTIALS)
    applied = await client.apply(session, _mapping())

    result = await client.verify(applied.session, 51820)

    assert result.status == VerifyStatus.VERIFIED
    assert result.port_verified
    assert result.actual_port == 51820
    assert result.notes() == []


@pytest.mark.asyncio
async def test_verify_mismatch(client, qbittorrent):
    """Test qBittorrent ignoring the write is reported as a mismatch."""
    qbittorrent.pin_listen_port = 6881
    session = await client.authenticate(CREDENTIALS)
    applied = await client.apply(session, _mapping())

    result = await client.verify(applied.session, 51820)

    assert result.status == VerifyStatus.MISMATCH
    assert not result.port_verified
    assert result.actual_port == 6881


@pytest.mark.asyncio
async def test_verify_notes_random_port_and_upnp(client, qbittorrent):
    """Test leftover random_port/upnp settings become notes."""
    qbittorrent.prefs.update(listen_port=51820, random_port=True, upnp=True)
    session = await client.authenticate(CREDENTIALS)

    result = await client.verify(session, 51820)

    assert result.port_verified
    assert result.notes() == ["random_port still enabled", "upnp still enabled"]


@pytest.mark.asyncio
async def test_apply_binds_interface(client, qbittorrent):
    """Test a known interface is written and verified."""
    session = await client.authenticate(CREDENTIALS)

    applied = await client.apply(session, _mapping(), bind_interface="wg0")
    result = await client.verify(applied.session, 51820, bind_interface="wg0")

    assert applied.interface is not None
    assert applied.interface.value == "wg0"
    assert qbittorrent.prefs["current_network_interface"] == "wg0"
    assert qbittorrent.prefs["current_interface_name"] == "wg0"
    assert result.status == VerifyStatus.VERIFIED


@pytest.mark.asyncio
async def test_apply_unknown_interface_continues_unbound(client, qbittorrent):
    """Test a missing interface does not block the port update."""
    session = await client.authenticate(CREDENTIALS)

    applied = await client.apply(session, _mapping(), bind_interface="tun9")
    result = await client.verify(applied.session, 51820, bind_interface="tun9")

    assert applied.binding_unavailable == "tun9"
    assert qbittorrent.prefs["listen_port"] == 51820
    assert "current_network_interface" not in qbittorrent.set_calls[0]
    assert result.status == VerifyStatus.BINDING_UNAVAILABLE
    assert result.port_verified
    assert result.notes() == ["interface tun9 unavailable"]


@pytest.mark.asyncio
async def test_context_manager_closes_session(qbittorrent):
    """Test the HTTP session is closed on exit."""
    async with QbittorrentClient(qbittorrent.base_url) as qb:
        await qb.authenticate(CREDENTIALS)
        http = qb._http

    assert http is not None
    assert http.closed
