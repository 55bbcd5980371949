"""Pytest configuration and shared fixtures for qb-port-sync tests."""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from typing import Any, Callable

import pytest
import pytest_asyncio
from aiohttp import web


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("unit", "marks tests as unit tests"),
        ("nat", "marks tests as PCP/NAT-PMP tests"),
        ("client", "marks tests as qBittorrent client tests"),
        ("watch", "marks tests as forwarded port watcher tests"),
        ("sync", "marks tests as orchestration tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
        ("monitoring", "marks tests as health/metrics tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    """Keep the developer's environment out of config and password lookups."""
    for name in (
        "QB_PORT_SYNC_QB_PASSWORD",
        "QB_PORT_SYNC_QB_BASE_URL",
        "QB_PORT_SYNC_FORWARDED_PORT_PATH",
        "QB_PORT_SYNC_PROTOCOL",
        "QB_PORT_SYNC_INTERNAL_PORT",
        "QB_PORT_SYNC_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Fake qBittorrent Web API
# ---------------------------------------------------------------------------


class FakeQbittorrent:
    """In-process qBittorrent Web API v2 double."""

    def __init__(self, username: str = "admin", password: str = "secret"):
        self.username = username
        self.password = password
        self.prefs: dict[str, Any] = {
            "listen_port": 6881,
            "random_port": False,
            "upnp": False,
            "current_network_interface": "",
            "current_interface_name": "",
        }
        self.interfaces: list[dict[str, str]] = [
            {"name": "lo", "value": "lo"},
            {"name": "wg0", "value": "wg0"},
        ]
        self.sessions: set[str] = set()
        self.login_calls = 0
        self.set_calls: list[dict[str, Any]] = []
        self.requests: list[tuple[str, str, dict[str, str]]] = []
        self.reject_logins = False
        self.expire_sessions = 0  # authenticated calls to answer with 403
        self.server_errors = 0  # requests to answer with 500
        self.pin_listen_port: int | None = None  # ignore listen_port writes
        self.base_url = ""

        self.app = web.Application()
        self.app.router.add_post("/api/v2/auth/login", self._login)
        self.app.router.add_get("/api/v2/app/preferences", self._preferences)
        self.app.router.add_post("/api/v2/app/setPreferences", self._set_preferences)
        self.app.router.add_get(
            "/api/v2/app/networkInterfaceList", self._interfaces
        )
        self.runner: web.AppRunner | None = None

    async def start(self) -> None:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "127.0.0.1", 0)
        await site.start()
        port = self.runner.addresses[0][1]
        self.base_url = f"http://127.0.0.1:{port}/"

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()

    def _record(self, request: web.Request) -> web.Response | None:
        self.requests.append((request.method, request.path, dict(request.headers)))
        if self.server_errors > 0:
            self.server_errors -= 1
            return web.Response(status=500, text="Internal Server Error")
        return None

    def _authorized(self, request: web.Request) -> bool:
        if request.cookies.get("SID") not in self.sessions:
            return False
        if self.expire_sessions > 0:
            self.expire_sessions -= 1
            self.sessions.clear()
            return False
        return True

    async def _login(self, request: web.Request) -> web.Response:
        failure = self._record(request)
        if failure is not None:
            return failure
        self.login_calls += 1
        form = await request.post()
        if (
            self.reject_logins
            or form.get("username") != self.username
            or form.get("password") != self.password
        ):
            return web.Response(text="Fails.")
        sid = f"sid-{self.login_calls}"
        self.sessions.add(sid)
        response = web.Response(text="Ok.")
        response.set_cookie("SID", sid)
        return response

    async def _preferences(self, request: web.Request) -> web.Response:
        failure = self._record(request)
        if failure is not None:
            return failure
        if not self._authorized(request):
            return web.Response(status=403, text="Forbidden")
        return web.json_response(self.prefs)

    async def _set_preferences(self, request: web.Request) -> web.Response:
        failure = self._record(request)
        if failure is not None:
            return failure
        if not self._authorized(request):
            return web.Response(status=403, text="Forbidden")
        form = await request.post()
        payload = json.loads(str(form["json"]))
        self.set_calls.append(payload)
        if self.pin_listen_port is not None:
            payload["listen_port"] = self.pin_listen_port
        self.prefs.update(payload)
        return web.Response(text="")

    async def _interfaces(self, request: web.Request) -> web.Response:
        failure = self._record(request)
        if failure is not None:
            return failure
        if not self._authorized(request):
            return web.Response(status=403, text="Forbidden")
        return web.json_response(self.interfaces)


@pytest_asyncio.fixture
async def qbittorrent():
    """Running fake qBittorrent Web UI."""
    fake = FakeQbittorrent()
    await fake.start()
    yield fake
    await fake.stop()


# ---------------------------------------------------------------------------
# Fake PCP / NAT-PMP gateway
# ---------------------------------------------------------------------------


def natpmp_mapping_reply(
    request: bytes,
    external_port: int | None = None,
    lifetime: int | None = None,
    result: int = 0,
) -> bytes:
    """Build a NAT-PMP mapping response for ``request``."""
    _version, opcode, _reserved, internal, suggested, requested = struct.unpack(
        "!BBHHHI", request[:12]
    )
    return struct.pack(
        "!BBHIHHI",
        0,
        opcode + 128,
        result,
        1000,
        internal,
        external_port if external_port is not None else suggested,
        lifetime if lifetime is not None else requested,
    )


def pcp_map_reply(
    request: bytes,
    external_port: int | None = None,
    lifetime: int | None = None,
    result: int = 0,
) -> bytes:
    """Build a PCP MAP response echoing ``request``'s mapping fields."""
    requested_lifetime = struct.unpack("!I", request[4:8])[0]
    nonce, protocol, internal, suggested, _addr = struct.unpack(
        "!12sB3xHH16s", request[24:60]
    )
    header = struct.pack(
        "!BBBBII12x",
        2,
        0x80 | 1,
        0,
        result,
        lifetime if lifetime is not None else requested_lifetime,
        1000,
    )
    payload = struct.pack(
        "!12sB3xHH16s",
        nonce,
        protocol,
        internal,
        external_port if external_port is not None else suggested,
        bytes(10) + b"\xff\xff" + bytes([203, 0, 113, 7]),
    )
    return header + payload


def natpmp_rejects_pcp(request: bytes) -> bytes:
    """What a NAT-PMP-only gateway answers to a PCP request."""
    return struct.pack("!BBH", 0, request[1] | 0x80, 1) + bytes(4)


class _GatewayProtocol(asyncio.DatagramProtocol):
    def __init__(self, gateway: FakeGateway):
        self.gateway = gateway
        self.transport: asyncio.DatagramTransport | None = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.gateway.received.append(data)
        reply = self.gateway.handler(data)
        if reply is not None and self.transport is not None:
            self.transport.sendto(reply, addr)


class FakeGateway:
    """UDP gateway double; ``handler`` maps a request to a reply (None = drop)."""

    def __init__(self, handler: Callable[[bytes], bytes | None]):
        self.handler = handler
        self.received: list[bytes] = []
        self.transport: asyncio.DatagramTransport | None = None
        self.port = 0

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: _GatewayProtocol(self),
            local_addr=("127.0.0.1", 0),
        )
        self.port = self.transport.get_extra_info("sockname")[1]

    def stop(self) -> None:
        if self.transport is not None:
            self.transport.close()


@pytest_asyncio.fixture
async def gateway_factory():
    """Start fake gateways with a given request handler."""
    started: list[FakeGateway] = []

    async def _start(handler: Callable[[bytes], bytes | None]) -> FakeGateway:
        gateway = FakeGateway(handler)
        await gateway.start()
        started.append(gateway)
        return gateway

    yield _start
    for gateway in started:
        gateway.stop()


@pytest.fixture
def reply_builders():
    """Wire-format reply helpers for the fake gateway."""
    return {
        "natpmp": natpmp_mapping_reply,
        "pcp": pcp_map_reply,
        "natpmp_rejects_pcp": natpmp_rejects_pcp,
    }
