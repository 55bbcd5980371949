"""qBittorrent Web API client.

Applies the forwarded port to qBittorrent's preferences and reads them back
to verify. Every request carries ``Referer``/``Origin`` headers matching the
configured base URL so qBittorrent's CSRF protection accepts it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlsplit

import aiohttp

from qbportsync.nat.port_mapping import PortMapping
from qbportsync.utils.backoff import ExponentialBackoff
from qbportsync.utils.exceptions import ApiResponseError, AuthError, NetworkError

logger = logging.getLogger(__name__)

USER_AGENT = "qb-port-sync"
SESSION_COOKIE = "SID"
REQUEST_ATTEMPTS = 3


@dataclass(frozen=True)
class Credentials:
    """Web UI login credentials."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class ClientSession:
    """An authenticated Web API session (never persisted)."""

    session_token: str
    base_url: str
    established_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class InterfaceSelection:
    """A qBittorrent network interface matched by name or id."""

    name: str
    value: str


@dataclass
class ApplyResult:
    """Outcome of writing the port preferences."""

    session: ClientSession
    written: bool
    interface: InterfaceSelection | None = None
    binding_unavailable: str | None = None


class VerifyStatus(str, Enum):
    """Verification outcome."""

    VERIFIED = "verified"
    MISMATCH = "mismatch"
    BINDING_UNAVAILABLE = "binding_unavailable"


@dataclass
class VerifyResult:
    """Preferences as read back after applying."""

    session: ClientSession
    status: VerifyStatus
    expected_port: int
    actual_port: int | None
    interface: str | None = None
    random_port: bool | None = None
    upnp: bool | None = None

    @property
    def port_verified(self) -> bool:
        """True when qBittorrent reports the expected listening port."""
        return self.status != VerifyStatus.MISMATCH

    def notes(self) -> list[str]:
        """Human-readable warnings about the read-back preferences."""
        notes: list[str] = []
        if self.status == VerifyStatus.BINDING_UNAVAILABLE:
            notes.append(f"interface {self.interface} unavailable")
        if self.random_port:
            notes.append("random_port still enabled")
        if self.upnp:
            notes.append("upnp still enabled")
        return notes


def origin_from_url(url: str) -> str:
    """Return the ``scheme://host[:port]`` origin of ``url``."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def matches_interface(item: dict[str, Any], requested: str) -> bool:
    """True if a networkInterfaceList entry matches the requested name or id."""
    requested = requested.strip()
    if not requested:
        return False
    return any(
        item.get(key) == requested for key in ("name", "value", "interface", "id")
    )


class QbittorrentClient:
    """Async client for the qBittorrent Web API v2."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        backoff: ExponentialBackoff | None = None,
    ):
        """Initialize qBittorrent client.

        Args:
            base_url: Web UI base URL, e.g. ``http://127.0.0.1:8080``
            timeout: Total timeout per HTTP request in seconds
            backoff: Delay policy between transient-failure retries

        """
        if not base_url.endswith("/"):
            base_url += "/"
        self.base_url = base_url
        self.timeout = timeout
        self.backoff = backoff or ExponentialBackoff(base_delay=0.5, max_delay=4.0)
        self._credentials: Credentials | None = None
        self._http: aiohttp.ClientSession | None = None

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with every request."""
        return {
            "Referer": self.base_url,
            "Origin": origin_from_url(self.base_url),
            "User-Agent": USER_AGENT,
        }

    def _endpoint(self, path: str) -> str:
        return urljoin(self.base_url, path)

    def _ensure_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                cookie_jar=aiohttp.CookieJar(unsafe=True),
            )
        return self._http

    async def close(self) -> None:
        """Close HTTP session."""
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    async def __aenter__(self) -> QbittorrentClient:
        """Enter async context."""
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Close the HTTP session on exit."""
        await self.close()

    async def _send(
        self, method: str, path: str, **kwargs: Any
    ) -> tuple[int, str]:
        """Send one request, retrying transport failures and 5xx responses."""
        http = self._ensure_http()
        url = self._endpoint(path)
        last_error: Exception | None = None
        for attempt in range(REQUEST_ATTEMPTS):
            if attempt > 0:
                await asyncio.sleep(self.backoff.next_delay(attempt - 1))
            try:
                async with http.request(method, url, **kwargs) as response:
                    body = await response.text()
                    if response.status < 500:
                        return response.status, body
                    last_error = ApiResponseError(response.status, body)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = e
            logger.debug(
                "%s %s failed (attempt %d/%d): %s",
                method,
                path,
                attempt + 1,
                REQUEST_ATTEMPTS,
                last_error,
            )

        if isinstance(last_error, ApiResponseError):
            raise last_error
        msg = f"qBittorrent unreachable at {self.base_url}: {last_error}"
        raise NetworkError(msg) from last_error

    async def authenticate(self, credentials: Credentials) -> ClientSession:
        """Log in and return a fresh session.

        Raises:
            AuthError: If qBittorrent rejected the credentials
            NetworkError: If qBittorrent could not be reached

        """
        self._credentials = credentials
        http = self._ensure_http()
        http.cookie_jar.clear()
        status, body = await self._send(
            "POST",
            "api/v2/auth/login",
            data={"username": credentials.username, "password": credentials.password},
        )
        if status == 403:
            msg = "qBittorrent refused login (too many failed attempts, IP banned)"
            raise AuthError(msg)
        if status != 200:
            raise ApiResponseError(status, body)
        if body.strip() != "Ok.":
            msg = f"authentication failed: {body.strip() or 'empty response'}"
            raise AuthError(msg)

        token = ""
        for cookie in http.cookie_jar:
            if cookie.key == SESSION_COOKIE:
                token = cookie.value
        session = ClientSession(session_token=token, base_url=self.base_url)
        logger.info("Authenticated with qBittorrent Web API at %s", self.base_url)
        return session

    async def _call(
        self, session: ClientSession, method: str, path: str, **kwargs: Any
    ) -> tuple[ClientSession, str]:
        """Make an authenticated call, re-authenticating once on 403."""
        status, body = await self._send(method, path, **kwargs)
        if status == 403:
            if self._credentials is None:
                msg = "session expired and no credentials to re-authenticate"
                raise AuthError(msg)
            logger.info("qBittorrent session expired, re-authenticating")
            session = await self.authenticate(self._credentials)
            status, body = await self._send(method, path, **kwargs)
            if status == 403:
                msg = "qBittorrent rejected the refreshed session"
                raise AuthError(msg)
        if status != 200:
            raise ApiResponseError(status, body)
        return session, body

    async def get_preferences(
        self, session: ClientSession
    ) -> tuple[ClientSession, dict[str, Any]]:
        """Read application preferences."""
        session, body = await self._call(session, "GET", "api/v2/app/preferences")
        try:
            prefs = json.loads(body)
        except ValueError as e:
            msg = f"failed to decode qBittorrent preferences: {e}"
            raise ApiResponseError(200, msg) from e
        if not isinstance(prefs, dict):
            raise ApiResponseError(200, "preferences payload is not an object")
        return session, prefs

    async def set_preferences(
        self, session: ClientSession, payload: dict[str, Any]
    ) -> ClientSession:
        """Write application preferences."""
        session, _body = await self._call(
            session,
            "POST",
            "api/v2/app/setPreferences",
            data={"json": json.dumps(payload)},
        )
        logger.debug("Submitted qBittorrent preference update: %s", sorted(payload))
        return session

    async def list_interfaces(
        self, session: ClientSession
    ) -> tuple[ClientSession, list[dict[str, Any]]]:
        """List the network interfaces qBittorrent can bind to."""
        session, body = await self._call(
            session, "GET", "api/v2/app/networkInterfaceList"
        )
        try:
            items = json.loads(body)
        except ValueError as e:
            msg = f"failed to decode network interface list: {e}"
            raise ApiResponseError(200, msg) from e
        return session, [item for item in items if isinstance(item, dict)]

    async def resolve_interface(
        self, session: ClientSession, requested: str
    ) -> tuple[ClientSession, InterfaceSelection | None]:
        """Find the interface entry matching ``requested``."""
        try:
            session, items = await self.list_interfaces(session)
        except (ApiResponseError, NetworkError) as e:
            logger.warning("Failed to fetch qBittorrent network interfaces: %s", e)
            return session, None
        for item in items:
            if matches_interface(item, requested):
                name = str(item.get("name", requested))
                value = str(item.get("value") or item.get("id") or item.get("interface") or name)
                return session, InterfaceSelection(name=name, value=value)
        return session, None

    async def apply(
        self,
        session: ClientSession,
        mapping: PortMapping,
        bind_interface: str | None = None,
    ) -> ApplyResult:
        """Set the listening port and disable random-port and UPnP.

        Preferences that already hold the target values are not rewritten.
        """
        port = mapping.external_port
        desired: dict[str, Any] = {
            "listen_port": port,
            "random_port": False,
            "upnp": False,
        }

        selection: InterfaceSelection | None = None
        binding_unavailable: str | None = None
        requested = (bind_interface or "").strip()
        if requested:
            session, selection = await self.resolve_interface(session, requested)
            if selection is None:
                logger.warning(
                    "Requested bind interface '%s' not found on qBittorrent; "
                    "continuing without binding",
                    requested,
                )
                binding_unavailable = requested
            else:
                desired["current_network_interface"] = selection.value
                desired["current_interface_name"] = selection.name

        session, current = await self.get_preferences(session)
        changes = {k: v for k, v in desired.items() if current.get(k) != v}
        if not changes:
            logger.info("qBittorrent already listening on %d, no update needed", port)
            return ApplyResult(session, False, selection, binding_unavailable)

        session = await self.set_preferences(session, changes)
        logger.info("Applied listen port %d to qBittorrent", port)
        return ApplyResult(session, True, selection, binding_unavailable)

    async def verify(
        self,
        session: ClientSession,
        expected_port: int,
        bind_interface: str | None = None,
    ) -> VerifyResult:
        """Read preferences back and compare them with what was applied."""
        session, prefs = await self.get_preferences(session)
        raw_port = prefs.get("listen_port")
        actual = raw_port if isinstance(raw_port, int) and not isinstance(raw_port, bool) else None
        random_port = prefs.get("random_port")
        upnp = prefs.get("upnp")
        result = VerifyResult(
            session=session,
            status=VerifyStatus.VERIFIED,
            expected_port=expected_port,
            actual_port=actual,
            random_port=random_port if isinstance(random_port, bool) else None,
            upnp=upnp if isinstance(upnp, bool) else None,
        )

        if actual != expected_port:
            logger.warning(
                "qBittorrent listen port mismatch after update: expected %d, reported %s",
                expected_port,
                actual,
            )
            result.status = VerifyStatus.MISMATCH
            return result

        requested = (bind_interface or "").strip()
        if requested:
            bound = {
                prefs.get("current_network_interface"),
                prefs.get("current_interface_name"),
            }
            if requested not in bound:
                session, selection = await self.resolve_interface(session, requested)
                result.session = session
                if selection is None or selection.value not in bound:
                    logger.warning(
                        "qBittorrent is not bound to interface '%s'; proceeding unbound",
                        requested,
                    )
                    result.status = VerifyStatus.BINDING_UNAVAILABLE
                    result.interface = requested
                    return result

        logger.info("qBittorrent listen port verified at %d", expected_port)
        return result
