"""Health state and the optional /healthz and /metrics endpoint."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from aiohttp import web

from qbportsync.models import DaemonState

logger = logging.getLogger(__name__)

METRICS_CONTENT_TYPE = "text/plain"


@dataclass
class HealthState:
    """Observable state of the sync loop."""

    healthy: bool = False
    state: DaemonState = DaemonState.IDLE
    current_port: int | None = None
    last_success: float | None = None
    updates_total: int = 0
    last_error: str | None = None

    def record_success(self, port: int, applied: bool) -> None:
        """Record a verified cycle."""
        self.healthy = True
        self.current_port = port
        self.last_success = time.time()
        self.last_error = None
        if applied:
            self.updates_total += 1

    def record_failure(self, error: str) -> None:
        """Record a failed or unverified cycle."""
        self.healthy = False
        self.last_error = error

    def to_prometheus(self) -> str:
        """Render metrics in the Prometheus text exposition format."""
        metrics = [
            (
                "qb_port_sync_port_updates_total",
                "counter",
                "Number of successful qBittorrent port updates",
                self.updates_total,
            ),
            (
                "qb_port_sync_current_port",
                "gauge",
                "Port currently applied to qBittorrent",
                self.current_port or 0,
            ),
            (
                "qb_port_sync_last_update_timestamp_seconds",
                "gauge",
                "Unix time of the last successful sync",
                int(self.last_success or 0),
            ),
        ]
        lines = []
        for name, metric_type, description, value in metrics:
            lines.append(f"# HELP {name} {description}")
            lines.append(f"# TYPE {name} {metric_type}")
            lines.append(f"{name} {value}")
        return "\n".join(lines) + "\n"


class HealthServer:
    """aiohttp server exposing :class:`HealthState`."""

    def __init__(self, state: HealthState, host: str = "127.0.0.1", port: int = 9184):
        """Initialize health server.

        Args:
            state: Health state to expose
            host: Bind address
            port: Bind port (0 picks a free one)

        """
        self.state = state
        self.host = host
        self.port = port
        self.app = web.Application()
        self.app.router.add_get("/healthz", self._handle_healthz)
        self.app.router.add_get("/metrics", self._handle_metrics)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    async def _handle_healthz(self, _request: web.Request) -> web.Response:
        if self.state.healthy:
            return web.Response(text="OK")
        return web.Response(status=503, text="Unhealthy")

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        return web.Response(
            text=self.state.to_prometheus(),
            content_type=METRICS_CONTENT_TYPE,
        )

    @property
    def bound_port(self) -> int | None:
        """Port actually listened on, once started."""
        if self.runner is None:
            return None
        for address in self.runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    async def start(self) -> None:
        """Start serving."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()
        logger.info("Health endpoint listening on http://%s:%s", self.host, self.bound_port)

    async def stop(self) -> None:
        """Stop serving."""
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.info("Health endpoint stopped")
