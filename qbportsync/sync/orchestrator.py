"""Sync orchestration: resolve, obtain, apply, verify, schedule.

The orchestrator owns the qBittorrent session and the current mapping. In
one-shot mode it runs a single cycle and returns its :class:`SyncResult`; in
daemon mode it loops until shutdown, waiting on file changes, loss of the
file source, the renewal timer and the shutdown event.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from qbportsync.client.qbittorrent import ClientSession, Credentials, QbittorrentClient
from qbportsync.models import Config, DaemonState, MappingSource, Strategy
from qbportsync.monitoring.health import HealthState
from qbportsync.nat.exceptions import MappingUnsupportedError
from qbportsync.nat.negotiator import PortMappingNegotiator
from qbportsync.nat.port_mapping import PortMapping
from qbportsync.sync.report import SyncResult
from qbportsync.sync.scheduler import RefreshScheduler
from qbportsync.sync.strategy import Capabilities, Environment, StrategyResolver
from qbportsync.utils.backoff import raise_if_shutdown
from qbportsync.utils.exceptions import (
    AuthError,
    InvalidPortFileError,
    QBPSError,
    ShutdownRequested,
    VerificationMismatchError,
)
from qbportsync.watch.forwarded_port import ForwardedPortFileWatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOGIN_ATTEMPTS = 2


class SyncOrchestrator:
    """Drive sync cycles and the daemon state machine."""

    def __init__(
        self,
        client: QbittorrentClient,
        credentials: Credentials,
        strategy: Strategy = Strategy.AUTO,
        capabilities: Capabilities | None = None,
        environment: Environment | None = None,
        negotiator: PortMappingNegotiator | None = None,
        scheduler: RefreshScheduler | None = None,
        watcher: ForwardedPortFileWatcher | None = None,
        bind_interface: str | None = None,
        health: HealthState | None = None,
        resolver: StrategyResolver | None = None,
    ):
        """Initialize sync orchestrator.

        Args:
            client: qBittorrent Web API client
            credentials: Web UI credentials
            strategy: Configured strategy (``auto`` picks one per run)
            capabilities: Enabled negotiation backends
            environment: Forwarded port file location
            negotiator: Gateway negotiator for the pcp/natpmp strategies
            scheduler: Renewal timer
            watcher: Forwarded port file watcher (built from ``environment`` if omitted)
            bind_interface: Interface qBittorrent should bind to
            health: Health state to keep current
            resolver: Strategy resolver

        """
        self.client = client
        self.credentials = credentials
        self.configured = strategy
        self.capabilities = capabilities or Capabilities()
        self.environment = environment or Environment()
        self.negotiator = negotiator
        self.scheduler = scheduler or RefreshScheduler(fallback_interval=300)
        self.watcher = watcher
        self.bind_interface = bind_interface
        self.health = health or HealthState()
        self.resolver = resolver or StrategyResolver()

        self.strategy: Strategy | None = None
        self.order: list[MappingSource] = []
        self.session: ClientSession | None = None
        self.current: PortMapping | None = None
        self.state = DaemonState.IDLE
        self.last_result: SyncResult | None = None
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Config,
        credentials: Credentials,
        strategy: Strategy = Strategy.AUTO,
        health: HealthState | None = None,
    ) -> SyncOrchestrator:
        """Wire an orchestrator and its collaborators from configuration."""
        return cls(
            client=QbittorrentClient(
                config.qbittorrent.base_url,
                timeout=config.qbittorrent.request_timeout,
            ),
            credentials=credentials,
            strategy=strategy,
            capabilities=Capabilities.from_config(config.portmap),
            environment=Environment(config.protonvpn.forwarded_port_path),
            negotiator=PortMappingNegotiator.from_config(config.portmap),
            scheduler=RefreshScheduler(fallback_interval=config.portmap.refresh_secs),
            bind_interface=config.qbittorrent.bind_interface,
            health=health,
        )

    @property
    def strategy_label(self) -> str:
        """Strategy name for reports before a mapping source is known."""
        return (self.strategy or self.configured).value

    async def close(self) -> None:
        """Release the watcher, timer and HTTP session."""
        self.scheduler.cancel()
        if self.watcher is not None:
            await self.watcher.stop()
        await self.client.close()

    def _set_state(self, state: DaemonState) -> None:
        if state != self.state:
            self.logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state
        self.health.state = state

    def _resolve(self) -> Strategy:
        self.strategy = self.resolver.resolve(
            self.configured, self.capabilities, self.environment
        )
        self.order = self.resolver.negotiation_order(
            self.configured, self.strategy, self.capabilities
        )
        if self.strategy == Strategy.FILE and self.watcher is None:
            assert self.environment.forwarded_port_path is not None
            self.watcher = ForwardedPortFileWatcher(self.environment.forwarded_port_path)
        self.logger.info("Using %s strategy", self.strategy.value)
        return self.strategy

    async def _obtain(self, shutdown: asyncio.Event | None) -> PortMapping:
        """Obtain a mapping from the active source."""
        self._set_state(DaemonState.NEGOTIATING)
        if self.strategy == Strategy.FILE:
            assert self.watcher is not None
            return self.watcher.read_once()
        if self.negotiator is None:
            msg = "no port mapping negotiator configured"
            raise MappingUnsupportedError(msg)
        return await self.negotiator.negotiate(self.order, shutdown)

    async def _login(self) -> ClientSession:
        """Establish a fresh session, retrying one rejected login."""
        self.session = None
        for attempt in range(LOGIN_ATTEMPTS):
            try:
                self.session = await self.client.authenticate(self.credentials)
            except AuthError as e:
                if attempt + 1 >= LOGIN_ATTEMPTS:
                    raise
                self.logger.warning("qBittorrent login failed, retrying once: %s", e)
                continue
            return self.session
        msg = "qBittorrent login failed"  # pragma: no cover
        raise AuthError(msg)  # pragma: no cover

    async def _with_session(
        self, operation: Callable[[ClientSession], Awaitable[T]]
    ) -> T:
        """Run ``operation`` with a live session.

        Without a session, log in first (two attempts). An expired session is
        refreshed once by the client itself; if that fails the session is
        dropped and the ``AuthError`` propagates.
        """
        session = self.session or await self._login()
        try:
            return await operation(session)
        except AuthError as e:
            self.logger.warning("qBittorrent rejected the session: %s", e)
            self.session = None
            raise

    def _mapping_notes(self, mapping: PortMapping) -> list[str]:
        notes: list[str] = []
        if mapping.lease_lifetime:
            notes.append(f"ttl={int(mapping.lease_lifetime)}s")
        if mapping.source != MappingSource.FILE and mapping.port_changed_by_gateway:
            notes.append(
                f"gateway assigned port {mapping.external_port} "
                f"(requested {mapping.internal_port})"
            )
        if self.current is not None and self.current.external_port != mapping.external_port:
            notes.append(
                f"port changed from {self.current.external_port} "
                f"to {mapping.external_port}"
            )
        return notes

    async def sync(
        self, mapping: PortMapping, shutdown: asyncio.Event | None = None
    ) -> SyncResult:
        """Apply and verify ``mapping``, returning the cycle's result.

        Verification mismatches are reported in the result, not raised.
        """
        notes = self._mapping_notes(mapping)
        port = mapping.external_port
        raise_if_shutdown(shutdown)

        self._set_state(DaemonState.APPLYING)
        applied = await self._with_session(
            lambda s: self.client.apply(s, mapping, self.bind_interface)
        )
        self.session = applied.session

        self._set_state(DaemonState.VERIFYING)
        verified = await self._with_session(
            lambda s: self.client.verify(s, port, self.bind_interface)
        )
        self.session = verified.session

        for note in verified.notes():
            if note not in notes:
                notes.append(note)

        if verified.port_verified:
            self.current = mapping
            self.health.record_success(port, applied.written)
            self._set_state(DaemonState.STEADY)
        else:
            mismatch = VerificationMismatchError(port, verified.actual_port)
            notes.append(str(mismatch))
            self.health.record_failure(str(mismatch))
            self._set_state(DaemonState.DEGRADED)

        result = SyncResult(
            strategy=mapping.source.value,
            detected_port=verified.actual_port,
            applied=True,
            verified=verified.port_verified,
            note=SyncResult.join_notes(notes),
        )
        self.last_result = result
        return result

    async def run_once(self, shutdown: asyncio.Event | None = None) -> SyncResult:
        """Resolve, obtain one mapping, apply and verify it.

        Raises:
            QBPSError: Any failure of the cycle, for the caller to classify

        """
        self._resolve()
        raise_if_shutdown(shutdown)
        mapping = await self._obtain(shutdown)
        self.logger.info(
            "Obtained port %d from %s", mapping.external_port, mapping.source.value
        )
        return await self.sync(mapping, shutdown)

    # Daemon mode

    async def run_daemon(self, shutdown: asyncio.Event) -> None:
        """Run sync cycles until ``shutdown`` is set.

        Raises:
            UnsupportedEnvironmentError: If no strategy can run at startup

        """
        self._resolve()
        if self.strategy == Strategy.FILE:
            assert self.watcher is not None
            await self.watcher.start()

        self._set_state(DaemonState.IDLE)
        pending: PortMapping | None = None
        try:
            while not shutdown.is_set():
                await self._daemon_cycle(pending, shutdown)
                pending = None

                self.scheduler.arm(self.scheduler.next_delay(self.current))
                event, mapping = await self._wait_for_event(shutdown)
                if event == "shutdown":
                    break
                if event == "file":
                    pending = mapping
                elif event == "lost":
                    await self._drop_file_source()
                else:
                    self.logger.debug("Refresh timer fired")
        except ShutdownRequested:
            self.logger.debug("Sync interrupted by shutdown")
        finally:
            self.scheduler.cancel()
        self.logger.info("Shutting down")

    async def _daemon_cycle(
        self, pending: PortMapping | None, shutdown: asyncio.Event
    ) -> None:
        was_steady = self.state == DaemonState.STEADY
        try:
            if self.strategy is None:
                await self._reresolve()
            if pending is not None:
                self._set_state(DaemonState.NEGOTIATING)
            mapping = pending or await self._obtain(shutdown)
            if (
                was_steady
                and self.current is not None
                and mapping.external_port == self.current.external_port
            ):
                self.logger.debug("Port %d unchanged", mapping.external_port)
                self.current = mapping
                self._set_state(DaemonState.STEADY)
                return
            result = await self.sync(mapping, shutdown)
            self.logger.info("Sync result: %s", result.line())
        except ShutdownRequested:
            raise
        except InvalidPortFileError as e:
            if (
                self.configured == Strategy.AUTO
                and self.watcher is not None
                and not self.environment.file_readable
            ):
                self.watcher.mark_source_lost()
            self._degrade(e)
        except QBPSError as e:
            self._degrade(e)

    def _degrade(self, error: QBPSError) -> None:
        self.logger.warning("Sync cycle failed: %s", error)
        self.health.record_failure(str(error))
        self.last_result = SyncResult(strategy=self.strategy_label, error=str(error))
        self._set_state(DaemonState.DEGRADED)

    async def _wait_for_event(
        self, shutdown: asyncio.Event
    ) -> tuple[str, PortMapping | None]:
        """Wait for the next event; priority shutdown > file > lost > timer."""
        tasks: dict[str, asyncio.Task] = {
            "shutdown": asyncio.create_task(shutdown.wait()),
        }
        if self.scheduler.timer is not None:
            tasks["timer"] = self.scheduler.timer
        if self.strategy == Strategy.FILE and self.watcher is not None:
            tasks["file"] = asyncio.create_task(self.watcher.next_mapping())
            tasks["lost"] = asyncio.create_task(self.watcher.source_lost.wait())

        try:
            await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for name, task in tasks.items():
                if name != "timer" and not task.done():
                    task.cancel()

        for name in ("shutdown", "file", "lost", "timer"):
            task = tasks.get(name)
            if task is None or not task.done() or task.cancelled():
                continue
            if name == "file":
                return name, task.result()
            return name, None
        return "timer", None

    async def _drop_file_source(self) -> None:
        """Stop watching the lost file; the next cycle picks a new strategy."""
        self.logger.warning("Forwarded port file source lost")
        if self.watcher is not None:
            watcher, self.watcher = self.watcher, None
            await watcher.stop()
        self.strategy = None
        self.order = []
        self.current = None

    async def _reresolve(self) -> None:
        """Pick a strategy again after the file source was lost.

        ``auto`` downgrades to negotiation and never returns to the file.
        An explicit ``file`` strategy waits for its directory to come back.

        Raises:
            UnsupportedEnvironmentError: If nothing can run yet
        """
        if self.configured != Strategy.AUTO:
            self._resolve()
            if self.strategy == Strategy.FILE:
                assert self.watcher is not None
                try:
                    await self.watcher.start()
                except QBPSError:
                    self.strategy = None
                    raise
            return

        self.strategy = self.resolver.downgrade(self.capabilities)
        self.order = self.resolver.negotiation_order(
            Strategy.AUTO, self.strategy, self.capabilities
        )
        self.logger.warning("Switching to %s strategy", self.strategy.value)
