"""Command line entry point for qb-port-sync."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import click
from rich.console import Console

from qbportsync import __version__
from qbportsync.cli.verbosity import VerbosityManager
from qbportsync.client.qbittorrent import Credentials
from qbportsync.config.config import ConfigManager
from qbportsync.models import Config, Strategy
from qbportsync.monitoring.health import HealthServer, HealthState
from qbportsync.sync.orchestrator import SyncOrchestrator
from qbportsync.sync.report import SyncResult
from qbportsync.utils.exceptions import (
    ExitCode,
    QBPSError,
    ShutdownRequested,
    classify_error,
)
from qbportsync.utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

JSON_REQUIRES_ONCE_MSG = "--json is only supported with --once mode"

err_console = Console(stderr=True)


def _install_signal_handlers(shutdown: asyncio.Event) -> list[signal.Signals]:
    """Set ``shutdown`` on SIGINT/SIGTERM; return the signals handled."""
    loop = asyncio.get_running_loop()

    def _request_shutdown(signum: signal.Signals) -> None:
        logger.info("Received %s, shutting down", signum.name)
        shutdown.set()

    installed = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, _request_shutdown, signum)
            installed.append(signum)
    return installed


async def run_sync(
    config: Config,
    credentials: Credentials,
    strategy: Strategy,
    once: bool,
) -> tuple[ExitCode, SyncResult | None]:
    """Run one-shot or daemon mode until done or shut down."""
    shutdown = asyncio.Event()
    installed = _install_signal_handlers(shutdown)
    health = HealthState()
    orchestrator = SyncOrchestrator.from_config(config, credentials, strategy, health)

    server: HealthServer | None = None
    try:
        if once:
            result = await orchestrator.run_once(shutdown)
            if not result.verified:
                logger.warning("Listen port verification failed: %s", result.note)
            return ExitCode.SUCCESS, result

        if config.health.enabled:
            server = HealthServer(health, config.health.host, config.health.port)
            await server.start()
        await orchestrator.run_daemon(shutdown)
        return ExitCode.SUCCESS, None
    except ShutdownRequested:
        logger.info("Interrupted before the sync completed")
        return ExitCode.SUCCESS, SyncResult(
            strategy=orchestrator.strategy_label, note="interrupted"
        )
    except QBPSError as e:
        logger.error("%s", e)
        return classify_error(e), SyncResult(
            strategy=orchestrator.strategy_label, error=str(e)
        )
    finally:
        if server is not None:
            await server.stop()
        await orchestrator.close()
        loop = asyncio.get_running_loop()
        for signum in installed:
            loop.remove_signal_handler(signum)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file path",
)
@click.option("--once", is_flag=True, help="Run a single sync cycle and exit")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in Strategy]),
    default=Strategy.AUTO.value,
    show_default=True,
    help="Port source: forwarded port file, PCP, NAT-PMP or auto",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Print a JSON report line (requires --once)",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug)",
)
@click.version_option(__version__, prog_name="qb-port-sync")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    once: bool,
    strategy: str,
    json_output: bool,
    verbose: int,
) -> None:
    """Keep qBittorrent's listening port in sync with a forwarded port."""
    verbosity = VerbosityManager(verbose)
    code, report = _main(config_path, once, Strategy(strategy), json_output, verbosity)
    if json_output and report is not None:
        click.echo(report.line())
    ctx.exit(int(code))


def _main(
    config_path: Path | None,
    once: bool,
    strategy: Strategy,
    json_output: bool,
    verbosity: VerbosityManager,
) -> tuple[ExitCode, SyncResult | None]:
    if json_output and not once:
        err_console.print(f"Error: {JSON_REQUIRES_ONCE_MSG}", style="red", markup=False)
        return ExitCode.CONFIG, SyncResult(
            strategy=strategy.value,
            note="json mode requires --once",
            error=JSON_REQUIRES_ONCE_MSG,
        )

    try:
        manager = ConfigManager(config_path)
        setup_logging(manager.config.logging, verbosity.get_logging_level())
        credentials = Credentials(
            username=manager.config.qbittorrent.username,
            password=manager.qbittorrent_password(),
        )
    except QBPSError as e:
        err_console.print(f"Error: {e}", style="red", markup=False)
        return classify_error(e), SyncResult(strategy=strategy.value, error=str(e))

    return asyncio.run(run_sync(manager.config, credentials, strategy, once))


if __name__ == "__main__":
    main()
