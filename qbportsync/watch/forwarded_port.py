"""Forwarded port file watcher.

Observes the parent directory of the forwarded port file with watchdog so
that atomic replacements (write to temp file, rename into place) are seen as
well as in-place writes. Bursts of events are collapsed with a debounce timer
running on the asyncio loop before the file is read.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from qbportsync.models import MappingSource, Transport
from qbportsync.nat.port_mapping import PortMapping, is_valid_port
from qbportsync.utils.backoff import ExponentialBackoff
from qbportsync.utils.exceptions import InvalidPortFileError, UnsupportedEnvironmentError

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.25
RELEVANT_EVENTS = {"created", "modified", "moved", "closed"}


def parse_port(text: str) -> int:
    """Parse forwarded port file content.

    Raises:
        InvalidPortFileError: If the content is not a decimal port in 1..65535

    """
    value = text.strip()
    if not value.isdigit():
        msg = f"forwarded port file content is not a number: {value[:32]!r}"
        raise InvalidPortFileError(msg)
    port = int(value)
    if not is_valid_port(port):
        msg = f"forwarded port out of range: {port}"
        raise InvalidPortFileError(msg, {"port": port})
    return port


def mapping_from_file(port: int) -> PortMapping:
    """Build the mapping a forwarded port file describes."""
    return PortMapping(
        external_port=port,
        internal_port=port,
        transport=Transport.BOTH,
        source=MappingSource.FILE,
    )


class PortFileChangeHandler(FileSystemEventHandler):
    """Forward watchdog events about one file to the watcher's loop."""

    def __init__(self, watcher: ForwardedPortFileWatcher, loop: asyncio.AbstractEventLoop):
        """Initialize change handler.

        Args:
            watcher: Watcher notified about relevant events
            loop: Event loop the watcher runs on

        """
        super().__init__()
        self.watcher = watcher
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        """Handle any file system event (runs on the observer thread)."""
        src = Path(str(event.src_path))
        if event.is_directory:
            if event.event_type == "deleted" and src == self.watcher.directory:
                self.loop.call_soon_threadsafe(self.watcher.mark_source_lost)
            return

        paths = {src}
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.add(Path(str(dest)))
        if self.watcher.path in paths and event.event_type in RELEVANT_EVENTS:
            self.loop.call_soon_threadsafe(self.watcher.notify_change)


class ForwardedPortFileWatcher:
    """Emit a PortMapping each time the forwarded port file settles."""

    def __init__(
        self,
        path: str | Path,
        debounce: float = DEFAULT_DEBOUNCE,
        setup_attempts: int = 3,
        backoff: ExponentialBackoff | None = None,
    ):
        """Initialize forwarded port watcher.

        Args:
            path: File holding the forwarded port
            debounce: Quiet period after the last event before reading
            setup_attempts: Attempts at scheduling the directory watch
            backoff: Delay policy between setup attempts

        """
        self.path = Path(path).expanduser().absolute()
        self.directory = self.path.parent
        self.debounce = debounce
        self.setup_attempts = max(1, setup_attempts)
        self.backoff = backoff or ExponentialBackoff(base_delay=0.5, max_delay=4.0)

        self.observer: Observer | None = None
        self.source_lost = asyncio.Event()
        self.last_error: InvalidPortFileError | None = None
        self._queue: asyncio.Queue[PortMapping] = asyncio.Queue()
        self._timer: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.logger = logging.getLogger(__name__)

    @property
    def is_watching(self) -> bool:
        """True while the observer is running."""
        return self.observer is not None

    def read_once(self) -> PortMapping:
        """Read and parse the file's current content.

        Raises:
            InvalidPortFileError: If the file is unreadable or holds no valid port

        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            msg = f"cannot read forwarded port file {self.path}: {e}"
            raise InvalidPortFileError(msg) from e
        return mapping_from_file(parse_port(text))

    async def start(self) -> None:
        """Start watching the file's parent directory.

        Raises:
            UnsupportedEnvironmentError: If the directory cannot be watched

        """
        if self.is_watching:
            self.logger.warning("Forwarded port watcher already started")
            return

        self._loop = asyncio.get_running_loop()
        last_error: OSError | None = None
        for attempt in range(self.setup_attempts):
            if attempt > 0:
                await asyncio.sleep(self.backoff.next_delay(attempt - 1))
            try:
                self._start_observer(self._loop)
            except OSError as e:
                last_error = e
                self.logger.warning(
                    "Cannot watch %s (attempt %d/%d): %s",
                    self.directory,
                    attempt + 1,
                    self.setup_attempts,
                    e,
                )
                continue
            self.logger.info("Watching forwarded port file %s", self.path)
            return

        msg = f"cannot watch directory {self.directory}"
        raise UnsupportedEnvironmentError(msg, {"error": str(last_error)})

    def _start_observer(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self.directory.is_dir():
            msg = f"directory does not exist: {self.directory}"
            raise FileNotFoundError(msg)
        observer = Observer()
        observer.schedule(
            PortFileChangeHandler(self, loop),
            str(self.directory),
            recursive=False,
        )
        observer.start()
        self.observer = observer

    async def stop(self) -> None:
        """Stop watching."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.observer is None:
            return
        observer, self.observer = self.observer, None
        observer.stop()
        await asyncio.to_thread(observer.join, 5.0)
        self.logger.info("Stopped watching %s", self.path)

    def notify_change(self) -> None:
        """Restart the debounce timer (must run on the watcher's loop)."""
        loop = self._loop or asyncio.get_running_loop()
        self._loop = loop
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce, self._settled)

    def mark_source_lost(self) -> None:
        """Record that the forwarded port file can no longer be used."""
        if not self.source_lost.is_set():
            self.logger.warning("Forwarded port source %s lost", self.path)
            self.source_lost.set()

    def check_source(self) -> bool:
        """Return whether the directory still exists, flagging loss if not."""
        if self.directory.is_dir():
            return True
        self.mark_source_lost()
        return False

    def _settled(self) -> None:
        self._timer = None
        if not self.check_source():
            return
        try:
            mapping = self.read_once()
        except InvalidPortFileError as e:
            self.last_error = e
            self.logger.warning("Ignoring forwarded port file update: %s", e)
            return
        self.last_error = None
        self.logger.debug("Forwarded port file settled on %d", mapping.external_port)
        self._queue.put_nowait(mapping)

    async def next_mapping(self) -> PortMapping:
        """Wait for the next mapping read from the file."""
        return await self._queue.get()
