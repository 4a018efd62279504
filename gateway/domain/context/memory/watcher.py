from pathlib import Path
from typing import Awaitable, Callable, Optional
import asyncio

import structlog
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = structlog.get_logger(__name__)


class MemoryFileHandler(FileSystemEventHandler):
    """Forwards events touching one file name to a thread-safe callback"""

    def __init__(self, file_name: str, on_change: Callable[[], None]):
        self.file_name = file_name
        self.on_change = on_change

    def on_any_event(self, event):
        if event.is_directory:
            return

        # Editors that save via rename/replace report the target as dest_path
        names = {Path(str(event.src_path)).name}
        dest = getattr(event, "dest_path", None)
        if dest:
            names.add(Path(str(dest)).name)

        if self.file_name in names:
            logger.debug("Watcher event", event_type=event.event_type, file=self.file_name)
            self.on_change()


class MemoryFileWatcher:
    """
    Watches an agent directory and runs a debounced async callback when the
    memory document changes. Bursts of events inside the debounce window
    coalesce into one call.
    """

    def __init__(
        self,
        directory: Path,
        file_name: str,
        callback: Callable[[], Awaitable[None]],
        debounce_seconds: float = 1.0
    ):
        self.directory = directory
        self.file_name = file_name
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self):
        if self._observer is not None:
            return

        self._loop = asyncio.get_running_loop()
        handler = MemoryFileHandler(self.file_name, self._notify_threadsafe)
        observer = Observer()
        observer.schedule(handler, str(self.directory), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watcher started", directory=str(self.directory))

    def stop(self):
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def _notify_threadsafe(self):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.schedule)

    def schedule(self):
        """Restart the debounce timer; must run on the event loop thread"""
        if self._pending is not None:
            self._pending.cancel()
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._pending = self._loop.call_later(self.debounce_seconds, self._fire)

    def _fire(self):
        self._pending = None
        logger.info("Detected change, syncing", file=self.file_name)
        self._task = self._loop.create_task(self._run_callback())

    async def _run_callback(self):
        try:
            await self.callback()
        except Exception as e:
            logger.error("Auto-sync failed", file=self.file_name, error=str(e))
