"""Watchdog-driven incremental rescans of a session log file."""

import logging
import os
import threading

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from logbridge.log_reader import IncrementalLogReader

logger = logging.getLogger(__name__)


class LogTailer(FileSystemEventHandler):
    """Rescans the reader when the watched file changes.

    Bursts of modify events are coalesced: the first event arms a timer and
    later events inside the debounce window ride along with it. ``on_entries``
    is called with the new entries after each non-empty rescan.
    """

    def __init__(self, reader: IncrementalLogReader, on_entries=None, debounce: float = 0.25):
        super().__init__()
        self.reader = reader
        self._path = os.path.abspath(reader.path)
        self._on_entries = on_entries
        self._debounce = debounce
        self._timer: threading.Timer | None = None
        self._timer_lock = threading.Lock()
        self._observer = None
        self.rescans = 0

    def _matches(self, event) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and os.path.abspath(p) == self._path for p in paths)

    def on_created(self, event):
        if self._matches(event):
            self._schedule()

    def on_modified(self, event):
        if self._matches(event):
            self._schedule()

    def on_moved(self, event):
        if self._matches(event):
            self._schedule()

    def _schedule(self):
        if self._debounce <= 0:
            self.rescan()
            return
        with self._timer_lock:
            if self._timer is not None:
                return
            self._timer = threading.Timer(self._debounce, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self):
        with self._timer_lock:
            self._timer = None
        self.rescan()

    def rescan(self):
        """Scan for new entries now. Returns the new entries."""
        new_entries = self.reader.scan()
        self.rescans += 1
        if new_entries and self._on_entries is not None:
            try:
                self._on_entries(new_entries)
            except Exception:
                logger.exception("Tail callback failed")
        return new_entries

    def start(self):
        """Read existing content, then watch the file's directory."""
        directory = os.path.dirname(self._path)
        os.makedirs(directory, exist_ok=True)
        self.rescan()
        self._observer = Observer()
        self._observer.schedule(self, directory, recursive=False)
        self._observer.start()
        logger.info("Tailing %s", self._path)

    def stop(self):
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        logger.info("Stopped tailing %s (%d rescans)", self._path, self.rescans)
