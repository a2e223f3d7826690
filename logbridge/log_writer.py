"""Append-only structured session log writer."""

import json
import logging
import os
import threading

from logbridge.models import LogEntry, SessionMetadata, entry_to_dict, iso_now

logger = logging.getLogger(__name__)

HEADER_LINE = "# logbridge Debug Session"
SEPARATOR = "---"
FOOTER_PREFIX = "# Session ended:"


class StructuredLogWriter:
    """Thread-safe append-only writer for one session log file.

    The file is created with a markdown header line and the SessionMetadata
    record. Each ``append`` writes one pretty-printed JSON record and fsyncs
    before returning, so the on-disk order is the call order.
    """

    def __init__(self, path: str, metadata: SessionMetadata, fsync: bool = True):
        self.path = path
        self.metadata = metadata
        self._fsync = fsync
        self._lock = threading.Lock()
        self._file = None
        self.written = 0

    def open(self) -> None:
        with self._lock:
            if self._file is not None:
                return
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            self._file = open(self.path, "w", encoding="utf-8")
            header = (
                f"{HEADER_LINE}\n"
                f"{json.dumps(self.metadata.to_dict(), indent=2)}\n"
                f"{SEPARATOR}\n"
            )
            self._write_locked(header)
        logger.info("Session log opened at %s", self.path)

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def append(self, entry: LogEntry) -> bool:
        """Write one entry. Returns False if the writer is closed."""
        record = json.dumps(entry_to_dict(entry), indent=2, default=str)
        with self._lock:
            if self._file is None:
                return False
            self._write_locked(record + "\n")
            self.written += 1
        return True

    def close(self) -> None:
        """Write the session footer, flush and close the file."""
        with self._lock:
            if self._file is None:
                return
            self._write_locked(f"\n{SEPARATOR}\n{FOOTER_PREFIX} {iso_now()}\n")
            self._file.close()
            self._file = None
        logger.info("Session log closed (%d entries written)", self.written)

    def _write_locked(self, text: str) -> None:
        self._file.write(text)
        self._file.flush()
        if self._fsync:
            os.fsync(self._file.fileno())
