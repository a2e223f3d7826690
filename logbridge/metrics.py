"""Counters for one monitoring session and the periodic snapshot file."""

import json
import logging
import os
import threading
import time
from collections import Counter

from logbridge.models import iso_now

logger = logging.getLogger(__name__)


class PipelineMetrics:
    """Events in, entries out per type, and connection churn.

    Updated from the session's dispatcher and reconnect threads, read by the
    health endpoint and the snapshot job.
    """

    def __init__(self, path: str | None = None, clock=time.monotonic):
        self.path = path
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self._written = Counter()
        self.events_received = 0
        self.entries_discarded = 0
        self.disconnects = 0
        self.reconnects = 0

    def event_received(self) -> None:
        with self._lock:
            self.events_received += 1

    def entry_written(self, entry_type: str) -> None:
        with self._lock:
            self._written[entry_type] += 1

    def entry_discarded(self) -> None:
        with self._lock:
            self.entries_discarded += 1

    def connection_lost(self) -> None:
        with self._lock:
            self.disconnects += 1

    def connection_restored(self) -> None:
        with self._lock:
            self.reconnects += 1

    @property
    def entries_written(self) -> int:
        with self._lock:
            return sum(self._written.values())

    def snapshot(self) -> dict:
        with self._lock:
            by_type = dict(self._written)
            return {
                "events_received": self.events_received,
                "entries_written": sum(by_type.values()),
                "entries_by_type": by_type,
                "entries_discarded": self.entries_discarded,
                "disconnects": self.disconnects,
                "reconnects": self.reconnects,
                "uptime_seconds": round(self._clock() - self._started, 1),
                "updated": iso_now(),
            }

    def save(self, extra: dict | None = None) -> bool:
        """Replace the snapshot file. Returns False when no path is configured."""
        if not self.path:
            return False
        data = self.snapshot()
        if extra:
            data.update(extra)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, self.path)
        logger.debug("Wrote metrics snapshot to %s", self.path)
        return True
