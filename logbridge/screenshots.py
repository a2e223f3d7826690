"""Screenshot capture, the on-disk screenshot store, and entry correlation.

Correlation between a log entry and a screenshot is a filename heuristic: the
entry timestamp with ``:`` and ``.`` replaced by ``-`` is cut to 16 characters
(``YYYY-MM-DDTHH-MM``) and any screenshot whose name contains that prefix
counts as a match. It is approximate, not a foreign key.
"""

import base64
import logging
import os
import re
import threading

from logbridge.errors import LogBridgeError
from logbridge.models import LogEntry, iso_now

logger = logging.getLogger(__name__)

SCREENSHOT_EXTENSIONS = (".png", ".jpg", ".jpeg")
CORRELATION_PREFIX_LEN = 16
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def timestamp_token(timestamp: str) -> str:
    return timestamp.replace(":", "-").replace(".", "-")


def screenshot_filename(context: str = "", timestamp: str | None = None, prefix: str = "error") -> str:
    token = timestamp_token(timestamp or iso_now())
    context = _UNSAFE_CHARS.sub("-", context or "").strip("-")
    if context:
        return f"{prefix}-{context}-{token}.png"
    return f"screenshot-{token}.png"


class ScreenshotStore:
    """Directory of captured screenshots."""

    def __init__(self, directory: str):
        self.directory = directory

    def ensure_dir(self) -> None:
        os.makedirs(self.directory, exist_ok=True)

    def save(self, filename: str, image: bytes) -> str:
        self.ensure_dir()
        path = os.path.join(self.directory, filename)
        with open(path, "wb") as f:
            f.write(image)
        return path

    def list_files(self) -> list[str]:
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return []
        return sorted(n for n in names if n.lower().endswith(SCREENSHOT_EXTENSIONS))

    def list_screenshots(self) -> list[dict]:
        out = []
        for name in self.list_files():
            path = os.path.join(self.directory, name)
            try:
                st = os.stat(path)
            except OSError:
                continue
            out.append({"filename": name, "path": path, "size": st.st_size, "modified": st.st_mtime})
        return out

    def has_screenshot_for(self, timestamp: str) -> bool:
        if not timestamp:
            return False
        prefix = timestamp_token(timestamp)[:CORRELATION_PREFIX_LEN]
        return any(prefix in name for name in self.list_files())


def capture_screenshot(session, store: ScreenshotStore, context: str = "",
                       timestamp: str | None = None, timeout: float | None = None,
                       prefix: str = "error") -> str:
    """Capture the current frame over the session and write it to the store."""
    result = session.send(
        "Page.captureScreenshot",
        {"format": "png", "captureBeyondViewport": False},
        timeout=timeout,
    )
    data = result.get("data") if isinstance(result, dict) else None
    if not data:
        raise LogBridgeError("captureScreenshot returned no image data")
    path = store.save(screenshot_filename(context, timestamp, prefix), base64.b64decode(data))
    logger.info("Screenshot saved: %s", path)
    return path


def context_for_entry(entry: LogEntry) -> str:
    if entry.type == "console":
        return "console-error"
    if entry.source == "network_failure":
        return "network-error"
    return "js-exception"


class ScreenshotTrigger:
    """Captures a screenshot for qualifying error entries.

    Capture failures are logged and swallowed; they never block the entry
    from being written.
    """

    def __init__(self, session, store: ScreenshotStore, enabled: bool = True, timeout: float = 5.0):
        self.session = session
        self.store = store
        self.enabled = enabled
        self.timeout = timeout
        self.captured = 0
        self.failed = 0
        self._lock = threading.Lock()

    @staticmethod
    def qualifies(entry: LogEntry) -> bool:
        return entry.level == "error" and entry.type in ("console", "error")

    def maybe_capture(self, entry: LogEntry) -> str | None:
        if not self.enabled or not self.qualifies(entry):
            return None
        return self.capture(context_for_entry(entry), timestamp=entry.timestamp)

    def capture(self, context: str = "", timestamp: str | None = None) -> str | None:
        try:
            path = capture_screenshot(self.session, self.store, context, timestamp, self.timeout)
        except (LogBridgeError, OSError, ValueError) as e:
            with self._lock:
                self.failed += 1
            logger.warning("Failed to capture %s screenshot: %s", context or "page", e)
            return None
        with self._lock:
            self.captured += 1
        return path
