"""Severity scoring, categorization and summaries for normalized entries.

Everything here is a pure function of the entry's persisted fields so that
re-enriching a record read back from disk gives the same result. The one
exception is ``has_screenshot``, which looks at the screenshot directory.
"""

import dataclasses
import hashlib
import json
import logging

from logbridge.models import LogEntry

logger = logging.getLogger(__name__)

UNCAUGHT_MARKERS = ("Uncaught", "Unhandled")
ERROR_CLASSES = (
    ("TypeError", "type_error"),
    ("ReferenceError", "reference_error"),
    ("SyntaxError", "syntax_error"),
)
SUMMARY_URL_LIMIT = 50


def _data(entry: LogEntry) -> dict:
    return entry.data if isinstance(entry.data, dict) else {}


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def status_code(entry: LogEntry) -> int | None:
    """HTTP status from data.status, falling back to context.statusCode."""
    for value in (_data(entry).get("status"), (entry.context or {}).get("statusCode")):
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value:
            return int(value)
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def is_uncaught(entry: LogEntry) -> bool:
    if entry.level != "error" and entry.type != "error":
        return False
    data = _data(entry)
    if data.get("uncaught") is True:
        return True
    message = data.get("message") if data else entry.data
    return isinstance(message, str) and any(m in message for m in UNCAUGHT_MARKERS)


def compute_severity(entry: LogEntry) -> int:
    if is_uncaught(entry):
        return 5

    severity = 1
    if entry.level == "error" or entry.type == "error":
        severity = 4
    elif entry.level == "warn":
        severity = 3
    elif entry.level == "info":
        severity = 2

    status = status_code(entry)
    if status is not None:
        if status >= 500:
            severity = max(severity, 4)
        elif status >= 400:
            severity = max(severity, 3)

    return severity


def compute_category(entry: LogEntry) -> str:
    if entry.type == "error":
        data = _data(entry)
        haystack = " ".join(
            _text(v) for v in (data.get("stack"), data.get("message"), data.get("name"),
                               (entry.context or {}).get("stackTrace"))
        )
        for marker, category in ERROR_CLASSES:
            if marker in haystack:
                return category
        return "runtime_error"

    if entry.type == "network":
        status = status_code(entry) or 0
        if status >= 500:
            return "server_error"
        if status >= 400:
            return "client_error"
        if status >= 300:
            return "redirect"
        return "network_success"

    if entry.type == "console":
        if entry.level == "error":
            return "console_error"
        if entry.level == "warn":
            return "console_warning"
        return "console_info"

    return entry.type


def truncate_url(url: str, max_length: int = SUMMARY_URL_LIMIT) -> str:
    if len(url) <= max_length:
        return url
    return url[: max_length - 3] + "..."


def compute_summary(entry: LogEntry) -> str:
    data = _data(entry)
    context = entry.context or {}

    if entry.type == "console":
        return _text(data.get("message")) or "Console message"
    if entry.type == "network":
        method = data.get("method") or context.get("method") or "UNKNOWN"
        url = truncate_url(_text(data.get("url") or context.get("url")) or "unknown URL")
        status = status_code(entry) or "?"
        return f"{method} {url} ({status})"
    if entry.type == "error":
        return _text(data.get("message")) or _text(data.get("name")) or "Runtime error"
    if entry.type == "performance":
        return f"{data.get('metric') or 'Performance'}: {_text(data.get('details'))}"
    if entry.type == "page":
        detail = data.get("url") or context.get("url") or ""
        return f"Page {data.get('event') or 'event'}: {detail}"
    if entry.type == "security":
        return f"Security state: {data.get('securityState') or 'unknown'}"
    return f"{entry.type} event"


def fingerprint(data) -> str:
    payload = json.dumps(data, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


def compute_id(entry: LogEntry) -> str:
    return f"{entry.timestamp}_{fingerprint(entry.data)}"


class Enricher:
    """Assigns id, severity, category, summary and the screenshot flag.

    ``screenshots`` is an optional ScreenshotStore used for the screenshot
    correlation. ``trigger`` is an optional ScreenshotTrigger fired on
    qualifying error entries before correlation is checked.
    """

    def __init__(self, screenshots=None, trigger=None):
        self.screenshots = screenshots
        self.trigger = trigger

    def enrich(self, candidate: LogEntry) -> LogEntry:
        if candidate.enriched:
            return candidate

        if self.trigger is not None:
            self.trigger.maybe_capture(candidate)

        return dataclasses.replace(
            candidate,
            id=compute_id(candidate),
            severity=compute_severity(candidate),
            category=compute_category(candidate),
            summary=compute_summary(candidate),
            has_screenshot=self._has_screenshot(candidate),
        )

    def _has_screenshot(self, entry: LogEntry) -> bool:
        if entry.has_screenshot:
            return True
        if entry.level != "error" or self.screenshots is None:
            return False
        try:
            return self.screenshots.has_screenshot_for(entry.timestamp)
        except OSError as e:
            logger.debug("Screenshot lookup failed for %s: %s", entry.timestamp, e)
            return False
