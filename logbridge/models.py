"""Normalized log entry model and session metadata record."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

ENTRY_TYPES = ("console", "network", "error", "performance", "page", "security", "runtime")
ENTRY_LEVELS = ("debug", "info", "warn", "error")
REQUIRED_FIELDS = ("timestamp", "type", "level", "source")
SCHEMA_VERSION = "1.0"


def iso_now(now: datetime | None = None) -> str:
    """ISO 8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed). Returns None if malformed."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class LogEntry:
    timestamp: str           # ISO 8601
    type: str                # console, network, error, performance, page, security, runtime
    level: str               # debug, info, warn, error
    source: str              # e.g. "browser_console", "app.js:12"
    data: Any = None
    context: dict[str, Any] = field(default_factory=dict)

    # Filled in once by the enrichment engine.
    id: str | None = None
    severity: int | None = None
    category: str | None = None
    summary: str | None = None
    has_screenshot: bool = False

    @property
    def enriched(self) -> bool:
        return self.id is not None


def entry_to_dict(entry: LogEntry) -> dict[str, Any]:
    """Convert a LogEntry to its on-disk/wire shape, dropping empty optionals."""
    out: dict[str, Any] = {
        "timestamp": entry.timestamp,
        "type": entry.type,
        "level": entry.level,
        "source": entry.source,
        "data": entry.data,
    }
    context = {k: v for k, v in (entry.context or {}).items() if v is not None}
    if context:
        out["context"] = context
    if entry.enriched:
        out["id"] = entry.id
        out["severity"] = entry.severity
        out["category"] = entry.category
        out["summary"] = entry.summary
        out["hasScreenshot"] = entry.has_screenshot
    return out


def entry_from_dict(d: dict[str, Any]) -> LogEntry:
    """Build a bare (unenriched) LogEntry from a decoded record.

    Enriched fields in the record are ignored, except ``hasScreenshot`` which
    is carried over since the correlation may no longer be observable.
    """
    context = d.get("context")
    return LogEntry(
        timestamp=d["timestamp"],
        type=d["type"],
        level=d["level"],
        source=d["source"],
        data=d.get("data"),
        context=dict(context) if isinstance(context, dict) else {},
        has_screenshot=d.get("hasScreenshot") is True,
    )


@dataclass(frozen=True)
class SessionMetadata:
    session_start: str
    log_level: str
    schema_version: str = SCHEMA_VERSION
    format: str = "structured_json_logs"
    description: str = "Browser debugging events captured over the DevTools protocol"
    filtering: dict[str, str] = field(default_factory=lambda: {
        "minimal": "Only errors, warnings, and failed network requests",
        "standard": "Essential debugging info without verbose metadata",
        "verbose": "Full details including headers, bodies, and stack traces",
    })
    log_structure: dict[str, str] = field(default_factory=lambda: {
        "timestamp": "ISO 8601 timestamp",
        "type": "Event category (" + ", ".join(ENTRY_TYPES) + ")",
        "level": "Log level (" + ", ".join(ENTRY_LEVELS) + ")",
        "source": "Event source/origin",
        "data": "Event payload from the DevTools protocol",
        "context": "Optional url, method, statusCode, stackTrace",
    })

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_start": self.session_start,
            "schema_version": self.schema_version,
            "format": self.format,
            "description": self.description,
            "log_level": self.log_level,
            "filtering": dict(self.filtering),
            "log_structure": dict(self.log_structure),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SessionMetadata":
        kwargs = {
            "session_start": d["session_start"],
            "log_level": d.get("log_level", "standard"),
            "schema_version": d.get("schema_version", SCHEMA_VERSION),
        }
        for key in ("format", "description", "filtering", "log_structure"):
            if key in d:
                kwargs[key] = d[key]
        return cls(**kwargs)


def is_metadata_record(d: Any) -> bool:
    return isinstance(d, dict) and "session_start" in d and "type" not in d
