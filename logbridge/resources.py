"""Read-only resource views over session logs and screenshots."""

import json
import logging
import os
from datetime import datetime, timezone

from logbridge.enrichment import Enricher
from logbridge.errors import ResourceNotFoundError
from logbridge.log_reader import IncrementalLogReader
from logbridge.models import entry_to_dict, iso_now
from logbridge.screenshots import ScreenshotStore

logger = logging.getLogger(__name__)

SCHEME = "logbridge://"
LOG_VIEWS = ("metadata", "errors", "performance")
SCREENSHOTS_URI = f"{SCHEME}screenshots"


class LogCatalog:
    """One incremental reader per log file, addressed by file name."""

    def __init__(self, log_files: list[str], screenshots: ScreenshotStore, enricher: Enricher | None = None):
        self.screenshots = screenshots
        self._enricher = enricher or Enricher(screenshots=screenshots)
        self._readers: dict[str, IncrementalLogReader] = {}
        for path in log_files:
            self.add(path)

    def add(self, path: str, reader: IncrementalLogReader | None = None) -> IncrementalLogReader:
        name = os.path.basename(path)
        if reader is None:
            reader = IncrementalLogReader(path, enricher=self._enricher)
        self._readers[name] = reader
        return reader

    @property
    def names(self) -> list[str]:
        return list(self._readers)

    def reader(self, name: str) -> IncrementalLogReader:
        reader = self._readers.get(name)
        if reader is None:
            raise ResourceNotFoundError(f"Log file not found: {name}")
        return reader

    def default_name(self) -> str:
        if not self._readers:
            raise ResourceNotFoundError("No log files configured")
        return next(iter(self._readers))

    def refresh(self, name: str) -> IncrementalLogReader:
        """Pick up any records appended since the last scan."""
        reader = self.reader(name)
        reader.scan()
        return reader

    # -- views --------------------------------------------------------------

    def log_view(self, name: str, view: str | None = None):
        if view is not None and view not in LOG_VIEWS:
            raise ResourceNotFoundError(f"Unknown resource type: {view}")
        reader = self.refresh(name)
        entries = reader.entries
        metadata = reader.metadata.to_dict() if reader.metadata else None

        if view is None:
            return {
                "metadata": metadata,
                "entries": [entry_to_dict(e) for e in entries],
                "statistics": reader.statistics().to_dict(),
                "parseErrors": reader.parse_errors,
            }
        if view == "metadata":
            return {
                "metadata": metadata,
                "statistics": reader.statistics().to_dict(),
                "parseErrors": reader.parse_errors,
                "validationErrors": reader.validation_errors,
            }
        if view == "errors":
            return [entry_to_dict(e) for e in entries if e.level == "error" or e.type == "error"]
        return [entry_to_dict(e) for e in entries if e.type == "performance"]

    def screenshots_view(self) -> dict:
        shots = []
        for item in self.screenshots.list_screenshots():
            shots.append({
                "name": item["filename"],
                "path": item["path"],
                "size": item["size"],
                "timestamp": iso_now(datetime.fromtimestamp(item["modified"], timezone.utc)),
            })
        return {"screenshots": shots}

    # -- resource protocol --------------------------------------------------

    def list_resources(self) -> list[dict]:
        resources = []
        for name in self._readers:
            base = f"{SCHEME}logs/{name}"
            resources.append(_resource(base, f"Session log: {name}", f"Complete session log {name}"))
            resources.append(_resource(f"{base}/metadata", f"Log metadata: {name}",
                                       f"Session metadata and statistics for {name}"))
            resources.append(_resource(f"{base}/errors", f"Errors: {name}", f"All error entries from {name}"))
            resources.append(_resource(f"{base}/performance", f"Performance: {name}",
                                       f"Performance entries from {name}"))
        if os.path.isdir(self.screenshots.directory):
            resources.append(_resource(SCREENSHOTS_URI, "Screenshots", "Captured debugging screenshots"))
        return resources

    def read_resource(self, uri: str) -> dict:
        """Resolve a ``logbridge://`` URI into a JSON text content block."""
        if uri == SCREENSHOTS_URI:
            payload = self.screenshots_view()
        elif uri.startswith(f"{SCHEME}logs/"):
            parts = uri[len(f"{SCHEME}logs/"):].split("/")
            if len(parts) > 2 or not parts[0]:
                raise ResourceNotFoundError(f"Unknown resource: {uri}")
            view = parts[1] if len(parts) == 2 else None
            payload = self.log_view(parts[0], view)
        else:
            raise ResourceNotFoundError(f"Unknown resource: {uri}")

        return {
            "contents": [{
                "uri": uri,
                "mimeType": "application/json",
                "text": json.dumps(payload, indent=2, default=str),
            }]
        }


def _resource(uri: str, name: str, description: str) -> dict:
    return {"uri": uri, "name": name, "description": description, "mimeType": "application/json"}
