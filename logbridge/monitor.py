"""Monitoring pipeline: protocol events in, enriched entries on disk."""

import logging
import threading
import time

from logbridge.config import Config
from logbridge.enrichment import Enricher
from logbridge.errors import LogBridgeError
from logbridge.log_writer import StructuredLogWriter
from logbridge.metrics import PipelineMetrics
from logbridge.models import SessionMetadata, iso_now
from logbridge.normalizer import EventNormalizer
from logbridge.screenshots import ScreenshotStore, ScreenshotTrigger
from logbridge.session import ProtocolSession

logger = logging.getLogger(__name__)

BODY_FETCH_ATTEMPTS = 3
BODY_FETCH_DELAY = 0.1
BODY_FETCH_TIMEOUT = 2.0


class MonitorPipeline:
    """Owns the session, normalizer, enricher and writer for one browser session.

    Events are handled on the session's dispatcher thread, one at a time, so
    entries reach the file in the order the browser emitted them.
    """

    def __init__(self, config: Config, session: ProtocolSession | None = None, clock=None):
        self.config = config
        self.session = session or ProtocolSession(
            host=config.cdp_host,
            port=config.cdp_port,
            ws_url=config.ws_url,
            command_timeout=config.command_timeout,
            network_history=config.network_history,
        )
        self.metrics = PipelineMetrics(config.metrics_file)
        self.screenshots = ScreenshotStore(config.screenshot_dir)
        self.trigger = ScreenshotTrigger(self.session, self.screenshots, enabled=config.screenshot_on_error)
        self.enricher = Enricher(screenshots=self.screenshots, trigger=self.trigger)
        self.normalizer = EventNormalizer(
            verbosity=config.verbosity,
            clock=clock,
            body_fetcher=self._fetch_body,
            capture_response_bodies=config.capture_response_bodies,
        )
        self.metadata = SessionMetadata(session_start=iso_now(), log_level=config.verbosity)
        self.writer = StructuredLogWriter(config.log_file, self.metadata)

        self._unsubscribe = None
        self._running = False
        self._reconnect_thread: threading.Thread | None = None
        self.session.on_disconnect(self._on_disconnect)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self.screenshots.ensure_dir()
        self.writer.open()
        self._unsubscribe = self.session.subscribe(self.handle_event)
        self.session.connect()
        enabled = self.session.enable(*self.config.domains)
        logger.info("Monitoring domains: %s", ", ".join(enabled))
        self._running = True

        if self.config.start_url:
            try:
                self.session.send("Page.navigate", {"url": self.config.start_url})
            except LogBridgeError as e:
                logger.warning("Could not open start URL %s: %s", self.config.start_url, e)

    def stop(self) -> None:
        """Close the session (draining queued events), then close the log file."""
        self._running = False
        self.session.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._reconnect_thread is not None:
            self._reconnect_thread.join(timeout=5)
        self.writer.close()
        logger.info("Monitor stopped: %d entries written, %d discarded",
                    self.metrics.entries_written, self.metrics.entries_discarded)

    # -- event path ---------------------------------------------------------

    def handle_event(self, method: str, params: dict) -> None:
        self.metrics.event_received()
        entry = self.normalizer.on_raw_event(method, params)
        if entry is None:
            return

        if (self.config.screenshot_on_load and entry.type == "page"
                and isinstance(entry.data, dict) and entry.data.get("event") == "page_loaded"):
            self.trigger.capture("page-loaded", timestamp=entry.timestamp)

        enriched = self.enricher.enrich(entry)
        if self.writer.append(enriched):
            self.metrics.entry_written(enriched.type)
        else:
            self.metrics.entry_discarded()

    def _fetch_body(self, request_id: str) -> str | None:
        last_error = None
        for attempt in range(BODY_FETCH_ATTEMPTS):
            if attempt:
                time.sleep(BODY_FETCH_DELAY)
            try:
                result = self.session.send(
                    "Network.getResponseBody", {"requestId": request_id}, timeout=BODY_FETCH_TIMEOUT
                )
            except LogBridgeError as e:
                last_error = e
                continue
            if result.get("base64Encoded"):
                return None
            return result.get("body")
        logger.debug("No response body for %s: %s", request_id, last_error)
        return None

    # -- connection loss ----------------------------------------------------

    def _on_disconnect(self, error) -> None:
        self.metrics.connection_lost()
        if not self._running:
            return
        self._reconnect_thread = threading.Thread(target=self._reconnect, name="cdp-reconnect", daemon=True)
        self._reconnect_thread.start()

    def _reconnect(self) -> None:
        try:
            self.session.reconnect(self.config.reconnect_attempts, self.config.reconnect_delay)
            self.metrics.connection_restored()
        except LogBridgeError as e:
            logger.error("Giving up on browser connection: %s", e)

    def stats(self) -> dict:
        snapshot = self.metrics.snapshot()
        snapshot["normalizer"] = self.normalizer.stats()
        snapshot["screenshots"] = {"captured": self.trigger.captured, "failed": self.trigger.failed}
        snapshot["connected"] = self.session.connected
        return snapshot

    def save_metrics(self) -> None:
        """Write the counter snapshot to ``metrics_file`` (scheduled job)."""
        try:
            self.metrics.save(extra={"normalizer": self.normalizer.stats()})
        except OSError as e:
            logger.warning("Failed to save metrics snapshot: %s", e)
