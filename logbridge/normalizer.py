"""Maps raw DevTools protocol events onto the LogEntry shape."""

import json
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone

from logbridge.models import REQUIRED_FIELDS, LogEntry, iso_now
from logbridge.verbosity import VerbosityFilter, essential_headers, header_value, truncate_body

logger = logging.getLogger(__name__)

MAX_PENDING_REQUESTS = 1000

CONSOLE_LEVELS = {
    "error": "error",
    "assert": "error",
    "warning": "warn",
    "warn": "warn",
    "debug": "debug",
    "verbose": "debug",
}

PAGE_EVENTS = {
    "Page.loadEventFired": "page_loaded",
    "Page.domContentEventFired": "dom_ready",
    "Page.frameNavigated": "navigation",
    "DOM.documentUpdated": "dom_updated",
}

RUNTIME_LIFECYCLE = (
    "Runtime.executionContextCreated",
    "Runtime.executionContextDestroyed",
    "Runtime.executionContextsCleared",
)


def console_level(kind) -> str:
    return CONSOLE_LEVELS.get(str(kind or "").lower(), "info")


def format_remote_object(arg) -> str:
    if not isinstance(arg, dict):
        return str(arg)
    if "value" in arg:
        value = arg["value"]
        return value if isinstance(value, str) else json.dumps(value, default=str)
    if arg.get("unserializableValue"):
        return str(arg["unserializableValue"])
    if arg.get("description"):
        return str(arg["description"])
    return f"[{arg.get('type', 'unknown')}]"


def frame_location(stack_trace) -> tuple[str | None, str | None]:
    """``file:line`` and the full url of the top stack frame, if any."""
    if not isinstance(stack_trace, dict):
        return None, None
    frames = stack_trace.get("callFrames") or []
    if not frames or not isinstance(frames[0], dict):
        return None, None
    frame = frames[0]
    url = frame.get("url") or ""
    file_name = url.rsplit("/", 1)[-1] if url else "unknown"
    return f"{file_name}:{frame.get('lineNumber', 0)}", url or None


class EventNormalizer:
    """Turns one raw protocol event into at most one candidate LogEntry.

    ``on_raw_event`` never raises. Malformed payloads bump ``dropped``,
    methods without a mapping bump ``unmapped`` and entries removed by the
    verbosity filter bump ``filtered``.

    ``body_fetcher(request_id)`` is optional and returns a response body
    string (or None) for a finished request.
    """

    def __init__(self, verbosity: str = "standard", clock=None, body_fetcher=None,
                 capture_response_bodies: bool = True):
        self.filter = VerbosityFilter(verbosity)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.body_fetcher = body_fetcher
        self.capture_response_bodies = capture_response_bodies

        self.dropped = 0
        self.unmapped = 0
        self.filtered = 0
        self.emitted = 0

        self._last_ts: datetime | None = None
        self._requests: OrderedDict[str, dict] = OrderedDict()
        self._current_url: str | None = None
        self._lock = threading.Lock()

        self._handlers = {
            "Runtime.consoleAPICalled": self._console_api,
            "Runtime.exceptionThrown": self._exception,
            "Log.entryAdded": self._log_entry,
            "Network.requestWillBeSent": self._request_sent,
            "Network.responseReceived": self._response_received,
            "Network.loadingFinished": self._loading_finished,
            "Network.loadingFailed": self._loading_failed,
            "Security.securityStateChanged": self._security,
            "Performance.metrics": self._performance,
        }
        for method in PAGE_EVENTS:
            self._handlers[method] = self._page_event
        for method in RUNTIME_LIFECYCLE:
            self._handlers[method] = self._runtime_lifecycle

    # -- public ---------------------------------------------------------

    def on_raw_event(self, method: str, params) -> LogEntry | None:
        handler = self._handlers.get(method)
        if handler is None:
            with self._lock:
                self.unmapped += 1
            return None

        try:
            entry = handler(method, params if params is not None else {})
        except (KeyError, TypeError, AttributeError, ValueError, IndexError) as e:
            with self._lock:
                self.dropped += 1
            logger.debug("Dropped malformed %s event: %s", method, e)
            return None

        if entry is None:
            return None
        if entry is _FILTERED:
            with self._lock:
                self.filtered += 1
            return None
        if not all(isinstance(getattr(entry, f), str) and getattr(entry, f) for f in REQUIRED_FIELDS):
            with self._lock:
                self.dropped += 1
            logger.debug("Suppressed %s entry missing required fields", method)
            return None

        with self._lock:
            self.emitted += 1
        return entry

    def stats(self) -> dict:
        with self._lock:
            return {
                "emitted": self.emitted,
                "dropped": self.dropped,
                "unmapped": self.unmapped,
                "filtered": self.filtered,
                "pending_requests": len(self._requests),
            }

    # -- helpers --------------------------------------------------------

    def _timestamp(self) -> str:
        with self._lock:
            now = self.clock()
            if self._last_ts is not None and now < self._last_ts:
                now = self._last_ts
            self._last_ts = now
        return iso_now(now)

    def _make(self, type_, level, source, data, context=None):
        if self.filter.should_skip(type_, level):
            return _FILTERED
        return LogEntry(
            timestamp=self._timestamp(),
            type=type_,
            level=level,
            source=source,
            data=data,
            context={k: v for k, v in (context or {}).items() if v is not None},
        )

    # -- Runtime / Log --------------------------------------------------

    def _console_api(self, method, params):
        level = console_level(params.get("type"))
        message = " ".join(format_remote_object(a) for a in params.get("args") or [])
        stack_trace = params.get("stackTrace")
        location, url = frame_location(stack_trace)

        data = {"message": message}
        if level in ("error", "warn"):
            filtered = self.filter.filter_stack_trace(stack_trace)
            if filtered:
                data["stackTrace"] = filtered
        return self._make("console", level, location or "browser_console", data, {"url": url})

    def _log_entry(self, method, params):
        entry = params["entry"]
        level = console_level(entry.get("level"))
        data = {"message": entry.get("text", "")}
        if entry.get("source"):
            data["origin"] = entry["source"]
        if level in ("error", "warn"):
            filtered = self.filter.filter_stack_trace(entry.get("stackTrace"))
            if filtered:
                data["stackTrace"] = filtered
        return self._make("console", level, "browser_log", data, {"url": entry.get("url")})

    def _exception(self, method, params):
        details = params["exceptionDetails"]
        text = details.get("text") or "Uncaught"
        exception = details.get("exception") or {}
        description = exception.get("description") or ""
        headline = description.splitlines()[0] if description else ""
        message = f"{text} {headline}".strip() if headline and headline not in text else text

        data = {
            "message": message,
            "name": exception.get("className") or "RuntimeException",
            "stack": description or None,
            "uncaught": text.startswith("Uncaught"),
        }
        frames = self.filter.filter_stack_trace(details.get("stackTrace"))
        if frames:
            data["frames"] = frames
        context = {
            "url": details.get("url"),
            "stackTrace": description or None,
        }
        return self._make("error", "error", "runtime_exception", data, context)

    def _runtime_lifecycle(self, method, params):
        event = method.split(".", 1)[1]
        data = {"event": event}
        ctx = params.get("context") if isinstance(params, dict) else None
        if isinstance(ctx, dict):
            data["origin"] = ctx.get("origin")
        elif "executionContextId" in params:
            data["executionContextId"] = params["executionContextId"]
        return self._make("runtime", "debug", "runtime", data)

    # -- Network --------------------------------------------------------

    def _request_sent(self, method, params):
        request = params["request"]
        with self._lock:
            self._requests[params["requestId"]] = {
                "method": request.get("method", "GET"),
                "url": request.get("url", ""),
                "postData": request.get("postData"),
            }
            while len(self._requests) > MAX_PENDING_REQUESTS:
                self._requests.popitem(last=False)
        return None

    def _response_received(self, method, params):
        response = params["response"]
        with self._lock:
            record = self._requests.setdefault(params["requestId"], {"method": "UNKNOWN", "url": ""})
            record["url"] = response.get("url") or record.get("url", "")
            record["status"] = response.get("status")
            record["statusText"] = response.get("statusText")
            record["mimeType"] = response.get("mimeType")
            record["headers"] = response.get("headers") or {}
        return None

    def _loading_finished(self, method, params):
        request_id = params["requestId"]
        with self._lock:
            record = self._requests.pop(request_id, None)
        if record is None or record.get("status") is None:
            return None

        status = int(record["status"])
        level = "error" if status >= 400 else "info"
        url = record.get("url", "")
        headers = record.get("headers") or {}
        if self.filter.should_skip("network", level) or self.filter.skip_network_url(url, headers):
            return _FILTERED

        data = {"method": record.get("method", "UNKNOWN"), "url": url, "status": status}
        kept_headers = essential_headers(headers)
        if kept_headers:
            data["headers"] = kept_headers
        if record.get("postData"):
            data["requestBody"] = self.filter.filter_request_body(record["postData"])
        body = self._response_body(request_id, record, headers)
        if body is not None:
            data["responseBody"] = body

        context = {"url": url, "method": data["method"], "statusCode": status}
        return self._make("network", level, "network_request", data, context)

    def _response_body(self, request_id, record, headers):
        if not self.capture_response_bodies or self.body_fetcher is None:
            return None
        content_type = header_value(headers, "content-type") or record.get("mimeType") or ""
        is_json = "json" in content_type.lower()
        limit = self.filter.response_body_limit(is_json)
        if limit is None:
            return None

        body = self.body_fetcher(request_id)
        if not body:
            return None
        if is_json and isinstance(body, str):
            try:
                parsed = json.loads(body)
            except ValueError:
                return truncate_body(body, limit)
            serialized = json.dumps(parsed, indent=2)
            return parsed if len(serialized) <= limit else truncate_body(serialized, limit)
        return truncate_body(body, limit)

    def _loading_failed(self, method, params):
        with self._lock:
            record = self._requests.pop(params["requestId"], None) or {}
        error_text = params.get("errorText") or "unknown error"
        data = {
            "message": f"Network loading failed: {error_text}",
            "name": "NetworkError",
            "url": record.get("url"),
        }
        if params.get("canceled"):
            data["canceled"] = True
        context = {"url": record.get("url"), "method": record.get("method")}
        return self._make("error", "error", "network_failure", data, context)

    # -- Page / Security / Performance -----------------------------------

    def _page_event(self, method, params):
        event = PAGE_EVENTS[method]
        url = None
        if method == "Page.frameNavigated":
            frame = params["frame"]
            if frame.get("parentId"):
                return None
            url = frame.get("url")
            with self._lock:
                self._current_url = url
        else:
            with self._lock:
                url = self._current_url

        if self.filter.should_skip("page", "info") or self.filter.skip_page_event(event):
            return _FILTERED

        data = {"event": event}
        if event == "navigation":
            data["url"] = url
        return self._make("page", "info", "page_events", data, {"url": url})

    def _security(self, method, params):
        state = params.get("securityState") or "unknown"
        level = "warn" if state == "insecure" else "info"
        data = {"securityState": state}
        if self.filter.verbose:
            data["explanations"] = params.get("explanations") or []
        return self._make("security", level, "security_monitor", data)

    def _performance(self, method, params):
        metrics = {
            m["name"]: m.get("value")
            for m in params.get("metrics") or []
            if isinstance(m, dict) and "name" in m
        }
        data = {"metric": params.get("title") or "metrics", "details": metrics}
        return self._make("performance", "info", "performance_monitor", data)


class _Filtered:
    def __repr__(self):
        return "<filtered>"


_FILTERED = _Filtered()
