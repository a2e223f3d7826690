"""Verbosity filtering applied by the normalizer before an entry is emitted.

``minimal`` keeps errors and warnings only, ``standard`` drops debug noise and
routine performance samples, ``verbose`` keeps everything.
"""

STATIC_ASSET_EXTENSIONS = (
    ".woff2", ".woff", ".ttf", ".css", ".js",
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico",
)
FONT_HOSTS = ("fonts.googleapis.com", "fonts.gstatic.com")
JS_CONTENT_TYPES = ("text/javascript", "application/javascript", "text/jsx", "text/tsx")
DEV_URL_MARKERS = ("__x00__", "/@id/", "hmr-runtime", "node_modules", ".tsx", ".jsx")
ESSENTIAL_HEADERS = ("content-type", "content-length")
NOISY_PAGE_EVENTS = ("dom_updated", "dom_ready")

REQUEST_BODY_LIMIT = 1000
JSON_BODY_LIMIT = 1000
TEXT_BODY_LIMIT = 200
STACK_FRAME_LIMIT = 3


class VerbosityFilter:
    def __init__(self, level: str = "standard"):
        self.level = level

    @property
    def verbose(self) -> bool:
        return self.level == "verbose"

    def should_skip(self, entry_type: str, level: str) -> bool:
        """True if an entry of this type/level is filtered at the current verbosity."""
        if self.level == "verbose":
            return False

        if self.level == "minimal":
            if level not in ("error", "warn"):
                return True
            if entry_type in ("performance", "page", "security"):
                return True

        if level == "debug":
            return True

        if self.level == "standard" and level == "info" and entry_type == "performance":
            return True

        return False

    def skip_network_url(self, url: str, headers: dict | None) -> bool:
        """Static assets, font CDNs, scripts and dev-server modules are noise outside verbose."""
        if self.verbose:
            return False
        lowered = (url or "").lower()
        if any(ext in lowered for ext in STATIC_ASSET_EXTENSIONS):
            return True
        if any(host in lowered for host in FONT_HOSTS):
            return True
        if any(marker in (url or "") for marker in DEV_URL_MARKERS):
            return True
        content_type = header_value(headers, "content-type").lower()
        return any(ct in content_type for ct in JS_CONTENT_TYPES)

    def skip_page_event(self, event: str) -> bool:
        return not self.verbose and event in NOISY_PAGE_EVENTS

    def filter_stack_trace(self, stack_trace):
        if not stack_trace or self.verbose:
            return stack_trace
        if self.level == "minimal":
            return None
        if isinstance(stack_trace, dict) and isinstance(stack_trace.get("callFrames"), list):
            return {
                "callFrames": [
                    {
                        "functionName": frame.get("functionName"),
                        "url": frame.get("url"),
                        "lineNumber": frame.get("lineNumber"),
                        "columnNumber": frame.get("columnNumber"),
                    }
                    for frame in stack_trace["callFrames"][:STACK_FRAME_LIMIT]
                    if isinstance(frame, dict)
                ]
            }
        return stack_trace

    def filter_request_body(self, body):
        if not body or self.verbose:
            return body
        if self.level == "minimal":
            return "[Request Body]"
        if isinstance(body, str) and len(body) > REQUEST_BODY_LIMIT:
            return body[:REQUEST_BODY_LIMIT] + "... [truncated]"
        return body

    def response_body_limit(self, is_json: bool) -> int | None:
        """Max chars of response body to keep, or None if bodies are not kept."""
        if is_json:
            return JSON_BODY_LIMIT
        if self.verbose:
            return TEXT_BODY_LIMIT
        return None


def header_value(headers: dict | None, name: str) -> str:
    """Case-insensitive header lookup returning '' when absent."""
    if not isinstance(headers, dict):
        return ""
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == name:
            return str(value)
    return ""


def essential_headers(headers: dict | None) -> dict:
    if not isinstance(headers, dict):
        return {}
    return {
        key.lower(): value
        for key, value in headers.items()
        if isinstance(key, str) and key.lower() in ESSENTIAL_HEADERS
    }


def truncate_body(body, limit: int):
    if isinstance(body, str):
        return body if len(body) <= limit else body[:limit] + "...[truncated]"
    return body
