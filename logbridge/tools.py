"""Tool declarations exposing each control action to a tool-calling assistant.

Browser tools run through the control bridge. Log tools are read-only and run
against the log catalog, so they work with no browser attached.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

import jsonschema

from logbridge.analysis import find_errors, log_summary, network_failures, search_logs
from logbridge.errors import InvalidRequestError, ResourceNotFoundError
from logbridge.models import iso_now
from logbridge.validator import describe_error

logger = logging.getLogger(__name__)

_SELECTOR = {"type": "string", "minLength": 1, "description": "CSS selector of the target element"}
_TIMEOUT = {"type": "number", "exclusiveMinimum": 0, "description": "Timeout in milliseconds"}
_LOG_FILE = {"type": "string", "minLength": 1, "description": "Log file name, defaults to the first configured log"}
_TIMESTAMP = {"type": "string", "minLength": 1, "description": "ISO 8601 timestamp"}


def _tool(name: str, action: str, description: str, properties: dict, required=()) -> dict:
    return {
        "name": name,
        "action": action,
        "description": description,
        "inputSchema": {
            "type": "object",
            "properties": properties,
            "required": list(required),
            "additionalProperties": False,
        },
    }


TOOL_DEFINITIONS = [
    _tool("browser_navigate", "navigate",
          "Navigate the page to a URL, optionally waiting for the load event.",
          {"url": {"type": "string", "minLength": 1},
           "waitForLoad": {"type": "boolean", "default": True},
           "timeout": _TIMEOUT},
          required=("url",)),
    _tool("browser_click", "click",
          "Click the first element matching a selector, waiting for it to appear.",
          {"selector": _SELECTOR, "timeout": _TIMEOUT},
          required=("selector",)),
    _tool("browser_type", "type",
          "Type text into an input element, optionally clearing it first.",
          {"selector": _SELECTOR,
           "text": {"type": "string"},
           "clear": {"type": "boolean", "default": False},
           "timeout": _TIMEOUT},
          required=("selector", "text")),
    _tool("browser_scroll", "scroll",
          "Scroll an element into view or scroll the window to coordinates.",
          {"selector": _SELECTOR,
           "x": {"type": "number"},
           "y": {"type": "number"},
           "behavior": {"enum": ["auto", "smooth", "instant"], "default": "smooth"}}),
    _tool("browser_inspect", "inspect",
          "Read DOM properties of an element. Unknown properties are reported individually.",
          {"selector": _SELECTOR,
           "properties": {"type": "array", "items": {"type": "string", "minLength": 1}}},
          required=("selector",)),
    _tool("browser_computed_styles", "computed-styles",
          "Read computed CSS values of an element.",
          {"selector": _SELECTOR,
           "properties": {"type": "array", "items": {"type": "string", "minLength": 1}}},
          required=("selector",)),
    _tool("browser_evaluate", "evaluate",
          "Evaluate JavaScript in the page with a hard time limit.",
          {"code": {"type": "string", "minLength": 1},
           "returnByValue": {"type": "boolean", "default": True},
           "timeout": _TIMEOUT},
          required=("code",)),
    _tool("browser_wait_for_element", "wait-for-element",
          "Wait until a selector matches (and is visible, by default).",
          {"selector": _SELECTOR,
           "visible": {"type": "boolean", "default": True},
           "timeout": _TIMEOUT},
          required=("selector",)),
    _tool("browser_wait_for_network_idle", "wait-for-network-idle",
          "Wait until no requests have been in flight for idleTime milliseconds.",
          {"timeout": _TIMEOUT,
           "idleTime": {"type": "number", "minimum": 0}}),
    _tool("browser_screenshot", "screenshot",
          "Capture the current page to the screenshot directory.",
          {"context": {"type": "string"}}),
    _tool("browser_element_bounds", "element-bounds",
          "Get the bounding box and center point of an element.",
          {"selector": _SELECTOR},
          required=("selector",)),
    _tool("browser_page_info", "page-info",
          "Get the current URL, title, ready state, viewport and scroll position.",
          {}),
    _tool("browser_network_requests", "network-requests",
          "List recently completed network requests, newest last.",
          {"limit": {"type": "integer", "minimum": 1, "maximum": 1000}}),
    _tool("find_errors", "find-errors",
          "Group errors and failed requests by category and message pattern, most severe first.",
          {"logFile": _LOG_FILE,
           "categories": {"type": "array", "items": {"type": "string", "minLength": 1}},
           "startTime": _TIMESTAMP,
           "endTime": _TIMESTAMP,
           "includeContext": {"type": "boolean", "default": True}}),
    _tool("get_network_failures", "network-failures",
          "List requests that failed with one of the given HTTP statuses or never completed.",
          {"logFile": _LOG_FILE,
           "statusCodes": {"type": "array", "items": {"type": "integer", "minimum": 100, "maximum": 599}},
           "timeWindow": {"type": "number", "exclusiveMinimum": 0, "description": "Only the last N minutes"}}),
    _tool("get_log_summary", "log-summary",
          "Summarize a session log with a health score, counts and the most frequent errors.",
          {"logFile": _LOG_FILE}),
    _tool("search_logs", "search-logs",
          "Case-insensitive regular expression search over entry messages, URLs and sources.",
          {"logFile": _LOG_FILE,
           "pattern": {"type": "string", "minLength": 1},
           "maxResults": {"type": "integer", "minimum": 1, "maximum": 500, "default": 10}},
          required=("pattern",)),
]

_BY_NAME = {tool["name"]: tool for tool in TOOL_DEFINITIONS}
_VALIDATORS = {
    tool["name"]: jsonschema.Draft202012Validator(tool["inputSchema"]) for tool in TOOL_DEFINITIONS
}


def list_tools() -> list[dict]:
    """Tool declarations without the internal action mapping."""
    return [{k: v for k, v in tool.items() if k != "action"} for tool in TOOL_DEFINITIONS]


def validate_arguments(name: str, arguments: dict) -> None:
    """Raise InvalidRequestError if arguments do not match the tool's schema."""
    validator = _VALIDATORS.get(name)
    if validator is None:
        raise InvalidRequestError(f"Unknown tool: {name}")
    errors = sorted(validator.iter_errors(arguments), key=lambda e: list(e.path))
    if errors:
        raise InvalidRequestError("; ".join(describe_error(e) for e in errors))


def _find_errors(reader, args: dict) -> dict:
    return find_errors(
        reader.entries,
        categories=args.get("categories"),
        start=args.get("startTime"),
        end=args.get("endTime"),
        include_context=args.get("includeContext", True),
    )


def _network_failures(reader, args: dict) -> dict:
    start = None
    if args.get("timeWindow"):
        start = iso_now(datetime.now(timezone.utc) - timedelta(minutes=args["timeWindow"]))
    return network_failures(reader.entries, status_codes=args.get("statusCodes"), start=start)


def _log_summary(reader, args: dict) -> dict:
    return log_summary(reader.entries, parse_errors=reader.parse_errors)


def _search_logs(reader, args: dict) -> dict:
    return search_logs(reader.entries, args["pattern"], max_results=args.get("maxResults", 10))


_LOG_HANDLERS = {
    "find_errors": _find_errors,
    "get_network_failures": _network_failures,
    "get_log_summary": _log_summary,
    "search_logs": _search_logs,
}


def _run_log_tool(catalog, name: str, action: str, arguments: dict) -> dict:
    if catalog is None:
        raise ResourceNotFoundError("No log catalog configured")
    log_file = arguments.get("logFile") or catalog.default_name()
    reader = catalog.refresh(log_file)
    result = _LOG_HANDLERS[name](reader, arguments)
    return {
        "success": True,
        "action": action,
        "logFile": log_file,
        "result": result,
        "timestamp": iso_now(),
    }


def call_tool(bridge, name: str, arguments: dict | None = None, catalog=None) -> dict:
    """Validate, run through the bridge or the log catalog, and wrap the result as tool content."""
    arguments = arguments or {}
    tool = _BY_NAME.get(name)
    action = tool["action"] if tool else name
    try:
        validate_arguments(name, arguments)
        if name in _LOG_HANDLERS:
            result = _run_log_tool(catalog, name, action, arguments)
        else:
            result = bridge.execute(action, arguments)
    except (InvalidRequestError, ResourceNotFoundError) as e:
        logger.info("Rejected %s call: %s", name, e)
        hint = ("Check the tool's inputSchema for required parameters" if e.error_type == "invalid_request"
                else "Check the logFile name against the listed log resources")
        result = {
            "success": False,
            "action": action,
            "error": str(e),
            "errorType": e.error_type,
            "troubleshooting": [hint],
            "timestamp": iso_now(),
        }

    return {
        "content": [{"type": "text", "text": json.dumps(result, indent=2, default=str)}],
        "isError": not result.get("success", False),
    }
