"""Control bridge: discrete browser actions over the protocol session.

Requests are served one at a time. Every action has its own deadline and
``execute`` never raises; failures come back as typed result dicts.
"""

import logging
import threading
import time

from logbridge.errors import (
    ActionTimeoutError,
    ExecutionError,
    InvalidRequestError,
    LogBridgeError,
    SelectorError,
    SessionConnectionError,
)
from logbridge.models import iso_now
from logbridge.screenshots import ScreenshotStore, capture_screenshot
from logbridge.scripts import build_script

logger = logging.getLogger(__name__)

# Defaults in milliseconds
CLICK_TIMEOUT = 5000
TYPE_TIMEOUT = 5000
NAVIGATE_TIMEOUT = 30000
EVALUATE_TIMEOUT = 10000
WAIT_ELEMENT_TIMEOUT = 10000
NETWORK_IDLE_TIMEOUT = 10000
NETWORK_IDLE_TIME = 1000

INSPECT_PROPERTIES = ["textContent", "innerHTML", "outerHTML", "className", "id"]
STYLE_PROPERTIES = ["color", "background-color", "font-size", "display", "position"]
SCROLL_BEHAVIORS = ("auto", "smooth", "instant")

ECHOED_PARAMS = ("selector", "url", "code", "text", "x", "y", "timeout", "context", "properties")

MIN_COMMAND_TIMEOUT = 0.05


def troubleshooting(action: str, error_type: str) -> list[str]:
    """Short hints for the caller, keyed by failure type and action."""
    tips = []
    if error_type == "selector":
        tips.append("Verify the CSS selector is correct and the element exists")
        tips.append("Try a more specific selector or wait for the element to load")
        tips.append("Check the page URL and ensure you are on the correct page")
    elif error_type == "timeout":
        tips.append("Increase the timeout value if the page is slow to load")
        tips.append("Check if the element appears after some delay")
    elif error_type == "connection":
        tips.append("Check that the browser is running with remote debugging enabled")
        tips.append("Retry the request once the session has reconnected")
    elif error_type == "invalid_request":
        tips.append("Check the required parameters for this action")

    if action == "click":
        tips.append("Ensure the element is clickable and not covered by other elements")
    elif action == "type":
        tips.append("Verify the element is an input field or textarea")
        tips.append("Check if the field is enabled and not readonly")
    elif action == "navigate":
        tips.append("Verify the URL is correct and accessible")
        tips.append("Check network connectivity")
    elif action in ("evaluate", "execute") and error_type == "execution":
        tips.append("Check the script for syntax errors and undefined references")
    return tips


def describe_exception(details: dict) -> str:
    exception = details.get("exception") or {}
    return exception.get("description") or details.get("text") or "Script threw an exception"


def _require_str(params: dict, name: str, allow_empty: bool = False) -> str:
    value = params.get(name)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise InvalidRequestError(f"{name} is required and must be a string")
    return value


def _number(params: dict, name: str, default=None):
    value = params.get(name, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidRequestError(f"{name} must be a number")
    return value


def _flag(params: dict, name: str, default: bool) -> bool:
    value = params.get(name, default)
    if not isinstance(value, bool):
        raise InvalidRequestError(f"{name} must be a boolean")
    return value


def _timeout_ms(params: dict, default: int) -> float:
    value = _number(params, "timeout", default)
    if value <= 0:
        raise InvalidRequestError("timeout must be a positive number of milliseconds")
    return float(value)


def _property_list(params: dict, default: list[str]) -> list[str]:
    value = params.get("properties", default)
    if not isinstance(value, list) or not all(isinstance(p, str) and p for p in value):
        raise InvalidRequestError("properties must be a list of strings")
    return list(value)


class Deadline:
    def __init__(self, seconds: float, clock=time.monotonic):
        self._clock = clock
        self.started = clock()
        self.expires = self.started + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires

    def elapsed_ms(self) -> int:
        return int((self._clock() - self.started) * 1000)


class ControlBridge:
    def __init__(self, session, screenshots: ScreenshotStore, poll_interval: float = 0.1,
                 queue_timeout: float = 60.0, reconnect_attempts: int = 5,
                 reconnect_delay: float = 0.2):
        self.session = session
        self.screenshots = screenshots
        self.poll_interval = poll_interval
        self.queue_timeout = queue_timeout
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay

        self._lock = threading.Lock()

        self._handlers = {
            "navigate": self._navigate,
            "click": self._click,
            "type": self._type,
            "scroll": self._scroll,
            "inspect": self._inspect,
            "computed-styles": self._computed_styles,
            "evaluate": self._evaluate,
            "execute": self._evaluate,
            "wait-for-element": self._wait_for_element,
            "wait-for-network-idle": self._wait_for_network_idle,
            "screenshot": self._screenshot,
            "element-bounds": self._element_bounds,
            "page-info": self._page_info,
            "network-requests": self._network_requests,
        }

    @property
    def actions(self) -> list[str]:
        return list(self._handlers)

    # -- entry point ------------------------------------------------------

    def execute(self, action: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """Run one action. ``timeout`` (ms) overrides ``params['timeout']``."""
        params = dict(params or {})
        if timeout is not None:
            params["timeout"] = timeout

        handler = self._handlers.get(action)
        if handler is None:
            return self._failure(action, params, InvalidRequestError(f"Unknown action: {action}"))

        losses_at_entry = self.session.losses

        if not self._lock.acquire(timeout=self.queue_timeout):
            return self._failure(action, params, ActionTimeoutError(
                f"Timed out after {self.queue_timeout:.0f}s waiting for earlier control requests"))
        try:
            # A connection loss aborts everything that was queued behind it.
            if self.session.losses != losses_at_entry:
                raise SessionConnectionError("Connection to the browser was lost while the request was queued")
            if not self.session.connected:
                logger.info("Session disconnected, reconnecting before %s", action)
                self.session.reconnect(self.reconnect_attempts, self.reconnect_delay)

            result = handler(params)
            logger.debug("Action %s succeeded", action)
            return {"success": True, "action": action, "result": result, "timestamp": iso_now()}
        except LogBridgeError as e:
            logger.info("Action %s failed (%s): %s", action, e.error_type, e)
            return self._failure(action, params, e)
        except Exception as e:
            logger.exception("Unexpected error in action %s", action)
            return self._failure(action, params, ExecutionError(str(e)))
        finally:
            self._lock.release()

    def _failure(self, action: str, params: dict, error: LogBridgeError) -> dict:
        result = {k: params[k] for k in ECHOED_PARAMS if k in params}
        result.update({
            "success": False,
            "action": action,
            "error": str(error),
            "errorType": error.error_type,
            "troubleshooting": troubleshooting(action, error.error_type),
            "timestamp": iso_now(),
        })
        return result

    # -- helpers ------------------------------------------------------------

    def _command_timeout(self, deadline: Deadline | None = None) -> float:
        if deadline is None:
            return self.session.command_timeout
        return max(deadline.remaining(), MIN_COMMAND_TIMEOUT)

    def _run_script(self, name: str, deadline: Deadline | None = None, **args) -> dict:
        result = self.session.send(
            "Runtime.evaluate",
            {"expression": build_script(name, **args), "returnByValue": True, "awaitPromise": True},
            timeout=self._command_timeout(deadline),
        )
        if result.get("exceptionDetails"):
            raise ExecutionError(describe_exception(result["exceptionDetails"]))
        value = (result.get("result") or {}).get("value")
        return value if isinstance(value, dict) else {}

    @staticmethod
    def _check_selector(state: dict, selector: str) -> None:
        if "invalidSelector" in state:
            raise SelectorError(f"Invalid selector {selector!r}: {state['invalidSelector']}")

    def _poll_element(self, selector: str, deadline: Deadline, visible: bool = False,
                      scroll: bool = False) -> dict | None:
        """Poll until the selector resolves (and is visible if asked). None on timeout."""
        while True:
            try:
                state = self._run_script("element_state", deadline, selector=selector, scroll=scroll)
            except ActionTimeoutError:
                # A lookup that stalls past the deadline counts as a miss.
                if not deadline.expired():
                    raise
                return None
            self._check_selector(state, selector)
            if state.get("found") and (not visible or state.get("visible")):
                return state
            remaining = deadline.remaining()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval, remaining))

    # -- actions ------------------------------------------------------------

    def _navigate(self, params: dict) -> dict:
        url = _require_str(params, "url")
        wait_for_load = _flag(params, "waitForLoad", True)
        deadline = Deadline(_timeout_ms(params, NAVIGATE_TIMEOUT) / 1000)

        with self.session.expect_event("Page.loadEventFired") as waiter:
            result = self.session.send("Page.navigate", {"url": url}, timeout=self._command_timeout(deadline))
            if result.get("errorText"):
                raise ExecutionError(f"Navigation to {url} failed: {result['errorText']}")
            # Same-document navigations have no loader and fire no load event.
            loaded = False
            if wait_for_load and result.get("loaderId"):
                waiter.wait(deadline.remaining())
                loaded = True

        return {"url": url, "frameId": result.get("frameId"), "loaded": loaded,
                "elapsed": deadline.elapsed_ms()}

    def _click(self, params: dict) -> dict:
        selector = _require_str(params, "selector")
        timeout_ms = _timeout_ms(params, CLICK_TIMEOUT)
        deadline = Deadline(timeout_ms / 1000)

        state = self._poll_element(selector, deadline, scroll=True)
        if state is None:
            raise SelectorError(f"No element matches {selector!r} after {timeout_ms:.0f} ms")

        x, y = state.get("x", 0), state.get("y", 0)
        for event_type in ("mousePressed", "mouseReleased"):
            self.session.send(
                "Input.dispatchMouseEvent",
                {"type": event_type, "x": x, "y": y, "button": "left", "clickCount": 1},
                timeout=self._command_timeout(deadline),
            )
        return {"selector": selector, "x": x, "y": y, "tagName": state.get("tagName")}

    def _type(self, params: dict) -> dict:
        selector = _require_str(params, "selector")
        text = _require_str(params, "text", allow_empty=True)
        clear = _flag(params, "clear", False)
        timeout_ms = _timeout_ms(params, TYPE_TIMEOUT)
        deadline = Deadline(timeout_ms / 1000)

        if self._poll_element(selector, deadline) is None:
            raise SelectorError(f"No element matches {selector!r} after {timeout_ms:.0f} ms")

        focused = self._run_script("focus_element", deadline, selector=selector, clear=clear)
        self._check_selector(focused, selector)
        if not focused.get("found"):
            raise SelectorError(f"Element {selector!r} disappeared before typing")

        if text:
            self.session.send("Input.insertText", {"text": text}, timeout=self._command_timeout(deadline))
        final = self._run_script("element_value", deadline, selector=selector)
        return {"selector": selector, "text": text, "cleared": clear, "finalValue": final.get("value")}

    def _scroll(self, params: dict) -> dict:
        behavior = params.get("behavior", "smooth")
        if behavior not in SCROLL_BEHAVIORS:
            raise InvalidRequestError(f"behavior must be one of {', '.join(SCROLL_BEHAVIORS)}")

        if params.get("selector") is not None:
            selector = _require_str(params, "selector")
            state = self._run_script("scroll_element", selector=selector, behavior=behavior)
            self._check_selector(state, selector)
            if not state.get("found"):
                raise SelectorError(f"No element matches {selector!r}")
            return {"selector": selector, "scrollX": state.get("scrollX"), "scrollY": state.get("scrollY")}

        x = _number(params, "x")
        y = _number(params, "y")
        if x is None and y is None:
            raise InvalidRequestError("scroll needs a selector or x/y coordinates")
        state = self._run_script("scroll_window", x=x or 0, y=y or 0, behavior=behavior)
        return {"x": x or 0, "y": y or 0, "scrollX": state.get("scrollX"), "scrollY": state.get("scrollY")}

    def _read_properties(self, script: str, params: dict, defaults: list[str]) -> dict:
        selector = _require_str(params, "selector")
        properties = _property_list(params, defaults)
        state = self._run_script(script, selector=selector, properties=properties)
        self._check_selector(state, selector)
        if not state.get("found"):
            return {
                "selector": selector,
                "found": False,
                "properties": {},
                "errors": {name: "element not found" for name in properties},
            }
        result = {
            "selector": selector,
            "found": True,
            "properties": state.get("properties") or {},
            "errors": state.get("errors") or {},
        }
        if state.get("tagName"):
            result["tagName"] = state["tagName"]
        return result

    def _inspect(self, params: dict) -> dict:
        return self._read_properties("inspect_element", params, INSPECT_PROPERTIES)

    def _computed_styles(self, params: dict) -> dict:
        return self._read_properties("computed_styles", params, STYLE_PROPERTIES)

    def _evaluate(self, params: dict) -> dict:
        code = _require_str(params, "code")
        return_by_value = _flag(params, "returnByValue", True)
        timeout_ms = _timeout_ms(params, EVALUATE_TIMEOUT)

        try:
            result = self.session.send(
                "Runtime.evaluate",
                {"expression": code, "returnByValue": return_by_value,
                 "awaitPromise": True, "userGesture": True},
                timeout=timeout_ms / 1000,
            )
        except ActionTimeoutError:
            self._terminate_execution()
            raise ActionTimeoutError(f"Script did not finish within {timeout_ms:.0f} ms")

        if result.get("exceptionDetails"):
            raise ExecutionError(describe_exception(result["exceptionDetails"]))

        remote = result.get("result") or {}
        out = {"type": remote.get("type")}
        if return_by_value:
            out["value"] = remote.get("value", remote.get("unserializableValue"))
        else:
            out["description"] = remote.get("description")
            out["objectId"] = remote.get("objectId")
        return out

    def _terminate_execution(self) -> None:
        try:
            self.session.send("Runtime.terminateExecution", timeout=self.session.command_timeout)
        except LogBridgeError as e:
            logger.warning("Could not terminate runaway script: %s", e)

    def _wait_for_element(self, params: dict) -> dict:
        selector = _require_str(params, "selector")
        visible = _flag(params, "visible", True)
        timeout_ms = _timeout_ms(params, WAIT_ELEMENT_TIMEOUT)
        deadline = Deadline(timeout_ms / 1000)

        state = self._poll_element(selector, deadline, visible=visible)
        if state is None:
            what = "visible" if visible else "present"
            raise ActionTimeoutError(f"Element {selector!r} not {what} within {timeout_ms:.0f} ms")
        return {"selector": selector, "found": True, "visible": bool(state.get("visible")),
                "elapsed": deadline.elapsed_ms()}

    def _wait_for_network_idle(self, params: dict) -> dict:
        timeout_ms = _timeout_ms(params, NETWORK_IDLE_TIMEOUT)
        idle_ms = _number(params, "idleTime", NETWORK_IDLE_TIME)
        if idle_ms < 0:
            raise InvalidRequestError("idleTime must not be negative")

        deadline = Deadline(timeout_ms / 1000)
        if not self.session.network.wait_for_idle(idle_ms / 1000, timeout_ms / 1000):
            raise ActionTimeoutError(
                f"Network not idle within {timeout_ms:.0f} ms "
                f"({self.session.network.inflight_count} requests in flight)"
            )
        return {"idle": True, "idleTime": idle_ms, "elapsed": deadline.elapsed_ms()}

    def _screenshot(self, params: dict) -> dict:
        context = params.get("context") or ""
        if not isinstance(context, str):
            raise InvalidRequestError("context must be a string")
        path = capture_screenshot(self.session, self.screenshots, context, prefix="screenshot",
                                  timeout=self.session.command_timeout)
        return {"path": path, "context": context}

    def _element_bounds(self, params: dict) -> dict:
        selector = _require_str(params, "selector")
        state = self._run_script("element_bounds", selector=selector)
        self._check_selector(state, selector)
        if not state.get("found"):
            raise SelectorError(f"No element matches {selector!r}")
        return {"selector": selector, "bounds": state.get("bounds"), "center": state.get("center"),
                "visible": bool(state.get("visible"))}

    def _page_info(self, params: dict) -> dict:
        return self._run_script("page_info")

    def _network_requests(self, params: dict) -> dict:
        limit = _number(params, "limit", 50)
        requests = self.session.network.recent(int(limit))
        return {"requests": requests, "count": len(requests),
                "inflight": self.session.network.inflight_count}
