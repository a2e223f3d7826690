import base64
import json
import queue
import re
import threading
import time

import pytest
import websocket

from logbridge.bridge import ControlBridge
from logbridge.control_server import create_app
from logbridge.models import LogEntry, SessionMetadata
from logbridge.resources import LogCatalog
from logbridge.screenshots import ScreenshotStore
from logbridge.session import ProtocolSession

FAKE_WS_URL = "ws://127.0.0.1:9222/devtools/page/FAKE"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"

_SCRIPT_NAME = re.compile(r"// logbridge:(\w+)")
_SCRIPT_ARGS = re.compile(r"const __args = (.*);")


def wait_until(predicate, timeout=2.0, interval=0.01):
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeSocket:
    """The websocket side of one FakeBrowser connection."""

    def __init__(self, browser):
        self.browser = browser
        self.inbox = queue.Queue()
        self.connected = True
        self.timeout = None

    def settimeout(self, timeout):
        self.timeout = timeout

    def send(self, message):
        if not self.connected:
            raise websocket.WebSocketConnectionClosedException("socket is already closed.")
        self.browser.handle(self, json.loads(message))

    def recv(self):
        try:
            item = self.inbox.get(timeout=self.timeout)
        except queue.Empty:
            raise websocket.WebSocketTimeoutException("timed out")
        if item is None:
            raise websocket.WebSocketConnectionClosedException("Connection to remote host was lost.")
        return item

    def close(self):
        if self.connected:
            self.connected = False
            self.inbox.put(None)


class FakeBrowser:
    """In-process stand-in for a DevTools page target.

    ``elements`` maps CSS selectors to element dicts (tagName, visible, x, y,
    value, properties, styles). Selectors starting with ``!`` are rejected as
    invalid CSS. ``evaluate`` can be replaced to script arbitrary
    Runtime.evaluate replies; returning None leaves the command unanswered.
    Methods in ``ignore_once`` go unanswered the next time they are sent.
    """

    def __init__(self):
        self.socket = None
        self.connect_count = 0
        self.refuse_connect = False
        self.commands = []
        self.elements = {}
        self.focused = None
        self.url = "about:blank"
        self.bodies = {}
        self.failing = {}
        self.ignore_once = set()
        self.navigate_error = None
        self.evaluate = self.default_evaluate
        self._lock = threading.Lock()

    # -- connection --------------------------------------------------------

    def connect(self, url, timeout=None):
        if self.refuse_connect:
            raise ConnectionRefusedError(111, "Connection refused")
        self.socket = FakeSocket(self)
        self.connect_count += 1
        return self.socket

    def drop(self):
        """Simulate the browser going away."""
        if self.socket is not None:
            self.socket.close()

    def emit(self, method, params=None):
        self.socket.inbox.put(json.dumps({"method": method, "params": params or {}}))

    def reply(self, sock, msg_id, result=None, error=None):
        message = {"id": msg_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result or {}
        sock.inbox.put(json.dumps(message))

    def reply_later(self, delay, sock, msg_id, result=None):
        timer = threading.Timer(delay, self.reply, args=(sock, msg_id, result))
        timer.daemon = True
        timer.start()

    def methods(self):
        with self._lock:
            return [c["method"] for c in self.commands]

    def add_element_later(self, delay, selector, **element):
        timer = threading.Timer(delay, self.elements.__setitem__, args=(selector, element))
        timer.daemon = True
        timer.start()

    # -- command handling --------------------------------------------------

    def handle(self, sock, command):
        with self._lock:
            self.commands.append(command)
        method = command["method"]
        params = command.get("params") or {}
        msg_id = command["id"]

        if method in self.ignore_once:
            self.ignore_once.discard(method)
        elif method in self.failing:
            self.reply(sock, msg_id, error={"code": -32601, "message": self.failing[method]})
        elif method == "Page.navigate":
            self._navigate(sock, msg_id, params)
        elif method == "Page.captureScreenshot":
            self.reply(sock, msg_id, {"data": base64.b64encode(PNG_BYTES).decode("ascii")})
        elif method == "Input.insertText":
            if self.focused in self.elements:
                self.elements[self.focused]["value"] = self.elements[self.focused].get("value", "") + params["text"]
            self.reply(sock, msg_id)
        elif method == "Network.getResponseBody":
            body = self.bodies.get(params.get("requestId"))
            if body is None:
                self.reply(sock, msg_id, error={"code": -32000, "message": "No resource with given identifier found"})
            else:
                self.reply(sock, msg_id, {"body": body, "base64Encoded": False})
        elif method == "Runtime.evaluate":
            expression = params.get("expression", "")
            name = _SCRIPT_NAME.search(expression)
            if name:
                args = json.loads(_SCRIPT_ARGS.search(expression).group(1))
                value = self.run_script(name.group(1), args)
                self.reply(sock, msg_id, {"result": {"type": "object", "value": value}})
            else:
                result = self.evaluate(sock, msg_id, expression)
                if result is not None:
                    self.reply(sock, msg_id, result)
        else:
            self.reply(sock, msg_id)

    def _navigate(self, sock, msg_id, params):
        if self.navigate_error:
            self.reply(sock, msg_id, {"frameId": "F1", "errorText": self.navigate_error})
            return
        self.url = params["url"]
        self.reply(sock, msg_id, {"frameId": "F1", "loaderId": "L1"})
        sock.inbox.put(json.dumps({"method": "Page.loadEventFired", "params": {"timestamp": 1.0}}))

    @staticmethod
    def default_evaluate(sock, msg_id, expression):
        return {"result": {"type": "number", "value": 2, "description": "2"}}

    def run_script(self, name, args):
        if name == "page_info":
            return {"url": self.url, "title": "Fake Page", "readyState": "complete",
                    "viewport": {"width": 1280, "height": 720}, "scroll": {"x": 0, "y": 0}}
        if name == "scroll_window":
            return {"found": True, "scrollX": args["x"], "scrollY": args["y"]}

        selector = args["selector"]
        if selector.startswith("!"):
            return {"invalidSelector": f"'{selector}' is not a valid selector"}
        el = self.elements.get(selector)
        if el is None:
            return {"found": False}

        if name == "element_state":
            return {"found": True, "visible": el.get("visible", True), "x": el.get("x", 10),
                    "y": el.get("y", 20), "tagName": el.get("tagName", "div")}
        if name == "focus_element":
            self.focused = selector
            if args.get("clear"):
                el["value"] = ""
            return {"found": True, "tagName": el.get("tagName", "input")}
        if name == "element_value":
            return {"found": True, "value": el.get("value", "")}
        if name == "scroll_element":
            return {"found": True, "scrollX": 0, "scrollY": 400}
        if name in ("inspect_element", "computed_styles"):
            source = el.get("properties" if name == "inspect_element" else "styles", {})
            props, errors = {}, {}
            for prop in args["properties"]:
                if prop in source:
                    props[prop] = source[prop]
                else:
                    errors[prop] = "unknown property"
            out = {"found": True, "properties": props, "errors": errors}
            if name == "inspect_element":
                out["tagName"] = el.get("tagName", "div")
            return out
        if name == "element_bounds":
            return {"found": True, "visible": el.get("visible", True),
                    "bounds": {"x": 0, "y": 0, "width": 100, "height": 40},
                    "center": {"x": 50, "y": 20}}
        raise AssertionError(f"unexpected script {name}")


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def session(browser):
    sess = ProtocolSession(ws_url=FAKE_WS_URL, connect_fn=browser.connect,
                           command_timeout=2.0, recv_poll=0.05)
    sess.connect()
    yield sess
    sess.close()


@pytest.fixture
def screenshot_store(tmp_path):
    return ScreenshotStore(str(tmp_path / "screenshots"))


@pytest.fixture
def bridge(session, screenshot_store):
    return ControlBridge(session, screenshot_store, poll_interval=0.02, queue_timeout=5.0,
                         reconnect_attempts=3, reconnect_delay=0.01)


@pytest.fixture
def make_entry():
    def _make(type_="console", level="info", source="browser_console", data=None,
              context=None, timestamp="2024-01-15T10:30:00.000Z"):
        return LogEntry(
            timestamp=timestamp,
            type=type_,
            level=level,
            source=source,
            data={"message": "hello"} if data is None else data,
            context=context or {},
        )
    return _make


@pytest.fixture
def metadata():
    return SessionMetadata(session_start="2024-01-15T10:29:59.000Z", log_level="standard")


@pytest.fixture
def catalog(tmp_path, screenshot_store):
    return LogCatalog([str(tmp_path / "session.log")], screenshot_store)


@pytest.fixture
def app(bridge, catalog):
    """Create a Flask test app over the fake browser."""
    application = create_app(bridge, catalog)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
