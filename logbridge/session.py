"""Protocol session: the single live DevTools websocket connection.

One reader thread owns ``ws.recv()``. Command replies resolve the waiting
caller; events update network activity, wake one-shot waiters and are
queued for a single dispatcher thread that calls subscribers in arrival
order. Callers block in ``send`` on their own pending slot, so events keep
flowing while a command is outstanding.
"""

import json
import logging
import queue
import threading
import time
from collections import deque
from contextlib import contextmanager

import requests
import websocket

from logbridge.errors import ActionTimeoutError, ProtocolCommandError, SessionConnectionError
from logbridge.models import iso_now

logger = logging.getLogger(__name__)


def default_connect(url: str, timeout: float):
    return websocket.create_connection(url, timeout=timeout, suppress_origin=True)


def discover_ws_url(host: str, port: int, timeout: float = 5.0) -> str:
    """Websocket URL of the first page target listed at ``/json``."""
    url = f"http://{host}:{port}/json"
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        targets = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise SessionConnectionError(f"Cannot list debug targets at {url}: {e}") from e

    for target in targets or []:
        if target.get("type") == "page" and target.get("webSocketDebuggerUrl"):
            return target["webSocketDebuggerUrl"]
    raise SessionConnectionError(f"No debuggable page target at {url}")


class NetworkActivity:
    """In-flight request tracking fed from Network.* events."""

    def __init__(self, history: int = 200, clock=time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._inflight: dict[str, dict] = {}
        self._idle_since = clock()
        self._recent: deque[dict] = deque(maxlen=history)

    def observe(self, method: str, params: dict) -> None:
        if not method.startswith("Network.") or not isinstance(params, dict):
            return
        request_id = params.get("requestId")
        if request_id is None:
            return

        with self._cond:
            if method == "Network.requestWillBeSent":
                request = params.get("request") or {}
                self._inflight[request_id] = {
                    "requestId": request_id,
                    "method": request.get("method"),
                    "url": request.get("url"),
                    "resourceType": params.get("type"),
                    "startedAt": iso_now(),
                    "status": None,
                }
            elif method == "Network.responseReceived":
                record = self._inflight.get(request_id)
                if record is not None:
                    record["status"] = (params.get("response") or {}).get("status")
            elif method in ("Network.loadingFinished", "Network.loadingFailed"):
                record = self._inflight.pop(request_id, None)
                if record is not None:
                    record["finishedAt"] = iso_now()
                    if method == "Network.loadingFailed":
                        record["failed"] = True
                        record["errorText"] = params.get("errorText")
                    self._recent.append(record)
                if not self._inflight:
                    self._idle_since = self._clock()
                    self._cond.notify_all()

    @property
    def inflight_count(self) -> int:
        with self._cond:
            return len(self._inflight)

    def reset(self) -> None:
        with self._cond:
            self._inflight.clear()
            self._idle_since = self._clock()
            self._cond.notify_all()

    def wait_for_idle(self, idle_time: float, timeout: float) -> bool:
        """Block until zero requests have been in flight for ``idle_time`` seconds.

        Returns False if ``timeout`` elapses first.
        """
        deadline = self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                quiet_for = now - self._idle_since
                if not self._inflight and quiet_for >= idle_time:
                    return True
                remaining = deadline - now
                if remaining <= 0:
                    return False
                if self._inflight:
                    self._cond.wait(remaining)
                else:
                    self._cond.wait(min(remaining, idle_time - quiet_for))

    def recent(self, limit: int | None = None) -> list[dict]:
        """Recently completed requests, newest last."""
        with self._cond:
            items = [dict(r) for r in self._recent]
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items


class _PendingCommand:
    __slots__ = ("method", "done", "response", "error")

    def __init__(self, method: str):
        self.method = method
        self.done = threading.Event()
        self.response = None
        self.error = None


class EventWaiter:
    """One-shot wait for a protocol event, registered via ``expect_event``."""

    def __init__(self, method: str, predicate=None):
        self.method = method
        self.predicate = predicate
        self.params = None
        self.error = None
        self._done = threading.Event()

    def offer(self, method: str, params: dict) -> None:
        if self._done.is_set() or method != self.method:
            return
        if self.predicate is not None and not self.predicate(params):
            return
        self.params = params
        self._done.set()

    def fail(self, error: Exception) -> None:
        if not self._done.is_set():
            self.error = error
            self._done.set()

    def wait(self, timeout: float) -> dict:
        if not self._done.wait(timeout):
            raise ActionTimeoutError(f"Timed out after {timeout:.1f}s waiting for {self.method}")
        if self.error is not None:
            raise self.error
        return self.params


class ProtocolSession:
    def __init__(self, host: str = "localhost", port: int = 9222, ws_url: str | None = None,
                 command_timeout: float = 10.0, connect_fn=None, recv_poll: float = 0.5,
                 network_history: int = 200):
        self.host = host
        self.port = port
        self.ws_url = ws_url
        self.command_timeout = command_timeout
        self.recv_poll = recv_poll
        self._connect_fn = connect_fn or default_connect

        self.network = NetworkActivity(history=network_history)
        self.epoch = 0
        self.losses = 0

        self._ws = None
        self._connected = False
        self._closing = False
        self._state_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._reconnect_lock = threading.Lock()

        self._next_id = 0
        self._pending: dict[int, _PendingCommand] = {}
        self._pending_lock = threading.Lock()

        self._waiters: list[EventWaiter] = []
        self._waiters_lock = threading.Lock()

        self._subscribers: list = []
        self._disconnect_listeners: list = []
        self._domains: list[str] = []

        self._events: queue.Queue = queue.Queue()
        self._reader: threading.Thread | None = None
        self._dispatcher: threading.Thread | None = None

    # -- lifecycle ----------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        url = self.ws_url or discover_ws_url(self.host, self.port, timeout=self.command_timeout)
        try:
            ws = self._connect_fn(url, timeout=self.command_timeout)
            ws.settimeout(self.recv_poll)
        except (websocket.WebSocketException, OSError) as e:
            raise SessionConnectionError(f"Cannot connect to {url}: {e}") from e

        with self._state_lock:
            self._ws = ws
            self._connected = True
            self._closing = False
            self.epoch += 1
            epoch = self.epoch

        self.network.reset()
        self._reader = threading.Thread(
            target=self._read_loop, args=(ws, epoch), name=f"cdp-reader-{epoch}", daemon=True
        )
        self._reader.start()
        if self._dispatcher is None or not self._dispatcher.is_alive():
            self._dispatcher = threading.Thread(target=self._dispatch_loop, name="cdp-dispatch", daemon=True)
            self._dispatcher.start()
        logger.info("Protocol session connected to %s", url)

    def enable(self, *domains: str) -> list[str]:
        """Enable event domains. Domains the target rejects are logged and skipped."""
        enabled = []
        for domain in domains:
            try:
                self.send(f"{domain}.enable")
            except ProtocolCommandError as e:
                logger.warning("Could not enable %s domain: %s", domain, e)
                continue
            enabled.append(domain)
            if domain not in self._domains:
                self._domains.append(domain)
        return enabled

    @property
    def domains(self) -> list[str]:
        return list(self._domains)

    def reconnect(self, attempts: int = 5, delay: float = 0.2) -> None:
        """Reconnect and re-enable previously enabled domains.

        A no-op if another caller already restored the connection. An attempt
        whose domain re-enable fails is torn down before the next one.
        """
        with self._reconnect_lock:
            last_error = None
            for attempt in range(1, attempts + 1):
                if self._connected:
                    return
                if self._closing:
                    raise SessionConnectionError("Protocol session is closed")
                try:
                    self.connect()
                    self.enable(*self._domains)
                    logger.info("Protocol session reconnected (attempt %d/%d)", attempt, attempts)
                    return
                except (SessionConnectionError, ActionTimeoutError) as e:
                    last_error = e
                    self._abandon_connection(e)
                    logger.warning("Reconnect attempt %d/%d failed: %s", attempt, attempts, e)
                    time.sleep(delay)
            raise SessionConnectionError(f"Could not reconnect after {attempts} attempts: {last_error}")

    def close(self) -> None:
        """Close the connection and drain queued events to subscribers."""
        with self._state_lock:
            self._closing = True
            self._connected = False
            ws = self._ws
            self._ws = None
        self._fail_pending(SessionConnectionError("Protocol session closed"))
        if ws is not None:
            self._close_ws(ws)
        if self._reader is not None:
            self._reader.join(timeout=max(1.0, self.recv_poll * 4))
        if self._dispatcher is not None:
            self._events.put(None)
            self._dispatcher.join(timeout=5)
            self._dispatcher = None
        logger.info("Protocol session closed")

    # -- commands -----------------------------------------------------------

    def send(self, method: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """Send a command and block for its reply. Returns the ``result`` object."""
        timeout = self.command_timeout if timeout is None else timeout
        ws = self._ws
        if not self._connected or ws is None:
            raise SessionConnectionError("Protocol session is not connected")

        pending = _PendingCommand(method)
        with self._pending_lock:
            self._next_id += 1
            msg_id = self._next_id
            self._pending[msg_id] = pending

        message = json.dumps({"id": msg_id, "method": method, "params": params or {}})
        try:
            with self._send_lock:
                ws.send(message)
        except (websocket.WebSocketException, OSError) as e:
            with self._pending_lock:
                self._pending.pop(msg_id, None)
            self._handle_disconnect(e)
            raise SessionConnectionError(f"Send failed for {method}: {e}") from e

        if not pending.done.wait(timeout):
            with self._pending_lock:
                self._pending.pop(msg_id, None)
            raise ActionTimeoutError(f"{method} timed out after {timeout:.1f}s")

        if pending.error is not None:
            raise pending.error
        response = pending.response or {}
        if "error" in response:
            err = response["error"] or {}
            raise ProtocolCommandError(method, err.get("message", str(err)), err.get("code"))
        return response.get("result") or {}

    # -- events -------------------------------------------------------------

    def subscribe(self, callback):
        """Register ``callback(method, params)`` for every event. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def on_disconnect(self, callback) -> None:
        self._disconnect_listeners.append(callback)

    @contextmanager
    def expect_event(self, method: str, predicate=None):
        """Register a waiter before issuing the command that triggers ``method``."""
        waiter = EventWaiter(method, predicate)
        with self._waiters_lock:
            self._waiters.append(waiter)
        try:
            yield waiter
        finally:
            with self._waiters_lock:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

    # -- reader / dispatcher ------------------------------------------------

    def _read_loop(self, ws, epoch: int) -> None:
        while not self._closing:
            try:
                raw = ws.recv()
            except websocket.WebSocketTimeoutException:
                continue
            except (websocket.WebSocketException, OSError) as e:
                self._handle_disconnect(e, epoch)
                return
            if not raw:
                if not getattr(ws, "connected", True):
                    self._handle_disconnect(SessionConnectionError("connection closed by peer"), epoch)
                    return
                continue

            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring non-JSON protocol message")
                continue
            if not isinstance(message, dict):
                continue

            if "id" in message:
                with self._pending_lock:
                    pending = self._pending.pop(message["id"], None)
                if pending is None:
                    logger.debug("Reply for unknown or expired command id %s", message["id"])
                    continue
                pending.response = message
                pending.done.set()
            elif "method" in message:
                self._on_event(message["method"], message.get("params") or {})

    def _on_event(self, method: str, params: dict) -> None:
        self.network.observe(method, params)
        with self._waiters_lock:
            waiters = list(self._waiters)
        for waiter in waiters:
            waiter.offer(method, params)
        self._events.put((method, params))

    def _dispatch_loop(self) -> None:
        while True:
            item = self._events.get()
            if item is None:
                break
            method, params = item
            for callback in list(self._subscribers):
                try:
                    callback(method, params)
                except Exception:
                    logger.exception("Event subscriber failed for %s", method)

    # -- failure handling ---------------------------------------------------

    def _handle_disconnect(self, error, epoch: int | None = None) -> None:
        with self._state_lock:
            if epoch is not None and epoch != self.epoch:
                return
            if not self._connected:
                return
            self._connected = False
            self.losses += 1
            ws = self._ws
            closing = self._closing

        if not closing:
            logger.warning("Protocol session lost: %s", error)
        self._fail_pending(SessionConnectionError(f"Connection lost: {error}"))
        self.network.reset()
        if ws is not None:
            self._close_ws(ws)
        for listener in list(self._disconnect_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Disconnect listener failed")

    def _abandon_connection(self, error) -> None:
        """Drop a half-restored connection without notifying disconnect listeners."""
        with self._state_lock:
            ws = self._ws
            self._ws = None
            self._connected = False
            # Retire the epoch so the old reader's exit is ignored.
            self.epoch += 1
        self._fail_pending(SessionConnectionError(f"Reconnect aborted: {error}"))
        if ws is not None:
            self._close_ws(ws)

    def _fail_pending(self, error: Exception) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for command in pending:
            command.error = error
            command.done.set()
        with self._waiters_lock:
            waiters = list(self._waiters)
        for waiter in waiters:
            waiter.fail(error)

    @staticmethod
    def _close_ws(ws) -> None:
        try:
            ws.close()
        except (websocket.WebSocketException, OSError) as e:
            logger.debug("Error closing websocket: %s", e)
