"""HTTP control surface: bridge actions, tool calls, log queries and resources."""

import logging
import threading

import psutil
from flask import Flask, jsonify, request
from werkzeug.serving import make_server

from logbridge.errors import InvalidRequestError, LogBridgeError
from logbridge.stats import query_entries
from logbridge.tools import call_tool, list_tools

logger = logging.getLogger(__name__)

STATUS_CODES = {
    "invalid_request": 400,
    "selector": 404,
    "not_found": 404,
    "timeout": 504,
    "connection": 503,
    "execution": 500,
}

POST_ACTIONS = (
    "navigate",
    "click",
    "type",
    "scroll",
    "inspect",
    "computed-styles",
    "evaluate",
    "execute",
    "wait-for-element",
    "wait-for-network-idle",
    "screenshot",
    "element-bounds",
)


def status_for(result: dict) -> int:
    if result.get("success"):
        return 200
    return STATUS_CODES.get(result.get("errorType"), 500)


def _error(error: LogBridgeError):
    body = {"success": False, "error": str(error), "errorType": error.error_type}
    return jsonify(body), STATUS_CODES.get(error.error_type, 500)


def _json_body() -> dict:
    if not request.data:
        return {}
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


def _process_info() -> dict:
    proc = psutil.Process()
    return {
        "pid": proc.pid,
        "rss_mb": round(proc.memory_info().rss / (1024 * 1024), 1),
        "cpu_percent": proc.cpu_percent(interval=None),
        "threads": proc.num_threads(),
    }


def create_app(bridge, catalog, pipeline=None):
    """Flask application factory."""
    app = Flask(__name__)
    app.config["components"] = {
        "bridge": bridge,
        "catalog": catalog,
        "pipeline": pipeline,
    }

    @app.errorhandler(LogBridgeError)
    def handle_logbridge_error(error):
        return _error(error)

    # --- Health ---

    @app.route("/health")
    def health():
        connected = bridge.session.connected
        body = {
            "status": "healthy" if connected else "degraded",
            "connected": connected,
            "actions": bridge.actions,
            "process": _process_info(),
        }
        if pipeline is not None:
            body["monitor"] = pipeline.stats()
        return jsonify(body)

    # --- Control actions ---

    def make_action_view(action):
        def view():
            result = bridge.execute(action, _json_body())
            return jsonify(result), status_for(result)
        return view

    for action in POST_ACTIONS:
        app.add_url_rule(f"/{action}", endpoint=f"action_{action}",
                         view_func=make_action_view(action), methods=["POST"])

    @app.route("/page-info")
    def page_info():
        result = bridge.execute("page-info", {})
        return jsonify(result), status_for(result)

    @app.route("/network-requests")
    def network_requests():
        limit = request.args.get("limit", 50, type=int)
        result = bridge.execute("network-requests", {"limit": limit})
        return jsonify(result), status_for(result)

    # --- Tools ---

    @app.route("/tools")
    def tools():
        return jsonify({"tools": list_tools()})

    @app.route("/tools/<name>", methods=["POST"])
    def tool_call(name):
        return jsonify(call_tool(bridge, name, _json_body(), catalog=catalog))

    # --- Logs ---

    def _log_name():
        return request.args.get("file") or catalog.default_name()

    @app.route("/api/logs")
    def logs():
        name = _log_name()
        reader = catalog.refresh(name)
        result = query_entries(
            reader.entries,
            limit=request.args.get("limit", 100, type=int),
            offset=request.args.get("offset", 0, type=int),
            types=request.args.get("type"),
            levels=request.args.get("level"),
            min_severity=request.args.get("min_severity", type=int),
            start=request.args.get("start"),
            end=request.args.get("end"),
            search=request.args.get("search"),
        )
        result["file"] = name
        return jsonify(result)

    @app.route("/api/stats")
    def stats():
        name = _log_name()
        reader = catalog.refresh(name)
        return jsonify({
            "file": name,
            "statistics": reader.statistics().to_dict(),
            "parseErrors": reader.parse_errors,
            "validationErrors": reader.validation_errors,
        })

    # --- Resources ---

    @app.route("/resources")
    def resources():
        return jsonify({"resources": catalog.list_resources()})

    @app.route("/resources/read")
    def read_resource():
        uri = request.args.get("uri")
        if not uri:
            raise InvalidRequestError("uri query parameter is required")
        return jsonify(catalog.read_resource(uri))

    return app


class ControlServer:
    """Runs the Flask app on a werkzeug server thread so it can be stopped."""

    def __init__(self, app, host: str = "127.0.0.1", port: int = 3001):
        self._server = make_server(host, port, app, threaded=True)
        self._thread = threading.Thread(target=self._server.serve_forever, name="control-server", daemon=True)

    @property
    def port(self) -> int:
        return self._server.server_port

    def start(self) -> None:
        self._thread.start()
        logger.info("Control server listening on http://%s:%d", self._server.host, self.port)

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5)
        logger.info("Control server stopped")
