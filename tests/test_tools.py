"""Tests for logbridge/tools.py"""

import json

import pytest

from logbridge.enrichment import Enricher
from logbridge.errors import InvalidRequestError
from logbridge.log_writer import StructuredLogWriter
from logbridge.tools import TOOL_DEFINITIONS, call_tool, list_tools, validate_arguments

LOG_TOOLS = {"find_errors", "get_network_failures", "get_log_summary", "search_logs"}


@pytest.fixture
def written_log(tmp_path, metadata, make_entry):
    writer = StructuredLogWriter(str(tmp_path / "session.log"), metadata, fsync=False)
    writer.open()
    enricher = Enricher()
    writer.append(enricher.enrich(make_entry(data={"message": "App started"})))
    writer.append(enricher.enrich(make_entry(level="error", data={"message": "Cannot read properties of null"},
                                             timestamp="2024-01-15T10:30:01.000Z")))
    writer.append(enricher.enrich(make_entry(type_="network", source="network_request",
                                             data={"method": "GET", "url": "https://api.test/x", "status": 404},
                                             timestamp="2024-01-15T10:30:02.000Z")))
    writer.close()


class TestToolDefinitions:
    def test_every_browser_tool_maps_to_a_bridge_action(self, bridge):
        for tool in TOOL_DEFINITIONS:
            if tool["name"] in LOG_TOOLS:
                continue
            assert tool["action"] in bridge.actions

    def test_list_hides_action(self):
        tools = list_tools()
        assert len(tools) == len(TOOL_DEFINITIONS)
        assert all("action" not in t for t in tools)
        assert {"browser_click", "browser_evaluate", "browser_network_requests"} <= {t["name"] for t in tools}

    def test_schemas_reject_unknown_arguments(self):
        with pytest.raises(InvalidRequestError):
            validate_arguments("browser_click", {"selector": "#a", "force": True})

    def test_required_arguments(self):
        with pytest.raises(InvalidRequestError) as exc:
            validate_arguments("browser_type", {"selector": "#a"})
        assert "text" in str(exc.value)

    def test_unknown_tool(self):
        with pytest.raises(InvalidRequestError):
            validate_arguments("browser_fly", {})


class TestCallTool:
    def test_successful_call(self, bridge):
        response = call_tool(bridge, "browser_evaluate", {"code": "1 + 1"})
        assert response["isError"] is False
        payload = json.loads(response["content"][0]["text"])
        assert payload["result"]["value"] == 2

    def test_failed_action_is_error(self, bridge):
        response = call_tool(bridge, "browser_click", {"selector": "#missing", "timeout": 50})
        assert response["isError"] is True
        assert json.loads(response["content"][0]["text"])["errorType"] == "selector"

    def test_invalid_arguments_never_reach_browser(self, bridge, browser):
        response = call_tool(bridge, "browser_navigate", {"url": ""})
        assert response["isError"] is True
        assert json.loads(response["content"][0]["text"])["errorType"] == "invalid_request"
        assert "Page.navigate" not in browser.methods()


class TestLogTools:
    def _payload(self, response):
        return json.loads(response["content"][0]["text"])

    def test_listed_with_log_file_argument(self):
        tools = {t["name"]: t for t in list_tools()}
        for name in LOG_TOOLS:
            assert "logFile" in tools[name]["inputSchema"]["properties"]

    def test_summary_runs_without_browser(self, catalog, written_log):
        response = call_tool(None, "get_log_summary", {}, catalog=catalog)
        assert response["isError"] is False
        payload = self._payload(response)
        assert payload["logFile"] == "session.log"
        assert payload["result"]["statistics"]["total"] == 3
        assert payload["result"]["health"]["grade"] == "F"

    def test_find_errors(self, catalog, written_log):
        payload = self._payload(call_tool(None, "find_errors", {"includeContext": False}, catalog=catalog))
        assert payload["result"]["totalErrors"] == 2
        assert {g["category"] for g in payload["result"]["groups"]} == {"console_error", "client_error"}

    def test_network_failures_time_window(self, catalog, written_log):
        payload = self._payload(call_tool(None, "get_network_failures", {"statusCodes": [404]}, catalog=catalog))
        assert payload["result"]["failureCount"] == 1
        # The log is from 2024, so a five-minute window ending now is empty.
        payload = self._payload(call_tool(None, "get_network_failures", {"timeWindow": 5}, catalog=catalog))
        assert payload["result"]["failureCount"] == 0

    def test_search(self, catalog, written_log):
        payload = self._payload(call_tool(None, "search_logs", {"pattern": "CANNOT read", "maxResults": 5},
                                          catalog=catalog))
        assert payload["result"]["totalMatches"] == 1

    def test_bad_pattern_is_invalid_request(self, catalog, written_log):
        response = call_tool(None, "search_logs", {"pattern": "[a-"}, catalog=catalog)
        assert response["isError"] is True
        assert self._payload(response)["errorType"] == "invalid_request"

    def test_unknown_log_file(self, catalog, written_log):
        response = call_tool(None, "get_log_summary", {"logFile": "other.log"}, catalog=catalog)
        assert response["isError"] is True
        assert self._payload(response)["errorType"] == "not_found"

    def test_no_catalog(self):
        response = call_tool(None, "search_logs", {"pattern": "x"})
        assert self._payload(response)["errorType"] == "not_found"
