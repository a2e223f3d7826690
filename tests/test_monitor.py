"""Tests for logbridge/monitor.py"""

import json

import pytest

from conftest import FAKE_WS_URL, wait_until

from logbridge.config import Config
from logbridge.log_reader import parse_log_file
from logbridge.monitor import MonitorPipeline
from logbridge.session import ProtocolSession


@pytest.fixture
def config(tmp_path):
    return Config(
        ws_url=FAKE_WS_URL,
        log_file=str(tmp_path / "session.log"),
        screenshot_dir=str(tmp_path / "screenshots"),
        metrics_file=str(tmp_path / "metrics.json"),
        reconnect_delay=0.01,
    )


@pytest.fixture
def pipeline(config, browser):
    session = ProtocolSession(ws_url=config.ws_url, connect_fn=browser.connect,
                              command_timeout=2.0, recv_poll=0.05)
    monitor = MonitorPipeline(config, session=session)
    monitor.start()
    yield monitor
    if monitor.running:
        monitor.stop()


def _console(kind, message):
    return {"type": kind, "args": [{"type": "string", "value": message}]}


class TestMonitorPipeline:
    def test_start_enables_domains(self, pipeline, browser):
        assert pipeline.running
        enabled = [m for m in browser.methods() if m.endswith(".enable")]
        assert enabled == [f"{d}.enable" for d in Config().domains]

    def test_events_written_in_order(self, pipeline, browser, config):
        for n in range(5):
            browser.emit("Runtime.consoleAPICalled", _console("log", f"event {n}"))
        assert wait_until(lambda: pipeline.writer.written == 5)
        pipeline.stop()

        parsed = parse_log_file(config.log_file)
        assert parsed.parse_errors == 0
        assert parsed.metadata.log_level == "standard"
        assert [e.data["message"] for e in parsed.entries] == [f"event {n}" for n in range(5)]
        assert [e.timestamp for e in parsed.entries] == sorted(e.timestamp for e in parsed.entries)

    def test_error_entry_gets_screenshot(self, pipeline, browser, config):
        browser.emit("Runtime.consoleAPICalled", _console("error", "Uncaught failure"))
        assert wait_until(lambda: pipeline.writer.written == 1)
        pipeline.stop()

        assert "Page.captureScreenshot" in browser.methods()
        entry = parse_log_file(config.log_file).entries[0]
        assert entry.has_screenshot is True
        assert entry.severity == 5
        assert pipeline.trigger.captured == 1

    def test_network_body_fetched(self, pipeline, browser, config):
        browser.bodies["r1"] = '{"error": "database unavailable"}'
        browser.emit("Network.requestWillBeSent",
                     {"requestId": "r1", "request": {"method": "GET", "url": "https://api.example.com/users"}})
        browser.emit("Network.responseReceived", {
            "requestId": "r1",
            "response": {"url": "https://api.example.com/users", "status": 503,
                         "headers": {"content-type": "application/json"}},
        })
        browser.emit("Network.loadingFinished", {"requestId": "r1"})
        assert wait_until(lambda: pipeline.writer.written == 1)
        pipeline.stop()

        entry = parse_log_file(config.log_file).entries[0]
        assert entry.type == "network"
        assert entry.data["responseBody"] == {"error": "database unavailable"}
        assert entry.category == "server_error"
        assert entry.severity == 4

    def test_missing_body_does_not_block_entry(self, pipeline, browser, config):
        browser.emit("Network.requestWillBeSent",
                     {"requestId": "r2", "request": {"method": "GET", "url": "https://api.example.com/a"}})
        browser.emit("Network.responseReceived", {
            "requestId": "r2",
            "response": {"status": 200, "headers": {"Content-Type": "application/json"}},
        })
        browser.emit("Network.loadingFinished", {"requestId": "r2"})
        assert wait_until(lambda: pipeline.writer.written == 1, timeout=3.0)
        pipeline.stop()
        assert "responseBody" not in parse_log_file(config.log_file).entries[0].data

    def test_filtered_and_unmapped_events(self, pipeline, browser):
        browser.emit("Runtime.consoleAPICalled", _console("debug", "noise"))
        browser.emit("Animation.animationStarted", {})
        browser.emit("Runtime.consoleAPICalled", _console("log", "kept"))
        assert wait_until(lambda: pipeline.metrics.entries_written == 1)
        stats = pipeline.stats()
        assert stats["normalizer"]["filtered"] == 1
        assert stats["normalizer"]["unmapped"] >= 1
        assert stats["entries_by_type"] == {"console": 1}
        assert stats["events_received"] == 3

    def test_reconnects_after_drop(self, pipeline, browser):
        browser.drop()
        assert wait_until(lambda: browser.connect_count == 2 and pipeline.session.connected, timeout=3.0)
        browser.emit("Runtime.consoleAPICalled", _console("log", "after reconnect"))
        assert wait_until(lambda: pipeline.writer.written == 1)
        assert pipeline.metrics.disconnects == 1
        assert wait_until(lambda: pipeline.metrics.reconnects == 1)

    def test_stop_writes_footer_and_metrics(self, pipeline, config):
        pipeline.stop()
        pipeline.save_metrics()
        with open(config.log_file) as f:
            assert "# Session ended:" in f.read()
        with open(config.metrics_file) as f:
            snapshot = json.load(f)
        assert snapshot["entries_by_type"] == {}
        assert snapshot["disconnects"] == 0
        assert "filtered" in snapshot["normalizer"]
        assert pipeline.session.connected is False
