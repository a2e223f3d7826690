#!/usr/bin/env python3
"""logbridge: browser event monitor and control bridge. Entry point."""

import argparse
import json
import logging
import signal
import sys
import time

from apscheduler.schedulers.background import BackgroundScheduler

from logbridge.bridge import ControlBridge
from logbridge.config import VERBOSITY_LEVELS, load_config, load_yaml_config
from logbridge.control_server import ControlServer, create_app
from logbridge.enrichment import Enricher
from logbridge.errors import LogBridgeError
from logbridge.log_reader import parse_log_file
from logbridge.monitor import MonitorPipeline
from logbridge.resources import LogCatalog
from logbridge.screenshots import ScreenshotStore
from logbridge.stats import format_statistics_text, query_entries
from logbridge.tailer import LogTailer

logger = logging.getLogger(__name__)

_running = True


def _signal_handler(sig, frame):
    global _running
    logger.info("Shutdown signal received, stopping...")
    _running = False


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="logbridge", description="Browser event monitor and control bridge")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Monitor a browser and serve the control API")
    run.add_argument("--config", default=None, help="Path to YAML config file")
    run.add_argument("--cdp-host", dest="cdp_host", default=None, help="Remote debugging host")
    run.add_argument("--cdp-port", dest="cdp_port", type=int, default=None, help="Remote debugging port")
    run.add_argument("--ws-url", dest="ws_url", default=None, help="Page websocket URL (skips /json discovery)")
    run.add_argument("--log-file", dest="log_file", default=None, help="Session log path")
    run.add_argument("--screenshot-dir", dest="screenshot_dir", default=None, help="Screenshot directory")
    run.add_argument("--verbosity", choices=VERBOSITY_LEVELS, default=None, help="Log verbosity filter")
    run.add_argument("--control-port", dest="control_port", type=int, default=None, help="Control API port")
    run.add_argument("--no-control", dest="control_enabled", action="store_false", default=None,
                     help="Do not start the control API")
    run.add_argument("--url", dest="start_url", default=None, help="Navigate here once connected")

    summary = sub.add_parser("summary", help="Summarize or query a session log file")
    summary.add_argument("log_file", help="Session log to read")
    summary.add_argument("--screenshot-dir", default="./screenshots", help="Screenshot directory")
    summary.add_argument("--errors", action="store_true", help="Only error entries")
    summary.add_argument("--type", dest="types", default=None, help="Comma-separated entry types")
    summary.add_argument("--level", dest="levels", default=None, help="Comma-separated levels")
    summary.add_argument("--search", default=None, help="Case-insensitive text search")
    summary.add_argument("--min-severity", dest="min_severity", type=int, default=None, help="Minimum severity 1-5")
    summary.add_argument("--limit", type=int, default=None, help="Max entries to print")
    summary.add_argument("--output", choices=("text", "json"), default="text", help="Output format")
    return parser


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [LOGBRIDGE] %(levelname)s %(message)s",
        stream=sys.stderr,
    )


def run_command(args) -> int:
    yaml_data = load_yaml_config(args.config)
    config = load_config(args, yaml_data)
    logger.info("Config: cdp=%s:%d, log_file=%s, verbosity=%s, control=%s",
                config.cdp_host, config.cdp_port, config.log_file, config.verbosity,
                f"{config.control_host}:{config.control_port}" if config.control_enabled else "off")

    pipeline = MonitorPipeline(config)
    try:
        pipeline.start()
    except LogBridgeError as e:
        logger.error("Could not start monitoring: %s", e)
        pipeline.stop()
        return 1

    bridge = ControlBridge(
        pipeline.session,
        pipeline.screenshots,
        poll_interval=config.poll_interval,
        queue_timeout=config.queue_timeout,
        reconnect_attempts=config.reconnect_attempts,
        reconnect_delay=config.reconnect_delay,
    )
    catalog = LogCatalog([], pipeline.screenshots, enricher=Enricher(screenshots=pipeline.screenshots))
    tail_reader = catalog.add(config.log_file)
    tailer = LogTailer(tail_reader, debounce=config.tail_debounce)
    tailer.start()

    server = None
    if config.control_enabled:
        server = ControlServer(create_app(bridge, catalog, pipeline), config.control_host, config.control_port)
        server.start()

    scheduler = None
    if config.metrics_file:
        scheduler = BackgroundScheduler()
        scheduler.add_job(pipeline.save_metrics, "interval", seconds=config.metrics_interval)
        scheduler.start()

    logger.info("logbridge running. Press Ctrl+C to stop.")
    try:
        while _running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass

    logger.info("Shutting down...")
    if server is not None:
        server.stop()
    tailer.stop()
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    pipeline.stop()
    pipeline.save_metrics()

    stats = pipeline.stats()
    logger.info("Stats: %d entries written, %d events received, %d parse errors while tailing",
                stats["entries_written"], stats["events_received"], tail_reader.parse_errors)
    logger.info("logbridge stopped.")
    return 0


def summary_command(args) -> int:
    enricher = Enricher(screenshots=ScreenshotStore(args.screenshot_dir))
    try:
        parsed = parse_log_file(args.log_file, enricher=enricher)
    except FileNotFoundError as e:
        logger.error("%s", e)
        return 1

    filtering = any((args.errors, args.types, args.levels, args.search, args.min_severity))
    if not filtering:
        if args.output == "json":
            print(json.dumps({
                "metadata": parsed.metadata.to_dict() if parsed.metadata else None,
                "statistics": parsed.statistics.to_dict(),
                "parseErrors": parsed.parse_errors,
            }, indent=2))
        else:
            print(format_statistics_text(parsed.statistics, parsed.parse_errors))
        return 0

    levels = "error" if args.errors and not args.levels else args.levels
    result = query_entries(
        parsed.entries,
        limit=args.limit,
        types=args.types,
        levels=levels,
        min_severity=args.min_severity,
        search=args.search,
    )
    if args.output == "json":
        print(json.dumps(result, indent=2, default=str))
    else:
        for entry in result["entries"]:
            print(f"{entry['timestamp']}  [{entry['level']:5s}] sev={entry.get('severity')} "
                  f"{entry['type']:11s} {entry.get('summary', '')}")
        print(f"\n{len(result['entries'])} of {result['total']} matching entries")
    return 0


def main(argv=None) -> int:
    parser = build_cli_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug)

    if args.command == "run":
        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)
        return run_command(args)
    return summary_command(args)


if __name__ == "__main__":
    sys.exit(main())
