from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

from mobile_testing.app.configuration import Configuration, get_configuration, parse_overrides, reset_configuration
from mobile_testing.app.environment import build_default_paths
from mobile_testing.automation.driver.exceptions import ServerLifecycleError
from mobile_testing.automation.driver.server import ServerLifecycleManager
from mobile_testing.automation.driver.status import StatusClient
from mobile_testing.automation.flake_tracker import FlakeTracker

logger = logging.getLogger("mobile_testing.cli")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="mobile-testing", description="Mobile Testing Toolkit CLI")
    parser.add_argument("--config", type=Path, default=None, help="Path to a mobile_testing.ini file")
    parser.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE", help="Override a configuration key")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("config", help="Print the effective configuration summary")

    status_parser = subparsers.add_parser("status", help="Check Appium server reachability and major version")
    status_parser.add_argument("--url", help="Server URL (defaults to the configured endpoint)")

    subparsers.add_parser("serve", help="Start the managed Appium server and keep it running until Ctrl-C")

    flakes_parser = subparsers.add_parser("flakes", help="Print recorded flake statistics")
    flakes_parser.add_argument("--limit", type=int, default=20, help="Number of entries to show")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s - %(message)s")

    try:
        overrides = parse_overrides(args.overrides)
    except ValueError as exc:
        parser.error(str(exc))
    reset_configuration()
    config = get_configuration(overrides=overrides, config_path=args.config)
    logger.debug("Loaded configuration from %s", config.source or "defaults")

    if args.command == "config":
        return _handle_config(config)
    if args.command == "status":
        return _handle_status(config, args.url)
    if args.command == "serve":
        return _handle_serve(config)
    if args.command == "flakes":
        return _handle_flakes(config, args.limit)
    parser.print_help()
    return 1


def _handle_config(config: Configuration) -> int:
    print(json.dumps(config.describe(), indent=2))
    return 0


def _handle_status(config: Configuration, url: Optional[str], client: Optional[StatusClient] = None) -> int:
    client = client or StatusClient()
    target = (url or config.server_url()).rstrip("/")
    try:
        code = client.probe(target)
    except Exception as exc:
        print(f"{target}: unreachable ({exc})")
        return 2
    major = client.major_version(target) if 200 <= code < 300 else None
    required = config.required_major_version()
    print(f"{target}: HTTP {code}, major version {major if major is not None else 'unknown'} (required {required or 'any'})")
    return 0 if 200 <= code < 500 else 2


def _handle_serve(config: Configuration, stop_event: Optional[threading.Event] = None) -> int:
    paths = build_default_paths(config)
    manager = ServerLifecycleManager(config, log_path=paths.appium_log)
    try:
        handle = manager.ensure_started()
    except ServerLifecycleError as exc:
        logger.error("%s", exc)
        return 3
    if not handle.owned and handle.mode != "reused":
        logger.info("No local Appium server is managed (mode=%s); set appium.local=true to start one.", handle.mode)
        return 0
    logger.info("Appium server running at %s (mode=%s, major=%s). Press Ctrl-C to stop.", handle.url, handle.mode, handle.version)
    stop_event = stop_event or threading.Event()
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down Appium server.")
    finally:
        manager.shutdown()
    return 0


def _handle_flakes(config: Configuration, limit: int) -> int:
    paths = build_default_paths(config)
    tracker = FlakeTracker(paths.flake_stats)
    rows = tracker.most_flaky(limit)
    if not rows:
        print("No flaky tests recorded.")
        return 0
    for group, name, count in rows:
        print(f"{count:>4}  {group}  {name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
