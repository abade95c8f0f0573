"""Command line entry point: ``autohub`` / ``python -m autohub``."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
from typing import Any

from autohub._redact import redact_for_log
from autohub.config import HubConfig
from autohub.exceptions import HubConfigError
from autohub.hub import Hub

_LOG = logging.getLogger("autohub")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Vehicle automation hub: serial ingestion, power triggers and HTTP API.",
    )
    parser.add_argument(
        "--settings-file",
        help="Path of the persisted settings JSON (overrides AUTOHUB_SETTINGS_FILE).",
    )
    parser.add_argument(
        "--session-file",
        help="Where to persist the session table on shutdown.",
    )
    parser.add_argument(
        "--host",
        help="HTTP bind address.",
    )
    parser.add_argument(
        "--port",
        type=int,
        help="HTTP port.",
    )
    parser.add_argument(
        "--serial-port",
        help="Primary serial device, e.g. /dev/ttyACM0.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    mapping = {
        "settings_file": args.settings_file,
        "session_file": args.session_file,
        "http_host": args.host,
        "http_port": args.port,
        "serial_port": args.serial_port,
    }
    overrides = {key: value for key, value in mapping.items() if value is not None}
    if args.verbose:
        overrides["debug"] = True
    return overrides


async def _run(config: HubConfig) -> None:
    loop = asyncio.get_running_loop()
    async with Hub(config) as hub:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, hub.stop)
        await hub.serve()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        config = HubConfig.from_env(**_overrides(args))
    except HubConfigError as exc:
        print(f"autohub: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    _LOG.debug("Configuration: %s", redact_for_log(dataclasses.asdict(config)))

    try:
        asyncio.run(_run(config))
    except HubConfigError as exc:
        _LOG.error("%s", exc)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
