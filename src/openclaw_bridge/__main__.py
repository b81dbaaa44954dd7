"""Command-line entry point: ``openclaw-bridge`` / ``python -m openclaw_bridge``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from openclaw_bridge.config import BridgeConfig
from openclaw_bridge.exceptions import BridgeConfigError
from openclaw_bridge.runtime import BridgeRuntime

_logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openclaw-bridge",
        description="Connect a local openclaw installation to its control plane.",
    )
    parser.add_argument("--config", help="KEY=VALUE env file loaded before reading the environment")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BRIDGE_LOG_LEVEL", "INFO"),
        help="Logging level (default: $BRIDGE_LOG_LEVEL or INFO)",
    )
    return parser


async def run(config: BridgeConfig) -> None:
    """Run the bridge until SIGINT, SIGTERM or SIGHUP."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _request_stop(signame: str) -> None:
        _logger.info("Received %s, shutting down", signame)
        stop_event.set()

    for sig in _STOP_SIGNALS:
        loop.add_signal_handler(sig, _request_stop, sig.name)
    try:
        async with BridgeRuntime(config) as runtime:
            await runtime.start()
            await stop_event.wait()
    finally:
        for sig in _STOP_SIGNALS:
            loop.remove_signal_handler(sig)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.config:
        os.environ["BRIDGE_CONFIG_FILE"] = args.config

    try:
        config = BridgeConfig.from_env()
        asyncio.run(run(config))
    except BridgeConfigError as exc:
        _logger.error("%s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
