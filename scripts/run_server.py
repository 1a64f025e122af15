#!/usr/bin/env python3
"""Run the time sync server over TCP.

Usage examples:
  - python scripts/run_server.py
  - python scripts/run_server.py --port 9300 --sync-interval 30000 --samples 5

Options not given on the command line come from TIMESYNC_* environment
variables (or a .env file), see ``timesync.config.settings.Settings``.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path


# Ensure src is on sys.path when running from a checkout
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from timesync.config.settings import Settings  # noqa: E402
from timesync.sync.server import TimeSyncServer  # noqa: E402
from timesync.timing.scheduler import AsyncioScheduler  # noqa: E402
from timesync.transport.tcp import TcpServerChannel  # noqa: E402
from timesync.utils.logging_config import setup_logging  # noqa: E402


def parse_args(settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the time sync server")
    parser.add_argument("--host", default=settings.HOST)
    parser.add_argument("--port", type=int, default=settings.PORT)
    parser.add_argument("--samples", type=int, default=settings.MAX_SAMPLE_COUNT, help="Samples per round")
    parser.add_argument("--sync-interval", type=int, default=settings.SYNC_INTERVAL, help="Resync period (ms)")
    parser.add_argument("--initial-delay", type=int, default=settings.INITIAL_SYNC_DELAY, help="First round delay (ms)")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    parser.add_argument("--log-path", default=settings.LOG_PATH)
    return parser.parse_args()


async def serve(args: argparse.Namespace, settings: Settings) -> None:
    channel = TcpServerChannel(args.host, args.port)
    server = TimeSyncServer(channel, AsyncioScheduler())
    server.configure(
        settings.sync_configuration(),
        max_sample_count=args.samples,
        sync_interval=args.sync_interval,
        initial_sync_delay=args.initial_delay,
    )
    try:
        await channel.serve_forever()
    finally:
        server.shutdown()
        await channel.stop()


def main() -> None:
    settings = Settings()
    args = parse_args(settings)
    logger = setup_logging(level=args.log_level, component="server", log_path=args.log_path)
    logger.info("starting_time_sync_server", host=args.host, port=args.port)
    try:
        asyncio.run(serve(args, settings))
    except KeyboardInterrupt:
        logger.info("time_sync_server_interrupted")


if __name__ == "__main__":
    main()
