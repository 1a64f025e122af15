#!/usr/bin/env python3
"""Connect a time sync client to a running server and report the offset.

Usage examples:
  - python scripts/run_client.py
  - python scripts/run_client.py --host 10.0.0.5 --port 9300 --detect-interval 10000 --threshold 10
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path


# Ensure src is on sys.path when running from a checkout
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from timesync.config.settings import Settings  # noqa: E402
from timesync.sync.client import TimeSyncClient  # noqa: E402
from timesync.timing.scheduler import AsyncioScheduler  # noqa: E402
from timesync.transport.tcp import TcpClientChannel  # noqa: E402
from timesync.utils.logging_config import setup_logging  # noqa: E402


def parse_args(settings: Settings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Time sync client")
    parser.add_argument("--host", default=settings.HOST)
    parser.add_argument("--port", type=int, default=settings.PORT)
    parser.add_argument("--detect-interval", type=int, default=settings.TIME_CHANGE_INTERVAL,
                        help="Clock change detection period (ms), 0 disables it")
    parser.add_argument("--threshold", type=float, default=settings.TIME_CHANGE_THRESHOLD,
                        help="Clock change tolerance (%% of the period)")
    parser.add_argument("--sync-now", action="store_true", help="Request a round right after connecting")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser.parse_args()


async def run(args: argparse.Namespace, logger) -> int:
    channel = TcpClientChannel(args.host, args.port)
    client = TimeSyncClient(channel, AsyncioScheduler())
    client.on_initial_sync(lambda offset: logger.info("initial_sync", offset=offset))
    client.on_sync(lambda offset: logger.info("synced", offset=offset, server_now=client.now()))

    try:
        await channel.connect()
    except (OSError, asyncio.TimeoutError) as e:
        logger.error("connect_failed", host=args.host, port=args.port, error=str(e))
        return 1

    if args.detect_interval > 0:
        client.start_time_change_detection(args.detect_interval, args.threshold)
    if args.sync_now:
        client.sync_now()

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            pass

    closed = asyncio.create_task(channel.closed.wait())
    stopping = asyncio.create_task(shutdown.wait())
    try:
        await asyncio.wait({closed, stopping}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        closed.cancel()
        stopping.cancel()
        client.stop_time_change_detection()
        await channel.close()
    return 0


def main() -> None:
    settings = Settings()
    args = parse_args(settings)
    logger = setup_logging(level=args.log_level, component="client")
    try:
        sys.exit(asyncio.run(run(args, logger)))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
