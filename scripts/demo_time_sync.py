#!/usr/bin/env python3
"""
Time Synchronization Demonstration Script

Runs a server and a population of skewed clients in one process on virtual
time, then prints what every client believes the server time to be:
1. Initial sync of each connection
2. Staggered periodic resync across the population
3. A manual clock change on one client picked up by drift detection
"""

from __future__ import annotations

import argparse
import random
import sys
from pathlib import Path
from typing import Dict

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from timesync.protocol.messages import Message  # noqa: E402
from timesync.sync.client import TimeSyncClient  # noqa: E402
from timesync.sync.server import TimeSyncServer  # noqa: E402
from timesync.timing.scheduler import ManualScheduler  # noqa: E402
from timesync.transport.loopback import LoopbackHub  # noqa: E402
from timesync.utils.logging_config import setup_logging  # noqa: E402


class SkewedClock:
    """Virtual wall clock of one process: scheduler time plus a skew."""

    def __init__(self, scheduler: ManualScheduler, skew: int):
        self.scheduler = scheduler
        self.skew = skew

    def __call__(self) -> int:
        return int(self.scheduler.now) + self.skew


def run_demo(clients: int, samples: int, jitter: int, seed: int) -> None:
    rng = random.Random(seed)
    scheduler = ManualScheduler(start=1_700_000_000_000)

    def latency(message: Message) -> float:
        # Mostly small delays with the occasional retransmission-like spike
        base = rng.uniform(5, 5 + jitter)
        return base * 10 if rng.random() < 0.05 else base

    hub = LoopbackHub(scheduler, latency=latency, history=0)
    server = TimeSyncServer(hub.server, scheduler, clock=lambda: int(scheduler.now))
    server.configure(max_sample_count=samples, sync_interval=60000, sync_session_groups_count=4,
                     initial_sync_delay=1000)

    population: Dict[str, TimeSyncClient] = {}
    clocks: Dict[str, SkewedClock] = {}
    for _ in range(clients):
        channel = hub.connect()
        clock = SkewedClock(scheduler, skew=rng.randint(-5000, 5000))
        client = TimeSyncClient(channel, scheduler, clock=clock)
        population[channel.connection_id] = client
        clocks[channel.connection_id] = clock

    print("=== INITIAL SYNC ===\n")
    scheduler.advance(5000)
    report(population, clocks, scheduler)

    print("\n=== STAGGERED PERIODIC RESYNC ===\n")
    rounds_before = server.stats["rounds_started"]
    scheduler.advance(60000)
    print(f"rounds started during the interval: {server.stats['rounds_started'] - rounds_before}")
    report(population, clocks, scheduler)

    print("\n=== MANUAL CLOCK CHANGE ===\n")
    victim = next(iter(population))
    population[victim].start_time_change_detection(10000, 10)
    scheduler.advance(10000)
    clocks[victim].skew += 3000
    print(f"{victim}: local clock moved forward by 3000 ms")
    scheduler.advance(15000)
    report({victim: population[victim]}, {victim: clocks[victim]}, scheduler)

    print(f"\nserver stats: {dict(server.stats)}")


def report(population: Dict[str, TimeSyncClient], clocks: Dict[str, SkewedClock], scheduler: ManualScheduler) -> None:
    for connection_id, client in population.items():
        error = client.now() - scheduler.now
        print(
            f"  {connection_id}: skew={clocks[connection_id].skew:+6d}ms "
            f"offset={client.get_offset():+9.1f}ms synced={client.is_synced()} error={error:+6.1f}ms"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="In-process time sync simulation")
    parser.add_argument("--clients", type=int, default=10)
    parser.add_argument("--samples", type=int, default=10)
    parser.add_argument("--jitter", type=int, default=20, help="Max extra one-way latency (ms)")
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    setup_logging(level=args.log_level, component="demo", json_output=False)
    run_demo(args.clients, args.samples, args.jitter, args.seed)


if __name__ == "__main__":
    main()
