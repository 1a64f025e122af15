"""Server side of the NTP-style time synchronization.

The server owns one ``SyncSession`` per connection. A round sends
``max_sample_count`` REQUESTs one after another, turns every RESPONSE into
a ping and an offset sample, reduces the samples with ``estimate_offset``
and pushes the result to the client as OFFSET.

Rounds are started:
  - once per connection, ``initial_sync_delay`` ms after it opens
  - for every connection each ``sync_interval`` ms, spread over the interval
    in groups of ``sync_session_groups_count`` connections
  - whenever the client sends SYNC_NOW
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Set

import structlog

from timesync.config.settings import ConfigLike, SyncConfiguration, merge_configuration
from timesync.protocol.channel import ServerChannel
from timesync.protocol.messages import MessageKind, SyncNow, SyncRequest, SyncResponse, TimeOffset
from timesync.sync.estimator import EmptySampleSetError, estimate_offset
from timesync.sync.session import SyncSession
from timesync.timing.scheduler import Clock, Scheduler, TimerHandle, wall_clock_ms

logger = structlog.get_logger(__name__)


def partition(ids: Sequence[Hashable], group_size: int) -> List[List[Hashable]]:
    """Split ``ids`` into consecutive groups of at most ``group_size``."""
    return [list(ids[i:i + group_size]) for i in range(0, len(ids), group_size)]


class TimeSyncServer:
    def __init__(self, channel: ServerChannel, scheduler: Scheduler, clock: Optional[Clock] = None):
        self.channel = channel
        self.scheduler = scheduler
        self.clock: Clock = clock or wall_clock_ms
        self.config = SyncConfiguration()
        self.sessions: Dict[Hashable, SyncSession] = {}
        self.stats: Counter = Counter()

        self._configured = False
        self._sync_timer: Optional[TimerHandle] = None
        self._pending: Set[TimerHandle] = set()

        self.channel.on(MessageKind.SYNC_NOW, self._handle_sync_now)
        self.channel.on(MessageKind.RESPONSE, self.process_sync_response)

    # ---- Configuration -------------------------------------------------------

    def configure(self, config: ConfigLike = None, **overrides: Any) -> SyncConfiguration:
        """Apply options over the defaults and start scheduling rounds."""
        self.config = merge_configuration(config, **overrides)

        if not self._configured:
            self.channel.on_connect(self.on_connect)
            self.channel.on_disconnect(self.on_disconnect)
            self._configured = True

        if self._sync_timer is not None:
            self._sync_timer.cancel()
        self._sync_timer = self.scheduler.schedule_repeating(self.config.sync_interval, self.sync_all)

        logger.info("time_sync_configured", **self.config.model_dump())
        return self.config

    def shutdown(self) -> None:
        """Stop all timers and forget every session."""
        if self._sync_timer is not None:
            self._sync_timer.cancel()
            self._sync_timer = None
        for handle in self._pending:
            handle.cancel()
        self._pending.clear()
        if self._configured:
            self.channel.remove_listeners(self.on_connect, self.on_disconnect)
            self._configured = False
        self.sessions.clear()
        logger.info("time_sync_stopped")

    # ---- Connection lifecycle ------------------------------------------------

    def on_connect(self, connection_id: Hashable) -> None:
        self._schedule(self.config.initial_sync_delay, lambda: self.sync_now(connection_id))

    def on_disconnect(self, connection_id: Hashable) -> None:
        if self.sessions.pop(connection_id, None) is not None:
            logger.debug("session_removed", connection_id=str(connection_id))

    # ---- Scheduling ----------------------------------------------------------

    def sync_all(self) -> None:
        """Resync every connection, staggering groups across ``sync_interval``."""
        groups = partition(list(self.channel.connection_ids()), self.config.sync_session_groups_count)
        if not groups:
            return
        spacing = self.config.sync_interval / len(groups)
        logger.debug("periodic_sync", connections=sum(map(len, groups)), groups=len(groups), spacing=spacing)
        for group_id, group in enumerate(groups):
            self.sync_after(group_id * spacing, group)

    def sync_after(self, delay: float, connection_ids: Sequence[Hashable]) -> None:
        def trigger() -> None:
            for connection_id in connection_ids:
                self._schedule(0, lambda cid=connection_id: self.sync_now(cid))
        self._schedule(delay, trigger)

    def _schedule(self, delay: float, task: Callable[[], None]) -> TimerHandle:
        handle = None

        def run() -> None:
            self._pending.discard(handle)
            task()

        handle = self.scheduler.schedule_once(delay, run)
        self._pending.add(handle)
        return handle

    # ---- Rounds --------------------------------------------------------------

    def sync_now(self, connection_id: Hashable) -> bool:
        """Start a round for ``connection_id``; returns whether one (re)started."""
        if not self.channel.is_connected(connection_id):
            return False

        session = self.sessions.get(connection_id)
        if session is None:
            session = self.sessions[connection_id] = SyncSession(connection_id)
        elif session.in_progress:
            if not session.register_skip(self.config.max_skip):
                self.stats["skipped"] += 1
                logger.debug("sync_coalesced", connection_id=str(connection_id), skip=session.skip)
                return False
            self.stats["forced_resets"] += 1
            logger.info("sync_round_forced", connection_id=str(connection_id), samples=session.sample_count)

        session.begin_round()
        self.stats["rounds_started"] += 1
        logger.debug("sync_round_started", connection_id=str(connection_id), sequence_id=session.sequence_id)
        self.send_request(0, connection_id)
        return True

    def _handle_sync_now(self, message: SyncNow, connection_id: Hashable) -> None:
        self.sync_now(connection_id)

    def send_request(self, sample_index: int, connection_id: Hashable) -> None:
        session = self.sessions.get(connection_id)
        if session is None:
            return
        session.record_request(sample_index, self.clock())
        self.channel.send(SyncRequest(sample_index, session.sequence_id), connection_id)

    def process_sync_response(self, message: SyncResponse, connection_id: Hashable) -> None:
        session = self.sessions.get(connection_id)
        if session is None:
            self.stats["responses_dropped"] += 1
            return
        if not session.accepts(message.sequence_id, message.sample_index, self.config.max_sample_count):
            self.stats["responses_dropped"] += 1
            logger.debug(
                "stale_response_dropped",
                connection_id=str(connection_id),
                sequence_id=message.sequence_id,
                expected_sequence_id=session.sequence_id,
                sample_index=message.sample_index,
            )
            return

        measurement = session.record_response(message.sample_index, self.clock(), message.client_timestamp)
        self.stats["responses_accepted"] += 1
        logger.debug(
            "sync_sample",
            connection_id=str(connection_id),
            sample_index=message.sample_index,
            ping=measurement.ping,
            offset=measurement.offset,
        )

        if session.sample_count < self.config.max_sample_count:
            self._request_next(session)
        else:
            self.compute_offset(connection_id)

    def _request_next(self, session: SyncSession) -> None:
        connection_id = session.connection_id
        sample_index = session.sample_count
        delay = self.config.time_delay_between_requests
        if delay == 0:
            self.send_request(sample_index, connection_id)
            return

        sequence_id = session.sequence_id

        def send_later() -> None:
            current = self.sessions.get(connection_id)
            # Session gone or replaced by a newer round meanwhile
            if current is not session or not current.in_progress or current.sequence_id != sequence_id:
                return
            self.send_request(sample_index, connection_id)

        self._schedule(delay, send_later)

    def compute_offset(self, connection_id: Hashable) -> Optional[float]:
        """Reduce the round's samples, return the session to IDLE and push OFFSET."""
        session = self.sessions.get(connection_id)
        if session is None:
            return None
        session.finish()
        try:
            offset = estimate_offset(session.offsets)
        except EmptySampleSetError:
            self.stats["rounds_empty"] += 1
            logger.warning("sync_round_without_samples", connection_id=str(connection_id))
            return None

        self.stats["rounds_completed"] += 1
        logger.info(
            "time_offset_computed",
            connection_id=str(connection_id),
            offset=offset,
            samples=session.sample_count,
        )
        self.channel.send(TimeOffset(offset), connection_id)
        return offset
