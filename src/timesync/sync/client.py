"""Client side of the time synchronization.

Answers the server's sync requests, applies the offsets it pushes and exposes the
corrected time. Optionally watches the local clock for manual changes and
asks the server for a fresh round when one is detected.

Offset convention:
    server_time = local_time + offset
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog

from timesync.protocol.channel import ClientChannel
from timesync.protocol.messages import MessageKind, SyncNow, SyncRequest, SyncResponse, TimeOffset
from timesync.timing.scheduler import Clock, Scheduler, TimerHandle, wall_clock_ms

logger = structlog.get_logger(__name__)

OffsetCallback = Callable[[float], None]

DEFAULT_TIME_CHANGE_INTERVAL = 60000
DEFAULT_TIME_CHANGE_THRESHOLD = 15


def _noop(offset: float) -> None:
    pass


class TimeSyncClient:
    def __init__(self, channel: ClientChannel, scheduler: Scheduler, clock: Optional[Clock] = None):
        self.channel = channel
        self.scheduler = scheduler
        self.clock: Clock = clock or wall_clock_ms

        self.synced = False
        self.offset: float = 0

        self.time_change_interval: float = DEFAULT_TIME_CHANGE_INTERVAL
        self.time_change_threshold: float = DEFAULT_TIME_CHANGE_THRESHOLD
        self._time_change_stamp: Optional[int] = None
        self._time_change_timer: Optional[TimerHandle] = None

        self._on_sync: OffsetCallback = _noop
        self._on_initial_sync: OffsetCallback = _noop

        self.channel.on(MessageKind.REQUEST, self.respond_to_sync_request)
        self.channel.on(MessageKind.OFFSET, self.process_time_offset)

    # ---- Callbacks -----------------------------------------------------------

    def on_sync(self, callback: OffsetCallback) -> None:
        """Call ``callback(offset)`` every time a new offset arrives."""
        if not callable(callback):
            raise TypeError("on_sync callback must be callable")
        self._on_sync = callback

    def on_initial_sync(self, callback: OffsetCallback) -> None:
        """Call ``callback(offset)`` once, when the first offset arrives."""
        if not callable(callback):
            raise TypeError("on_initial_sync callback must be callable")
        self._on_initial_sync = callback

    # ---- Offset state --------------------------------------------------------

    def get_offset(self) -> float:
        return self.offset

    def is_synced(self) -> bool:
        """True once the server has sent at least one offset."""
        return self.synced

    def now(self) -> float:
        """Local time in ms corrected to the server's clock."""
        return self.clock() + self.offset

    def process_time_offset(self, message: TimeOffset) -> None:
        self.offset = message.time_offset
        logger.debug("time_offset_received", offset=self.offset, initial=not self.synced)
        if not self.synced:
            self.synced = True
            self._on_initial_sync(self.offset)
        self._on_sync(self.offset)

    # ---- Protocol ------------------------------------------------------------

    def respond_to_sync_request(self, message: SyncRequest) -> None:
        self.channel.send(SyncResponse(message.sample_index, message.sequence_id, self.clock()))

    def sync_now(self) -> None:
        """Ask the server for an immediate round."""
        self.channel.send(SyncNow())

    # ---- Time change detection -----------------------------------------------

    def start_time_change_detection(
        self,
        interval: float = DEFAULT_TIME_CHANGE_INTERVAL,
        threshold: float = DEFAULT_TIME_CHANGE_THRESHOLD,
    ) -> None:
        """Resync when the wall clock jumps between two timer ticks.

        Example: interval=10000 (10s), threshold=10 (%) resyncs when the time
        measured between ticks is above 11000 ms, below 9000 ms or negative.
        """
        if interval <= 0:
            raise ValueError("interval must be positive")
        if threshold < 0:
            raise ValueError("threshold must not be negative")
        self.stop_time_change_detection()
        self.time_change_interval = interval
        self.time_change_threshold = threshold
        self._time_change_timer = self.scheduler.schedule_repeating(interval, self._check_time_change)
        logger.debug("time_change_detection_started", interval=interval, threshold=threshold)

    def stop_time_change_detection(self) -> None:
        if self._time_change_timer is not None:
            self._time_change_timer.cancel()
        self._time_change_timer = None
        self._time_change_stamp = None

    def _check_time_change(self) -> None:
        now = self.clock()
        if self._time_change_stamp is not None:
            elapsed = now - self._time_change_stamp
            if self.time_changed(elapsed):
                logger.info("local_time_change_detected", elapsed=elapsed, expected=self.time_change_interval)
                self.sync_now()
        self._time_change_stamp = now

    def time_changed(self, elapsed: float) -> bool:
        interval = self.time_change_interval
        tolerance = interval * self.time_change_threshold / 100
        return elapsed < 0 or elapsed > interval + tolerance or elapsed < interval - tolerance
