"""Per-connection sampling round state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, List, Optional

# Sequence ids wrap back to 0 once they pass this value
MAX_SEQUENCE_ID = 100


class SessionState(Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"


@dataclass
class Measurement:
    sample_index: int
    sent_at: int
    ping: Optional[float] = None
    offset: Optional[float] = None

    @property
    def answered(self) -> bool:
        return self.offset is not None


@dataclass
class SyncSession:
    connection_id: Hashable
    state: SessionState = SessionState.IDLE
    sequence_id: int = 0
    skip: int = 0
    rounds: int = 0
    measurements: Dict[int, Measurement] = field(default_factory=dict)
    offsets: List[float] = field(default_factory=list)

    @property
    def in_progress(self) -> bool:
        return self.state is SessionState.IN_PROGRESS

    @property
    def sample_count(self) -> int:
        return len(self.offsets)

    def begin_round(self) -> None:
        """Clear the previous round and enter IN_PROGRESS under a fresh sequence id."""
        if self.rounds:
            self.sequence_id += 1
            if self.sequence_id > MAX_SEQUENCE_ID:
                self.sequence_id = 0
        self.rounds += 1
        self.state = SessionState.IN_PROGRESS
        self.skip = 0
        self.measurements = {}
        self.offsets = []

    def register_skip(self, max_skip: int) -> bool:
        """Count a resync request that arrived mid-round.

        Returns True once more than ``max_skip`` requests were coalesced and
        the round should be forced to restart.
        """
        self.skip += 1
        return self.skip > max_skip

    def record_request(self, sample_index: int, sent_at: int) -> Measurement:
        measurement = Measurement(sample_index=sample_index, sent_at=sent_at)
        self.measurements[sample_index] = measurement
        return measurement

    def accepts(self, sequence_id: int, sample_index: int, max_sample_count: int) -> bool:
        """Whether a RESPONSE with these ids belongs to the running round."""
        if not self.in_progress or sequence_id != self.sequence_id:
            return False
        if not 0 <= sample_index < max_sample_count:
            return False
        measurement = self.measurements.get(sample_index)
        return measurement is not None and not measurement.answered

    def record_response(self, sample_index: int, received_at: int, client_timestamp: int) -> Measurement:
        """Fill in ping and offset of an outstanding sample (halved round-trip model)."""
        measurement = self.measurements[sample_index]
        ping = received_at - measurement.sent_at
        measurement.ping = ping
        measurement.offset = received_at - (client_timestamp + ping / 2)
        self.offsets.append(measurement.offset)
        return measurement

    def finish(self) -> None:
        self.state = SessionState.IDLE
