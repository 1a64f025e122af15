"""TimeSyncServer tests (no network; fake channel + virtual time)."""

import sys
from pathlib import Path

# Ensure src is importable
ROOT = Path(__file__).parent.parent
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import pytest

from timesync.protocol.channel import ServerChannel  # noqa: E402
from timesync.protocol.messages import MessageKind, SyncNow, SyncRequest, SyncResponse, TimeOffset  # noqa: E402
from timesync.sync.server import TimeSyncServer, partition  # noqa: E402
from timesync.sync.session import SessionState  # noqa: E402
from timesync.timing.scheduler import ManualClock, ManualScheduler  # noqa: E402


class FakeServerChannel(ServerChannel):
    def __init__(self):
        super().__init__()
        self.open_ids = []
        self.sent = []

    def open(self, connection_id):
        self.open_ids.append(connection_id)
        self._notify_connect(connection_id)

    def close(self, connection_id):
        self.open_ids.remove(connection_id)
        self._notify_disconnect(connection_id)

    def connection_ids(self):
        return list(self.open_ids)

    def send(self, message, connection_id=None):
        self.sent.append((message, connection_id))

    def sent_of(self, kind, connection_id=None):
        return [m for m, cid in self.sent if m.kind == kind and (connection_id is None or cid == connection_id)]


@pytest.fixture
def channel():
    return FakeServerChannel()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def clock():
    return ManualClock(1000)


@pytest.fixture
def server(channel, scheduler, clock):
    s = TimeSyncServer(channel, scheduler, clock=clock)
    s.configure(max_sample_count=3)
    return s


def answer(server, channel, connection_id, client_timestamp):
    """Answer the most recent REQUEST sent to ``connection_id``."""
    request = channel.sent_of(MessageKind.REQUEST, connection_id)[-1]
    server.process_sync_response(
        SyncResponse(request.sample_index, request.sequence_id, client_timestamp), connection_id
    )


class TestSyncNow:
    def test_unknown_connection_is_noop(self, server, channel):
        assert server.sync_now("ghost") is False
        assert "ghost" not in server.sessions
        assert channel.sent == []

    def test_creates_session_and_sends_first_request(self, server, channel, clock):
        channel.open_ids.append("c1")
        assert server.sync_now("c1") is True
        session = server.sessions["c1"]
        assert session.state is SessionState.IN_PROGRESS
        assert session.measurements[0].sent_at == clock()
        assert channel.sent == [(SyncRequest(0, 0), "c1")]

    def test_coalesces_until_max_skip_exceeded(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(max_sample_count=3, max_skip=2)
        channel.open_ids.append("c1")
        assert server.sync_now("c1") is True
        answer(server, channel, "c1", client_timestamp=1000)
        session = server.sessions["c1"]
        assert session.sample_count == 1

        # max_skip calls only bump the counter
        assert server.sync_now("c1") is False
        assert server.sync_now("c1") is False
        assert session.skip == 2
        assert session.sample_count == 1
        assert session.sequence_id == 0
        assert len(channel.sent_of(MessageKind.REQUEST)) == 2

        # the next one forces a fresh round
        assert server.sync_now("c1") is True
        assert session.skip == 0
        assert session.sequence_id == 1
        assert session.offsets == []
        assert list(session.measurements) == [0]
        assert channel.sent[-1] == (SyncRequest(0, 1), "c1")

    def test_idle_session_restarts_immediately(self, server, channel):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        for _ in range(3):
            answer(server, channel, "c1", client_timestamp=1000)
        assert server.sessions["c1"].state is SessionState.IDLE
        assert server.sync_now("c1") is True
        assert server.sessions["c1"].sequence_id == 1

    def test_sync_now_message_starts_round(self, server, channel):
        channel.open_ids.append("c1")
        channel.dispatch(SyncNow(), "c1")
        assert channel.sent == [(SyncRequest(0, 0), "c1")]


class TestProcessSyncResponse:
    def test_ping_and_offset(self, server, channel, clock):
        channel.open_ids.append("c1")
        server.sync_now("c1")  # sent at 1000
        clock.set(1040)
        server.process_sync_response(SyncResponse(0, 0, 520), "c1")
        m = server.sessions["c1"].measurements[0]
        assert m.ping == 40
        assert m.offset == 1040 - (520 + 40 / 2)

    def test_zero_ping_offset_equals_clock_difference(self, server, channel, clock):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        server.process_sync_response(SyncResponse(0, 0, clock() - 250), "c1")
        assert server.sessions["c1"].offsets == [250]

    def test_next_request_follows_each_sample(self, server, channel):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        answer(server, channel, "c1", client_timestamp=1000)
        answer(server, channel, "c1", client_timestamp=1000)
        requests = channel.sent_of(MessageKind.REQUEST)
        assert [r.sample_index for r in requests] == [0, 1, 2]

    def test_round_completes_and_pushes_offset(self, server, channel, clock):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        for _ in range(3):
            answer(server, channel, "c1", client_timestamp=clock() + 500)
        session = server.sessions["c1"]
        assert session.state is SessionState.IDLE
        assert session.sample_count == 3
        assert channel.sent[-1] == (TimeOffset(-500), "c1")
        assert len(channel.sent_of(MessageKind.REQUEST)) == 3
        assert server.stats["rounds_completed"] == 1

    def test_stale_sequence_id_is_ignored(self, server, channel):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        sent_before = list(channel.sent)
        server.process_sync_response(SyncResponse(0, 42, 1000), "c1")
        session = server.sessions["c1"]
        assert session.offsets == []
        assert session.measurements[0].offset is None
        assert session.state is SessionState.IN_PROGRESS
        assert channel.sent == sent_before
        assert server.stats["responses_dropped"] == 1

    def test_out_of_range_and_unexpected_indices_are_ignored(self, server, channel):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        server.process_sync_response(SyncResponse(3, 0, 1000), "c1")
        server.process_sync_response(SyncResponse(1, 0, 1000), "c1")
        assert server.sessions["c1"].offsets == []

    def test_duplicate_response_is_counted_once(self, server, channel):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        server.process_sync_response(SyncResponse(0, 0, 1000), "c1")
        server.process_sync_response(SyncResponse(0, 0, 1000), "c1")
        assert server.sessions["c1"].sample_count == 1

    def test_unknown_session_is_ignored(self, server, channel):
        server.process_sync_response(SyncResponse(0, 0, 1000), "ghost")
        assert channel.sent == []
        assert server.sessions == {}

    def test_delay_between_requests(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(max_sample_count=3, time_delay_between_requests=200)
        channel.open_ids.append("c1")
        server.sync_now("c1")
        answer(server, channel, "c1", client_timestamp=1000)
        assert len(channel.sent_of(MessageKind.REQUEST)) == 1
        scheduler.advance(199)
        assert len(channel.sent_of(MessageKind.REQUEST)) == 1
        scheduler.advance(1)
        assert channel.sent_of(MessageKind.REQUEST)[-1] == SyncRequest(1, 0)

    def test_delayed_request_dropped_after_round_reset(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(max_sample_count=3, time_delay_between_requests=200, max_skip=0)
        channel.open_ids.append("c1")
        server.sync_now("c1")
        answer(server, channel, "c1", client_timestamp=1000)
        assert server.sync_now("c1") is True  # forced, sequence 1
        scheduler.advance(500)
        assert channel.sent_of(MessageKind.REQUEST) == [SyncRequest(0, 0), SyncRequest(0, 1)]

    def test_empty_round_sends_no_offset(self, server, channel):
        channel.open_ids.append("c1")
        server.sync_now("c1")
        assert server.compute_offset("c1") is None
        assert channel.sent_of(MessageKind.OFFSET) == []
        assert server.sessions["c1"].state is SessionState.IDLE
        assert server.stats["rounds_empty"] == 1


class TestScheduling:
    def test_initial_sync_after_delay(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(initial_sync_delay=10000)
        channel.open("c1")
        scheduler.advance(9999)
        assert channel.sent == []
        scheduler.advance(1)
        assert channel.sent == [(SyncRequest(0, 0), "c1")]

    def test_groups_are_staggered_over_the_interval(self, channel, scheduler, clock):
        ids = [f"c{i}" for i in range(45)]
        channel.open_ids.extend(ids)
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(sync_interval=60000, sync_session_groups_count=20)

        scheduler.advance(60000)
        assert len(channel.sent_of(MessageKind.REQUEST)) == 20
        scheduler.advance(19999)
        assert len(channel.sent_of(MessageKind.REQUEST)) == 20
        scheduler.advance(1)
        assert len(channel.sent_of(MessageKind.REQUEST)) == 40
        scheduler.advance(20000)
        requests = [cid for m, cid in channel.sent if m.kind == MessageKind.REQUEST]
        assert requests == ids

    def test_periodic_sync_repeats(self, channel, scheduler, clock):
        channel.open_ids.append("c1")
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(sync_interval=1000, max_skip=0)
        scheduler.advance(3000)
        # every tick restarts the stalled round (max_skip=0)
        assert [m.sequence_id for m in channel.sent_of(MessageKind.REQUEST)] == [0, 1, 2]

    def test_no_connections_schedules_nothing(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(sync_interval=1000)
        scheduler.advance(1000)
        assert scheduler.pending == 1  # only the periodic timer

    def test_reconfigure_replaces_periodic_timer(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(sync_interval=1000)
        server.configure(sync_interval=5000)
        channel.open_ids.append("c1")
        scheduler.advance(4999)
        assert channel.sent == []
        scheduler.advance(1)
        assert len(channel.sent) == 1

    def test_shutdown_cancels_timers(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(sync_interval=1000, initial_sync_delay=500)
        channel.open("c1")
        server.shutdown()
        scheduler.advance(10000)
        assert channel.sent == []
        assert scheduler.pending == 0


class TestDisconnect:
    def test_disconnect_removes_session(self, server, channel):
        channel.open("c1")
        server.sync_now("c1")
        channel.close("c1")
        assert "c1" not in server.sessions

    def test_pending_initial_sync_is_noop_after_close(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(initial_sync_delay=1000)
        channel.open("c1")
        channel.close("c1")
        scheduler.advance(1000)
        assert server.sessions == {}
        assert channel.sent == []

    def test_pending_group_sync_is_noop_after_close(self, channel, scheduler, clock):
        channel.open_ids.extend(["c1", "c2", "c3"])
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(sync_interval=60000, sync_session_groups_count=1)
        scheduler.advance(60000)  # group 0 (c1) runs, c2/c3 pending
        channel.close("c3")
        scheduler.advance(40000)
        assert set(server.sessions) == {"c1", "c2"}
        assert [cid for _, cid in channel.sent] == ["c1", "c2"]

    def test_late_response_after_close_is_ignored(self, server, channel):
        channel.open("c1")
        server.sync_now("c1")
        channel.close("c1")
        server.process_sync_response(SyncResponse(0, 0, 1000), "c1")
        assert server.sessions == {}

    def test_delayed_request_after_close_is_noop(self, channel, scheduler, clock):
        server = TimeSyncServer(channel, scheduler, clock=clock)
        server.configure(max_sample_count=3, time_delay_between_requests=100)
        channel.open_ids.append("c1")
        server.sync_now("c1")
        answer(server, channel, "c1", client_timestamp=1000)
        channel.close("c1")
        scheduler.advance(100)
        assert len(channel.sent_of(MessageKind.REQUEST)) == 1
        assert server.sessions == {}


def test_partition():
    assert partition(list("abcde"), 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert partition([], 3) == []
