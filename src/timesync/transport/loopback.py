"""In-process transport connecting one server channel to many client channels.

Every message is delivered through the scheduler after ``latency`` ms, so a
``ManualScheduler`` gives fully deterministic end-to-end runs. Messages in
flight to or from a connection that has since closed are dropped.
"""

from __future__ import annotations

import itertools
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Union

import structlog

from timesync.protocol.channel import ClientChannel, ConnectionId, ServerChannel
from timesync.protocol.messages import JsonlCodec, Message, MessageKind
from timesync.timing.scheduler import Scheduler

logger = structlog.get_logger(__name__)

Latency = Union[float, Callable[[Message], float]]


class LoopbackServerChannel(ServerChannel):
    def __init__(self, hub: "LoopbackHub"):
        super().__init__()
        self._hub = hub

    def connection_ids(self) -> Iterable[ConnectionId]:
        return list(self._hub.clients)

    def is_connected(self, connection_id: ConnectionId) -> bool:
        return connection_id in self._hub.clients

    def send(self, message: Message, connection_id: Optional[ConnectionId] = None) -> None:
        if connection_id is None:
            raise ValueError("server-side send needs a connection id")
        client = self._hub.clients.get(connection_id)
        if client is None:
            logger.debug("send_to_closed_connection", connection_id=str(connection_id), kind=message.kind.name)
            return
        self._hub.deliver(message, lambda m: client.dispatch(m), connection_id)


class LoopbackClientChannel(ClientChannel):
    def __init__(self, hub: "LoopbackHub", connection_id: ConnectionId):
        super().__init__()
        self._hub = hub
        self.connection_id = connection_id

    @property
    def connected(self) -> bool:
        return self._hub.clients.get(self.connection_id) is self

    def send(self, message: Message, connection_id: Optional[ConnectionId] = None) -> None:
        if not self.connected:
            logger.debug("send_on_closed_channel", connection_id=str(self.connection_id), kind=message.kind.name)
            return
        server = self._hub.server
        self._hub.deliver(message, lambda m: server.dispatch(m, self.connection_id), self.connection_id)

    def close(self) -> None:
        self._hub.disconnect(self.connection_id)


class LoopbackHub:
    """Owns the server channel and hands out connected client channels.

    Args:
        scheduler: Delivers every message as a scheduled task.
        latency:   One-way delay in ms, or a callable ``latency(message)``.
        encode:    Round-trip every message through the JSON-lines codec.
        history:   How many sent messages ``sent`` keeps, oldest dropped
                   first. ``None`` keeps all of them, 0 records nothing.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        latency: Latency = 0,
        encode: bool = True,
        history: Optional[int] = 10000,
    ):
        if history is not None and history < 0:
            raise ValueError("history must be >= 0")
        self.scheduler = scheduler
        self.latency = latency
        self.encode = encode
        self.server = LoopbackServerChannel(self)
        self.clients: Dict[ConnectionId, LoopbackClientChannel] = {}
        self.sent: Deque[Message] = deque(maxlen=history)
        self._ids = itertools.count(1)

    def connect(self, connection_id: Optional[ConnectionId] = None) -> LoopbackClientChannel:
        if connection_id is None:
            connection_id = f"conn-{next(self._ids)}"
        if connection_id in self.clients:
            raise ValueError(f"connection {connection_id!r} already open")
        client = LoopbackClientChannel(self, connection_id)
        self.clients[connection_id] = client
        self.server._notify_connect(connection_id)
        return client

    def disconnect(self, connection_id: ConnectionId) -> None:
        if self.clients.pop(connection_id, None) is not None:
            self.server._notify_disconnect(connection_id)

    def deliver(self, message: Message, handler: Callable[[Message], None], connection_id: ConnectionId) -> None:
        self.sent.append(message)
        if self.encode:
            message = JsonlCodec.decode_line(JsonlCodec.encode(message))
        delay = self.latency(message) if callable(self.latency) else self.latency

        def arrive() -> None:
            if connection_id not in self.clients:
                return
            handler(message)

        self.scheduler.schedule_once(delay, arrive)

    def sent_of(self, kind: MessageKind) -> List[Message]:
        return [m for m in self.sent if m.kind == kind]
