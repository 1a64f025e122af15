"""Per-connection message channel used by the sync server and client.

Handlers are kept in a table keyed by message kind. Server-side handlers are
called as ``handler(message, connection_id)``, client-side handlers as
``handler(message)``. Concrete transports live in ``timesync.transport``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional

import structlog

from timesync.protocol.messages import Message, MessageKind

logger = structlog.get_logger(__name__)

ConnectionId = Hashable
ConnectionListener = Callable[[ConnectionId], None]


class ProtocolChannel(ABC):
    """Kind-keyed subscription plus ``send``."""

    def __init__(self) -> None:
        self._handlers: Dict[MessageKind, List[Callable[..., Any]]] = defaultdict(list)

    def on(self, kind: MessageKind, handler: Callable[..., Any]) -> None:
        """Subscribe ``handler`` to messages of ``kind``."""
        self._handlers[MessageKind(kind)].append(handler)

    def off(self, kind: MessageKind, handler: Callable[..., Any]) -> None:
        handlers = self._handlers.get(MessageKind(kind), [])
        if handler in handlers:
            handlers.remove(handler)

    @abstractmethod
    def send(self, message: Message, connection_id: Optional[ConnectionId] = None) -> None:
        """Queue ``message`` for delivery; lost messages are simply absent."""

    def _dispatch(self, message: Message, *args: Any) -> None:
        handlers = self._handlers.get(message.kind)
        if not handlers:
            logger.debug("unhandled_message", kind=message.kind.name)
            return
        for handler in list(handlers):
            handler(message, *args)


class ServerChannel(ProtocolChannel):
    """Channel with many addressable peers and connection lifecycle events."""

    def __init__(self) -> None:
        super().__init__()
        self._connect_listeners: List[ConnectionListener] = []
        self._disconnect_listeners: List[ConnectionListener] = []

    def on_connect(self, listener: ConnectionListener) -> None:
        self._connect_listeners.append(listener)

    def on_disconnect(self, listener: ConnectionListener) -> None:
        self._disconnect_listeners.append(listener)

    def remove_listeners(self, *listeners: ConnectionListener) -> None:
        for listener in listeners:
            for registry in (self._connect_listeners, self._disconnect_listeners):
                if listener in registry:
                    registry.remove(listener)

    @abstractmethod
    def connection_ids(self) -> Iterable[ConnectionId]:
        """Ids of the currently open connections, in connection order."""

    def is_connected(self, connection_id: ConnectionId) -> bool:
        return connection_id in set(self.connection_ids())

    def dispatch(self, message: Message, connection_id: ConnectionId) -> None:
        self._dispatch(message, connection_id)

    def _notify_connect(self, connection_id: ConnectionId) -> None:
        logger.debug("connection_opened", connection_id=str(connection_id))
        for listener in list(self._connect_listeners):
            listener(connection_id)

    def _notify_disconnect(self, connection_id: ConnectionId) -> None:
        logger.debug("connection_closed", connection_id=str(connection_id))
        for listener in list(self._disconnect_listeners):
            listener(connection_id)


class ClientChannel(ProtocolChannel):
    """Channel with a single implicit server peer."""

    def dispatch(self, message: Message) -> None:
        self._dispatch(message)
