"""TCP transport: newline-delimited JSON over asyncio streams.

The server keeps one long-lived stream per client and identifies it with a
random connection id. ``send`` is synchronous: it writes into the stream
buffer and leaves flushing to a background drain task, one per stream, so
the event loop is never blocked and the buffer is flushed under backpressure.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Dict, Iterable, Optional

from timesync.protocol.channel import ClientChannel, ConnectionId, ServerChannel
from timesync.protocol.messages import JsonlCodec, Message, ProtocolError
from timesync.utils.logging_config import get_logger

logger = get_logger(__name__)

# Frames longer than this are rejected by the stream reader
MAX_FRAME_BYTES = 64 * 1024

# Errors StreamReader.readline raises on a broken or misbehaving peer
_READ_ERRORS = (ConnectionError, asyncio.IncompleteReadError)


async def _drain(writer: asyncio.StreamWriter, log) -> None:
    try:
        await writer.drain()
    except (ConnectionError, OSError) as e:
        log.debug("drain_failed", error=str(e))


class _Outbox:
    """Writes frames to a stream and keeps at most one drain task running for it."""

    def __init__(self, writer: asyncio.StreamWriter, log):
        self.writer = writer
        self.log = log
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def write(self, message: Message) -> None:
        self.writer.write(JsonlCodec.encode(message))
        if not self.draining:
            self._drain_task = asyncio.ensure_future(_drain(self.writer, self.log))

    async def flush(self) -> None:
        if self._drain_task is not None:
            await self._drain_task

    def cancel(self) -> None:
        if self.draining:
            self._drain_task.cancel()


class TcpServerChannel(ServerChannel):
    def __init__(self, host: str = "127.0.0.1", port: int = 9300):
        super().__init__()
        self.host = host
        self.port = port
        self._server: Optional[asyncio.AbstractServer] = None
        self._outboxes: Dict[str, _Outbox] = {}

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_client, self.host, self.port, limit=MAX_FRAME_BYTES
        )
        if self.port == 0:
            self.port = self._server.sockets[0].getsockname()[1]
        logger.info("time_sync_server_listening", host=self.host, port=self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        for outbox in list(self._outboxes.values()):
            outbox.cancel()
            outbox.writer.close()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("time_sync_server_stopped")

    def connection_ids(self) -> Iterable[ConnectionId]:
        return list(self._outboxes)

    def is_connected(self, connection_id: ConnectionId) -> bool:
        return connection_id in self._outboxes

    def send(self, message: Message, connection_id: Optional[ConnectionId] = None) -> None:
        outbox = self._outboxes.get(connection_id)
        if outbox is None or outbox.writer.is_closing():
            logger.debug("send_to_closed_connection", connection_id=str(connection_id), kind=message.kind.name)
            return
        outbox.write(message)

    async def flush(self, connection_id: ConnectionId) -> None:
        """Wait until everything queued for ``connection_id`` is handed to the socket."""
        outbox = self._outboxes.get(connection_id)
        if outbox is not None:
            await outbox.flush()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection_id = uuid.uuid4().hex
        log = get_logger(__name__, component="tcp", connection_id=connection_id)
        self._outboxes[connection_id] = _Outbox(writer, log)
        log.info("client_connected", peer=str(writer.get_extra_info("peername")))
        self._notify_connect(connection_id)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    log.warning("frame_too_large", limit=MAX_FRAME_BYTES)
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    message = JsonlCodec.decode_line(line)
                except ProtocolError as e:
                    log.warning("malformed_frame_dropped", error=str(e))
                    continue
                try:
                    self.dispatch(message, connection_id)
                except Exception:
                    log.exception("message_handler_failed", kind=message.kind.name)
        except _READ_ERRORS as e:
            log.info("client_connection_lost", error=str(e))
        finally:
            outbox = self._outboxes.pop(connection_id, None)
            if outbox is not None:
                outbox.cancel()
            self._notify_disconnect(connection_id)
            log.info("client_disconnected")
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass


class TcpClientChannel(ClientChannel):
    def __init__(self, host: str = "127.0.0.1", port: int = 9300):
        super().__init__()
        self.host = host
        self.port = port
        self._reader: Optional[asyncio.StreamReader] = None
        self._outbox: Optional[_Outbox] = None
        self._recv_task: Optional[asyncio.Task] = None
        self.closed = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._outbox is not None and not self._outbox.writer.is_closing()

    async def connect(self, timeout: float = 5.0) -> None:
        self._reader, writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port, limit=MAX_FRAME_BYTES), timeout=timeout
        )
        self._outbox = _Outbox(writer, logger.bind(host=self.host, port=self.port))
        self.closed.clear()
        self._recv_task = asyncio.create_task(self._recv_loop())
        logger.info("connected_to_time_server", host=self.host, port=self.port)

    async def close(self) -> None:
        if self._recv_task:
            self._recv_task.cancel()
            try:
                await self._recv_task
            except asyncio.CancelledError:
                pass
            self._recv_task = None
        if self._outbox:
            self._outbox.cancel()
            try:
                self._outbox.writer.close()
                await self._outbox.writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._outbox = None
        self.closed.set()

    def send(self, message: Message, connection_id: Optional[ConnectionId] = None) -> None:
        if not self.connected:
            logger.debug("send_on_closed_channel", kind=message.kind.name)
            return
        self._outbox.write(message)

    async def flush(self) -> None:
        if self._outbox is not None:
            await self._outbox.flush()

    async def _recv_loop(self) -> None:
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except ValueError:
                    logger.warning("frame_too_large", limit=MAX_FRAME_BYTES)
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    message = JsonlCodec.decode_line(line)
                except ProtocolError as e:
                    logger.warning("malformed_frame_dropped", error=str(e))
                    continue
                try:
                    self.dispatch(message)
                except Exception:
                    logger.exception("message_handler_failed", kind=message.kind.name)
        except _READ_ERRORS as e:
            logger.info("server_connection_lost", error=str(e))
        finally:
            # The stream is unusable once reading stops
            if self._outbox is not None:
                self._outbox.writer.close()
            self.closed.set()
            logger.info("disconnected_from_time_server", host=self.host, port=self.port)
