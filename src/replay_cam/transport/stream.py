"""Newline-delimited JSON records over asyncio TCP streams."""
from __future__ import annotations

import asyncio
import logging
import socket

from ..protocol import MAX_RECORD_BYTES, Message
from .base import Ack, ConnectionHandle, SendError, Transport, TransportError, parse_host_port

logger = logging.getLogger(__name__)

DEFAULT_STREAM_PORT = 8765


class _Link:
    __slots__ = ("handle", "reader", "writer", "task")

    def __init__(
        self,
        handle: ConnectionHandle,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.handle = handle
        self.reader = reader
        self.writer = writer
        self.task: asyncio.Task[None] | None = None


class StreamTransport(Transport):
    """Connection-oriented stream socket with one JSON record per line."""

    kind = "stream"

    def __init__(
        self,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_STREAM_PORT,
        public_host: str | None = None,
    ) -> None:
        super().__init__()
        self._host = host
        self._port = port
        self._public_host = public_host
        self._server: asyncio.AbstractServer | None = None
        self._links: dict[str, _Link] = {}

    @property
    def bound_port(self) -> int | None:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def connection_count(self) -> int:
        return len(self._links)

    async def listen(self, session_id: str) -> str:
        if self._server is None:
            self._server = await asyncio.start_server(
                self._accept, host=self._host, port=self._port, limit=MAX_RECORD_BYTES
            )
            logger.info("Stream transport listening on %s:%s", self._host, self.bound_port)
        return f"{self._advertised_host()}:{self.bound_port}"

    def _advertised_host(self) -> str:
        if self._public_host:
            return self._public_host
        if self._host not in ("", "0.0.0.0", "::"):
            return self._host
        try:
            return socket.gethostbyname(socket.gethostname())
        except OSError:
            return "127.0.0.1"

    async def connect(self, target: str, *, timeout: float) -> ConnectionHandle:
        host, port = parse_host_port(target, default_port=self._port or DEFAULT_STREAM_PORT)
        try:
            reader, writer = await self._with_timeout(
                asyncio.open_connection(host, port, limit=MAX_RECORD_BYTES),
                timeout,
                f"Connecting to {host}:{port}",
            )
        except OSError as exc:
            raise TransportError(f"Unable to connect to {host}:{port}: {exc}") from exc
        handle = self._new_handle(f"{host}:{port}", inbound=False)
        self._start_link(handle, reader, writer)
        return handle

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peername = writer.get_extra_info("peername")
        if isinstance(peername, tuple) and len(peername) >= 2:
            peer = f"{peername[0]}:{peername[1]}"
        else:
            peer = str(peername or "unknown")
        handle = self._new_handle(peer, inbound=True)
        link = self._start_link(handle, reader, writer)
        if link.task is not None:
            await asyncio.shield(link.task)

    def _start_link(
        self,
        handle: ConnectionHandle,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> _Link:
        link = _Link(handle, reader, writer)
        self._links[handle.id] = link
        self._emit_connection(handle, True)
        link.task = asyncio.create_task(self._read_loop(link))
        return link

    async def _read_loop(self, link: _Link) -> None:
        reason = "closed by peer"
        try:
            while True:
                try:
                    line = await link.reader.readline()
                except ValueError:
                    # Record longer than the stream limit; the rest of the line is lost.
                    logger.warning("Oversized record from %s", link.handle.peer)
                    continue
                if not line:
                    break
                if not line.strip():
                    continue
                message = self._decode(link.handle, line)
                if message is not None:
                    self._emit_message(link.handle, message)
        except asyncio.CancelledError:
            reason = "closed"
            raise
        except (ConnectionError, OSError) as exc:
            reason = f"connection error: {exc}"
        finally:
            await self._drop(link, reason)

    async def _drop(self, link: _Link, reason: str) -> None:
        if self._links.pop(link.handle.id, None) is None:
            return
        link.writer.close()
        try:
            await link.writer.wait_closed()
        except (ConnectionError, OSError):
            pass
        logger.debug("Stream link %s dropped: %s", link.handle.peer, reason)
        self._emit_connection(link.handle, False, reason)

    async def send(self, handle: ConnectionHandle, message: Message) -> Ack:
        link = self._links.get(handle.id)
        if link is None:
            raise SendError(f"Connection {handle.id} is not open")
        try:
            link.writer.write(message.encode_record())
            await link.writer.drain()
        except (ConnectionError, OSError) as exc:
            raise SendError(f"Failed to send to {handle.peer}: {exc}") from exc
        return self._ack(handle)

    async def close(self, handle: ConnectionHandle) -> None:
        link = self._links.get(handle.id)
        if link is None:
            return
        task = link.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        else:
            await self._drop(link, "closed")

    async def aclose(self) -> None:
        for link in list(self._links.values()):
            await self.close(link.handle)
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None


__all__ = ["DEFAULT_STREAM_PORT", "StreamTransport"]
