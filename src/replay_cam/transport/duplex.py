"""WebSocket transport: one JSON record per text frame.

The camera half is served by the FastAPI app through :meth:`DuplexTransport.build_router`;
remotes connect with an ``aiohttp`` client session.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import aiohttp
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..protocol import Message
from .base import Ack, ConnectionHandle, SendError, Transport, TransportError

logger = logging.getLogger(__name__)

WEBSOCKET_PATH = "/api/ws/signal/{session_id}"
CLOSE_UNKNOWN_SESSION = 4404
CLOSE_NOT_LISTENING = 4409


class _Peer:
    __slots__ = ("handle", "send_text", "close", "task")

    def __init__(
        self,
        handle: ConnectionHandle,
        send_text: Callable[[str], Awaitable[None]],
        close: Callable[[], Awaitable[None]],
    ) -> None:
        self.handle = handle
        self.send_text = send_text
        self.close = close
        self.task: asyncio.Task[None] | None = None


class DuplexTransport(Transport):
    """Message-framed duplex socket."""

    kind = "duplex"

    def __init__(
        self,
        *,
        public_host: str = "127.0.0.1",
        port: int = 8080,
        keepalive_s: float = 3.0,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    ) -> None:
        super().__init__()
        self._public_host = public_host
        self._port = port
        self._keepalive_s = keepalive_s
        self._session_factory = session_factory or aiohttp.ClientSession
        self._client_session: aiohttp.ClientSession | None = None
        self._session_id: str | None = None
        self._peers: dict[str, _Peer] = {}

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def listen(self, session_id: str) -> str:
        self._session_id = session_id
        path = WEBSOCKET_PATH.format(session_id=session_id)
        return f"ws://{self._public_host}:{self._port}{path}"

    # ------------------------------ server side ----------------------------
    def build_router(self) -> APIRouter:
        router = APIRouter(tags=["signaling"])

        @router.websocket(WEBSOCKET_PATH)
        async def signal_socket(websocket: WebSocket, session_id: str) -> None:
            await self.serve(websocket, session_id)

        return router

    async def serve(self, websocket: WebSocket, session_id: str) -> None:
        """Run one inbound connection until the peer goes away."""

        if self._session_id is None:
            await websocket.close(code=CLOSE_NOT_LISTENING)
            return
        if session_id.strip().upper() != self._session_id:
            await websocket.close(code=CLOSE_UNKNOWN_SESSION)
            return
        await websocket.accept()
        client = websocket.client
        peer_name = f"{client.host}:{client.port}" if client else "websocket"
        handle = self._new_handle(peer_name, inbound=True)

        async def _close() -> None:
            await websocket.close()

        peer = _Peer(handle, websocket.send_text, _close)
        self._peers[handle.id] = peer
        self._emit_connection(handle, True)
        reason = "closed by peer"
        try:
            while True:
                text = await websocket.receive_text()
                message = self._decode(handle, text)
                if message is not None:
                    self._emit_message(handle, message)
        except WebSocketDisconnect:
            pass
        except asyncio.CancelledError:
            reason = "closed"
            raise
        except RuntimeError as exc:
            reason = f"connection error: {exc}"
        finally:
            if self._peers.pop(handle.id, None) is not None:
                self._emit_connection(handle, False, reason)

    # ------------------------------ client side ----------------------------
    async def connect(self, target: str, *, timeout: float) -> ConnectionHandle:
        url = target if target.startswith(("ws://", "wss://")) else f"ws://{target}"
        if self._client_session is None or self._client_session.closed:
            self._client_session = self._session_factory()
        try:
            ws = await self._with_timeout(
                self._client_session.ws_connect(url, heartbeat=self._keepalive_s),
                timeout,
                f"Connecting to {url}",
            )
        except aiohttp.ClientError as exc:
            raise TransportError(f"Unable to connect to {url}: {exc}") from exc
        handle = self._new_handle(url, inbound=False)
        peer = _Peer(handle, ws.send_str, ws.close)
        self._peers[handle.id] = peer
        self._emit_connection(handle, True)
        peer.task = asyncio.create_task(self._client_loop(peer, ws))
        return handle

    async def _client_loop(self, peer: _Peer, ws: aiohttp.ClientWebSocketResponse) -> None:
        reason = "closed by peer"
        try:
            async for frame in ws:
                if frame.type == aiohttp.WSMsgType.TEXT:
                    message = self._decode(peer.handle, frame.data)
                    if message is not None:
                        self._emit_message(peer.handle, message)
                elif frame.type == aiohttp.WSMsgType.ERROR:
                    reason = f"connection error: {ws.exception()}"
                    break
        except asyncio.CancelledError:
            reason = "closed"
            raise
        finally:
            if not ws.closed:
                await ws.close()
            if self._peers.pop(peer.handle.id, None) is not None:
                self._emit_connection(peer.handle, False, reason)

    # ------------------------------- shared --------------------------------
    async def send(self, handle: ConnectionHandle, message: Message) -> Ack:
        peer = self._peers.get(handle.id)
        if peer is None:
            raise SendError(f"Connection {handle.id} is not open")
        try:
            await peer.send_text(message.encode())
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
            raise SendError(f"Failed to send to {handle.peer}: {exc}") from exc
        return self._ack(handle)

    async def close(self, handle: ConnectionHandle) -> None:
        peer = self._peers.get(handle.id)
        if peer is None:
            return
        try:
            await peer.close()
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as exc:
            logger.debug("Error closing %s: %s", handle.peer, exc)
        if peer.task is not None and peer.task is not asyncio.current_task():
            try:
                await peer.task
            except asyncio.CancelledError:
                pass

    async def aclose(self) -> None:
        for peer in list(self._peers.values()):
            await self.close(peer.handle)
        if self._client_session is not None:
            await self._client_session.close()
            self._client_session = None
        self._session_id = None


__all__ = ["DuplexTransport", "WEBSOCKET_PATH"]
