"""Capability set shared by every physical link."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..protocol import MalformedMessageError, Message, wall_clock_ms

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class TransportError(RuntimeError):
    """Base class for recoverable link failures."""


class ConnectTimeoutError(TransportError):
    """Raised when a connection attempt does not complete in time."""


class SendError(TransportError):
    """Raised when a message could not be handed to the link."""


class ConnectionCancelledError(TransportError):
    """Raised to callers waiting on a connect that was cancelled by a disconnect."""


@dataclass(frozen=True, slots=True)
class ConnectionHandle:
    """Opaque reference to one live low-level connection."""

    id: str
    peer: str
    transport: str
    inbound: bool = False


@dataclass(frozen=True, slots=True)
class Ack:
    handle_id: str
    sent_at_ms: int


MessageHandler = Callable[[ConnectionHandle, Message], object]
ConnectionHandler = Callable[[ConnectionHandle, bool, "str | None"], object]
ErrorHandler = Callable[["ConnectionHandle | None", Exception], object]


class Transport:
    """Interface implemented by every transport variant.

    Acceptors (the camera) call :meth:`listen`; initiators (remotes) call
    :meth:`connect`. Inbound messages and connection changes are delivered to
    subscribers registered through :meth:`on_message` and
    :meth:`on_connection`. Sends are never retried here.
    """

    kind = "abstract"
    #: Connection setup involves discovery and gets the longer timeout.
    discovery_based = False
    #: The link reports liveness itself; the session skips ping/pong.
    builtin_liveness = False

    def __init__(self) -> None:
        self._message_handlers: list[MessageHandler] = []
        self._connection_handlers: list[ConnectionHandler] = []
        self._error_handlers: list[ErrorHandler] = []

    # ----------------------------- subscriptions ---------------------------
    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        return self._subscribe(self._message_handlers, handler)

    def on_connection(self, handler: ConnectionHandler) -> Callable[[], None]:
        return self._subscribe(self._connection_handlers, handler)

    def on_error(self, handler: ErrorHandler) -> Callable[[], None]:
        return self._subscribe(self._error_handlers, handler)

    @staticmethod
    def _subscribe(handlers: list, handler) -> Callable[[], None]:
        handlers.append(handler)

        def _unsubscribe() -> None:
            try:
                handlers.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    # ------------------------------ interface ------------------------------
    async def listen(self, session_id: str) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    async def connect(self, target: str, *, timeout: float) -> ConnectionHandle:  # pragma: no cover - interface
        raise NotImplementedError

    async def send(self, handle: ConnectionHandle, message: Message) -> Ack:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self, handle: ConnectionHandle) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    # ------------------------------- helpers -------------------------------
    def _new_handle(self, peer: str, *, inbound: bool) -> ConnectionHandle:
        return ConnectionHandle(
            id=f"{self.kind}-{uuid.uuid4().hex[:8]}",
            peer=peer,
            transport=self.kind,
            inbound=inbound,
        )

    @staticmethod
    def _ack(handle: ConnectionHandle) -> Ack:
        return Ack(handle_id=handle.id, sent_at_ms=wall_clock_ms())

    @staticmethod
    async def _with_timeout(awaitable: Awaitable[_T], timeout: float, what: str) -> _T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectTimeoutError(f"{what} timed out after {timeout:g}s") from exc

    def _decode(self, handle: ConnectionHandle, raw: str | bytes) -> Message | None:
        try:
            return Message.decode(raw)
        except MalformedMessageError as exc:
            logger.warning("Discarding malformed record from %s: %s", handle.peer, exc)
            self._emit_error(handle, exc)
            return None

    def _emit_message(self, handle: ConnectionHandle, message: Message) -> None:
        for handler in list(self._message_handlers):
            try:
                handler(handle, message)
            except Exception:
                logger.exception("Message handler failed for %s", handle.peer)

    def _emit_connection(
        self, handle: ConnectionHandle, connected: bool, reason: str | None = None
    ) -> None:
        for handler in list(self._connection_handlers):
            try:
                handler(handle, connected, reason)
            except Exception:
                logger.exception("Connection handler failed for %s", handle.peer)

    def _emit_error(self, handle: ConnectionHandle | None, error: Exception) -> None:
        for handler in list(self._error_handlers):
            try:
                handler(handle, error)
            except Exception:
                logger.exception("Transport error handler failed")


def parse_host_port(target: str, *, default_port: int) -> tuple[str, int]:
    """Split ``host:port`` (or a bare host) into its parts."""

    text = str(target).strip()
    if not text:
        raise ValueError("Connection target is empty")
    if text.startswith("["):
        host, _, rest = text[1:].partition("]")
        port_text = rest.lstrip(":")
    elif text.count(":") == 1:
        host, _, port_text = text.partition(":")
    else:
        host, port_text = text, ""
    if not port_text:
        return host, default_port
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"Invalid port in connection target {target!r}") from exc
    if not (0 < port <= 65535):
        raise ValueError(f"Invalid port in connection target {target!r}")
    return host, port


__all__ = [
    "Ack",
    "ConnectTimeoutError",
    "ConnectionCancelledError",
    "ConnectionHandle",
    "SendError",
    "Transport",
    "TransportError",
    "parse_host_port",
]
