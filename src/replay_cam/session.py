"""Pairing state machine shared by the camera and its remotes."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from .config import DEFAULT_SESSION_TIMINGS, SessionTimings
from .events import CaptureRequested, EventChannel, PeerChanged, StateChanged, StatusReceived
from .protocol import (
    CaptureCoalescer,
    Message,
    MessageType,
    Role,
    generate_session_id,
    wall_clock_ms,
)
from .session_log import SessionLog
from .transport.base import (
    Ack,
    ConnectTimeoutError,
    ConnectionCancelledError,
    ConnectionHandle,
    SendError,
    Transport,
    TransportError,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    ADVERTISING = "advertising"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    REGISTERING = "registering"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SessionError(RuntimeError):
    """Raised when an operation is not valid for the session's current state."""


class ConnectInProgressError(SessionError):
    """Raised when ``connect`` is called while another attempt is in flight."""


@dataclass
class PeerState:
    """What the session knows about one low-level connection."""

    handle: ConnectionHandle
    connected_at: float
    last_seen: float
    role: Role | None = None
    registered: bool = False
    replied: bool = False
    capture_count: int = 0
    settled: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.handle.id,
            "peer": self.handle.peer,
            "role": self.role.value if self.role else None,
            "registered": self.registered,
            "last_seen": self.last_seen,
            "capture_count": self.capture_count,
        }


class Session:
    """Own exactly one transport and drive it through the pairing states.

    A camera session listens and accepts any number of remotes; a remote
    session initiates one connection and keeps it alive, reconnecting on a
    flat backoff after loss. ``ping``/``pong`` traffic never leaves this
    class; captures, status text and peer changes are published on
    :attr:`events`.
    """

    def __init__(
        self,
        transport: Transport,
        role: Role | str,
        *,
        timings: SessionTimings = DEFAULT_SESSION_TIMINGS,
        coalesce_window_ms: int = 1000,
        events: EventChannel | None = None,
        session_log: SessionLog | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        self._transport = transport
        self._role = Role(role)
        self._timings = timings
        self._coalescer = CaptureCoalescer(coalesce_window_ms)
        self._events = events or EventChannel()
        self._log = session_log
        self._clock = clock
        self._wall_clock = wall_clock
        self._state = SessionState.IDLE
        self._session_id: str | None = None
        self._address: str | None = None
        self._target: str | None = None
        self._link: ConnectionHandle | None = None
        self._peers: dict[str, PeerState] = {}
        self._timers: dict[str, tuple[SessionState, asyncio.Task[None]]] = {}
        self._connect_task: asyncio.Task[ConnectionHandle | None] | None = None
        self._cancelled_connects: set[asyncio.Task] = set()
        self._background: set[asyncio.Task] = set()
        self._capture_total = 0
        self._unsubscribers = [
            transport.on_message(self._on_message),
            transport.on_connection(self._on_connection),
            transport.on_error(self._on_transport_error),
        ]

    # ------------------------------ properties -----------------------------
    @property
    def role(self) -> Role:
        return self._role

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def coalesce_window_ms(self) -> int:
        return self._coalescer.window_ms

    @coalesce_window_ms.setter
    def coalesce_window_ms(self, value: int) -> None:
        self._coalescer.window_ms = value

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def events(self) -> EventChannel:
        return self._events

    @property
    def link(self) -> ConnectionHandle | None:
        return self._link

    @property
    def peers(self) -> list[PeerState]:
        return list(self._peers.values())

    @property
    def registered_peers(self) -> list[PeerState]:
        return [peer for peer in self._peers.values() if peer.registered]

    @property
    def capture_count(self) -> int:
        return self._capture_total

    @property
    def active_timer_count(self) -> int:
        return sum(1 for _, task in self._timers.values() if not task.done())

    @property
    def connect_in_progress(self) -> bool:
        return self._connect_task is not None and not self._connect_task.done()

    def to_dict(self) -> dict[str, object]:
        return {
            "role": self._role.value,
            "state": self._state.value,
            "session_id": self._session_id,
            "address": self._address,
            "transport": self._transport.kind,
            "capture_count": self._capture_total,
            "peers": [peer.to_dict() for peer in self._peers.values()],
        }

    # ------------------------------ lifecycle ------------------------------
    async def start(self, target: str | None = None) -> str:
        """Declare the local role and begin pairing.

        A camera listens and returns the pairing address; a remote connects to
        ``target`` and returns once registered (or raises).
        """

        if self._state is not SessionState.IDLE:
            raise SessionError(f"Session already started ({self._state.value})")
        if self._role is Role.CAMERA:
            session_id = generate_session_id()
            self._session_id = session_id
            try:
                self._address = await self._transport.listen(session_id)
            except (TransportError, OSError) as exc:
                self._session_id = None
                raise SessionError(f"Unable to listen: {exc}") from exc
            self._set_state(SessionState.ADVERTISING)
            self._record("pairing", "advertising", f"Waiting for remotes on {self._address}")
            return self._address
        if not target:
            raise SessionError("A remote session needs a target to connect to")
        self._target = target
        self._session_id = target
        self._set_state(SessionState.DISCOVERING)
        await self.connect(target)
        return target

    async def connect(self, target: str | None = None) -> ConnectionHandle | None:
        """Establish the outbound link; rejected while another attempt runs."""

        if self._role is not Role.REMOTE:
            raise SessionError("Only a remote initiates connections")
        if self.connect_in_progress:
            raise ConnectInProgressError("A connection attempt is already in progress")
        if self._state not in (SessionState.DISCOVERING, SessionState.RECONNECTING):
            raise SessionError(f"Cannot connect while {self._state.value}")
        target = target or self._target
        if not target:
            raise SessionError("No connection target")
        self._target = target
        task = asyncio.create_task(self._establish(target, initial=True))
        self._connect_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._cancelled_connects:
                self._cancelled_connects.discard(task)
                raise ConnectionCancelledError("Connection attempt cancelled by disconnect") from None
            raise
        finally:
            if self._connect_task is task:
                self._connect_task = None

    async def disconnect(self) -> None:
        """Tear everything down and return to idle."""

        task = self._connect_task
        if task is not None and not task.done():
            self._cancelled_connects.add(task)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._connect_task = None
        self._cancel_timers()
        peers = list(self._peers.values())
        self._peers.clear()
        for peer in peers:
            peer.settled.set()
            if peer.registered:
                self._events.publish(PeerChanged(peer.handle.id, False, "disconnect"))
        try:
            await self._transport.aclose()
        except (TransportError, OSError) as exc:
            logger.warning("Error while closing transport: %s", exc)
        was_active = self._state is not SessionState.IDLE
        self._link = None
        self._session_id = None
        self._address = None
        self._target = None
        self._coalescer.reset()
        self._set_state(SessionState.IDLE)
        if was_active:
            self._record("pairing", "disconnected", "Session disconnected")

    async def aclose(self) -> None:
        await self.disconnect()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)

    # ------------------------------- sending -------------------------------
    async def send_capture(self, duration_s: int | None = None) -> Ack:
        """Fire one capture at the camera; never retried."""

        if self._role is not Role.REMOTE:
            raise SessionError("Only a remote sends capture signals")
        if self._state is not SessionState.CONNECTED or self._link is None:
            raise SessionError("Not connected to a camera")
        message = Message.capture(self._wall_clock(), duration_s)
        ack = await self._transport.send(self._link, message)
        self._capture_total += 1
        self._record(
            "capture",
            "capture_sent",
            "Capture signal sent",
            peer=self._link.peer,
            metadata={"duration": duration_s},
        )
        return ack

    async def send_status(self, text: str, peer: str | None = None) -> int:
        """Send advisory text to one peer (by handle id) or every registered peer."""

        if peer is not None:
            state = self._peers.get(peer)
            targets = [state] if state is not None else []
        else:
            targets = self.registered_peers
        sent = 0
        for target in targets:
            try:
                await self._transport.send(target.handle, Message.status(text))
            except SendError as exc:
                logger.warning("Unable to send status to %s: %s", target.handle.peer, exc)
                continue
            sent += 1
        return sent

    # ------------------------------ internals ------------------------------
    def _set_state(self, new_state: SessionState) -> None:
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state
        for name, (owner, task) in list(self._timers.items()):
            if owner is not new_state:
                del self._timers[name]
                task.cancel()
        logger.debug("Session %s: %s -> %s", self._role.value, previous.value, new_state.value)
        self._events.publish(StateChanged(previous, new_state))

    def _start_timer(self, name: str, coro: Awaitable[None]) -> asyncio.Task[None]:
        existing = self._timers.pop(name, None)
        if existing is not None:
            existing[1].cancel()
        task = asyncio.ensure_future(coro)
        self._timers[name] = (self._state, task)

        def _finished(done: asyncio.Task[None], name: str = name) -> None:
            current = self._timers.get(name)
            if current is not None and current[1] is done:
                del self._timers[name]
            if not done.cancelled() and done.exception() is not None:
                logger.error("Session timer %s failed", name, exc_info=done.exception())

        task.add_done_callback(_finished)
        return task

    def _cancel_timers(self) -> None:
        timers = list(self._timers.values())
        self._timers.clear()
        for _, task in timers:
            task.cancel()

    def _spawn(self, coro: Awaitable[object]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _finished(done: asyncio.Task) -> None:
            self._background.discard(done)
            if not done.cancelled() and done.exception() is not None:
                logger.warning("Background send failed: %s", done.exception())

        task.add_done_callback(_finished)

    def _record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        peer: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._log is not None:
            self._log.record(category, event, message, peer=peer, metadata=metadata)

    async def _establish(self, target: str, *, initial: bool) -> ConnectionHandle:
        self._set_state(SessionState.CONNECTING)
        timeout = self._timings.connect_timeout(discovery_based=self._transport.discovery_based)
        try:
            handle = await self._transport.connect(target, timeout=timeout)
        except (TransportError, OSError, ValueError) as exc:
            logger.info("Connection to %s failed: %s", target, exc)
            self._record("pairing", "connect_failed", str(exc), peer=target)
            if initial:
                self._set_state(SessionState.DISCOVERING)
            if isinstance(exc, TransportError):
                raise
            raise TransportError(str(exc)) from exc
        self._link = handle
        peer = self._ensure_peer(handle)
        self._set_state(SessionState.REGISTERING)
        if self._transport.builtin_liveness:
            self._peer_registered(peer)
        peer.replied = True
        try:
            await self._transport.send(handle, Message.register(self._role))
            if not peer.registered:
                await asyncio.wait_for(peer.settled.wait(), timeout=self._timings.register_timeout_s)
        except (asyncio.TimeoutError, SendError) as exc:
            await self._abandon(handle)
            if initial:
                self._set_state(SessionState.DISCOVERING)
            if isinstance(exc, SendError):
                raise
            raise ConnectTimeoutError(
                f"No registration reply within {self._timings.register_timeout_s:g}s"
            ) from exc
        if not peer.registered:
            await self._abandon(handle)
            if initial:
                self._set_state(SessionState.DISCOVERING)
            raise TransportError("Link lost during registration")
        self._record("pairing", "connected", f"Connected to {handle.peer}", peer=handle.peer)
        return handle

    async def _abandon(self, handle: ConnectionHandle) -> None:
        self._peers.pop(handle.id, None)
        if self._link is handle:
            self._link = None
        try:
            await self._transport.close(handle)
        except TransportError as exc:
            logger.debug("Ignoring close failure for %s: %s", handle.peer, exc)

    async def _reconnect_loop(self) -> ConnectionHandle | None:
        attempt = 0
        while True:
            self._set_state(SessionState.RECONNECTING)
            backoff = self._start_timer(
                "reconnect", asyncio.sleep(self._timings.reconnect_backoff_s)
            )
            await backoff
            attempt += 1
            try:
                return await self._establish(self._target or "", initial=False)
            except TransportError as exc:
                logger.info("Reconnect attempt %d failed: %s", attempt, exc)

    def _begin_reconnect(self) -> None:
        if self._role is not Role.REMOTE or self._target is None:
            return
        if self.connect_in_progress:
            return
        self._set_state(SessionState.RECONNECTING)
        self._record("pairing", "reconnecting", "Link lost, reconnecting", peer=self._target)
        task = asyncio.ensure_future(self._reconnect_loop())
        self._connect_task = task

        def _finished(done: asyncio.Task) -> None:
            self._cancelled_connects.discard(done)
            if self._connect_task is done:
                self._connect_task = None

        task.add_done_callback(_finished)

    def _ensure_heartbeat(self) -> None:
        if self._transport.builtin_liveness or "heartbeat" in self._timers:
            return
        self._start_timer("heartbeat", self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        interval = self._timings.heartbeat_interval_s
        while True:
            await asyncio.sleep(interval)
            now = self._clock()
            for peer in list(self._peers.values()):
                if peer.registered:
                    silent = now - peer.last_seen
                    if silent > self._timings.heartbeat_timeout_s:
                        self._peer_lost(peer.handle, "heartbeat timeout")
                        self._spawn(self._transport.close(peer.handle))
                        continue
                    self._spawn(self._transport.send(peer.handle, Message.ping(self._wall_clock())))
                elif now - peer.connected_at > self._timings.register_timeout_s:
                    self._peer_lost(peer.handle, "registration timeout")
                    self._spawn(self._transport.close(peer.handle))

    def _ensure_peer(self, handle: ConnectionHandle) -> PeerState:
        peer = self._peers.get(handle.id)
        if peer is None:
            now = self._clock()
            peer = PeerState(handle=handle, connected_at=now, last_seen=now)
            self._peers[handle.id] = peer
        return peer

    def _peer_registered(self, peer: PeerState) -> None:
        if peer.registered:
            return
        peer.registered = True
        peer.settled.set()
        self._events.publish(PeerChanged(peer.handle.id, True))
        self._record("pairing", "registered", f"Peer {peer.handle.peer} registered", peer=peer.handle.peer)
        if self._state in (SessionState.REGISTERING, SessionState.ADVERTISING, SessionState.CONNECTING):
            self._set_state(SessionState.CONNECTED)
        self._ensure_heartbeat()

    def _peer_lost(self, handle: ConnectionHandle, reason: str | None) -> None:
        peer = self._peers.pop(handle.id, None)
        if peer is None:
            return
        peer.settled.set()
        self._coalescer.forget(handle.id)
        if peer.registered:
            self._events.publish(PeerChanged(handle.id, False, reason))
            self._record("pairing", "peer_lost", f"Peer {handle.peer} lost: {reason}", peer=handle.peer)
        if self._role is Role.CAMERA:
            self._settle_camera()
            return
        if self._link is handle:
            self._link = None
            if self._state is SessionState.CONNECTED:
                self._begin_reconnect()

    def _settle_camera(self) -> None:
        if self.registered_peers or self._state not in (
            SessionState.CONNECTED,
            SessionState.REGISTERING,
        ):
            return
        if not self._peers:
            self._set_state(SessionState.ADVERTISING)
        elif self._state is SessionState.CONNECTED:
            self._set_state(SessionState.REGISTERING)
            self._start_timer("registration", self._registration_deadline())

    # --------------------------- transport hooks ---------------------------
    def _on_connection(self, handle: ConnectionHandle, connected: bool, reason: str | None) -> None:
        if self._state is SessionState.IDLE:
            return
        if not connected:
            self._peer_lost(handle, reason)
            return
        peer = self._ensure_peer(handle)
        if self._role is not Role.CAMERA:
            return
        logger.info("Inbound connection from %s", handle.peer)
        if self._state is SessionState.ADVERTISING:
            self._set_state(SessionState.REGISTERING)
            self._start_timer("registration", self._registration_deadline())
        if self._transport.builtin_liveness:
            self._peer_registered(peer)

    async def _registration_deadline(self) -> None:
        await asyncio.sleep(self._timings.register_timeout_s)
        for peer in list(self._peers.values()):
            if not peer.registered:
                self._peer_lost(peer.handle, "registration timeout")
                self._spawn(self._transport.close(peer.handle))
        if not self._peers and self._state is SessionState.REGISTERING:
            self._set_state(SessionState.ADVERTISING)

    def _on_transport_error(self, handle: ConnectionHandle | None, error: Exception) -> None:
        self._record(
            "system",
            "transport_error",
            str(error),
            peer=handle.peer if handle is not None else None,
        )

    def _on_message(self, handle: ConnectionHandle, message: Message) -> None:
        peer = self._peers.get(handle.id)
        if peer is None:
            logger.debug("Dropping %s from unknown connection %s", message.type.value, handle.id)
            return
        peer.last_seen = self._clock()
        kind = message.type
        if kind is MessageType.PING:
            self._spawn(self._transport.send(handle, Message.pong(self._wall_clock())))
            return
        if kind is MessageType.PONG:
            return
        if kind is MessageType.REGISTER:
            self._handle_register(peer, message)
            return
        if kind is MessageType.STATUS:
            if self._role is Role.REMOTE and not peer.registered:
                self._peer_registered(peer)
            self._events.publish(StatusReceived(handle.id, message.message or ""))
            return
        if kind is MessageType.CAPTURE:
            self._handle_capture(peer, message)

    def _handle_register(self, peer: PeerState, message: Message) -> None:
        if message.role is self._role:
            logger.warning(
                "Protocol error: %s registered with our own role %s",
                peer.handle.peer,
                self._role.value,
            )
            return
        peer.role = message.role
        if not peer.replied:
            peer.replied = True
            self._spawn(self._transport.send(peer.handle, Message.register(self._role)))
        self._peer_registered(peer)

    def _handle_capture(self, peer: PeerState, message: Message) -> None:
        if self._role is not Role.CAMERA or not peer.registered:
            logger.warning(
                "Protocol error: capture from %s while %s (%s)",
                peer.handle.peer,
                self._state.value,
                "registered" if peer.registered else "unregistered",
            )
            return
        arrived = self._wall_clock()
        if not self._coalescer.accept(peer.handle.id, arrived):
            logger.info("Coalesced duplicate capture from %s", peer.handle.peer)
            return
        peer.capture_count += 1
        self._capture_total += 1
        self._record(
            "capture",
            "capture_received",
            "Capture signal received",
            peer=peer.handle.peer,
            metadata={"duration": message.duration, "sent_at": message.timestamp},
        )
        self._events.publish(
            CaptureRequested(
                peer=peer.handle.id,
                trigger_ms=arrived,
                duration_s=message.duration,
                sent_at_ms=message.timestamp,
            )
        )


__all__ = [
    "ConnectInProgressError",
    "PeerState",
    "Session",
    "SessionError",
    "SessionState",
]
