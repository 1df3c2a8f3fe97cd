"""Pairing state machine tests over an in-memory loopback link."""

from __future__ import annotations

import asyncio

import pytest

from replay_cam.config import SessionTimings
from replay_cam.events import CaptureRequested, PeerChanged, StateChanged, StatusReceived
from replay_cam.protocol import Message, Role
from replay_cam.session import ConnectInProgressError, Session, SessionError, SessionState
from replay_cam.transport.base import (
    ConnectTimeoutError,
    ConnectionCancelledError,
    ConnectionHandle,
    SendError,
    Transport,
    TransportError,
)


FAST = SessionTimings(
    direct_connect_timeout_s=0.5,
    discovery_connect_timeout_s=0.5,
    heartbeat_interval_s=0.02,
    heartbeat_timeout_s=0.2,
    reconnect_backoff_s=0.02,
    register_timeout_s=0.3,
)


class LoopbackHub:
    def __init__(self) -> None:
        self.camera: "LoopbackTransport | None" = None
        self.accepting = True


class LoopbackTransport(Transport):
    """Pairs transports in-process; messages are delivered on the next loop turn."""

    kind = "loopback"

    def __init__(self, hub: LoopbackHub, *, builtin_liveness: bool = False) -> None:
        super().__init__()
        self.hub = hub
        self.builtin_liveness = builtin_liveness
        self.links: dict[str, tuple[ConnectionHandle, LoopbackTransport, ConnectionHandle]] = {}
        self.listening: str | None = None
        self.connect_gate: asyncio.Event | None = None
        self.mute = False
        self.sent: list[Message] = []

    async def listen(self, session_id: str) -> str:
        self.hub.camera = self
        self.listening = session_id
        return f"loopback://{session_id}"

    async def connect(self, target: str, *, timeout: float) -> ConnectionHandle:
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        camera = self.hub.camera
        if camera is None or not self.hub.accepting or camera.listening != target:
            raise ConnectTimeoutError(f"No camera answering for {target}")
        mine = self._new_handle("camera", inbound=False)
        theirs = camera._new_handle("remote", inbound=True)
        self.links[mine.id] = (mine, camera, theirs)
        camera.links[theirs.id] = (theirs, self, mine)
        camera._emit_connection(theirs, True)
        return mine

    async def send(self, handle: ConnectionHandle, message: Message):
        link = self.links.get(handle.id)
        if link is None:
            raise SendError("Not connected")
        self.sent.append(message)
        if not self.mute:
            _, other, other_handle = link
            asyncio.get_running_loop().call_soon(other._deliver, other_handle, message)
        return self._ack(handle)

    def _deliver(self, handle: ConnectionHandle, message: Message) -> None:
        if handle.id in self.links:
            self._emit_message(handle, message)

    def inject(self, handle: ConnectionHandle, message: Message) -> None:
        self._emit_message(handle, message)

    def drop(self, handle_id: str, reason: str = "link lost") -> None:
        link = self.links.pop(handle_id, None)
        if link is None:
            return
        own, other, other_handle = link
        other.links.pop(other_handle.id, None)
        self._emit_connection(own, False, reason)
        other._emit_connection(other_handle, False, reason)

    async def close(self, handle: ConnectionHandle) -> None:
        self.drop(handle.id, "closed")

    async def aclose(self) -> None:
        for handle_id in list(self.links):
            self.drop(handle_id, "closed")
        self.listening = None
        if self.hub.camera is self:
            self.hub.camera = None


async def _eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def _paired(**camera_kwargs):
    hub = LoopbackHub()
    camera_link = LoopbackTransport(hub)
    remote_link = LoopbackTransport(hub)
    camera = Session(camera_link, Role.CAMERA, timings=FAST, **camera_kwargs)
    remote = Session(remote_link, Role.REMOTE, timings=FAST)
    await camera.start()
    await remote.start(camera.session_id)
    await _eventually(lambda: camera.state is SessionState.CONNECTED)
    return hub, camera, remote, camera_link, remote_link


def test_remote_pairs_with_camera():
    async def scenario() -> None:
        hub, camera, remote, _, _ = await _paired()
        assert remote.state is SessionState.CONNECTED
        assert len(camera.registered_peers) == 1
        assert camera.registered_peers[0].role is Role.REMOTE
        assert remote.link is not None
        await remote.aclose()
        await _eventually(lambda: camera.state is SessionState.ADVERTISING)
        await camera.aclose()
        assert camera.state is SessionState.IDLE

    asyncio.run(scenario())


def test_capture_reaches_camera_with_arrival_time():
    async def scenario() -> None:
        now = [1_000_000]
        _, camera, remote, _, _ = await _paired(wall_clock=lambda: now[0])
        seen: list[CaptureRequested] = []
        camera.events.subscribe(CaptureRequested, seen.append)

        await remote.send_capture(60)
        await _eventually(lambda: len(seen) == 1)

        assert seen[0].trigger_ms == 1_000_000
        assert seen[0].duration_s == 60
        assert seen[0].sent_at_ms is not None
        assert camera.capture_count == 1
        assert remote.capture_count == 1
        await remote.aclose()
        await camera.aclose()

    asyncio.run(scenario())


def test_double_tap_is_coalesced():
    async def scenario() -> int:
        now = [5_000_000]
        _, camera, remote, _, _ = await _paired(wall_clock=lambda: now[0])
        seen: list[CaptureRequested] = []
        camera.events.subscribe(CaptureRequested, seen.append)

        await remote.send_capture()
        await asyncio.sleep(0.01)
        now[0] += 200
        await remote.send_capture()
        await asyncio.sleep(0.01)
        assert len(seen) == 1

        now[0] += 1000
        await remote.send_capture()
        await _eventually(lambda: len(seen) == 2)
        await remote.aclose()
        await camera.aclose()
        return camera.capture_count

    assert asyncio.run(scenario()) == 2


def test_camera_without_remote_keeps_advertising():
    async def scenario() -> list[StateChanged]:
        hub = LoopbackHub()
        camera = Session(LoopbackTransport(hub), Role.CAMERA, timings=FAST)
        changes: list[StateChanged] = []
        camera.events.subscribe(StateChanged, changes.append)
        address = await camera.start()
        assert address == f"loopback://{camera.session_id}"
        await asyncio.sleep(FAST.register_timeout_s + 0.1)
        assert camera.state is SessionState.ADVERTISING
        assert camera.active_timer_count == 0
        await camera.aclose()
        return changes

    changes = asyncio.run(scenario())
    assert [change.current for change in changes] == [SessionState.ADVERTISING, SessionState.IDLE]


def test_reconnect_keeps_a_single_timer():
    async def scenario() -> None:
        hub, camera, remote, camera_link, _ = await _paired()
        states: set[SessionState] = set()
        remote.events.subscribe(StateChanged, lambda change: states.add(change.current))
        hub.accepting = False
        camera_link.drop(next(iter(camera_link.links)))

        await _eventually(lambda: remote.state is SessionState.RECONNECTING)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 0.3
        while loop.time() < deadline:
            assert remote.active_timer_count <= 1
            await asyncio.sleep(0.003)
        assert remote.state in (SessionState.RECONNECTING, SessionState.CONNECTING)
        assert SessionState.DISCOVERING not in states

        hub.accepting = True
        await _eventually(lambda: remote.state is SessionState.CONNECTED)
        await _eventually(lambda: camera.state is SessionState.CONNECTED)
        assert remote.active_timer_count == 1
        await remote.aclose()
        await camera.aclose()

    asyncio.run(scenario())


def test_silent_peer_times_out():
    async def scenario() -> list[PeerChanged]:
        _, camera, remote, camera_link, _ = await _paired()
        lost: list[PeerChanged] = []
        remote.events.subscribe(PeerChanged, lost.append)
        camera_link.mute = True
        await _eventually(lambda: any(not change.connected for change in lost))
        await remote.aclose()
        await camera.aclose()
        return lost

    lost = asyncio.run(scenario())
    assert lost[0].reason == "heartbeat timeout"


def test_connect_rejected_while_in_progress_and_cancelled_by_disconnect():
    async def scenario() -> None:
        hub = LoopbackHub()
        link = LoopbackTransport(hub)
        link.connect_gate = asyncio.Event()
        remote = Session(link, Role.REMOTE, timings=FAST)
        attempt = asyncio.create_task(remote.start("ABC123"))
        await _eventually(lambda: remote.connect_in_progress)
        assert remote.state is SessionState.CONNECTING

        with pytest.raises(ConnectInProgressError):
            await remote.connect()

        await remote.disconnect()
        with pytest.raises(ConnectionCancelledError):
            await attempt
        assert remote.state is SessionState.IDLE
        assert not remote.connect_in_progress

    asyncio.run(scenario())


def test_initial_connect_failure_returns_to_discovering():
    async def scenario() -> None:
        remote = Session(LoopbackTransport(LoopbackHub()), Role.REMOTE, timings=FAST)
        with pytest.raises(TransportError):
            await remote.start("NOPE42")
        assert remote.state is SessionState.DISCOVERING
        assert remote.active_timer_count == 0
        await remote.aclose()

    asyncio.run(scenario())


def test_capture_before_registration_is_discarded():
    async def scenario() -> None:
        hub = LoopbackHub()
        link = LoopbackTransport(hub)
        camera = Session(link, Role.CAMERA, timings=FAST)
        seen: list[CaptureRequested] = []
        camera.events.subscribe(CaptureRequested, seen.append)
        await camera.start()
        handle = ConnectionHandle(id="loopback-x", peer="remote", transport="loopback", inbound=True)
        link._emit_connection(handle, True)
        assert camera.state is SessionState.REGISTERING

        link.inject(handle, Message.capture(1, 30))
        assert seen == []

        link.inject(handle, Message.register(Role.CAMERA))
        assert not camera.registered_peers

        link.links[handle.id] = (handle, LoopbackTransport(hub), handle)
        link.inject(handle, Message.register(Role.REMOTE))
        assert camera.state is SessionState.CONNECTED
        link.inject(handle, Message.capture(2, 30))
        assert len(seen) == 1
        await camera.aclose()

    asyncio.run(scenario())


def test_unregistered_peer_dropped_after_timeout():
    async def scenario() -> None:
        hub = LoopbackHub()
        link = LoopbackTransport(hub)
        camera = Session(link, Role.CAMERA, timings=FAST)
        await camera.start()
        handle = ConnectionHandle(id="loopback-y", peer="remote", transport="loopback", inbound=True)
        link._emit_connection(handle, True)
        assert camera.state is SessionState.REGISTERING
        await _eventually(lambda: camera.state is SessionState.ADVERTISING)
        assert camera.peers == []
        await camera.aclose()

    asyncio.run(scenario())


def test_builtin_liveness_registers_on_connection():
    async def scenario() -> None:
        hub = LoopbackHub()
        link = LoopbackTransport(hub, builtin_liveness=True)
        camera = Session(link, Role.CAMERA, timings=FAST)
        await camera.start()
        handle = ConnectionHandle(id="loopback-z", peer="remote", transport="loopback", inbound=True)
        link._emit_connection(handle, True)
        assert camera.state is SessionState.CONNECTED
        assert camera.active_timer_count == 0
        await camera.aclose()

    asyncio.run(scenario())


def test_status_reaches_remote():
    async def scenario() -> list[str]:
        _, camera, remote, _, _ = await _paired()
        texts: list[str] = []
        remote.events.subscribe(StatusReceived, lambda event: texts.append(event.text))
        assert await camera.send_status("capture_saved:highlight_1:40") == 1
        await _eventually(lambda: bool(texts))
        await remote.aclose()
        await camera.aclose()
        return texts

    assert asyncio.run(scenario()) == ["capture_saved:highlight_1:40"]


def test_role_specific_operations():
    async def scenario() -> None:
        hub = LoopbackHub()
        camera = Session(LoopbackTransport(hub), Role.CAMERA, timings=FAST)
        remote = Session(LoopbackTransport(hub), Role.REMOTE, timings=FAST)
        with pytest.raises(SessionError):
            await camera.send_capture()
        with pytest.raises(SessionError):
            await remote.send_capture()
        with pytest.raises(SessionError):
            await remote.start()
        await camera.start()
        with pytest.raises(SessionError):
            await camera.start()
        await camera.aclose()
        await remote.aclose()

    asyncio.run(scenario())
