"""Third-party realtime store used as a signaling mailbox.

Layout under ``sessions/{id}``::

    camera/status            presence of the camera
    remotes/{remote}         presence of each remote (appearance = registration)
    signals/{key}            remote -> camera records
    inbox/{remote}/{key}     camera -> remote records

Records are consumed then deleted in ``(timestamp, key)`` order.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Any, Callable, Mapping

import httpx

from ..protocol import MalformedMessageError, Message, normalise_session_id, wall_clock_ms
from .base import Ack, ConnectTimeoutError, ConnectionHandle, SendError, Transport, TransportError

logger = logging.getLogger(__name__)


class RelayStore:
    """Minimal hierarchical key/value API the relay transport relies on."""

    async def get(self, path: str) -> Any:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, path: str, value: Any) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def push(self, path: str, value: Any) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, path: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _split(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


class MemoryRelayStore(RelayStore):
    """In-process store, shared by transports running in the same process."""

    def __init__(self) -> None:
        self._root: dict[str, Any] = {}
        self._keys = itertools.count(1)

    def _parent(self, parts: list[str], *, create: bool) -> dict[str, Any] | None:
        node: Any = self._root
        for part in parts[:-1]:
            child = node.get(part) if isinstance(node, dict) else None
            if not isinstance(child, dict):
                if not create:
                    return None
                child = {}
                node[part] = child
            node = child
        return node

    async def get(self, path: str) -> Any:
        parts = _split(path)
        if not parts:
            return self._root or None
        parent = self._parent(parts, create=False)
        if parent is None:
            return None
        return parent.get(parts[-1])

    async def put(self, path: str, value: Any) -> None:
        parts = _split(path)
        parent = self._parent(parts, create=True)
        assert parent is not None
        parent[parts[-1]] = value

    async def push(self, path: str, value: Any) -> str:
        key = f"k{next(self._keys):012d}"
        await self.put(f"{path}/{key}", value)
        return key

    async def delete(self, path: str) -> None:
        parts = _split(path)
        parent = self._parent(parts, create=False)
        if parent is not None:
            parent.pop(parts[-1], None)


class HttpRelayStore(RelayStore):
    """REST JSON convention: ``{base}/{path}.json`` with GET/PUT/POST/DELETE."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._params = {"auth": auth_token} if auth_token else None
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{'/'.join(_split(path))}.json"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await self._client.request(
                method, self._url(path), params=self._params, **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"Relay {method} {path} failed: {exc}") from exc
        return response

    async def get(self, path: str) -> Any:
        response = await self._request("GET", path)
        return response.json()

    async def put(self, path: str, value: Any) -> None:
        await self._request("PUT", path, json=value)

    async def push(self, path: str, value: Any) -> str:
        response = await self._request("POST", path, json=value)
        payload = response.json()
        if not isinstance(payload, Mapping) or "name" not in payload:
            raise TransportError("Relay push did not return a key")
        return str(payload["name"])

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def _ordered_records(node: Any) -> list[tuple[str, Mapping[str, Any]]]:
    if not isinstance(node, Mapping):
        return []
    records = [(str(key), value) for key, value in node.items() if isinstance(value, Mapping)]
    records.sort(key=lambda item: (_timestamp_of(item[1]), item[0]))
    return records


def _timestamp_of(entry: Mapping[str, Any]) -> int:
    try:
        return int(entry.get("timestamp", 0))
    except (TypeError, ValueError):
        return 0


class RelayTransport(Transport):
    """Mailbox transport over a :class:`RelayStore`.

    Presence entries are refreshed every poll; a peer whose entry is older
    than ``presence_timeout_s`` (or disappears) is reported lost.
    """

    kind = "relay"
    builtin_liveness = True

    def __init__(
        self,
        store: RelayStore,
        *,
        poll_interval_s: float = 1.0,
        presence_timeout_s: float = 10.0,
        clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        super().__init__()
        self._store = store
        self._poll_interval_s = poll_interval_s
        self._presence_timeout_ms = int(presence_timeout_s * 1000)
        self._clock = clock
        self._session_id: str | None = None
        self._camera = False
        self._remote_id: str | None = None
        self._handles: dict[str, ConnectionHandle] = {}
        self._watcher: asyncio.Task[None] | None = None

    @property
    def store(self) -> RelayStore:
        return self._store

    def _path(self, *parts: str) -> str:
        if self._session_id is None:
            raise TransportError("Relay transport has no active session")
        return "/".join(("sessions", self._session_id) + parts)

    def _presence(self, role: str) -> dict[str, Any]:
        return {"online": True, "timestamp": self._clock(), "role": role}

    def _fresh(self, entry: Any) -> bool:
        if not isinstance(entry, Mapping) or not entry.get("online"):
            return False
        return self._clock() - _timestamp_of(entry) <= self._presence_timeout_ms

    # ------------------------------ camera side ----------------------------
    async def listen(self, session_id: str) -> str:
        self._session_id = session_id
        self._camera = True
        await self._store.put(self._path("camera", "status"), self._presence("camera"))
        self._start_watcher()
        return session_id

    async def _poll_camera(self) -> None:
        await self._store.put(self._path("camera", "status"), self._presence("camera"))
        remotes = await self._store.get(self._path("remotes"))
        remotes = remotes if isinstance(remotes, Mapping) else {}
        for remote_id, entry in remotes.items():
            handle_id = f"{self.kind}-{remote_id}"
            if handle_id in self._handles:
                if not self._fresh(entry):
                    await self._store.delete(self._path("remotes", str(remote_id)))
                    self._lose(handle_id, "presence timeout")
                continue
            if self._fresh(entry):
                handle = ConnectionHandle(
                    id=handle_id, peer=str(remote_id), transport=self.kind, inbound=True
                )
                self._handles[handle_id] = handle
                self._emit_connection(handle, True)
        for handle_id, handle in list(self._handles.items()):
            if handle.peer not in remotes:
                self._lose(handle_id, "closed by peer")
        signals = await self._store.get(self._path("signals"))
        for key, entry in _ordered_records(signals):
            await self._store.delete(self._path("signals", key))
            handle = self._handles.get(f"{self.kind}-{entry.get('sender')}")
            if handle is None:
                logger.debug("Dropping relay signal %s from unregistered sender", key)
                continue
            self._deliver(handle, entry)

    # ------------------------------ remote side ----------------------------
    async def connect(self, target: str, *, timeout: float) -> ConnectionHandle:
        session_id = normalise_session_id(target)
        self._session_id = session_id
        self._camera = False
        try:
            await self._with_timeout(self._await_camera(), timeout, f"Finding session {session_id}")
        except ConnectTimeoutError:
            self._session_id = None
            raise
        remote_id = uuid.uuid4().hex[:8]
        await self._store.put(self._path("remotes", remote_id), self._presence("remote"))
        self._remote_id = remote_id
        handle = ConnectionHandle(
            id=f"{self.kind}-{remote_id}", peer=session_id, transport=self.kind, inbound=False
        )
        self._handles[handle.id] = handle
        self._emit_connection(handle, True)
        self._start_watcher()
        return handle

    async def _await_camera(self) -> None:
        while True:
            status = await self._store.get(self._path("camera", "status"))
            if self._fresh(status):
                return
            await asyncio.sleep(self._poll_interval_s)

    async def _poll_remote(self) -> None:
        if self._remote_id is None:
            return
        handle_id = f"{self.kind}-{self._remote_id}"
        handle = self._handles.get(handle_id)
        if handle is None:
            return
        status = await self._store.get(self._path("camera", "status"))
        if not self._fresh(status):
            self._lose(handle_id, "camera offline")
            return
        await self._store.put(self._path("remotes", self._remote_id), self._presence("remote"))
        inbox = await self._store.get(self._path("inbox", self._remote_id))
        for key, entry in _ordered_records(inbox):
            await self._store.delete(self._path("inbox", self._remote_id, key))
            self._deliver(handle, entry)

    # ------------------------------- shared --------------------------------
    async def poll_once(self) -> None:
        """Refresh presence and consume pending records once."""

        if self._session_id is None:
            return
        if self._camera:
            await self._poll_camera()
        else:
            await self._poll_remote()

    def _start_watcher(self) -> None:
        if self._watcher is None or self._watcher.done():
            self._watcher = asyncio.create_task(self._watch())

    async def _watch(self) -> None:
        while True:
            try:
                await self.poll_once()
            except TransportError as exc:
                logger.warning("Relay poll failed: %s", exc)
                self._emit_error(None, exc)
            await asyncio.sleep(self._poll_interval_s)

    def _deliver(self, handle: ConnectionHandle, entry: Mapping[str, Any]) -> None:
        try:
            message = Message.from_dict(entry.get("record", {}))
        except MalformedMessageError as exc:
            logger.warning("Discarding malformed relay record: %s", exc)
            self._emit_error(handle, exc)
            return
        self._emit_message(handle, message)

    def _lose(self, handle_id: str, reason: str) -> None:
        handle = self._handles.pop(handle_id, None)
        if handle is not None:
            logger.info("Relay peer %s lost: %s", handle.peer, reason)
            self._emit_connection(handle, False, reason)

    async def send(self, handle: ConnectionHandle, message: Message) -> Ack:
        if handle.id not in self._handles:
            raise SendError(f"Connection {handle.id} is not open")
        entry = {
            "record": message.to_dict(),
            "timestamp": self._clock(),
            "sender": self._remote_id if not self._camera else "camera",
        }
        try:
            if self._camera:
                await self._store.push(self._path("inbox", handle.peer), entry)
            else:
                await self._store.push(self._path("signals"), entry)
        except TransportError as exc:
            raise SendError(str(exc)) from exc
        return self._ack(handle)

    async def close(self, handle: ConnectionHandle) -> None:
        if handle.id not in self._handles:
            return
        remote_id = handle.peer if self._camera else self._remote_id
        if remote_id is not None:
            try:
                await self._store.delete(self._path("remotes", remote_id))
            except TransportError as exc:
                logger.debug("Ignoring relay cleanup failure: %s", exc)
        if not self._camera:
            self._remote_id = None
        self._lose(handle.id, "closed")

    async def aclose(self) -> None:
        if self._watcher is not None:
            self._watcher.cancel()
            try:
                await self._watcher
            except asyncio.CancelledError:
                pass
            self._watcher = None
        for handle in list(self._handles.values()):
            await self.close(handle)
        if self._session_id is not None and self._camera:
            try:
                await self._store.delete(self._path())
            except TransportError as exc:
                logger.debug("Ignoring relay session cleanup failure: %s", exc)
        self._session_id = None
        self._remote_id = None
        await self._store.aclose()


__all__ = ["HttpRelayStore", "MemoryRelayStore", "RelayStore", "RelayTransport"]
