"""Request/response transport backed by per-peer mailboxes on the camera."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from fastapi import APIRouter, HTTPException, Response

from ..protocol import MalformedMessageError, Message
from .base import Ack, ConnectionHandle, SendError, Transport, TransportError

logger = logging.getLogger(__name__)

POLL_PREFIX = "/api/poll"


@dataclass
class _Mailbox:
    handle: ConnectionHandle
    last_seen: float
    entries: list[dict[str, Any]] = field(default_factory=list)


class PollingTransport(Transport):
    """Polls are the keepalive; a peer that stops polling is dropped."""

    kind = "polling"
    builtin_liveness = True

    def __init__(
        self,
        *,
        public_host: str = "127.0.0.1",
        port: int = 8080,
        poll_interval_s: float = 1.0,
        stale_timeout_s: float | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__()
        self._public_host = public_host
        self._port = port
        self._poll_interval_s = poll_interval_s
        self._stale_timeout_s = stale_timeout_s or max(3 * poll_interval_s, 3.0)
        self._client_factory = client_factory or httpx.AsyncClient
        self._clock = clock
        self._sequence = itertools.count(1)
        self._session_id: str | None = None
        self._mailboxes: dict[str, _Mailbox] = {}
        self._sweeper: asyncio.Task[None] | None = None
        # Remote side
        self._client: httpx.AsyncClient | None = None
        self._remote_links: dict[str, tuple[str, str]] = {}
        self._pollers: dict[str, asyncio.Task[None]] = {}

    # ------------------------------ camera side ----------------------------
    async def listen(self, session_id: str) -> str:
        self._session_id = session_id
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())
        return f"http://{self._public_host}:{self._port}{POLL_PREFIX}/{session_id}"

    def build_router(self) -> APIRouter:
        router = APIRouter(prefix=POLL_PREFIX, tags=["signaling"])

        @router.post("/{session_id}/register")
        async def register(session_id: str) -> dict[str, str]:
            self._check_session(session_id)
            return {"peer": self.register_peer()}

        @router.post("/{session_id}/{peer_id}/messages", status_code=202)
        async def deliver(session_id: str, peer_id: str, payload: dict[str, Any]) -> dict[str, int]:
            self._check_session(session_id)
            mailbox = self._touch(peer_id)
            try:
                message = Message.from_dict(payload)
            except MalformedMessageError as exc:
                self._emit_error(mailbox.handle, exc)
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            self._emit_message(mailbox.handle, message)
            return {"accepted": 1}

        @router.get("/{session_id}/{peer_id}/messages")
        async def poll(session_id: str, peer_id: str) -> dict[str, Any]:
            self._check_session(session_id)
            return {"messages": self.drain(peer_id)}

        @router.delete("/{session_id}/{peer_id}", status_code=204)
        async def leave(session_id: str, peer_id: str) -> Response:
            self._check_session(session_id)
            mailbox = self._mailboxes.get(peer_id)
            if mailbox is not None:
                self._drop_mailbox(peer_id, "closed by peer")
            return Response(status_code=204)

        return router

    def _check_session(self, session_id: str) -> None:
        if self._session_id is None or session_id.strip().upper() != self._session_id:
            raise HTTPException(status_code=404, detail="Unknown session")

    def _touch(self, peer_id: str) -> _Mailbox:
        mailbox = self._mailboxes.get(peer_id)
        if mailbox is None:
            raise HTTPException(status_code=404, detail="Unknown peer")
        mailbox.last_seen = self._clock()
        return mailbox

    def register_peer(self) -> str:
        peer_id = uuid.uuid4().hex[:12]
        handle = ConnectionHandle(
            id=f"{self.kind}-{peer_id}", peer=peer_id, transport=self.kind, inbound=True
        )
        self._mailboxes[peer_id] = _Mailbox(handle=handle, last_seen=self._clock())
        self._emit_connection(handle, True)
        return peer_id

    def drain(self, peer_id: str) -> list[dict[str, Any]]:
        """Return and delete every queued record for ``peer_id`` in send order."""

        mailbox = self._touch(peer_id)
        entries = sorted(mailbox.entries, key=lambda entry: entry["seq"])
        mailbox.entries.clear()
        return entries

    def sweep(self) -> list[str]:
        """Drop peers whose last poll is older than the stale timeout."""

        now = self._clock()
        stale = [
            peer_id
            for peer_id, mailbox in self._mailboxes.items()
            if now - mailbox.last_seen > self._stale_timeout_s
        ]
        for peer_id in stale:
            self._drop_mailbox(peer_id, "poll timeout")
        return stale

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval_s)
            self.sweep()

    def _drop_mailbox(self, peer_id: str, reason: str) -> None:
        mailbox = self._mailboxes.pop(peer_id, None)
        if mailbox is not None:
            logger.info("Polling peer %s dropped: %s", peer_id, reason)
            self._emit_connection(mailbox.handle, False, reason)

    # ------------------------------ remote side ----------------------------
    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def connect(self, target: str, *, timeout: float) -> ConnectionHandle:
        base = target.rstrip("/")
        client = self._ensure_client()
        try:
            response = await self._with_timeout(
                client.post(f"{base}/register", timeout=timeout), timeout, f"Registering with {base}"
            )
            response.raise_for_status()
            peer_id = str(response.json()["peer"])
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise TransportError(f"Unable to register with {base}: {exc}") from exc
        handle = ConnectionHandle(
            id=f"{self.kind}-{peer_id}", peer=base, transport=self.kind, inbound=False
        )
        self._remote_links[handle.id] = (base, peer_id)
        self._emit_connection(handle, True)
        self._pollers[handle.id] = asyncio.create_task(self._poll_loop(handle))
        return handle

    async def poll_once(self, handle: ConnectionHandle) -> int:
        """Fetch and deliver queued records; returns how many arrived."""

        base, peer_id = self._remote_links[handle.id]
        response = await self._ensure_client().get(f"{base}/{peer_id}/messages")
        if response.status_code == 404:
            raise TransportError("Camera no longer knows this peer")
        response.raise_for_status()
        entries = response.json().get("messages", [])
        for entry in sorted(entries, key=lambda item: item.get("seq", 0)):
            try:
                message = Message.from_dict(entry.get("record", {}))
            except MalformedMessageError as exc:
                logger.warning("Discarding malformed record from %s: %s", base, exc)
                self._emit_error(handle, exc)
                continue
            self._emit_message(handle, message)
        return len(entries)

    async def _poll_loop(self, handle: ConnectionHandle) -> None:
        reason = "closed"
        last_success = self._clock()
        try:
            while True:
                try:
                    await self.poll_once(handle)
                    last_success = self._clock()
                except TransportError as exc:
                    reason = str(exc)
                    break
                except (httpx.HTTPError, ValueError) as exc:
                    logger.debug("Poll of %s failed: %s", handle.peer, exc)
                    if self._clock() - last_success > self._stale_timeout_s:
                        reason = "poll timeout"
                        break
                await asyncio.sleep(self._poll_interval_s)
        finally:
            self._pollers.pop(handle.id, None)
            if self._remote_links.pop(handle.id, None) is not None:
                self._emit_connection(handle, False, reason)

    # ------------------------------- shared --------------------------------
    async def send(self, handle: ConnectionHandle, message: Message) -> Ack:
        if handle.inbound:
            mailbox = self._mailboxes.get(handle.peer)
            if mailbox is None:
                raise SendError(f"Peer {handle.peer} is not registered")
            mailbox.entries.append({"seq": next(self._sequence), "record": message.to_dict()})
            return self._ack(handle)
        link = self._remote_links.get(handle.id)
        if link is None:
            raise SendError(f"Connection {handle.id} is not open")
        base, peer_id = link
        try:
            response = await self._ensure_client().post(
                f"{base}/{peer_id}/messages", json=message.to_dict()
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise SendError(f"Failed to send to {base}: {exc}") from exc
        return self._ack(handle)

    async def close(self, handle: ConnectionHandle) -> None:
        if handle.inbound:
            self._drop_mailbox(handle.peer, "closed")
            return
        poller = self._pollers.get(handle.id)
        link = self._remote_links.get(handle.id)
        if link is not None:
            base, peer_id = link
            try:
                await self._ensure_client().delete(f"{base}/{peer_id}")
            except httpx.HTTPError as exc:
                logger.debug("Ignoring leave failure for %s: %s", base, exc)
        if poller is not None and poller is not asyncio.current_task():
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass

    async def aclose(self) -> None:
        pollers = list(self._pollers.values())
        for task in pollers:
            task.cancel()
        await asyncio.gather(*pollers, return_exceptions=True)
        for peer_id in list(self._mailboxes):
            self._drop_mailbox(peer_id, "closed")
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._session_id = None


__all__ = ["POLL_PREFIX", "PollingTransport"]
