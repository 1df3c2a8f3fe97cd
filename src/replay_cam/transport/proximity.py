"""Discovery-based link: zeroconf advertise/browse with a stream data channel."""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import Callable

try:  # pragma: no cover - import guard for optional dependency failures
    from zeroconf import InterfaceChoice, ServiceBrowser, ServiceInfo, ServiceStateChange, Zeroconf
except Exception as exc:  # pragma: no cover - dependency import failure
    Zeroconf = None  # type: ignore[assignment]
    ServiceInfo = None  # type: ignore[assignment]
    ServiceBrowser = None  # type: ignore[assignment]
    ServiceStateChange = None  # type: ignore[assignment]
    InterfaceChoice = None  # type: ignore[assignment]
    _zeroconf_error = exc
else:
    _zeroconf_error = None

from ..config import DEFAULT_SERVICE_TYPE
from ..protocol import Message, normalise_session_id
from .base import Ack, ConnectionHandle, Transport, TransportError
from .stream import DEFAULT_STREAM_PORT, StreamTransport

logger = logging.getLogger(__name__)

SESSION_PROPERTY = b"session"
INFO_TIMEOUT_MS = 3000


def _require_zeroconf() -> None:
    if Zeroconf is None or ServiceInfo is None or ServiceBrowser is None:
        reason = _zeroconf_error or "zeroconf library unavailable"
        raise RuntimeError(f"Proximity transport unavailable: {reason}")


def _session_from_info(info: object) -> str | None:
    properties = getattr(info, "properties", None) or {}
    raw = properties.get(SESSION_PROPERTY)
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", "replace")
    return str(raw).strip().upper() or None


class ProximityTransport(Transport):
    """Advertise the session on the local link and pair by session code.

    The camera registers a service whose TXT record carries the session id;
    a remote browses for that service type and connects to the first entry
    whose session matches. Records then travel over an inner
    :class:`StreamTransport`.
    """

    kind = "proximity"
    discovery_based = True

    def __init__(
        self,
        *,
        host: str = "0.0.0.0",
        port: int = DEFAULT_STREAM_PORT,
        public_host: str | None = None,
        service_type: str = DEFAULT_SERVICE_TYPE,
        zeroconf_factory: Callable[[], object] | None = None,
        stream: StreamTransport | None = None,
    ) -> None:
        super().__init__()
        if not service_type.endswith("."):
            service_type = f"{service_type}."
        self._service_type = service_type
        self._public_host = public_host
        self._zeroconf_factory = zeroconf_factory
        self._zeroconf: object | None = None
        self._info: object | None = None
        self._stream = stream or StreamTransport(host=host, port=port, public_host=public_host)
        self._stream.on_message(self._emit_message)
        self._stream.on_connection(self._emit_connection)
        self._stream.on_error(self._emit_error)

    @property
    def stream(self) -> StreamTransport:
        return self._stream

    @property
    def advertised(self) -> bool:
        return self._info is not None

    async def _ensure_zeroconf(self) -> object:
        if self._zeroconf is None:
            if self._zeroconf_factory is not None:
                self._zeroconf = self._zeroconf_factory()
            else:
                _require_zeroconf()
                self._zeroconf = await asyncio.to_thread(
                    lambda: Zeroconf(interfaces=InterfaceChoice.All)
                )
        return self._zeroconf

    # ------------------------------ camera side ----------------------------
    async def listen(self, session_id: str) -> str:
        address = await self._stream.listen(session_id)
        host, _, port_text = address.rpartition(":")
        zeroconf = await self._ensure_zeroconf()
        if self._info is not None:
            await self._unregister(zeroconf)
        info = self._build_service_info(session_id, host, int(port_text))
        await asyncio.to_thread(zeroconf.register_service, info, allow_name_change=True)
        self._info = info
        logger.info("Advertising session %s as %s", session_id, getattr(info, "name", "?"))
        return session_id

    def _build_service_info(self, session_id: str, host: str, port: int) -> object:
        _require_zeroconf()
        try:
            packed = [ipaddress.ip_address(host).packed]
        except ValueError:
            packed = [socket.inet_aton(socket.gethostbyname(host))]
        return ServiceInfo(
            type_=self._service_type,
            name=f"ReplayCam-{session_id}.{self._service_type}",
            addresses=packed,
            port=port,
            server=f"replaycam-{session_id.lower()}.local.",
            properties={SESSION_PROPERTY: session_id.encode("utf-8")},
        )

    async def _unregister(self, zeroconf: object) -> None:
        info, self._info = self._info, None
        if info is None:
            return
        try:
            await asyncio.to_thread(zeroconf.unregister_service, info)
        except Exception as exc:  # pragma: no cover - best effort cleanup
            logger.debug("Ignoring service unregister failure: %s", exc)

    # ------------------------------ remote side ----------------------------
    async def connect(self, target: str, *, timeout: float) -> ConnectionHandle:
        session_id = normalise_session_id(target)
        loop = asyncio.get_running_loop()
        started = loop.time()
        host, port = await self._with_timeout(
            self._discover(session_id), timeout, f"Discovering session {session_id}"
        )
        remaining = max(0.1, timeout - (loop.time() - started))
        return await self._stream.connect(f"{host}:{port}", timeout=remaining)

    async def _discover(self, session_id: str) -> tuple[str, int]:
        zeroconf = await self._ensure_zeroconf()
        loop = asyncio.get_running_loop()
        names: asyncio.Queue[str] = asyncio.Queue()

        def _on_service_state_change(zeroconf, service_type, name, state_change) -> None:
            if state_change is not ServiceStateChange.Removed:
                loop.call_soon_threadsafe(names.put_nowait, name)

        browser = ServiceBrowser(
            zeroconf, self._service_type, handlers=[_on_service_state_change]
        )
        try:
            while True:
                name = await names.get()
                info = await asyncio.to_thread(
                    zeroconf.get_service_info, self._service_type, name, INFO_TIMEOUT_MS
                )
                if info is None or _session_from_info(info) != session_id:
                    continue
                addresses = info.parsed_addresses()
                if not addresses or not info.port:
                    logger.debug("Service %s has no usable address", name)
                    continue
                logger.info("Discovered session %s at %s:%s", session_id, addresses[0], info.port)
                return addresses[0], int(info.port)
        finally:
            await asyncio.to_thread(browser.cancel)

    # ------------------------------- shared --------------------------------
    async def send(self, handle: ConnectionHandle, message: Message) -> Ack:
        return await self._stream.send(handle, message)

    async def close(self, handle: ConnectionHandle) -> None:
        await self._stream.close(handle)

    async def aclose(self) -> None:
        await self._stream.aclose()
        zeroconf, self._zeroconf = self._zeroconf, None
        if zeroconf is None:
            return
        await self._unregister(zeroconf)
        try:
            await asyncio.to_thread(zeroconf.close)
        except Exception as exc:  # pragma: no cover - best effort cleanup
            raise TransportError(f"Failed to stop service discovery: {exc}") from exc


__all__ = ["ProximityTransport", "SESSION_PROPERTY"]
