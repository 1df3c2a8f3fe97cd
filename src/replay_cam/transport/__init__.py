"""Interchangeable physical links behind one capability set."""
from __future__ import annotations

import socket
from typing import Any

from ..config import TransportSettings
from .base import (
    Ack,
    ConnectTimeoutError,
    ConnectionCancelledError,
    ConnectionHandle,
    SendError,
    Transport,
    TransportError,
)
from .duplex import DuplexTransport
from .polling import PollingTransport
from .proximity import ProximityTransport
from .relay import HttpRelayStore, MemoryRelayStore, RelayStore, RelayTransport
from .stream import DEFAULT_STREAM_PORT, StreamTransport


def _public_host(settings: TransportSettings) -> str:
    if settings.public_host:
        return settings.public_host
    if settings.host not in ("", "0.0.0.0", "::"):
        return settings.host
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "127.0.0.1"


def create_transport(settings: TransportSettings, **overrides: Any) -> Transport:
    """Build the transport selected by ``settings.kind``.

    Keyword ``overrides`` are passed to the variant's constructor, which lets
    callers inject collaborators such as a relay store or an HTTP client.
    """

    kind = settings.kind
    if kind == "stream":
        options: dict[str, Any] = {
            "host": settings.host,
            "port": DEFAULT_STREAM_PORT,
            "public_host": settings.public_host,
        }
        options.update(overrides)
        return StreamTransport(**options)
    if kind == "proximity":
        options = {
            "host": settings.host,
            "port": DEFAULT_STREAM_PORT,
            "public_host": settings.public_host,
            "service_type": settings.service_type,
        }
        options.update(overrides)
        return ProximityTransport(**options)
    if kind == "duplex":
        options = {"public_host": _public_host(settings), "port": settings.port}
        options.update(overrides)
        return DuplexTransport(**options)
    if kind == "polling":
        options = {
            "public_host": _public_host(settings),
            "port": settings.port,
            "poll_interval_s": settings.poll_interval_s,
        }
        options.update(overrides)
        return PollingTransport(**options)
    if kind == "relay":
        store = overrides.pop("store", None)
        if store is None:
            store = HttpRelayStore(settings.relay_url) if settings.relay_url else MemoryRelayStore()
        options = {"poll_interval_s": settings.poll_interval_s}
        options.update(overrides)
        return RelayTransport(store, **options)
    raise ValueError(f"Unknown transport kind: {kind}")


__all__ = [
    "Ack",
    "ConnectTimeoutError",
    "ConnectionCancelledError",
    "ConnectionHandle",
    "DuplexTransport",
    "HttpRelayStore",
    "MemoryRelayStore",
    "PollingTransport",
    "ProximityTransport",
    "RelayStore",
    "RelayTransport",
    "SendError",
    "StreamTransport",
    "Transport",
    "TransportError",
    "create_transport",
]
