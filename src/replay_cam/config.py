"""Configuration management for ReplayCam."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Sequence


class SegmentConfigurationError(ValueError):
    """Raised when the capture pipeline's segment layout is unusable."""


TRANSPORT_KINDS: dict[str, str] = {
    "stream": "TCP stream socket (newline-delimited JSON)",
    "duplex": "WebSocket message-framed duplex",
    "proximity": "Local discovery (mDNS advertise/browse) over TCP",
    "polling": "HTTP request/response polling",
    "relay": "Realtime relay store used as a mailbox",
}
DEFAULT_TRANSPORT_KIND = "stream"
DEFAULT_PORT = 8080
DEFAULT_SERVICE_TYPE = "_replaycam._tcp.local."


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValueError(f"{name} must be a whole number")
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc
    raise ValueError(f"{name} must be an integer")


def _coerce_seconds(value: Any, name: str) -> float:
    try:
        seconds = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(seconds) or seconds <= 0:
        raise ValueError(f"{name} must be a positive number of seconds")
    return seconds


@dataclass(frozen=True, slots=True)
class BufferSettings:
    """Segment layout emitted by the capture pipeline and the retention window."""

    segment_duration_s: int = 30
    keyframe_interval_s: int = 2
    retention_window_s: int = 300
    frame_rate: int = 30
    contiguity_tolerance_ms: int = 100

    def __post_init__(self) -> None:
        try:
            segment = _coerce_int(self.segment_duration_s, "Segment duration")
            keyframe = _coerce_int(self.keyframe_interval_s, "Keyframe interval")
            retention = _coerce_int(self.retention_window_s, "Retention window")
            frame_rate = _coerce_int(self.frame_rate, "Frame rate")
            tolerance = _coerce_int(self.contiguity_tolerance_ms, "Contiguity tolerance")
        except ValueError as exc:
            raise SegmentConfigurationError(str(exc)) from exc
        if segment <= 0 or keyframe <= 0 or frame_rate <= 0:
            raise SegmentConfigurationError(
                "Segment duration, keyframe interval and frame rate must be positive"
            )
        if segment % keyframe != 0:
            raise SegmentConfigurationError(
                f"Keyframe interval {keyframe}s must evenly divide the "
                f"segment duration {segment}s"
            )
        if retention < segment:
            raise SegmentConfigurationError(
                "Retention window must hold at least one segment"
            )
        if tolerance < 0:
            raise SegmentConfigurationError("Contiguity tolerance cannot be negative")
        object.__setattr__(self, "segment_duration_s", segment)
        object.__setattr__(self, "keyframe_interval_s", keyframe)
        object.__setattr__(self, "retention_window_s", retention)
        object.__setattr__(self, "frame_rate", frame_rate)
        object.__setattr__(self, "contiguity_tolerance_ms", tolerance)

    @property
    def gop_size(self) -> int:
        """Number of frames between two keyframes."""

        return self.frame_rate * self.keyframe_interval_s

    @property
    def max_segments(self) -> int:
        return math.ceil(self.retention_window_s / self.segment_duration_s)

    def to_dict(self) -> dict[str, int]:
        return {
            "segment_duration_s": int(self.segment_duration_s),
            "keyframe_interval_s": int(self.keyframe_interval_s),
            "retention_window_s": int(self.retention_window_s),
            "frame_rate": int(self.frame_rate),
            "contiguity_tolerance_ms": int(self.contiguity_tolerance_ms),
        }


@dataclass(frozen=True, slots=True)
class SessionTimings:
    """Timeouts and intervals driving the pairing state machine."""

    direct_connect_timeout_s: float = 10.0
    discovery_connect_timeout_s: float = 30.0
    heartbeat_interval_s: float = 3.0
    heartbeat_timeout_s: float = 9.0
    reconnect_backoff_s: float = 3.0
    register_timeout_s: float = 10.0

    def __post_init__(self) -> None:
        for name in (
            "direct_connect_timeout_s",
            "discovery_connect_timeout_s",
            "heartbeat_interval_s",
            "heartbeat_timeout_s",
            "reconnect_backoff_s",
            "register_timeout_s",
        ):
            object.__setattr__(self, name, _coerce_seconds(getattr(self, name), name))
        if self.heartbeat_timeout_s < self.heartbeat_interval_s:
            raise ValueError("Heartbeat timeout must not be shorter than the heartbeat interval")

    def connect_timeout(self, *, discovery_based: bool) -> float:
        if discovery_based:
            return self.discovery_connect_timeout_s
        return self.direct_connect_timeout_s

    def to_dict(self) -> dict[str, float]:
        return {
            "direct_connect_timeout_s": self.direct_connect_timeout_s,
            "discovery_connect_timeout_s": self.discovery_connect_timeout_s,
            "heartbeat_interval_s": self.heartbeat_interval_s,
            "heartbeat_timeout_s": self.heartbeat_timeout_s,
            "reconnect_backoff_s": self.reconnect_backoff_s,
            "register_timeout_s": self.register_timeout_s,
        }


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Behaviour of the capture handler on the camera."""

    default_duration_s: int = 120
    duration_presets: tuple[int, ...] = (30, 60, 120)
    coalesce_window_ms: int = 1000
    pending_grace_s: float = 5.0

    def __post_init__(self) -> None:
        default = _coerce_int(self.default_duration_s, "Default capture duration")
        if default <= 0:
            raise ValueError("Default capture duration must be positive")
        presets: list[int] = []
        for item in self.duration_presets:
            value = _coerce_int(item, "Capture preset")
            if value <= 0:
                raise ValueError("Capture presets must be positive")
            if value not in presets:
                presets.append(value)
        window = _coerce_int(self.coalesce_window_ms, "Coalescing window")
        if window < 0 or window > 1000:
            raise ValueError("Coalescing window must be between 0 and 1000 ms")
        try:
            grace = float(self.pending_grace_s)
        except (TypeError, ValueError) as exc:
            raise ValueError("Pending capture grace must be numeric") from exc
        if not math.isfinite(grace) or grace < 0:
            raise ValueError("Pending capture grace cannot be negative")
        object.__setattr__(self, "default_duration_s", default)
        object.__setattr__(self, "duration_presets", tuple(sorted(presets)))
        object.__setattr__(self, "coalesce_window_ms", window)
        object.__setattr__(self, "pending_grace_s", grace)

    def to_dict(self) -> dict[str, object]:
        return {
            "default_duration_s": self.default_duration_s,
            "duration_presets": list(self.duration_presets),
            "coalesce_window_ms": self.coalesce_window_ms,
            "pending_grace_s": self.pending_grace_s,
        }


@dataclass(frozen=True, slots=True)
class TransportSettings:
    """Selection and addressing of the physical link."""

    kind: str = DEFAULT_TRANSPORT_KIND
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    public_host: str | None = None
    relay_url: str | None = None
    poll_interval_s: float = 1.0
    service_type: str = DEFAULT_SERVICE_TYPE

    def __post_init__(self) -> None:
        kind = str(self.kind).strip().lower()
        if kind not in TRANSPORT_KINDS:
            raise ValueError(f"Unknown transport kind: {self.kind}")
        port = _coerce_int(self.port, "Port")
        if not (0 <= port <= 65535):
            raise ValueError("Port must be between 0 and 65535")
        interval = _coerce_seconds(self.poll_interval_s, "Poll interval")
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "port", port)
        object.__setattr__(self, "poll_interval_s", interval)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "host": self.host,
            "port": self.port,
            "public_host": self.public_host,
            "relay_url": self.relay_url,
            "poll_interval_s": self.poll_interval_s,
            "service_type": self.service_type,
        }


DEFAULT_BUFFER_SETTINGS = BufferSettings()
DEFAULT_SESSION_TIMINGS = SessionTimings()
DEFAULT_CAPTURE_SETTINGS = CaptureSettings()
DEFAULT_TRANSPORT_SETTINGS = TransportSettings()


def _parse_buffer_settings(value: Any, *, default: BufferSettings) -> BufferSettings:
    if value is None:
        return default
    if isinstance(value, BufferSettings):
        return value
    if not isinstance(value, Mapping):
        raise SegmentConfigurationError("Buffer settings must be provided as a mapping")
    merged = {**default.to_dict(), **{k: v for k, v in value.items() if v is not None}}
    unknown = set(merged) - set(default.to_dict())
    for key in unknown:
        merged.pop(key)
    return BufferSettings(**merged)


def _parse_session_timings(value: Any, *, default: SessionTimings) -> SessionTimings:
    if value is None:
        return default
    if isinstance(value, SessionTimings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Session timings must be provided as a mapping")
    merged = default.to_dict()
    for key in merged:
        if value.get(key) is not None:
            merged[key] = value[key]
    return SessionTimings(**merged)


def _parse_capture_settings(value: Any, *, default: CaptureSettings) -> CaptureSettings:
    if value is None:
        return default
    if isinstance(value, CaptureSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Capture settings must be provided as a mapping")
    presets_raw = value.get("duration_presets", default.duration_presets)
    if isinstance(presets_raw, (str, bytes)) or not isinstance(presets_raw, Sequence):
        raise ValueError("Capture presets must be a list of seconds")
    return CaptureSettings(
        default_duration_s=value.get("default_duration_s", default.default_duration_s),
        duration_presets=tuple(presets_raw),
        coalesce_window_ms=value.get("coalesce_window_ms", default.coalesce_window_ms),
        pending_grace_s=value.get("pending_grace_s", default.pending_grace_s),
    )


def _parse_transport_settings(value: Any, *, default: TransportSettings) -> TransportSettings:
    if value is None:
        return default
    if isinstance(value, TransportSettings):
        return value
    if isinstance(value, str):
        return TransportSettings(**{**default.to_dict(), "kind": value})
    if not isinstance(value, Mapping):
        raise ValueError("Transport settings must be provided as a mapping")
    merged = default.to_dict()
    for key in merged:
        if key in value:
            merged[key] = value[key]
    return TransportSettings(**merged)


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._buffer,
            self._timings,
            self._capture,
            self._transport,
        ) = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(
        self,
    ) -> tuple[BufferSettings, SessionTimings, CaptureSettings, TransportSettings]:
        if not self._path.exists():
            return (
                DEFAULT_BUFFER_SETTINGS,
                DEFAULT_SESSION_TIMINGS,
                DEFAULT_CAPTURE_SETTINGS,
                DEFAULT_TRANSPORT_SETTINGS,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            buffer = _parse_buffer_settings(
                payload.get("buffer"), default=DEFAULT_BUFFER_SETTINGS
            )
            timings = _parse_session_timings(
                payload.get("session"), default=DEFAULT_SESSION_TIMINGS
            )
            capture = _parse_capture_settings(
                payload.get("capture"), default=DEFAULT_CAPTURE_SETTINGS
            )
            transport = _parse_transport_settings(
                payload.get("transport"), default=DEFAULT_TRANSPORT_SETTINGS
            )
            return buffer, timings, capture, transport
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "buffer": self._buffer.to_dict(),
            "session": self._timings.to_dict(),
            "capture": self._capture.to_dict(),
            "transport": self._transport.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def get_buffer_settings(self) -> BufferSettings:
        with self._lock:
            return self._buffer

    def set_buffer_settings(self, data: Mapping[str, Any] | BufferSettings) -> BufferSettings:
        with self._lock:
            settings = _parse_buffer_settings(data, default=self._buffer)
            self._buffer = settings
            self._save()
        return settings

    def get_session_timings(self) -> SessionTimings:
        with self._lock:
            return self._timings

    def set_session_timings(self, data: Mapping[str, Any] | SessionTimings) -> SessionTimings:
        with self._lock:
            timings = _parse_session_timings(data, default=self._timings)
            self._timings = timings
            self._save()
        return timings

    def get_capture_settings(self) -> CaptureSettings:
        with self._lock:
            return self._capture

    def set_capture_settings(self, data: Mapping[str, Any] | CaptureSettings) -> CaptureSettings:
        with self._lock:
            settings = _parse_capture_settings(data, default=self._capture)
            self._capture = settings
            self._save()
        return settings

    def get_transport_settings(self) -> TransportSettings:
        with self._lock:
            return self._transport

    def set_transport_settings(
        self, data: Mapping[str, Any] | TransportSettings | str
    ) -> TransportSettings:
        with self._lock:
            settings = _parse_transport_settings(data, default=self._transport)
            self._transport = settings
            self._save()
        return settings

    def to_dict(self) -> dict[str, object]:
        with self._lock:
            return {
                "buffer": self._buffer.to_dict(),
                "session": self._timings.to_dict(),
                "capture": self._capture.to_dict(),
                "transport": self._transport.to_dict(),
            }


__all__ = [
    "BufferSettings",
    "CaptureSettings",
    "ConfigManager",
    "DEFAULT_BUFFER_SETTINGS",
    "DEFAULT_CAPTURE_SETTINGS",
    "DEFAULT_SESSION_TIMINGS",
    "DEFAULT_TRANSPORT_SETTINGS",
    "SegmentConfigurationError",
    "SessionTimings",
    "TRANSPORT_KINDS",
    "TransportSettings",
]
