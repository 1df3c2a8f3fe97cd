"""Signaling vocabulary exchanged between the camera and its remotes.

Every logical message is one JSON record::

    {"type": "capture", "timestamp": 1718000000000, "duration": 60}

Stream transports terminate each record with a newline; message-framed
transports carry one record per frame.
"""
from __future__ import annotations

import json
import secrets
import string
import time
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

RECORD_TERMINATOR = b"\n"
SESSION_ID_ALPHABET = string.ascii_uppercase + string.digits
SESSION_ID_LENGTH = 6
MAX_RECORD_BYTES = 64 * 1024


class ProtocolError(RuntimeError):
    """Raised when a message is valid on the wire but not in the current state."""


class MalformedMessageError(ProtocolError):
    """Raised when an inbound record cannot be decoded into a message."""


class Role(str, Enum):
    CAMERA = "camera"
    REMOTE = "remote"

    @property
    def counterpart(self) -> "Role":
        return Role.REMOTE if self is Role.CAMERA else Role.CAMERA


class MessageType(str, Enum):
    REGISTER = "register"
    CAPTURE = "capture"
    PING = "ping"
    PONG = "pong"
    STATUS = "status"


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


@dataclass(frozen=True, slots=True)
class Message:
    """A decoded signaling message."""

    type: MessageType
    role: Role | None = None
    timestamp: int | None = None
    duration: int | None = None
    message: str | None = None

    def __post_init__(self) -> None:
        kind = self.type if isinstance(self.type, MessageType) else _parse_type(self.type)
        object.__setattr__(self, "type", kind)
        if self.role is not None and not isinstance(self.role, Role):
            object.__setattr__(self, "role", _parse_role(self.role))
        if self.timestamp is not None:
            object.__setattr__(self, "timestamp", _parse_int(self.timestamp, "timestamp"))
        if self.duration is not None:
            duration = _parse_int(self.duration, "duration")
            if duration <= 0:
                raise MalformedMessageError("Capture duration must be a positive number of seconds")
            object.__setattr__(self, "duration", duration)
        if self.message is not None and not isinstance(self.message, str):
            raise MalformedMessageError("Status text must be a string")
        if kind is MessageType.REGISTER and self.role is None:
            raise MalformedMessageError("register requires a role")
        if kind is MessageType.CAPTURE and self.timestamp is None:
            raise MalformedMessageError("capture requires a timestamp")

    # ------------------------------ builders ------------------------------
    @classmethod
    def register(cls, role: Role | str, *, message: str | None = None) -> "Message":
        return cls(MessageType.REGISTER, role=Role(role), message=message)

    @classmethod
    def capture(cls, timestamp: int | None = None, duration: int | None = None) -> "Message":
        return cls(
            MessageType.CAPTURE,
            timestamp=wall_clock_ms() if timestamp is None else timestamp,
            duration=duration,
        )

    @classmethod
    def ping(cls, timestamp: int | None = None) -> "Message":
        return cls(MessageType.PING, timestamp=wall_clock_ms() if timestamp is None else timestamp)

    @classmethod
    def pong(cls, timestamp: int | None = None) -> "Message":
        return cls(MessageType.PONG, timestamp=wall_clock_ms() if timestamp is None else timestamp)

    @classmethod
    def status(cls, text: str) -> "Message":
        return cls(MessageType.STATUS, message=str(text))

    # ------------------------------ helpers -------------------------------
    @property
    def is_heartbeat(self) -> bool:
        return self.type in (MessageType.PING, MessageType.PONG)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"type": self.type.value}
        if self.role is not None:
            payload["role"] = self.role.value
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        if self.duration is not None:
            payload["duration"] = self.duration
        if self.message is not None:
            payload["message"] = self.message
        return payload

    def encode(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def encode_record(self) -> bytes:
        """Return the newline-terminated record used on stream sockets."""

        return self.encode().encode("utf-8") + RECORD_TERMINATOR

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "Message":
        if not isinstance(payload, Mapping):
            raise MalformedMessageError("Message record must be a JSON object")
        if "type" not in payload:
            raise MalformedMessageError("Message record is missing its type")
        text = payload.get("message")
        if text is not None and not isinstance(text, str):
            text = str(text)
        return cls(
            _parse_type(payload.get("type")),
            role=payload.get("role"),  # type: ignore[arg-type]
            timestamp=payload.get("timestamp"),  # type: ignore[arg-type]
            duration=payload.get("duration"),  # type: ignore[arg-type]
            message=text,
        )

    @classmethod
    def decode(cls, raw: str | bytes | bytearray) -> "Message":
        if isinstance(raw, (bytes, bytearray)):
            if len(raw) > MAX_RECORD_BYTES:
                raise MalformedMessageError("Message record exceeds the size limit")
            try:
                raw = bytes(raw).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise MalformedMessageError("Message record is not valid UTF-8") from exc
        text = raw.strip()
        if not text:
            raise MalformedMessageError("Empty message record")
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise MalformedMessageError(f"Message record is not valid JSON: {exc}") from exc
        return cls.from_dict(payload)


def _parse_type(value: object) -> MessageType:
    if isinstance(value, MessageType):
        return value
    try:
        return MessageType(str(value).strip().lower())
    except ValueError as exc:
        raise MalformedMessageError(f"Unknown message type: {value!r}") from exc


def _parse_role(value: object) -> Role:
    try:
        return Role(str(value).strip().lower())
    except ValueError as exc:
        raise MalformedMessageError(f"Unknown role: {value!r}") from exc


def _parse_int(value: object, name: str) -> int:
    if isinstance(value, bool):
        raise MalformedMessageError(f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise MalformedMessageError(f"{name} must be an integer")


class CaptureCoalescer:
    """Absorb double taps: one accepted capture per peer per window.

    The first capture from a peer is always accepted. Later ones are ignored
    while they arrive within ``window_ms`` of the last accepted capture.
    """

    def __init__(self, window_ms: int = 1000) -> None:
        if window_ms < 0:
            raise ValueError("window_ms cannot be negative")
        self._window_ms = int(window_ms)
        self._last_accepted: dict[str, int] = {}

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @window_ms.setter
    def window_ms(self, value: int) -> None:
        if value < 0:
            raise ValueError("window_ms cannot be negative")
        self._window_ms = int(value)

    def accept(self, peer: str, arrived_ms: int) -> bool:
        previous = self._last_accepted.get(peer)
        if previous is not None and 0 <= arrived_ms - previous < self._window_ms:
            return False
        self._last_accepted[peer] = arrived_ms
        return True

    def forget(self, peer: str) -> None:
        self._last_accepted.pop(peer, None)

    def reset(self) -> None:
        self._last_accepted.clear()


def generate_session_id(length: int = SESSION_ID_LENGTH) -> str:
    """Return a short code the remote operator can type in."""

    if length <= 0:
        raise ValueError("Session identifier length must be positive")
    return "".join(secrets.choice(SESSION_ID_ALPHABET) for _ in range(length))


def normalise_session_id(value: str, *, length: int = SESSION_ID_LENGTH) -> str:
    """Upper-case and validate a manually entered session identifier."""

    cleaned = "".join(str(value).split()).upper()
    if len(cleaned) != length or any(ch not in SESSION_ID_ALPHABET for ch in cleaned):
        raise ValueError(
            f"Session identifier must be {length} characters of A-Z and 0-9"
        )
    return cleaned


__all__ = [
    "CaptureCoalescer",
    "MalformedMessageError",
    "Message",
    "MessageType",
    "ProtocolError",
    "RECORD_TERMINATOR",
    "Role",
    "SESSION_ID_ALPHABET",
    "generate_session_id",
    "monotonic_ms",
    "normalise_session_id",
    "wall_clock_ms",
]
