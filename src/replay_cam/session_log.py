"""Persistent event log for pairing, capture and buffer activity."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)

CATEGORIES: frozenset[str] = frozenset({"pairing", "capture", "buffer", "system"})


@dataclass(slots=True)
class SessionLogEntry:
    """One event emitted by the camera or remote session."""

    timestamp: float
    category: str
    event: str
    message: str
    peer: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.peer is not None:
            payload["peer"] = self.peer
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "SessionLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        if not isinstance(category, str) or category not in CATEGORIES:
            category = "system"
        try:
            timestamp = float(payload.get("timestamp"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            timestamp = time.time()
        peer = payload.get("peer")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category,
            event=event,
            message=message,
            peer=peer if isinstance(peer, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class SessionLog:
    """Bounded in-memory log mirrored to a JSON-lines file when a path is set."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SessionLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare session log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        peer: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SessionLogEntry:
        """Append an event and return the stored entry."""

        cleaned = category.strip() if isinstance(category, str) else ""
        if cleaned not in CATEGORIES:
            cleaned = "system"
        entry = SessionLogEntry(
            timestamp=time.time(),
            category=cleaned,
            event=event,
            message=message,
            peer=peer,
            metadata={k: v for k, v in (metadata or {}).items() if v is not None} or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        peer: str | None = None,
    ) -> list[SessionLogEntry]:
        """Return the most recent entries, optionally filtered."""

        with self._lock:
            entries: Iterable[SessionLogEntry] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if peer:
            entries = [entry for entry in entries if entry.peer == peer]
        selected = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            selected = selected[-limit_value:]
        return selected

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load session log: %s", exc)
            return
        for line in lines:
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = SessionLogEntry.from_dict(payload)
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: SessionLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist session log: %s", exc)


__all__ = ["CATEGORIES", "SessionLog", "SessionLogEntry"]
