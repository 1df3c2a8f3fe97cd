"""Highlight ledger and the storage that backs its clip files."""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

CLIP_SUFFIX = ".mp4"
INDEX_NAME = "highlights.json"


@dataclass(frozen=True, slots=True)
class Highlight:
    """A materialised clip. Never updated in place."""

    id: str
    created_at: float
    trigger_ms: int
    requested_duration_s: int
    duration_s: float
    storage: str
    partial: bool = False
    source: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "trigger_ms": self.trigger_ms,
            "requested_duration_s": self.requested_duration_s,
            "duration_s": self.duration_s,
            "storage": self.storage,
            "partial": self.partial,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, payload: object) -> "Highlight | None":
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                id=str(payload["id"]),
                created_at=float(payload.get("created_at", 0.0)),
                trigger_ms=int(payload.get("trigger_ms", 0)),
                requested_duration_s=int(payload.get("requested_duration_s", 0)),
                duration_s=float(payload.get("duration_s", 0.0)),
                storage=str(payload["storage"]),
                partial=bool(payload.get("partial", False)),
                source=payload.get("source") if isinstance(payload.get("source"), str) else None,
            )
        except (KeyError, TypeError, ValueError):
            return None


class HighlightStorage:
    """Create and delete clip files inside ``directory``.

    With ``persist`` enabled a JSON index mirrors the ledger, and clip files
    found on start are reloaded even when the index does not list them.
    """

    def __init__(self, directory: Path | str, *, persist: bool = False) -> None:
        self._directory = Path(directory)
        self._persist = persist
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def persist(self) -> bool:
        return self._persist

    def new_id(self, timestamp_ms: int, *, taken: Iterable[str] = ()) -> str:
        base = f"highlight_{int(timestamp_ms)}"
        reserved = set(taken)
        candidate = base
        suffix = 1
        while candidate in reserved or self.path_for(candidate).exists():
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def path_for(self, highlight_id: str) -> Path:
        name = Path(highlight_id).name
        if name != highlight_id or not name:
            raise ValueError(f"Invalid highlight id: {highlight_id!r}")
        return self._directory / f"{name}{CLIP_SUFFIX}"

    def allocate(self, highlight_id: str) -> Path:
        path = self.path_for(highlight_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def discard(self, path: Path | str) -> None:
        """Remove a file if present; missing files are not an error."""

        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to remove %s: %s", path, exc)

    def delete(self, highlight: Highlight) -> None:
        self.discard(highlight.storage)

    def save_index(self, highlights: Iterable[Highlight]) -> None:
        if not self._persist:
            return
        payload = {"highlights": [item.to_dict() for item in highlights]}
        target = self._directory / INDEX_NAME
        tmp_path = target.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, target)
        except OSError as exc:
            logger.warning("Unable to write highlight index: %s", exc)

    def load(self) -> list[Highlight]:
        """Return stored highlights newest first (empty unless persisting)."""

        if not self._persist:
            return []
        loaded: dict[str, Highlight] = {}
        index_path = self._directory / INDEX_NAME
        if index_path.exists():
            try:
                payload = json.loads(index_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable highlight index: %s", exc)
                payload = {}
            entries = payload.get("highlights", []) if isinstance(payload, dict) else []
            for entry in entries:
                highlight = Highlight.from_dict(entry)
                if highlight is not None and Path(highlight.storage).exists():
                    loaded[highlight.id] = highlight
        for path in self._directory.glob(f"*{CLIP_SUFFIX}"):
            highlight_id = path.stem
            if highlight_id in loaded:
                continue
            try:
                created_at = path.stat().st_mtime
            except OSError:
                continue
            trigger_ms = _timestamp_from_id(highlight_id) or int(created_at * 1000)
            loaded[highlight_id] = Highlight(
                id=highlight_id,
                created_at=created_at,
                trigger_ms=trigger_ms,
                requested_duration_s=0,
                duration_s=0.0,
                storage=str(path),
            )
        return sorted(loaded.values(), key=lambda item: item.created_at, reverse=True)


def _timestamp_from_id(highlight_id: str) -> int | None:
    _, _, tail = highlight_id.partition("highlight_")
    digits = tail.split("-", 1)[0]
    return int(digits) if digits.isdigit() else None


class HighlightLedger:
    """In-memory highlights, newest first.

    Ids handed out by :meth:`reserve_id` stay reserved until the highlight
    is added or the reservation is released, so concurrent captures never
    share a clip file.
    """

    def __init__(self, storage: HighlightStorage) -> None:
        self._storage = storage
        self._lock = threading.Lock()
        self._entries: list[Highlight] = storage.load()
        self._reserved: set[str] = set()

    @property
    def storage(self) -> HighlightStorage:
        return self._storage

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def reserve_id(self, timestamp_ms: int | None = None) -> str:
        stamp = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
        with self._lock:
            taken = {entry.id for entry in self._entries} | self._reserved
            highlight_id = self._storage.new_id(stamp, taken=taken)
            self._reserved.add(highlight_id)
        return highlight_id

    def release_id(self, highlight_id: str) -> None:
        with self._lock:
            self._reserved.discard(highlight_id)

    @property
    def reserved_count(self) -> int:
        with self._lock:
            return len(self._reserved)

    def add(self, highlight: Highlight) -> Highlight:
        with self._lock:
            if any(entry.id == highlight.id for entry in self._entries):
                raise ValueError(f"Highlight {highlight.id} already exists")
            self._reserved.discard(highlight.id)
            self._entries.insert(0, highlight)
            snapshot = list(self._entries)
        self._storage.save_index(snapshot)
        logger.info("Saved highlight %s (%.1fs)", highlight.id, highlight.duration_s)
        return highlight

    def get(self, highlight_id: str) -> Highlight | None:
        with self._lock:
            for entry in self._entries:
                if entry.id == highlight_id:
                    return entry
        return None

    def list(self, limit: int | None = None) -> list[Highlight]:
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[: max(0, int(limit))]
        return entries

    def delete(self, highlight_id: str) -> bool:
        """Remove the entry and its file; deleting an unknown id is a no-op."""

        with self._lock:
            target = None
            for index, entry in enumerate(self._entries):
                if entry.id == highlight_id:
                    target = self._entries.pop(index)
                    break
            snapshot = list(self._entries)
        if target is None:
            return False
        self._storage.delete(target)
        self._storage.save_index(snapshot)
        logger.info("Deleted highlight %s", highlight_id)
        return True


__all__ = ["Highlight", "HighlightLedger", "HighlightStorage"]
