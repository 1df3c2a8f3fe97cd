"""GOP-aligned rolling buffer of finished recording segments."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from .config import BufferSettings, SegmentConfigurationError

logger = logging.getLogger(__name__)


class SegmentOrderError(RuntimeError):
    """Raised when a segment would break sequence or time ordering.

    This signals a capture pipeline bug rather than an I/O condition.
    """


@dataclass(frozen=True, slots=True)
class Segment:
    """One finished unit of continuously encoded video."""

    sequence: int
    start_ms: int
    duration_s: int
    storage: str
    keyframe_interval_s: int
    frame_rate: int

    @property
    def duration_ms(self) -> int:
        return self.duration_s * 1000

    @property
    def end_ms(self) -> int:
        return self.start_ms + self.duration_ms

    @property
    def keyframe_interval_ms(self) -> int:
        return self.keyframe_interval_s * 1000

    def overlaps(self, start_ms: int, end_ms: int) -> bool:
        return self.start_ms < end_ms and self.end_ms > start_ms

    def to_dict(self) -> dict[str, object]:
        return {
            "sequence": self.sequence,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "duration_s": self.duration_s,
            "storage": self.storage,
            "keyframe_interval_s": self.keyframe_interval_s,
            "frame_rate": self.frame_rate,
        }


@dataclass(frozen=True, slots=True)
class BufferSnapshot:
    """Immutable ordered view of the retained segments."""

    segments: tuple[Segment, ...]
    retention_window_s: int
    keyframe_interval_s: int
    contiguity_tolerance_ms: int

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self) -> Iterator[Segment]:
        return iter(self.segments)

    @property
    def is_empty(self) -> bool:
        return not self.segments

    @property
    def oldest_start_ms(self) -> int | None:
        return self.segments[0].start_ms if self.segments else None

    @property
    def newest_end_ms(self) -> int | None:
        return self.segments[-1].end_ms if self.segments else None

    @property
    def span_ms(self) -> int:
        if not self.segments:
            return 0
        return self.segments[-1].end_ms - self.segments[0].start_ms

    def to_dict(self) -> dict[str, object]:
        return {
            "segment_count": len(self.segments),
            "oldest_start_ms": self.oldest_start_ms,
            "newest_end_ms": self.newest_end_ms,
            "span_s": self.span_ms / 1000,
            "retention_window_s": self.retention_window_s,
            "segments": [segment.to_dict() for segment in self.segments],
        }


class SegmentStorage:
    """Release segment files once the buffer no longer needs them."""

    def __init__(self, *, delete_files: bool = True) -> None:
        self._delete_files = delete_files

    def release(self, segment: Segment) -> None:
        if not self._delete_files:
            return
        try:
            Path(segment.storage).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Unable to delete segment %s: %s", segment.storage, exc)


class SegmentEvictedError(RuntimeError):
    """Raised when a lease is requested for a segment already released."""


class SegmentLease:
    """Scoped hold on segments that keeps their storage alive."""

    def __init__(
        self,
        buffer: "RollingSegmentBuffer",
        segments: tuple[Segment, ...],
        snapshot: BufferSnapshot | None = None,
    ) -> None:
        self._buffer = buffer
        self._segments = segments
        self._snapshot = snapshot
        self._released = False

    @property
    def segments(self) -> tuple[Segment, ...]:
        return self._segments

    @property
    def snapshot(self) -> BufferSnapshot | None:
        """The view the lease was taken from, when taken by ``lease_snapshot``."""

        return self._snapshot

    @property
    def released(self) -> bool:
        return self._released

    def narrow(self, keep: Iterable[Segment]) -> None:
        """Drop the hold on every leased segment not in ``keep``."""

        if self._released:
            return
        wanted = {segment.sequence for segment in keep}
        dropped = tuple(segment for segment in self._segments if segment.sequence not in wanted)
        if not dropped:
            return
        self._segments = tuple(segment for segment in self._segments if segment.sequence in wanted)
        self._buffer._release_lease(dropped)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._buffer._release_lease(self._segments)

    def __enter__(self) -> "SegmentLease":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class RollingSegmentBuffer:
    """Append-only segment list with retention-window eviction.

    Mutations (ingest, eviction, leasing) are serialised by a lock. Readers
    call :meth:`snapshot`, which returns the current immutable tuple without
    taking the lock. Extraction uses :meth:`lease_snapshot` instead, so the
    view and the hold on its segments are taken in one locked step. Evicted
    segments leave the visible list immediately; storage of a leased
    segment is released when its last lease ends.

    Segment start times are milliseconds on the recording clock. When the
    capture pipeline counts from its own session epoch it passes that
    epoch (camera wall-clock milliseconds at recording time zero) to
    :meth:`ingest`; :meth:`to_buffer_time` converts camera arrival times
    onto the same clock.
    """

    def __init__(self, settings: BufferSettings, storage: SegmentStorage | None = None) -> None:
        self._settings = settings
        self._storage = storage or SegmentStorage()
        self._lock = threading.Lock()
        self._segments: tuple[Segment, ...] = ()
        self._next_sequence = 0
        self._leases: dict[int, int] = {}
        self._pending_release: dict[int, Segment] = {}
        self._epoch_ms = 0

    @property
    def settings(self) -> BufferSettings:
        return self._settings

    @property
    def epoch_ms(self) -> int:
        return self._epoch_ms

    def to_buffer_time(self, wall_clock_ms: int) -> int:
        """Map a camera wall-clock time onto the recording clock."""

        return int(wall_clock_ms) - self._epoch_ms

    @property
    def leased_count(self) -> int:
        with self._lock:
            return len(self._leases)

    @property
    def pending_release_count(self) -> int:
        with self._lock:
            return len(self._pending_release)

    def ingest(
        self,
        start_ms: int,
        storage: str | Path,
        *,
        duration_s: int | None = None,
        keyframe_interval_s: int | None = None,
        frame_rate: int | None = None,
        epoch_ms: int | None = None,
    ) -> Segment:
        """Append a finished segment and evict what falls out of the window."""

        settings = self._settings
        duration = settings.segment_duration_s if duration_s is None else int(duration_s)
        keyframe = settings.keyframe_interval_s if keyframe_interval_s is None else int(keyframe_interval_s)
        rate = settings.frame_rate if frame_rate is None else int(frame_rate)
        if keyframe != settings.keyframe_interval_s or rate != settings.frame_rate:
            raise SegmentConfigurationError(
                "Segment encoding (keyframe interval "
                f"{keyframe}s at {rate} fps) does not match the recording configuration"
            )
        if duration <= 0 or duration % keyframe != 0:
            raise SegmentConfigurationError(
                f"Segment duration {duration}s is not a positive multiple of the {keyframe}s keyframe interval"
            )
        start = int(start_ms)
        with self._lock:
            if epoch_ms is not None and int(epoch_ms) != self._epoch_ms:
                if self._segments:
                    raise SegmentConfigurationError(
                        f"Recording epoch {epoch_ms} differs from the buffered epoch {self._epoch_ms}"
                    )
                self._epoch_ms = int(epoch_ms)
            if self._segments:
                last = self._segments[-1]
                if start < last.end_ms:
                    logger.error(
                        "Segment ordering violated: start %s after segment %s (%s-%s)",
                        start,
                        last.sequence,
                        last.start_ms,
                        last.end_ms,
                    )
                    raise SegmentOrderError(
                        f"Segment starting at {start} overlaps or precedes segment {last.sequence}"
                    )
            segment = Segment(
                sequence=self._next_sequence,
                start_ms=start,
                duration_s=duration,
                storage=str(storage),
                keyframe_interval_s=keyframe,
                frame_rate=rate,
            )
            self._next_sequence += 1
            self._segments = self._segments + (segment,)
            cutoff = segment.end_ms - settings.retention_window_s * 1000
            _, released = self._evict_locked(cutoff)
        self._release_storage(released)
        return segment

    def evict_older_than(self, cutoff_ms: int) -> list[Segment]:
        """Drop every segment that starts before ``cutoff_ms``."""

        with self._lock:
            evicted, released = self._evict_locked(cutoff_ms)
        self._release_storage(released)
        return evicted

    def _evict_locked(self, cutoff_ms: int) -> tuple[list[Segment], list[Segment]]:
        segments = self._segments
        index = 0
        while index < len(segments) and segments[index].start_ms < cutoff_ms:
            index += 1
        if index == 0:
            return [], []
        evicted = list(segments[:index])
        self._segments = segments[index:]
        return evicted, self._detach_locked(evicted)

    def _detach_locked(self, evicted: Iterable[Segment]) -> list[Segment]:
        released: list[Segment] = []
        for segment in evicted:
            if self._leases.get(segment.sequence):
                self._pending_release[segment.sequence] = segment
                logger.debug("Deferring release of leased segment %s", segment.sequence)
            else:
                released.append(segment)
        return released

    def _release_storage(self, segments: Iterable[Segment]) -> None:
        for segment in segments:
            self._storage.release(segment)

    def snapshot(self) -> BufferSnapshot:
        return self._snapshot_locked()

    def _snapshot_locked(self) -> BufferSnapshot:
        settings = self._settings
        return BufferSnapshot(
            segments=self._segments,
            retention_window_s=settings.retention_window_s,
            keyframe_interval_s=settings.keyframe_interval_s,
            contiguity_tolerance_ms=settings.contiguity_tolerance_ms,
        )

    def lease(self, segments: Iterable[Segment]) -> SegmentLease:
        """Hold ``segments`` until the returned lease is released.

        Every segment must still be retained, or evicted but held by another
        lease; otherwise its storage may already be gone and
        :class:`SegmentEvictedError` is raised.
        """

        chosen = tuple(segments)
        with self._lock:
            retained = {segment.sequence for segment in self._segments}
            for segment in chosen:
                if segment.sequence not in retained and segment.sequence not in self._pending_release:
                    raise SegmentEvictedError(f"Segment {segment.sequence} is no longer buffered")
            self._acquire_locked(chosen)
        return SegmentLease(self, chosen)

    def lease_snapshot(self) -> SegmentLease:
        """Snapshot the buffer and lease every segment in it atomically.

        Callers plan against ``lease.snapshot`` and then :meth:`SegmentLease.narrow`
        the lease to the segments they actually read.
        """

        with self._lock:
            view = self._snapshot_locked()
            self._acquire_locked(view.segments)
        return SegmentLease(self, view.segments, view)

    def _acquire_locked(self, segments: Iterable[Segment]) -> None:
        for segment in segments:
            self._leases[segment.sequence] = self._leases.get(segment.sequence, 0) + 1

    def _release_lease(self, segments: tuple[Segment, ...]) -> None:
        released: list[Segment] = []
        with self._lock:
            for segment in segments:
                remaining = self._leases.get(segment.sequence, 0) - 1
                if remaining > 0:
                    self._leases[segment.sequence] = remaining
                    continue
                self._leases.pop(segment.sequence, None)
                pending = self._pending_release.pop(segment.sequence, None)
                if pending is not None:
                    released.append(pending)
        self._release_storage(released)

    def clear(self) -> None:
        with self._lock:
            evicted = self._segments
            self._segments = ()
            released = self._detach_locked(evicted)
        self._release_storage(released)

    def to_dict(self) -> dict[str, object]:
        payload = self.snapshot().to_dict()
        payload["leased"] = self.leased_count
        payload["pending_release"] = self.pending_release_count
        payload["epoch_ms"] = self._epoch_ms
        return payload


__all__ = [
    "BufferSnapshot",
    "RollingSegmentBuffer",
    "Segment",
    "SegmentEvictedError",
    "SegmentLease",
    "SegmentOrderError",
    "SegmentStorage",
]
