"""Keyframe-aligned clip planning and extraction."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from .buffer import BufferSnapshot, RollingSegmentBuffer, Segment
from .highlights import Highlight, HighlightLedger, HighlightStorage
from .remux import RemuxError, remux_segments

logger = logging.getLogger(__name__)

SegmentExtractor = Callable[[Sequence[str], float, float, Path], object]


class ExtractionError(RuntimeError):
    """Base class for capture failures reported back to the operator."""

    code = "extraction_error"

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "detail": str(self)}


class NoDataError(ExtractionError):
    code = "no_data"


class ExtractionFailedError(ExtractionError):
    code = "extraction_failed"


class InvalidCaptureError(ExtractionError):
    code = "invalid_request"


@dataclass(frozen=True, slots=True)
class ClipPlan:
    """Where a clip starts and how long it runs, in buffer terms."""

    segments: tuple[Segment, ...]
    start_offset_s: float
    duration_s: float
    requested_duration_s: int
    trigger_ms: int
    window_start_ms: int
    clip_start_ms: int
    partial: bool

    @property
    def sources(self) -> list[str]:
        return [segment.storage for segment in self.segments]

    @property
    def clip_end_ms(self) -> int:
        return self.clip_start_ms + round(self.duration_s * 1000)

    def to_dict(self) -> dict[str, object]:
        return {
            "segments": [segment.sequence for segment in self.segments],
            "start_offset_s": self.start_offset_s,
            "duration_s": self.duration_s,
            "requested_duration_s": self.requested_duration_s,
            "trigger_ms": self.trigger_ms,
            "clip_start_ms": self.clip_start_ms,
            "clip_end_ms": self.clip_end_ms,
            "partial": self.partial,
        }


def _floor_to(value: int, step: int) -> int:
    return (value // step) * step


def _ceil_to(value: int, step: int) -> int:
    return -((-value) // step) * step


def _contiguous_runs(segments: Sequence[Segment], tolerance_ms: int) -> list[list[Segment]]:
    runs: list[list[Segment]] = []
    for segment in segments:
        if runs and segment.start_ms - runs[-1][-1].end_ms <= tolerance_ms:
            runs[-1].append(segment)
        else:
            runs.append([segment])
    return runs


def plan_clip(snapshot: BufferSnapshot, trigger_ms: int, duration_s: int) -> ClipPlan:
    """Plan the clip for the window ``[trigger - duration, trigger]``.

    The start is floored to the first segment's keyframe grid and the end is
    rounded up to the next keyframe boundary, so the trigger itself is always
    inside the clip. A window inside retained data yields
    ``D <= length < D + keyframe``.
    A window reaching past the retained data is clamped and marked partial.
    """

    try:
        duration = int(duration_s)
    except (TypeError, ValueError) as exc:
        raise InvalidCaptureError(f"Invalid capture duration: {duration_s!r}") from exc
    if duration <= 0:
        raise InvalidCaptureError("Capture duration must be positive")
    if snapshot.is_empty:
        raise NoDataError("The buffer holds no recorded segments")

    window_end = int(trigger_ms)
    window_start = window_end - duration * 1000
    overlapping = [segment for segment in snapshot if segment.overlaps(window_start, window_end)]
    if not overlapping:
        raise NoDataError("No recorded video overlaps the requested window")

    run: list[Segment] = []
    for candidate in _contiguous_runs(snapshot.segments, snapshot.contiguity_tolerance_ms):
        if overlapping[-1] in candidate:
            run = [segment for segment in candidate if segment.overlaps(window_start, window_end)]
            break
    first, last = run[0], run[-1]
    keyframe_ms = first.keyframe_interval_ms

    effective_start = max(window_start, first.start_ms)
    effective_end = min(window_end, last.end_ms)
    partial = window_start < first.start_ms or window_end > last.end_ms

    start_offset_ms = _floor_to(effective_start - first.start_ms, keyframe_ms)
    clip_start = first.start_ms + start_offset_ms
    end_offset_ms = min(_ceil_to(effective_end - last.start_ms, keyframe_ms), last.duration_ms)
    clip_end = last.start_ms + end_offset_ms
    length_ms = min(clip_end - clip_start, duration * 1000 + keyframe_ms - 1)
    if length_ms <= 0:
        raise NoDataError("The requested window contains no complete keyframe interval")

    covering = tuple(segment for segment in run if segment.overlaps(clip_start, clip_start + length_ms))
    return ClipPlan(
        segments=covering,
        start_offset_s=start_offset_ms / 1000,
        duration_s=length_ms / 1000,
        requested_duration_s=duration,
        trigger_ms=window_end,
        window_start_ms=window_start,
        clip_start_ms=clip_start,
        partial=partial,
    )


@dataclass(frozen=True, slots=True)
class ClipResult:
    highlight: Highlight
    plan: ClipPlan

    @property
    def id(self) -> str:
        return self.highlight.id

    @property
    def duration_s(self) -> float:
        return self.highlight.duration_s

    @property
    def partial(self) -> bool:
        return self.highlight.partial

    def to_dict(self) -> dict[str, object]:
        payload = self.highlight.to_dict()
        payload["plan"] = self.plan.to_dict()
        return payload


class ClipExtractor:
    """Turn a trigger into a highlight without touching the buffer's contents."""

    def __init__(
        self,
        buffer: RollingSegmentBuffer,
        ledger: HighlightLedger,
        *,
        primitive: SegmentExtractor | None = None,
        storage: HighlightStorage | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._buffer = buffer
        self._ledger = ledger
        self._primitive = primitive or remux_segments
        self._storage = storage or ledger.storage
        self._clock = clock

    def extract(self, trigger_ms: int, duration_s: int, *, source: str | None = None) -> ClipResult:
        """Plan, materialise and record the clip for ``trigger_ms``.

        The plan is made against a view whose segments are leased in the
        same step, so eviction cannot delete a planned segment before the
        primitive reads it.
        """

        with self._buffer.lease_snapshot() as lease:
            plan = plan_clip(lease.snapshot, trigger_ms, duration_s)
            lease.narrow(plan.segments)
            highlight_id = self._ledger.reserve_id(int(self._clock() * 1000))
            try:
                output = self._storage.allocate(highlight_id)
                self._run_primitive(plan, output)
                highlight = Highlight(
                    id=highlight_id,
                    created_at=self._clock(),
                    trigger_ms=plan.trigger_ms,
                    requested_duration_s=plan.requested_duration_s,
                    duration_s=plan.duration_s,
                    storage=str(output),
                    partial=plan.partial,
                    source=source,
                )
                try:
                    self._ledger.add(highlight)
                except ValueError as exc:
                    self._storage.discard(output)
                    raise ExtractionFailedError(str(exc)) from exc
            finally:
                self._ledger.release_id(highlight_id)
        return ClipResult(highlight=highlight, plan=plan)

    def _run_primitive(self, plan: ClipPlan, output: Path) -> None:
        try:
            self._primitive(plan.sources, plan.start_offset_s, plan.duration_s, output)
        except (RemuxError, OSError, ValueError, RuntimeError) as exc:
            self._storage.discard(output)
            logger.warning("Extraction for trigger %s failed: %s", plan.trigger_ms, exc)
            raise ExtractionFailedError(str(exc) or exc.__class__.__name__) from exc
        if not output.exists():
            self._storage.discard(output)
            raise ExtractionFailedError("Extraction produced no output file")


__all__ = [
    "ClipExtractor",
    "ClipPlan",
    "ClipResult",
    "ExtractionError",
    "ExtractionFailedError",
    "InvalidCaptureError",
    "NoDataError",
    "plan_clip",
]
