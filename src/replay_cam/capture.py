"""Camera-side handling of capture signals."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable

from .buffer import RollingSegmentBuffer, Segment
from .config import DEFAULT_CAPTURE_SETTINGS, CaptureSettings
from .events import CaptureCompleted, CaptureFailed, CaptureRequested, EventChannel
from .extractor import (
    ClipExtractor,
    ClipResult,
    ExtractionError,
    ExtractionFailedError,
    InvalidCaptureError,
)
from .protocol import wall_clock_ms
from .session import Session
from .session_log import SessionLog

logger = logging.getLogger(__name__)

LOCAL_SOURCE = "local"


def format_saved(result: ClipResult) -> str:
    state = "capture_partial" if result.partial else "capture_saved"
    return f"{state}:{result.id}:{result.duration_s:g}"


def format_failed(error: ExtractionError) -> str:
    detail = " ".join(str(error).split()) or error.__class__.__name__
    return f"capture_failed:{error.code}:{detail}"


class CaptureService:
    """Turn capture requests into highlights and report the outcome.

    Requests whose trigger lies beyond the newest finished segment wait for
    the capture pipeline to finish the segment covering it, bounded by one
    segment length plus a grace period, then extract whatever is available.
    """

    def __init__(
        self,
        buffer: RollingSegmentBuffer,
        extractor: ClipExtractor,
        *,
        events: EventChannel,
        session: Session | None = None,
        settings: CaptureSettings = DEFAULT_CAPTURE_SETTINGS,
        session_log: SessionLog | None = None,
        wall_clock: Callable[[], int] = wall_clock_ms,
        wait_limit_s: float | None = None,
    ) -> None:
        self._buffer = buffer
        self._extractor = extractor
        self._events = events
        self._session = session
        self._settings = settings
        self._log = session_log
        self._wall_clock = wall_clock
        self._wait_limit_s = wait_limit_s
        self._segment_event = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()
        self._pending = 0
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def settings(self) -> CaptureSettings:
        return self._settings

    @settings.setter
    def settings(self, value: CaptureSettings) -> None:
        self._settings = value

    @property
    def pending_count(self) -> int:
        return self._pending

    @property
    def wait_limit_s(self) -> float:
        if self._wait_limit_s is not None:
            return self._wait_limit_s
        return self._buffer.settings.segment_duration_s + self._settings.pending_grace_s

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._events.subscribe(CaptureRequested, self._on_capture_requested)

    async def aclose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------ ingestion ------------------------------
    def segment_finished(
        self,
        start_ms: int,
        path: str | Path,
        *,
        duration_s: int | None = None,
        keyframe_interval_s: int | None = None,
        frame_rate: int | None = None,
        epoch_ms: int | None = None,
    ) -> Segment:
        """Hand a finished segment to the buffer and wake waiting captures."""

        segment = self._buffer.ingest(
            start_ms,
            path,
            duration_s=duration_s,
            keyframe_interval_s=keyframe_interval_s,
            frame_rate=frame_rate,
            epoch_ms=epoch_ms,
        )
        logger.debug("Buffered segment %s (%s-%s)", segment.sequence, segment.start_ms, segment.end_ms)
        event, self._segment_event = self._segment_event, asyncio.Event()
        event.set()
        return segment

    # ------------------------------- capture -------------------------------
    async def capture_now(self, duration_s: int | None = None) -> ClipResult:
        """Capture triggered on the camera itself."""

        return await self.handle_request(LOCAL_SOURCE, self._wall_clock(), duration_s)

    async def handle_request(
        self, peer: str, trigger_ms: int, duration_s: int | None = None
    ) -> ClipResult:
        """Extract the clip for a capture that arrived at ``trigger_ms``.

        ``trigger_ms`` is camera wall-clock time; it is mapped onto the
        recording clock of the buffered segments before planning.
        """

        trigger_ms = self._buffer.to_buffer_time(trigger_ms)
        duration = self._settings.default_duration_s if duration_s is None else duration_s
        self._pending += 1
        try:
            if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
                raise InvalidCaptureError(f"Invalid capture duration: {duration!r}")
            await self._await_coverage(trigger_ms)
            result = await asyncio.to_thread(
                self._extractor.extract, trigger_ms, duration, source=peer
            )
        except ExtractionError as exc:
            await self._report_failure(peer, exc)
            raise
        finally:
            self._pending -= 1
        self._events.publish(CaptureCompleted(peer, result))
        self._record(
            "capture_saved",
            f"Saved {result.id} ({result.duration_s:g}s{', partial' if result.partial else ''})",
            peer,
            {"id": result.id, "duration": result.duration_s, "partial": result.partial},
        )
        await self._reply(peer, format_saved(result))
        return result

    async def _await_coverage(self, trigger_ms: int) -> None:
        snapshot = self._buffer.snapshot()
        newest_end = snapshot.newest_end_ms
        if newest_end is None or newest_end >= trigger_ms:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_limit_s
        logger.info("Capture at %s waits for the segment in progress", trigger_ms)
        while True:
            newest_end = self._buffer.snapshot().newest_end_ms
            if newest_end is not None and newest_end >= trigger_ms:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info("Segment covering %s did not arrive; extracting what is buffered", trigger_ms)
                return
            try:
                await asyncio.wait_for(self._segment_event.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                continue

    async def _report_failure(self, peer: str, error: ExtractionError) -> None:
        self._events.publish(CaptureFailed(peer, error.code, str(error)))
        self._record(
            "capture_failed",
            f"Capture failed ({error.code}): {error}",
            peer,
            {"code": error.code},
        )
        await self._reply(peer, format_failed(error))

    async def _reply(self, peer: str, text: str) -> None:
        if self._session is None or peer == LOCAL_SOURCE:
            return
        sent = await self._session.send_status(text, peer=peer)
        if not sent:
            logger.info("Could not report capture outcome to %s", peer)

    def _record(self, event: str, message: str, peer: str, metadata: dict[str, object | None]) -> None:
        if self._log is not None:
            self._log.record("capture", event, message, peer=peer, metadata=metadata)

    # ------------------------------ event hook -----------------------------
    def _on_capture_requested(self, event: CaptureRequested) -> None:
        task = asyncio.create_task(self._run_request(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_request(self, event: CaptureRequested) -> None:
        try:
            await self.handle_request(event.peer, event.trigger_ms, event.duration_s)
        except ExtractionError:
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Capture request from %s failed unexpectedly", event.peer)
            await self._report_failure(event.peer, ExtractionFailedError(str(exc)))


__all__ = ["CaptureService", "LOCAL_SOURCE", "format_failed", "format_saved"]
