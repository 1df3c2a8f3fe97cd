from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from replay_cam.buffer import RollingSegmentBuffer, SegmentStorage
from replay_cam.capture import CaptureService, format_failed, format_saved
from replay_cam.config import BufferSettings, CaptureSettings
from replay_cam.events import CaptureCompleted, CaptureFailed, CaptureRequested, EventChannel
from replay_cam.extractor import (
    ClipExtractor,
    ExtractionFailedError,
    InvalidCaptureError,
    NoDataError,
)
from replay_cam.highlights import HighlightLedger, HighlightStorage
from replay_cam.session_log import SessionLog


SETTINGS = BufferSettings(segment_duration_s=30, keyframe_interval_s=2, retention_window_s=300)


class FakeSession:
    def __init__(self) -> None:
        self.replies: list[tuple[str, str | None]] = []

    async def send_status(self, text: str, peer: str | None = None) -> int:
        self.replies.append((text, peer))
        return 1


def _write_clip(sources, start_offset_s, duration_s, output):
    Path(output).write_bytes(b"clip")
    return output


def _service(tmp_path: Path, *, segments: int = 11, primitive=_write_clip, **kwargs):
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    for index in range(segments):
        buffer.ingest(index * 30_000, f"segment_{index}.mp4")
    ledger = HighlightLedger(HighlightStorage(tmp_path / "highlights"))
    extractor = ClipExtractor(buffer, ledger, primitive=primitive)
    events = EventChannel()
    session = FakeSession()
    service = CaptureService(
        buffer,
        extractor,
        events=events,
        session=session,
        settings=CaptureSettings(default_duration_s=40),
        session_log=SessionLog(),
        **kwargs,
    )
    return service, buffer, ledger, events, session


def test_local_capture_saves_highlight(tmp_path: Path):
    async def scenario():
        service, _, ledger, events, session = _service(tmp_path, wall_clock=lambda: 320_000)
        completed: list[CaptureCompleted] = []
        events.subscribe(CaptureCompleted, completed.append)
        result = await service.capture_now()
        return result, ledger, completed, session

    result, ledger, completed, session = asyncio.run(scenario())
    assert result.duration_s == 40
    assert not result.partial
    assert ledger.get(result.id) is not None
    assert completed[0].peer == "local"
    assert session.replies == []
    assert format_saved(result) == f"capture_saved:{result.id}:40"


def test_empty_buffer_reports_no_data(tmp_path: Path):
    async def scenario():
        service, _, ledger, events, session = _service(tmp_path, segments=0)
        failures: list[CaptureFailed] = []
        events.subscribe(CaptureFailed, failures.append)
        with pytest.raises(NoDataError):
            await service.handle_request("duplex-abc", 10_000, 30)
        return ledger, failures, session

    ledger, failures, session = asyncio.run(scenario())
    assert len(ledger) == 0
    assert failures[0].code == "no_data"
    text, peer = session.replies[0]
    assert text.startswith("capture_failed:no_data:")
    assert peer == "duplex-abc"


def test_request_waits_for_segment_in_progress(tmp_path: Path):
    async def scenario():
        service, _, _, _, session = _service(tmp_path, segments=10, wait_limit_s=2.0)
        task = asyncio.create_task(service.handle_request("remote-1", 310_000, 30))
        await asyncio.sleep(0.05)
        assert not task.done()
        assert service.pending_count == 1
        service.segment_finished(300_000, "segment_10.mp4")
        result = await asyncio.wait_for(task, timeout=2.0)
        return result, service, session

    result, service, session = asyncio.run(scenario())
    assert not result.partial
    assert result.plan.clip_start_ms == 280_000
    assert service.pending_count == 0
    assert session.replies[0][0].startswith("capture_saved:")


def test_wait_is_bounded_and_clip_marked_partial(tmp_path: Path):
    async def scenario():
        service, _, _, _, session = _service(tmp_path, segments=10, wait_limit_s=0.05)
        result = await service.handle_request("remote-1", 310_000, 30)
        return result, session

    result, session = asyncio.run(scenario())
    assert result.partial
    assert session.replies[0][0].startswith("capture_partial:")


def test_default_wait_limit_uses_segment_length(tmp_path: Path):
    service, *_ = _service(tmp_path)
    assert service.wait_limit_s == 30 + service.settings.pending_grace_s


def test_capture_requested_event_is_handled(tmp_path: Path):
    async def scenario():
        service, _, ledger, events, session = _service(tmp_path)
        service.start()
        service.start()
        events.publish(CaptureRequested("remote-1", 320_000, 40))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while not session.replies and loop.time() < deadline:
            await asyncio.sleep(0.01)
        await service.aclose()
        return ledger, session, events

    ledger, session, events = asyncio.run(scenario())
    assert len(ledger) == 1
    assert session.replies[0][1] == "remote-1"
    assert events.subscriber_count(CaptureRequested) == 0


def test_primitive_failure_is_reported(tmp_path: Path):
    def broken(sources, start_offset_s, duration_s, output):
        raise OSError("disk full")

    async def scenario():
        service, _, ledger, events, session = _service(tmp_path, primitive=broken)
        with pytest.raises(ExtractionFailedError):
            await service.handle_request("remote-1", 320_000, 40)
        return ledger, session

    ledger, session = asyncio.run(scenario())
    assert len(ledger) == 0
    assert session.replies[0][0] == "capture_failed:extraction_failed:disk full"


def test_format_failed_flattens_detail():
    error = ExtractionFailedError("line one\n  line two")
    assert format_failed(error) == "capture_failed:extraction_failed:line one line two"


def test_non_positive_duration_rejected_without_waiting(tmp_path: Path):
    async def scenario():
        service, _, _, _, session = _service(tmp_path, segments=2, wait_limit_s=30)
        with pytest.raises(InvalidCaptureError):
            await asyncio.wait_for(service.handle_request("remote-1", 320_000, 0), timeout=1.0)
        return session

    session = asyncio.run(scenario())
    assert session.replies[0][0].startswith("capture_failed:invalid_request:")


def test_session_relative_segments_use_recording_epoch(tmp_path: Path):
    epoch_ms = 1_700_000_000_000

    async def scenario():
        service, buffer, ledger, _, _ = _service(
            tmp_path, segments=0, wall_clock=lambda: epoch_ms + 320_000, wait_limit_s=0.05
        )
        for index in range(11):
            service.segment_finished(index * 30_000, f"segment_{index}.mp4", epoch_ms=epoch_ms)
        result = await service.capture_now(40)
        return result, buffer, ledger

    result, buffer, ledger = asyncio.run(scenario())
    assert buffer.epoch_ms == epoch_ms
    assert result.plan.trigger_ms == 320_000
    assert result.plan.clip_start_ms == 280_000
    assert not result.partial
    assert ledger.get(result.id) is not None
