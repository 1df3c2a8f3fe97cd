import threading
from pathlib import Path

import pytest

from replay_cam.buffer import (
    RollingSegmentBuffer,
    SegmentEvictedError,
    SegmentOrderError,
    SegmentStorage,
)
from replay_cam.config import BufferSettings, SegmentConfigurationError


SETTINGS = BufferSettings(segment_duration_s=30, keyframe_interval_s=2, retention_window_s=300)


def _fill(buffer: RollingSegmentBuffer, count: int, directory: Path | None = None) -> None:
    for index in range(count):
        start_ms = index * 30_000
        if directory is not None:
            path = directory / f"segment_{index}.mp4"
            path.write_bytes(b"segment")
        else:
            path = f"segment_{index}.mp4"
        buffer.ingest(start_ms, path)


def test_retains_most_recent_window():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    _fill(buffer, 11)
    snapshot = buffer.snapshot()
    assert len(snapshot) == 10
    assert snapshot.oldest_start_ms == 30_000
    assert snapshot.newest_end_ms == 330_000
    assert all(segment.start_ms != 0 for segment in snapshot)


def test_span_never_exceeds_window():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    window_ms = SETTINGS.retention_window_s * 1000
    for index in range(40):
        buffer.ingest(index * 30_000, f"segment_{index}.mp4")
        assert buffer.snapshot().span_ms <= window_ms


def test_span_bound_with_gaps_and_short_segments():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    window_ms = SETTINGS.retention_window_s * 1000
    ingested = []
    cursor = 0
    for index in range(60):
        duration = 10 if index % 7 == 6 else 30
        start = cursor + (12_000 if index % 5 == 4 else 0)
        ingested.append(buffer.ingest(start, f"segment_{index}.mp4", duration_s=duration))
        cursor = start + duration * 1000

        snapshot = buffer.snapshot()
        assert snapshot.span_ms <= window_ms
        cutoff = snapshot.newest_end_ms - window_ms
        assert list(snapshot.segments) == [s for s in ingested if s.start_ms >= cutoff]


def test_evicted_files_are_deleted(tmp_path: Path):
    buffer = RollingSegmentBuffer(SETTINGS)
    _fill(buffer, 11, tmp_path)
    assert not (tmp_path / "segment_0.mp4").exists()
    assert (tmp_path / "segment_1.mp4").exists()


def test_leased_segment_release_is_deferred(tmp_path: Path):
    buffer = RollingSegmentBuffer(SETTINGS)
    _fill(buffer, 10, tmp_path)
    oldest = buffer.snapshot().segments[0]
    lease = buffer.lease([oldest])
    _fill_from = 10
    path = tmp_path / f"segment_{_fill_from}.mp4"
    path.write_bytes(b"segment")
    buffer.ingest(_fill_from * 30_000, path)

    assert oldest not in buffer.snapshot().segments
    assert (tmp_path / "segment_0.mp4").exists()
    assert buffer.pending_release_count == 1

    lease.release()
    lease.release()
    assert not (tmp_path / "segment_0.mp4").exists()
    assert buffer.pending_release_count == 0
    assert buffer.leased_count == 0


def test_lease_as_context_manager(tmp_path: Path):
    buffer = RollingSegmentBuffer(SETTINGS)
    _fill(buffer, 2, tmp_path)
    with buffer.lease(buffer.snapshot().segments) as lease:
        assert buffer.leased_count == 2
        assert len(lease.segments) == 2
    assert lease.released
    assert buffer.leased_count == 0


def test_snapshot_is_stable_across_ingest():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    _fill(buffer, 3)
    snapshot = buffer.snapshot()
    buffer.ingest(90_000, "segment_3.mp4")
    assert len(snapshot) == 3
    assert len(buffer.snapshot()) == 4


def test_out_of_order_segment_rejected():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    buffer.ingest(60_000, "a.mp4")
    with pytest.raises(SegmentOrderError):
        buffer.ingest(30_000, "b.mp4")
    with pytest.raises(SegmentOrderError):
        buffer.ingest(80_000, "c.mp4")
    assert len(buffer.snapshot()) == 1


def test_gap_between_segments_is_accepted():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    buffer.ingest(0, "a.mp4")
    segment = buffer.ingest(45_000, "b.mp4")
    assert segment.sequence == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"keyframe_interval_s": 3},
        {"frame_rate": 25},
        {"duration_s": 31},
    ],
)
def test_mismatched_encoding_rejected(overrides):
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    with pytest.raises(SegmentConfigurationError):
        buffer.ingest(0, "a.mp4", **overrides)


def test_shorter_final_segment_accepted():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    segment = buffer.ingest(0, "a.mp4", duration_s=10)
    assert segment.end_ms == 10_000


def test_evict_older_than_and_clear(tmp_path: Path):
    buffer = RollingSegmentBuffer(SETTINGS)
    _fill(buffer, 4, tmp_path)
    evicted = buffer.evict_older_than(60_000)
    assert [segment.sequence for segment in evicted] == [0, 1]
    assert buffer.snapshot().oldest_start_ms == 60_000
    buffer.clear()
    assert buffer.snapshot().is_empty
    assert not any(tmp_path.glob("*.mp4"))


def test_to_dict_reports_span():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    _fill(buffer, 2)
    payload = buffer.to_dict()
    assert payload["segment_count"] == 2
    assert payload["span_s"] == 60
    assert payload["leased"] == 0


def test_lease_refuses_released_segment(tmp_path: Path):
    buffer = RollingSegmentBuffer(SETTINGS)
    _fill(buffer, 10, tmp_path)
    oldest = buffer.snapshot().segments[0]
    path = tmp_path / "segment_10.mp4"
    path.write_bytes(b"segment")
    buffer.ingest(300_000, path)

    with pytest.raises(SegmentEvictedError):
        buffer.lease([oldest])
    assert buffer.leased_count == 0


def test_lease_snapshot_holds_its_view(tmp_path: Path):
    buffer = RollingSegmentBuffer(SETTINGS)
    _fill(buffer, 10, tmp_path)
    with buffer.lease_snapshot() as lease:
        assert lease.snapshot.segments == lease.segments
        assert buffer.leased_count == 10
        lease.narrow(lease.snapshot.segments[:1])
        assert buffer.leased_count == 1

        path = tmp_path / "segment_10.mp4"
        path.write_bytes(b"segment")
        buffer.ingest(300_000, path)
        assert (tmp_path / "segment_0.mp4").exists()
        assert buffer.pending_release_count == 1
    assert not (tmp_path / "segment_0.mp4").exists()
    assert buffer.leased_count == 0


def test_concurrent_ingest_never_deletes_leased_files(tmp_path: Path):
    buffer = RollingSegmentBuffer(SETTINGS)
    _fill(buffer, 10, tmp_path)
    done = threading.Event()
    missing: list[str] = []

    def reader() -> None:
        while not done.is_set():
            with buffer.lease_snapshot() as lease:
                for segment in lease.segments:
                    if not Path(segment.storage).exists():
                        missing.append(segment.storage)

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for index in range(10, 200):
            path = tmp_path / f"segment_{index}.mp4"
            path.write_bytes(b"segment")
            buffer.ingest(index * 30_000, path)
    finally:
        done.set()
        thread.join(timeout=5)

    assert missing == []
    assert buffer.leased_count == 0
    assert buffer.pending_release_count == 0
    assert len(list(tmp_path.glob("*.mp4"))) == 10


def test_epoch_is_fixed_while_segments_are_buffered():
    buffer = RollingSegmentBuffer(SETTINGS, SegmentStorage(delete_files=False))
    buffer.ingest(0, "a.mp4", epoch_ms=1_700_000_000_000)
    assert buffer.epoch_ms == 1_700_000_000_000
    assert buffer.to_buffer_time(1_700_000_045_000) == 45_000
    buffer.ingest(30_000, "b.mp4")
    with pytest.raises(SegmentConfigurationError):
        buffer.ingest(60_000, "c.mp4", epoch_ms=5)
    buffer.clear()
    buffer.ingest(0, "d.mp4", epoch_ms=5)
    assert buffer.to_buffer_time(5) == 0
