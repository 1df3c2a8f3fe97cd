import json
import os
from pathlib import Path

import pytest

from replay_cam.highlights import Highlight, HighlightLedger, HighlightStorage


def _highlight(storage: HighlightStorage, highlight_id: str, created_at: float = 1.0) -> Highlight:
    path = storage.allocate(highlight_id)
    path.write_bytes(b"clip")
    return Highlight(
        id=highlight_id,
        created_at=created_at,
        trigger_ms=320_000,
        requested_duration_s=40,
        duration_s=40.0,
        storage=str(path),
    )


def test_ledger_lists_newest_first(tmp_path: Path):
    storage = HighlightStorage(tmp_path)
    ledger = HighlightLedger(storage)
    ledger.add(_highlight(storage, "highlight_1"))
    ledger.add(_highlight(storage, "highlight_2"))
    assert [item.id for item in ledger.list()] == ["highlight_2", "highlight_1"]
    assert [item.id for item in ledger.list(1)] == ["highlight_2"]


def test_duplicate_id_rejected(tmp_path: Path):
    storage = HighlightStorage(tmp_path)
    ledger = HighlightLedger(storage)
    highlight = _highlight(storage, "highlight_1")
    ledger.add(highlight)
    with pytest.raises(ValueError):
        ledger.add(highlight)


def test_delete_is_idempotent(tmp_path: Path):
    storage = HighlightStorage(tmp_path)
    ledger = HighlightLedger(storage)
    highlight = ledger.add(_highlight(storage, "highlight_1"))
    assert ledger.delete(highlight.id)
    assert not Path(highlight.storage).exists()
    assert not ledger.delete(highlight.id)
    assert not ledger.delete("highlight_unknown")
    assert ledger.get(highlight.id) is None


def test_path_for_rejects_traversal(tmp_path: Path):
    storage = HighlightStorage(tmp_path)
    with pytest.raises(ValueError):
        storage.path_for("../escape")


def test_new_id_avoids_existing_files(tmp_path: Path):
    storage = HighlightStorage(tmp_path)
    (tmp_path / "highlight_5000.mp4").write_bytes(b"clip")
    assert storage.new_id(5000) == "highlight_5000-1"
    assert storage.new_id(5000, taken=["highlight_5000-1"]) == "highlight_5000-2"


def test_persistent_ledger_reloads(tmp_path: Path):
    storage = HighlightStorage(tmp_path, persist=True)
    ledger = HighlightLedger(storage)
    ledger.add(_highlight(storage, "highlight_1000", created_at=1.0))
    ledger.add(_highlight(storage, "highlight_2000", created_at=2.0))
    ledger.delete("highlight_1000")

    index = json.loads((tmp_path / "highlights.json").read_text())
    assert [item["id"] for item in index["highlights"]] == ["highlight_2000"]

    reloaded = HighlightLedger(HighlightStorage(tmp_path, persist=True))
    assert [item.id for item in reloaded.list()] == ["highlight_2000"]
    assert reloaded.get("highlight_2000").requested_duration_s == 40


def test_stray_clip_files_are_adopted(tmp_path: Path):
    stray = tmp_path / "highlight_1718000000000.mp4"
    stray.write_bytes(b"clip")
    os.utime(stray, (10.0, 10.0))
    ledger = HighlightLedger(HighlightStorage(tmp_path, persist=True))
    entry = ledger.get("highlight_1718000000000")
    assert entry is not None
    assert entry.trigger_ms == 1718000000000
    assert entry.created_at == 10.0


def test_index_entries_without_files_are_dropped(tmp_path: Path):
    (tmp_path / "highlights.json").write_text(
        json.dumps({"highlights": [{"id": "gone", "storage": str(tmp_path / "gone.mp4")}]})
    )
    ledger = HighlightLedger(HighlightStorage(tmp_path, persist=True))
    assert len(ledger) == 0


def test_non_persistent_storage_starts_empty(tmp_path: Path):
    (tmp_path / "highlight_1.mp4").write_bytes(b"clip")
    ledger = HighlightLedger(HighlightStorage(tmp_path))
    assert ledger.list() == []


def test_reserved_ids_are_not_handed_out_twice(tmp_path: Path):
    ledger = HighlightLedger(HighlightStorage(tmp_path))
    first = ledger.reserve_id(7000)
    second = ledger.reserve_id(7000)
    assert (first, second) == ("highlight_7000", "highlight_7000-1")
    assert ledger.reserved_count == 2

    ledger.release_id(first)
    assert ledger.reserve_id(7000) == "highlight_7000"

    ledger.add(
        Highlight(
            id=second,
            created_at=7.0,
            trigger_ms=7000,
            requested_duration_s=30,
            duration_s=30.0,
            storage=str(tmp_path / f"{second}.mp4"),
        )
    )
    assert ledger.reserved_count == 1
