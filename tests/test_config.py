from pathlib import Path

import pytest

from replay_cam.config import (
    BufferSettings,
    CaptureSettings,
    ConfigManager,
    SegmentConfigurationError,
    SessionTimings,
    TransportSettings,
    DEFAULT_BUFFER_SETTINGS,
    DEFAULT_CAPTURE_SETTINGS,
    DEFAULT_TRANSPORT_SETTINGS,
)


def test_default_settings(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    assert manager.get_buffer_settings() == DEFAULT_BUFFER_SETTINGS
    assert manager.get_capture_settings() == DEFAULT_CAPTURE_SETTINGS
    assert manager.get_transport_settings() == DEFAULT_TRANSPORT_SETTINGS


def test_buffer_settings_persist(tmp_path: Path):
    config_file = tmp_path / "config.json"
    manager = ConfigManager(config_file)
    updated = manager.set_buffer_settings({"segment_duration_s": 20, "retention_window_s": 120})
    assert updated.segment_duration_s == 20
    assert updated.keyframe_interval_s == DEFAULT_BUFFER_SETTINGS.keyframe_interval_s
    # Reload to ensure persistence
    reloaded = ConfigManager(config_file)
    assert reloaded.get_buffer_settings() == updated


def test_keyframe_interval_must_divide_segment_duration():
    with pytest.raises(SegmentConfigurationError):
        BufferSettings(segment_duration_s=30, keyframe_interval_s=4)


def test_retention_must_hold_one_segment():
    with pytest.raises(SegmentConfigurationError):
        BufferSettings(segment_duration_s=30, retention_window_s=20)


def test_buffer_settings_coerce_strings():
    settings = BufferSettings(segment_duration_s="10", keyframe_interval_s=2.0)
    assert settings.segment_duration_s == 10
    assert settings.keyframe_interval_s == 2
    assert settings.gop_size == 60
    assert settings.max_segments == 30


def test_invalid_buffer_update_keeps_previous(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    with pytest.raises(SegmentConfigurationError):
        manager.set_buffer_settings({"keyframe_interval_s": 7})
    assert manager.get_buffer_settings() == DEFAULT_BUFFER_SETTINGS


def test_capture_presets_sorted_and_deduplicated():
    settings = CaptureSettings(duration_presets=(60, 30, 60, 120))
    assert settings.duration_presets == (30, 60, 120)


@pytest.mark.parametrize("window", [-1, 1001])
def test_coalescing_window_bounds(window: int):
    with pytest.raises(ValueError):
        CaptureSettings(coalesce_window_ms=window)


def test_capture_settings_reject_string_presets(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    with pytest.raises(ValueError):
        manager.set_capture_settings({"duration_presets": "30,60"})


def test_session_timings_select_connect_timeout():
    timings = SessionTimings()
    assert timings.connect_timeout(discovery_based=False) == 10.0
    assert timings.connect_timeout(discovery_based=True) == 30.0


def test_heartbeat_timeout_not_shorter_than_interval():
    with pytest.raises(ValueError):
        SessionTimings(heartbeat_interval_s=5, heartbeat_timeout_s=2)


def test_transport_kind_normalised_and_validated(tmp_path: Path):
    assert TransportSettings(kind=" Relay ").kind == "relay"
    with pytest.raises(ValueError):
        TransportSettings(kind="carrier-pigeon")
    manager = ConfigManager(tmp_path / "config.json")
    updated = manager.set_transport_settings("polling")
    assert updated.kind == "polling"
    assert updated.port == DEFAULT_TRANSPORT_SETTINGS.port


def test_corrupt_config_raises(tmp_path: Path):
    config_file = tmp_path / "config.json"
    config_file.write_text("[1, 2, 3]")
    with pytest.raises(RuntimeError):
        ConfigManager(config_file)


def test_to_dict_sections(tmp_path: Path):
    manager = ConfigManager(tmp_path / "config.json")
    payload = manager.to_dict()
    assert set(payload) == {"buffer", "session", "capture", "transport"}
    assert payload["capture"]["duration_presets"] == [30, 60, 120]
