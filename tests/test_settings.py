from __future__ import annotations

import json
from pathlib import Path

import pytest

from cr_screen.settings import (
    HostSettings,
    HostSettingsStore,
    SHARED_STATE_DIR_ENV,
    StreamQuality,
    UPLOAD_URL_ENV,
)


def test_settings_store_defaults_and_file_values(tmp_path: Path) -> None:
    store = HostSettingsStore(tmp_path / "settings.json")

    settings = store.load()
    assert settings.poll_interval_s == 1.0
    assert settings.min_recording_bytes == 10_000
    assert settings.stream_quality is StreamQuality.MEDIUM

    store.path.write_text(
        json.dumps({"stream_quality": "high", "upload_url": " http://example.test/upload/ "}),
        encoding="utf-8",
    )
    updated = store.load()
    assert updated.stream_quality is StreamQuality.HIGH
    assert updated.upload_url == "http://example.test/upload/"
    assert updated.poll_interval_s == 1.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"poll_interval_s": 0},
        {"poll_interval_s": float("nan")},
        {"min_recording_bytes": -1},
        {"upload_timeout_s": 0},
        {"stream_quality": "ultra"},
        {"shared_state_dir": "  "},
    ],
)
def test_settings_validation(overrides: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        HostSettings(**overrides)


def test_unknown_keys_are_ignored() -> None:
    settings = HostSettings.from_dict({"poll_interval_s": 2, "legacy_option": True})
    assert settings.poll_interval_s == 2.0


def test_invalid_json_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{nope", encoding="utf-8")
    with pytest.raises(ValueError):
        HostSettingsStore(path).load()


def test_environment_overrides() -> None:
    base = HostSettings()
    assert base.with_environment({}) is base

    settings = base.with_environment(
        {SHARED_STATE_DIR_ENV: "/srv/group", UPLOAD_URL_ENV: "http://collector/upload/"}
    )
    assert settings.shared_state_dir == "/srv/group"
    assert settings.upload_url == "http://collector/upload/"


def test_stream_quality_profiles() -> None:
    assert StreamQuality.LOW.frame_skip == 2
    assert StreamQuality.HIGH.downsize_factor == 1.0
    described = StreamQuality.MEDIUM.to_dict()
    assert described["id"] == "medium"
    assert described["label"] == "Medium"
    assert described["compression_quality"] == 0.6
