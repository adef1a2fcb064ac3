from __future__ import annotations

import json

import pytest

from headpose_tracker.models import CalibrationProfile
from headpose_tracker.storage import (
    InMemoryProfileStore,
    _ExpiringProfileStore,
    JsonProfileStore,
    default_profiles_file,
    profile_key,
)

DAY = 86400.0


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _profile(key: str = "webcam_1280x720", focal: float = 1150.0, timestamp: float = 1_700_000_000.0):
    return CalibrationProfile(
        device_key=key,
        focal_length=focal,
        sample_count=12,
        timestamp=timestamp,
        width=1280,
        height=720,
    )


def test_profile_key_combines_device_and_resolution():
    assert profile_key("webcam", 1280, 720) == "webcam_1280x720"


def test_json_store_round_trips_profiles(tmp_path):
    clock = FakeClock()
    store = JsonProfileStore(tmp_path / "profiles.json", clock=clock)
    store.save(_profile())

    reopened = JsonProfileStore(tmp_path / "profiles.json", clock=clock)
    loaded = reopened.load("webcam_1280x720")
    assert loaded == _profile()
    assert [profile.device_key for profile in reopened.list_profiles()] == ["webcam_1280x720"]

    payload = json.loads((tmp_path / "profiles.json").read_text(encoding="utf-8"))
    assert set(payload["profiles"]) == {"webcam_1280x720"}


def test_missing_file_reads_as_empty(tmp_path):
    store = JsonProfileStore(tmp_path / "nothing-here.json")
    assert store.load("webcam_1280x720") is None
    assert store.list_profiles() == []


def test_corrupt_file_raises_value_error(tmp_path):
    path = tmp_path / "profiles.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonProfileStore(path)
    with pytest.raises(ValueError):
        store.load("webcam_1280x720")

    path.write_text(json.dumps({"profiles": []}), encoding="utf-8")
    with pytest.raises(ValueError):
        store.list_profiles()


def test_expired_profile_is_removed_on_load():
    clock = FakeClock()
    store = InMemoryProfileStore(max_age_days=30, clock=clock)
    store.save(_profile(timestamp=clock.now))

    clock.now += 29 * DAY
    assert store.load("webcam_1280x720") is not None

    clock.now += 2 * DAY
    assert store.load("webcam_1280x720") is None
    assert store.list_profiles() == []


def test_unreadable_record_is_discarded():
    store = InMemoryProfileStore()
    store._write({"broken_640x480": {"device_key": "broken_640x480", "focal_length": 5.0, "timestamp": 0.0}})
    assert store.load("broken_640x480") is None
    assert store.list_profiles() == []


def test_clear_expired_counts_removed_profiles(tmp_path):
    clock = FakeClock()
    store = JsonProfileStore(tmp_path / "profiles.json", max_age_days=30, clock=clock)
    store.save(_profile("old_1280x720", timestamp=clock.now - 45 * DAY))
    store.save(_profile("fresh_1280x720", timestamp=clock.now - DAY))

    assert store.clear_expired() == 1
    assert [profile.device_key for profile in store.list_profiles()] == ["fresh_1280x720"]
    assert store.clear_expired() == 0
    assert store.clear_all() == 1
    assert store.list_profiles() == []


def test_delete_reports_whether_anything_was_removed():
    store = InMemoryProfileStore()
    store.save(_profile())
    assert store.delete("webcam_1280x720") is True
    assert store.delete("webcam_1280x720") is False


def test_export_and_import_merge_profiles(tmp_path):
    clock = FakeClock()
    source = JsonProfileStore(tmp_path / "a.json", clock=clock)
    source.save(_profile("laptop_1280x720", focal=1100.0))
    source.save(_profile("usb_1920x1080", focal=1600.0))
    exported = source.export_json()

    target = JsonProfileStore(tmp_path / "b.json", clock=clock)
    target.save(_profile("laptop_1280x720", focal=900.0))
    assert target.import_json(exported) == 2
    assert target.load("laptop_1280x720").focal_length == pytest.approx(1100.0)
    assert target.load("usb_1920x1080").focal_length == pytest.approx(1600.0)


def test_import_accepts_plain_list_and_rejects_garbage():
    store = InMemoryProfileStore()
    assert store.import_json(json.dumps([_profile().to_dict()])) == 1
    with pytest.raises(ValueError):
        store.import_json("not json at all")
    with pytest.raises(ValueError):
        store.import_json(json.dumps({"profiles": "nope"}))
    with pytest.raises(ValueError):
        store.import_json(json.dumps([{"device_key": "x", "focal_length": 1.0, "timestamp": 0}]))


def test_default_location_follows_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("HEADPOSE_TRACKER_PROFILES_FILE", raising=False)
    monkeypatch.delenv("VTO_TRACKER_PROFILES_FILE", raising=False)
    monkeypatch.setenv("HEADPOSE_TRACKER_DATA_DIR", str(tmp_path / "data"))
    assert default_profiles_file() == tmp_path / "data" / "camera_profiles.json"

    explicit = tmp_path / "nested" / "profiles.json"
    monkeypatch.setenv("HEADPOSE_TRACKER_PROFILES_FILE", str(explicit))
    assert default_profiles_file() == explicit
    assert explicit.parent.is_dir()

    monkeypatch.delenv("HEADPOSE_TRACKER_PROFILES_FILE")
    monkeypatch.setenv("VTO_TRACKER_PROFILES_FILE", str(tmp_path / "legacy.json"))
    assert default_profiles_file() == tmp_path / "legacy.json"


def test_store_base_requires_read_and_write():
    class ReadOnlyStore(_ExpiringProfileStore):
        def _read(self):
            return {}

    with pytest.raises(TypeError):
        ReadOnlyStore()
    with pytest.raises(TypeError):
        _ExpiringProfileStore()
