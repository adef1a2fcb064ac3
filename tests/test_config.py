from __future__ import annotations

import importlib
import json
from dataclasses import asdict, replace
from pathlib import Path

import pytest

from headpose_tracker import config as app_config
from headpose_tracker.env import get_env, get_env_flag
from headpose_tracker.tracking.config import (
    DEFAULT_CONFIG,
    load_config_from_file,
    validate_config_values,
)


@pytest.fixture
def reload_tracking_config(monkeypatch):
    import headpose_tracker.tracking.config as config

    def _reload(**env_vars):
        for key, value in env_vars.items():
            monkeypatch.setenv(key, str(value))
        return importlib.reload(config)

    yield _reload
    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def fresh_app_config(monkeypatch):
    for name in ("CONFIG", "DEVICE_ID", "PERSIST_PROFILES"):
        monkeypatch.delenv(f"HEADPOSE_TRACKER_{name}", raising=False)
        monkeypatch.delenv(f"VTO_TRACKER_{name}", raising=False)
    app_config.get_config.cache_clear()
    yield app_config
    app_config.get_config.cache_clear()


def test_tracking_env_overrides(reload_tracking_config):
    config = reload_tracking_config(
        HEADPOSE_RANSAC_THRESHOLD_PX="12.5",
        HEADPOSE_USE_KALMAN="0",
        HEADPOSE_FOCAL_RANGE="400,2500",
        HEADPOSE_MAX_RECOVERY_ATTEMPTS="not-a-number",
    )
    assert config.DEFAULT_CONFIG.solver.ransac_threshold_px == pytest.approx(12.5)
    assert config.DEFAULT_CONFIG.stabilizer.use_kalman is False
    assert config.DEFAULT_CONFIG.calibration.focal_length_range == (400.0, 2500.0)
    assert config.DEFAULT_CONFIG.quality.max_recovery_attempts == 3


def test_env_overrides_do_not_leak_into_later_tests(monkeypatch):
    monkeypatch.delenv("HEADPOSE_RANSAC_THRESHOLD_PX", raising=False)
    config = importlib.import_module("headpose_tracker.tracking.config")
    assert config.DEFAULT_CONFIG.solver.ransac_threshold_px == pytest.approx(10.0)
    assert config.DEFAULT_CONFIG.stabilizer.use_kalman is True


def test_defaults_are_self_consistent(recwarn):
    validate_config_values(DEFAULT_CONFIG)
    assert not [w for w in recwarn if issubclass(w.category, RuntimeWarning)]
    assert sum(DEFAULT_CONFIG.quality.metric_weights.values()) == pytest.approx(1.0)
    assert DEFAULT_CONFIG.solver.min_correspondences == 6


def test_load_toml_with_tracking_table(tmp_path):
    path = tmp_path / "tracking.toml"
    path.write_text(
        "\n".join(
            [
                "[tracking.solver]",
                "ransac_threshold_px = 6.0",
                "ransac_seed = 11",
                "",
                "[tracking.calibration]",
                'focal_length_range = "600:2400"',
                "left_eye_corners = [263, 362]",
                "",
                "[tracking.quality.metric_weights]",
                "landmark_confidence = 0.3",
                "",
                "[tracking.unknown]",
                "ignored = true",
            ]
        ),
        encoding="utf-8",
    )
    config = load_config_from_file(path)
    assert config.solver.ransac_threshold_px == pytest.approx(6.0)
    assert config.solver.ransac_seed == 11
    assert config.calibration.focal_length_range == (600.0, 2400.0)
    assert config.calibration.left_eye_corners == (263, 362)
    assert config.quality.metric_weights["landmark_confidence"] == pytest.approx(0.3)
    assert config.quality.metric_weights["pose_stability"] == pytest.approx(0.2)


def test_load_json_root_sections(tmp_path):
    path = tmp_path / "tracking.json"
    path.write_text(json.dumps({"stabilizer": {"use_prediction": False, "jitter_window": 7}}), encoding="utf-8")
    config = load_config_from_file(path)
    assert config.stabilizer.use_prediction is False
    assert config.stabilizer.jitter_window == 7
    assert asdict(config.solver) == asdict(DEFAULT_CONFIG.solver)


def test_load_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config_from_file(tmp_path / "missing.toml")
    yaml_path = tmp_path / "tracking.yaml"
    yaml_path.write_text("solver: {}", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config_from_file(yaml_path)
    with pytest.raises(ValueError):
        load_config_from_file(tmp_path)
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"solver": {"ransac_threshold_px": "wide"}}), encoding="utf-8")
    with pytest.raises(ValueError):
        load_config_from_file(bad)


def test_validate_config_values_warns():
    config = replace(
        DEFAULT_CONFIG,
        stabilizer=replace(DEFAULT_CONFIG.stabilizer, jitter_window=4),
        quality=replace(DEFAULT_CONFIG.quality, good_threshold=0.95),
    )
    with pytest.warns(RuntimeWarning) as record:
        validate_config_values(config)
    messages = [str(warning.message) for warning in record]
    assert any("even" in message for message in messages)
    assert any("descending" in message for message in messages)


def test_app_config_defaults_without_file(fresh_app_config, monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    config = fresh_app_config.get_config()
    assert config.device_id == "default"
    assert config.profile_max_age_days == pytest.approx(30.0)
    assert config.persist_profiles is True
    assert fresh_app_config.as_dict()["source"] == "defaults"


def test_app_config_from_toml(fresh_app_config, monkeypatch, tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text(
        "\n".join(
            [
                "[app]",
                'device_id = "kiosk-cam"',
                "profile_max_age_days = 7",
                'profiles_file = "profiles/cams.json"',
                'tracking_config = "tracking.toml"',
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("HEADPOSE_TRACKER_CONFIG", str(path))
    config = fresh_app_config.get_config()
    assert config.device_id == "kiosk-cam"
    assert config.profile_max_age_days == pytest.approx(7.0)
    assert config.profiles_file == tmp_path / "profiles" / "cams.json"
    assert config.tracking_config == tmp_path / "tracking.toml"
    assert fresh_app_config.as_dict()["source"] == str(path)


def test_app_config_env_overrides(fresh_app_config, monkeypatch, tmp_path):
    path = tmp_path / "settings.toml"
    path.write_text('device_id = "from-file"\nprofile_max_age_days = -1\n', encoding="utf-8")
    monkeypatch.setenv("HEADPOSE_TRACKER_CONFIG", str(path))
    monkeypatch.setenv("VTO_TRACKER_DEVICE_ID", "legacy-cam")
    monkeypatch.setenv("HEADPOSE_TRACKER_PERSIST_PROFILES", "off")
    config = fresh_app_config.get_config()
    assert config.device_id == "legacy-cam"
    assert config.persist_profiles is False
    assert config.profile_max_age_days == pytest.approx(30.0)


def test_env_prefixes(monkeypatch):
    monkeypatch.delenv("HEADPOSE_TRACKER_SAMPLE", raising=False)
    monkeypatch.setenv("VTO_TRACKER_SAMPLE", "legacy")
    assert get_env("SAMPLE") == "legacy"
    monkeypatch.setenv("HEADPOSE_TRACKER_SAMPLE", "primary")
    assert get_env("SAMPLE") == "primary"
    assert get_env("UNSET_FOR_TEST", "fallback") == "fallback"


@pytest.mark.parametrize("raw, expected", [("1", True), ("yes", True), ("0", False), ("Off", False), ("", False)])
def test_env_flag(monkeypatch, raw, expected):
    monkeypatch.setenv("HEADPOSE_TRACKER_FLAG_FOR_TEST", raw)
    assert get_env_flag("FLAG_FOR_TEST", default=not expected) is expected


def test_env_flag_default(monkeypatch):
    monkeypatch.delenv("HEADPOSE_TRACKER_FLAG_FOR_TEST", raising=False)
    monkeypatch.delenv("VTO_TRACKER_FLAG_FOR_TEST", raising=False)
    assert get_env_flag("FLAG_FOR_TEST") is False
    assert get_env_flag("FLAG_FOR_TEST", default=True) is True


def test_shipped_config_file_parses():
    path = Path(__file__).resolve().parent.parent / "config" / "headpose_tracker.toml"
    raw = app_config._load_toml(path)
    config = app_config._build_config(raw, path)
    assert config.device_id
    assert config.persist_profiles is True
