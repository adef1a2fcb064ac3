from __future__ import annotations

import json

import pandas as pd
import pytest
from typer.testing import CliRunner

from headpose_tracker import config as app_config
from headpose_tracker.cli import app


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("HEADPOSE_TRACKER_CONFIG", str(tmp_path / "no-config.toml"))
    monkeypatch.setenv("HEADPOSE_TRACKER_DATA_DIR", str(tmp_path / "data"))
    for name in ("PROFILES_FILE", "DEVICE_ID", "PERSIST_PROFILES"):
        monkeypatch.delenv(f"HEADPOSE_TRACKER_{name}", raising=False)
        monkeypatch.delenv(f"VTO_TRACKER_{name}", raising=False)
    app_config.get_config.cache_clear()
    yield tmp_path
    app_config.get_config.cache_clear()


def test_cli_smoke(isolated_env):
    runner = CliRunner()
    recording = isolated_env / "clip.json"

    synth_result = runner.invoke(
        app,
        ["synthesize", str(recording), "--frames", "60", "--dropout", "40-44", "--seed", "3"],
    )
    assert synth_result.exit_code == 0, synth_result.output
    assert "Wrote 60 frames (5 without subject)" in synth_result.output

    out_csv = isolated_env / "out" / "poses.csv"
    plot_png = isolated_env / "out" / "overlay.png"
    replay_result = runner.invoke(
        app,
        ["replay", str(recording), "--out", str(out_csv), "--plot", str(plot_png), "--seed", "1"],
    )
    assert replay_result.exit_code == 0, replay_result.output
    assert "60 frames" in replay_result.output
    assert "Focal length in use" in replay_result.output
    df = pd.read_csv(out_csv)
    assert len(df) == 60
    assert not df["solved"].iloc[40:45].any()
    assert plot_png.exists() and plot_png.stat().st_size > 0

    list_result = runner.invoke(app, ["profiles", "list"])
    assert list_result.exit_code == 0, list_result.output
    assert "default_1280x720" in list_result.output

    export_path = isolated_env / "exports" / "profiles.json"
    export_result = runner.invoke(app, ["profiles", "export", "--to", str(export_path)])
    assert export_result.exit_code == 0, export_result.output
    exported = json.loads(export_path.read_text(encoding="utf-8"))
    assert [entry["device_key"] for entry in exported["profiles"]] == ["default_1280x720"]

    clear_result = runner.invoke(app, ["profiles", "clear"])
    assert clear_result.exit_code == 0, clear_result.output
    assert "Removed 1 profile." in clear_result.output
    assert "No calibration profiles stored." in runner.invoke(app, ["profiles", "list"]).output

    import_result = runner.invoke(app, ["profiles", "import", str(export_path)])
    assert import_result.exit_code == 0, import_result.output
    assert "Imported 1 profile." in import_result.output

    json_list = runner.invoke(app, ["profiles", "list", "--json"])
    assert json.loads(json_list.output)[0]["device_key"] == "default_1280x720"


def test_replay_json_output_with_device_id(isolated_env):
    runner = CliRunner()
    recording = isolated_env / "clip.json"
    assert runner.invoke(app, ["synthesize", str(recording), "--frames", "20"]).exit_code == 0

    out_json = isolated_env / "poses.json"
    profiles = isolated_env / "cams.json"
    result = runner.invoke(
        app,
        [
            "replay",
            str(recording),
            "--out",
            str(out_json),
            "--device-id",
            "kiosk",
            "--profiles-file",
            str(profiles),
            "--no-recover",
        ],
    )
    assert result.exit_code == 0, result.output
    rows = json.loads(out_json.read_text(encoding="utf-8"))
    assert len(rows) == 20
    assert "kiosk_1280x720" in json.loads(profiles.read_text(encoding="utf-8"))["profiles"]


def test_replay_rejects_bad_inputs(isolated_env):
    runner = CliRunner()
    missing = runner.invoke(app, ["replay", str(isolated_env / "missing.json")])
    assert missing.exit_code == 1
    assert "Recording not found" in missing.output

    broken = isolated_env / "broken.json"
    broken.write_text(json.dumps({"width": 1280}), encoding="utf-8")
    result = runner.invoke(app, ["replay", str(broken)])
    assert result.exit_code == 1
    assert "Could not read recording" in result.output

    recording = isolated_env / "clip.json"
    runner.invoke(app, ["synthesize", str(recording), "--frames", "5"])
    bad_suffix = runner.invoke(app, ["replay", str(recording), "--out", str(isolated_env / "poses.xlsx")])
    assert bad_suffix.exit_code != 0


def test_synthesize_rejects_bad_dropout(isolated_env):
    runner = CliRunner()
    result = runner.invoke(app, ["synthesize", str(isolated_env / "clip.json"), "--dropout", "9-3"])
    assert result.exit_code != 0
    assert not (isolated_env / "clip.json").exists()


def test_show_config_with_tracking(isolated_env):
    runner = CliRunner()
    tracking = isolated_env / "tracking.toml"
    tracking.write_text("[solver]\nransac_threshold_px = 4.0\n", encoding="utf-8")
    result = runner.invoke(app, ["show-config", "--config", str(tracking)])
    assert result.exit_code == 0, result.output
    assert "Config source: defaults" in result.output
    assert "Device id: default" in result.output
    assert "ransac_threshold_px: 4.0" in result.output

    plain = runner.invoke(app, ["show-config"])
    assert plain.exit_code == 0, plain.output
    assert "[solver]" not in plain.output


def test_profiles_clear_expired_on_empty_store(isolated_env):
    runner = CliRunner()
    result = runner.invoke(app, ["profiles", "clear", "--expired"])
    assert result.exit_code == 0, result.output
    assert "Removed 0 expired profiles." in result.output
