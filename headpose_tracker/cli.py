from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
from rich.progress import Progress

from .config import as_dict as config_as_dict, get_config
from .models import ValidationError
from .storage import InMemoryProfileStore, JsonProfileStore, ProfileStore

app = typer.Typer(help="Head pose tracking, stabilization and quality monitoring for virtual try-on.")
profiles_app = typer.Typer(help="Manage stored camera calibration profiles.")


def _fail(message: str, *, code: int = 1) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=code)


def _open_store(profiles_file: Optional[Path]) -> ProfileStore:
    config = get_config()
    if not config.persist_profiles and profiles_file is None:
        return InMemoryProfileStore(max_age_days=config.profile_max_age_days)
    return JsonProfileStore(profiles_file or config.profiles_file, max_age_days=config.profile_max_age_days)


def _json_store(profiles_file: Optional[Path]) -> JsonProfileStore:
    config = get_config()
    return JsonProfileStore(profiles_file or config.profiles_file, max_age_days=config.profile_max_age_days)


def _parse_frame_set(value: Optional[str]) -> set[int]:
    """Parse ``"30-45,60"`` into a set of frame indices."""
    frames: set[int] = set()
    if not value:
        return frames
    for chunk in value.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            if "-" in chunk:
                start_str, end_str = chunk.split("-", 1)
                start, end = int(start_str), int(end_str)
                if end < start:
                    raise ValueError(chunk)
                frames.update(range(start, end + 1))
            else:
                frames.add(int(chunk))
        except ValueError as exc:
            raise typer.BadParameter(f"Invalid frame range: {chunk!r}", param_name="dropout") from exc
    return frames


def _format_summary(summary: dict[str, Any]) -> str:
    error = summary.get("mean_reprojection_error")
    error_text = f"{error:.2f} px" if isinstance(error, float) else "n/a"
    return (
        f"{summary.get('frames', 0)} frames, solved {summary.get('solved_ratio', 0.0):.0%}, "
        f"mean reprojection error {error_text}, mean quality {summary.get('mean_quality', 0.0):.2f}, "
        f"final state {summary.get('final_state', 'n/a')}."
    )


@app.command()
def replay(
    recording: Path = typer.Argument(..., help="Landmark recording (JSON) to run through the tracker."),
    out: Optional[Path] = typer.Option(
        None,
        "--out",
        "-o",
        help="Write per-frame results to this file (.csv or .json).",
    ),
    plot: Optional[Path] = typer.Option(
        None,
        "--plot",
        help="Save a raw vs stabilized overlay plot (PNG).",
    ),
    tracking_config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Tracking settings file (.toml or .json).",
    ),
    device_id: Optional[str] = typer.Option(
        None,
        "--device-id",
        help="Camera identifier used for calibration profiles.",
    ),
    profiles_file: Optional[Path] = typer.Option(
        None,
        "--profiles-file",
        help="Calibration profile store (defaults to the configured location).",
    ),
    recover: bool = typer.Option(
        True,
        "--recover/--no-recover",
        help="Apply recovery strategies automatically while replaying.",
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="RANSAC sampling seed."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log tracking details to stderr."),
) -> None:
    """
    Replay a recorded landmark stream and report pose and tracking quality.

    Examples:
        headpose-tracker replay session.json --out poses.csv --plot overlay.png
    """
    from .tracking.config import load_config_from_file
    from .tracking.pipeline import RecordedLandmarkSource, TrackingPipeline
    from .tracking.reporting import frame_results_dataframe, plot_stabilization_overlay, summarize

    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    if not recording.exists():
        _fail(f"Recording not found: {recording}")
    if out is not None and out.suffix.lower() not in {".csv", ".json"}:
        raise typer.BadParameter("--out must end in .csv or .json.", param_name="out")

    app_config = get_config()
    config_path = tracking_config or app_config.tracking_config
    config = None
    if config_path is not None:
        try:
            config = load_config_from_file(config_path)
        except (FileNotFoundError, ValueError) as exc:
            _fail(f"Could not load tracking config: {exc}")

    try:
        source = RecordedLandmarkSource.from_file(recording)
    except (OSError, ValidationError) as exc:
        _fail(f"Could not read recording: {exc}")

    pipeline = TrackingPipeline(
        source.width,
        source.height,
        config=config,
        store=_open_store(profiles_file),
        device_id=device_id or app_config.device_id,
        seed=seed,
    )
    with Progress() as progress:
        task = progress.add_task(f"Tracking {recording.name}", total=len(source) or None)
        results = pipeline.run(
            source,
            auto_recover=recover,
            progress_callback=lambda _index: progress.advance(task),
        )

    df = frame_results_dataframe(results)
    summary = summarize(df)
    typer.echo(_format_summary(summary))
    calibration = pipeline.calibration.status()
    typer.echo(
        f"Focal length in use: {calibration['focal_length_in_use']:.1f} px "
        f"({'trusted' if calibration['trusted'] else 'estimated'})."
    )

    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        if out.suffix.lower() == ".csv":
            df.to_csv(out, index=False)
        else:
            df.to_json(out, orient="records", indent=2)
        typer.echo(f"Per-frame results written to {out}")

    if plot is not None:
        fig = plot_stabilization_overlay(df, title=f"Raw vs stabilized pose: {recording.name}")
        if fig is None:
            typer.echo("No frames to plot.")
        else:
            import matplotlib.pyplot as plt

            plot.parent.mkdir(parents=True, exist_ok=True)
            fig.savefig(plot, dpi=120, bbox_inches="tight")
            plt.close(fig)
            typer.echo(f"Overlay plot saved to {plot}")


@app.command()
def synthesize(
    out: Path = typer.Argument(..., help="Destination recording (JSON)."),
    frames: int = typer.Option(150, "--frames", "-n", min=1, help="Number of frames to generate."),
    width: int = typer.Option(1280, "--width", min=1, help="Image width in pixels."),
    height: int = typer.Option(720, "--height", min=1, help="Image height in pixels."),
    fps: float = typer.Option(30.0, "--fps", min=1.0, help="Frame rate."),
    noise: float = typer.Option(0.5, "--noise", min=0.0, help="Gaussian landmark noise (px)."),
    sway: float = typer.Option(12.0, "--sway", help="Peak head yaw in degrees."),
    distance: float = typer.Option(600.0, "--distance", min=100.0, help="Head distance from the camera (mm)."),
    dropout: Optional[str] = typer.Option(
        None,
        "--dropout",
        help="Frames with no subject, e.g. '60-75,120'.",
    ),
    seed: int = typer.Option(0, "--seed", help="Noise seed."),
) -> None:
    """
    Generate a synthetic landmark recording of a swaying head.

    Example:
        headpose-tracker synthesize demo.json --frames 300 --dropout 120-140
    """
    from .tracking.pipeline import RecordedLandmarkSource
    from .tracking.synthetic import synthesize_sequence

    missing = _parse_frame_set(dropout)
    try:
        sequence = synthesize_sequence(
            frames,
            width=width,
            height=height,
            fps=fps,
            noise_px=noise,
            seed=seed,
            sway_deg=sway,
            distance_mm=distance,
            dropout=missing,
        )
    except ValidationError as exc:
        _fail(f"Could not synthesize recording: {exc}")
    path = RecordedLandmarkSource(width, height, sequence).save(out)
    typer.echo(f"Wrote {len(sequence)} frames ({len(missing & set(range(frames)))} without subject) to {path}")


@app.command("show-config")
def show_config(
    tracking: bool = typer.Option(False, "--tracking", help="Also print the tracking settings."),
    tracking_config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Tracking settings file to load before printing.",
    ),
) -> None:
    """
    Show the effective application configuration and, optionally, tracking settings.
    """
    config = config_as_dict()
    typer.echo(f"Config source: {config.get('source')}")
    typer.echo(f"Device id: {config.get('device_id')}")
    typer.echo(f"Profile expiry: {config.get('profile_max_age_days')} days")
    typer.echo(f"Profiles file: {config.get('profiles_file') or 'default'}")
    typer.echo(f"Persist profiles: {'yes' if config.get('persist_profiles') else 'no'}")
    if tracking or tracking_config is not None:
        from .tracking.config import DEFAULT_CONFIG, load_config_from_file, print_config, validate_config_values

        settings = DEFAULT_CONFIG
        if tracking_config is not None:
            try:
                settings = load_config_from_file(tracking_config)
            except (FileNotFoundError, ValueError) as exc:
                _fail(f"Could not load tracking config: {exc}")
            validate_config_values(settings)
        print_config(settings)


@profiles_app.command("list")
def profiles_list(
    profiles_file: Optional[Path] = typer.Option(None, "--profiles-file", help="Profile store to inspect."),
    as_json: bool = typer.Option(False, "--json", help="Print profiles as JSON."),
) -> None:
    """List stored calibration profiles."""
    try:
        profiles = _json_store(profiles_file).list_profiles()
    except ValueError as exc:
        _fail(f"Could not read profile store: {exc}")
    if as_json:
        typer.echo(json.dumps([profile.to_dict() for profile in profiles], indent=2))
        return
    if not profiles:
        typer.echo("No calibration profiles stored.")
        return
    for profile in profiles:
        typer.echo(f"{profile.device_key}: focal {profile.focal_length:.1f} px from {profile.sample_count} samples")


@profiles_app.command("clear")
def profiles_clear(
    expired: bool = typer.Option(False, "--expired", help="Only remove profiles past their expiry age."),
    profiles_file: Optional[Path] = typer.Option(None, "--profiles-file", help="Profile store to modify."),
) -> None:
    """Remove stored calibration profiles."""
    store = _json_store(profiles_file)
    try:
        removed = store.clear_expired() if expired else store.clear_all()
    except (OSError, ValueError) as exc:
        _fail(f"Could not update profile store: {exc}")
    typer.echo(f"Removed {removed} {'expired ' if expired else ''}profile{'s' if removed != 1 else ''}.")


@profiles_app.command("export")
def profiles_export(
    to: Optional[Path] = typer.Option(None, "--to", "-t", help="Write to a file instead of stdout."),
    profiles_file: Optional[Path] = typer.Option(None, "--profiles-file", help="Profile store to export."),
) -> None:
    """Export calibration profiles as JSON."""
    try:
        payload = _json_store(profiles_file).export_json()
    except ValueError as exc:
        _fail(f"Could not read profile store: {exc}")
    if to is None:
        typer.echo(payload)
        return
    to.parent.mkdir(parents=True, exist_ok=True)
    to.write_text(payload, encoding="utf-8")
    typer.echo(f"Profiles exported to {to}")


@profiles_app.command("import")
def profiles_import(
    source: Path = typer.Argument(..., help="JSON file produced by 'profiles export'."),
    profiles_file: Optional[Path] = typer.Option(None, "--profiles-file", help="Profile store to merge into."),
) -> None:
    """Merge calibration profiles from an exported JSON file."""
    if not source.exists():
        _fail(f"Import file not found: {source}")
    try:
        imported = _json_store(profiles_file).import_json(source.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        _fail(f"Could not import profiles: {exc}")
    typer.echo(f"Imported {imported} profile{'s' if imported != 1 else ''}.")


app.add_typer(profiles_app, name="profiles", help="Calibration profile tools (list, clear, export, import).")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
