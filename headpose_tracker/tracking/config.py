"""Configuration for head pose tracking.

Settings are grouped per pipeline stage:
- CALIBRATION: interpupillary-distance focal length estimation and sample buffer.
- SOLVER: PnP linear estimate, RANSAC and Gauss-Newton refinement.
- STABILIZER: jitter suppression, One-Euro, Kalman blend and trend prediction.
- QUALITY: metric weights/thresholds, trend detection and recovery gating.

The RANSAC threshold and quality weights were tuned by hand against recorded
sessions; treat them as starting points. The most commonly tuned values can be
overridden via ``HEADPOSE_*`` environment variables, the rest via a TOML/JSON
file passed to :func:`load_config_from_file`.
"""

from __future__ import annotations

import json
import logging
import os
import warnings
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from headpose_tracker.env import get_env

try:  # Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib  # type: ignore[no-redef]


def _configure_logger() -> logging.Logger:
    logger = logging.getLogger("headpose_tracker.tracking")
    level_name = get_env("LOG_LEVEL") or os.getenv("LOG_LEVEL")
    if level_name:
        level = getattr(logging, level_name.upper(), logging.INFO)
        logger.setLevel(level)
    return logger


TRACKING_LOGGER = _configure_logger()
logger = TRACKING_LOGGER


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


def _get_env_range(key: str, default: Tuple[float, float]) -> Tuple[float, float]:
    raw = os.getenv(key)
    if not raw:
        return default
    for sep in (",", ":"):
        if sep in raw:
            try:
                start_str, end_str = raw.split(sep)
                return float(start_str), float(end_str)
            except ValueError:
                break
    return default


def _coerce_range_tuple(value: Any, default: Tuple[float, float]) -> Tuple[float, float]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        try:
            return float(value[0]), float(value[1])
        except (TypeError, ValueError):
            return default
    if isinstance(value, str):
        for sep in (",", ":"):
            if sep in value:
                try:
                    start_str, end_str = value.split(sep)
                    return float(start_str), float(end_str)
                except ValueError:
                    continue
    return default


@dataclass(frozen=True)
class CalibrationSettings:
    """Runtime focal length calibration from interpupillary distance."""

    interpupillary_distance_mm: float = 63.0
    viewing_distance_mm: float = 600.0
    pixel_distance_range: Tuple[float, float] = (20.0, 200.0)
    focal_length_range: Tuple[float, float] = (500.0, 3000.0)
    max_samples: int = 15
    min_samples: int = 8
    half_life_s: float = 3.5
    max_variance: float = 10000.0
    stable_variance: float = 5000.0
    stability_window_s: float = 10.0
    recalibration_interval_s: float = 5.0
    profile_change_fraction: float = 0.02
    untrusted_confidence_factor: float = 0.8
    # Eye corner landmark pairs (outer, inner); eye centre is the pair midpoint.
    right_eye_corners: Tuple[int, int] = (33, 133)
    left_eye_corners: Tuple[int, int] = (263, 362)


@dataclass(frozen=True)
class SolverSettings:
    min_correspondences: int = 6
    use_ransac: bool = True
    ransac_iterations: int = 100
    ransac_threshold_px: float = 10.0
    ransac_sample_size: int = 4
    ransac_min_sample_area: float = 50.0
    ransac_early_stop_ratio: float = 0.8
    ransac_hypothesis_iterations: int = 8
    ransac_seed: Optional[int] = 7
    refine: bool = True
    refine_iterations: int = 20
    refine_tolerance: float = 1e-6
    jacobian_epsilon: float = 1e-6
    gauss_seidel_sweeps: int = 100
    power_iterations: int = 50
    confidence_zero_error_px: float = 50.0
    history_size: int = 10
    stability_window: int = 5
    stability_max_motion_rad: float = 0.5


@dataclass(frozen=True)
class StabilizerSettings:
    position_min_cutoff: float = 0.8
    position_beta: float = 0.005
    position_z_cutoff_factor: float = 1.5
    rotation_min_cutoff: float = 1.2
    rotation_beta: float = 0.01
    scale_min_cutoff: float = 0.5
    scale_beta: float = 0.002
    derivative_cutoff: float = 1.0
    jitter_window: int = 5
    jitter_min_samples: int = 3
    position_jitter_variance: float = 4.0
    rotation_jitter_variance: float = 1e-4
    scale_jitter_variance: float = 1e-4
    use_kalman: bool = True
    kalman_process_noise: float = 1.0
    kalman_measurement_noise: float = 1.0
    kalman_blend: float = 0.3
    des_alpha: float = 0.3
    des_gamma: float = 0.1
    use_prediction: bool = True
    prediction_fraction: float = 0.5
    rotation_slerp_factor: float = 0.6
    min_confidence_scale: float = 0.5
    default_frame_interval_s: float = 1.0 / 30.0


DEFAULT_METRIC_WEIGHTS: Dict[str, float] = {
    "landmark_confidence": 0.25,
    "pose_stability": 0.20,
    "reprojection_error": 0.15,
    "face_visibility": 0.20,
    "motion_consistency": 0.10,
    "occlusion_level": 0.10,
}

DEFAULT_METRIC_THRESHOLDS: Dict[str, float] = {
    "landmark_confidence": 0.6,
    "pose_stability": 0.5,
    "reprojection_error": 0.7,
    "face_visibility": 0.7,
    "motion_consistency": 0.5,
    "occlusion_level": 0.6,
}


@dataclass(frozen=True)
class QualitySettings:
    excellent_threshold: float = 0.9
    good_threshold: float = 0.75
    acceptable_threshold: float = 0.5
    poor_threshold: float = 0.3
    critical_threshold: float = 0.15
    metric_weights: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_METRIC_WEIGHTS))
    metric_thresholds: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_METRIC_THRESHOLDS))
    history_size: int = 30
    quality_history_size: int = 100
    trend_min_samples: int = 5
    declining_slope: float = -0.01
    declining_metric_count: int = 3
    reprojection_zero_error_px: float = 50.0
    consistency_window: int = 5
    recovery_delay_s: float = 0.5
    recovery_cooldown_s: float = 2.0
    max_recovery_attempts: int = 3
    full_reset_after_attempts: int = 2


@dataclass(frozen=True)
class TrackingConfig:
    calibration: CalibrationSettings = field(default_factory=CalibrationSettings)
    solver: SolverSettings = field(default_factory=SolverSettings)
    stabilizer: StabilizerSettings = field(default_factory=StabilizerSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _apply_env_overrides(config: TrackingConfig) -> TrackingConfig:
    calibration = replace(
        config.calibration,
        viewing_distance_mm=_get_env_float("HEADPOSE_VIEWING_DISTANCE_MM", config.calibration.viewing_distance_mm),
        focal_length_range=_get_env_range("HEADPOSE_FOCAL_RANGE", config.calibration.focal_length_range),
    )
    solver = replace(
        config.solver,
        use_ransac=_get_env_bool("HEADPOSE_USE_RANSAC", config.solver.use_ransac),
        ransac_threshold_px=_get_env_float("HEADPOSE_RANSAC_THRESHOLD_PX", config.solver.ransac_threshold_px),
        ransac_iterations=_get_env_int("HEADPOSE_RANSAC_ITERATIONS", config.solver.ransac_iterations),
        refine_iterations=_get_env_int("HEADPOSE_REFINE_ITERATIONS", config.solver.refine_iterations),
    )
    stabilizer = replace(
        config.stabilizer,
        use_kalman=_get_env_bool("HEADPOSE_USE_KALMAN", config.stabilizer.use_kalman),
        prediction_fraction=_get_env_float("HEADPOSE_PREDICTION_FRACTION", config.stabilizer.prediction_fraction),
        jitter_window=_get_env_int("HEADPOSE_JITTER_WINDOW", config.stabilizer.jitter_window),
    )
    quality = replace(
        config.quality,
        history_size=_get_env_int("HEADPOSE_QUALITY_HISTORY", config.quality.history_size),
        max_recovery_attempts=_get_env_int("HEADPOSE_MAX_RECOVERY_ATTEMPTS", config.quality.max_recovery_attempts),
    )
    return TrackingConfig(calibration=calibration, solver=solver, stabilizer=stabilizer, quality=quality)


def _load_toml_file(path: Path) -> Dict[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _coerce_section(cls: type, base: Any, raw: Any) -> Any:
    """Merge a raw mapping onto a settings dataclass, ignoring unknown keys."""
    if not isinstance(raw, Mapping):
        return base
    updates: Dict[str, Any] = {}
    for item in fields(cls):
        if item.name not in raw:
            continue
        value = raw[item.name]
        current = getattr(base, item.name)
        if isinstance(current, tuple) and len(current) == 2 and isinstance(current[0], float):
            updates[item.name] = _coerce_range_tuple(value, current)
        elif isinstance(current, tuple):
            try:
                updates[item.name] = tuple(int(v) for v in value)
            except (TypeError, ValueError):
                continue
        elif isinstance(current, Mapping):
            if isinstance(value, Mapping):
                merged = dict(current)
                merged.update({str(k): float(v) for k, v in value.items()})
                updates[item.name] = merged
        elif isinstance(current, bool):
            updates[item.name] = bool(value)
        elif isinstance(current, int) or (current is None and item.name.endswith("seed")):
            updates[item.name] = None if value is None else int(value)
        else:
            updates[item.name] = float(value)
    return replace(base, **updates)


def load_config_from_file(config_path: Path | str) -> TrackingConfig:
    """Load tracking config from TOML or JSON and apply env var overrides.

    Env vars take precedence over file values. Supports either root-level
    stage tables or a [tracking] table containing them.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    if not path.is_file():
        raise ValueError(f"Expected a config file, but got a directory: {path}")

    suffix = path.suffix.lower()
    if suffix == ".toml":
        raw_config = _load_toml_file(path)
    elif suffix == ".json":
        with path.open("r", encoding="utf-8") as handle:
            raw_config = json.load(handle)
    else:
        raise ValueError(f"Unsupported config format for {path}; expected .toml or .json.")

    body = raw_config.get("tracking", raw_config) if isinstance(raw_config, dict) else raw_config
    if not isinstance(body, dict):
        raise ValueError("Invalid config structure; expected a dict or a [tracking] section.")

    base = TrackingConfig()
    try:
        config = TrackingConfig(
            calibration=_coerce_section(CalibrationSettings, base.calibration, body.get("calibration")),
            solver=_coerce_section(SolverSettings, base.solver, body.get("solver")),
            stabilizer=_coerce_section(StabilizerSettings, base.stabilizer, body.get("stabilizer")),
            quality=_coerce_section(QualitySettings, base.quality, body.get("quality")),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value in {path}: {exc}") from exc
    return _apply_env_overrides(config)


def _warn(message: str) -> None:
    warnings.warn(message, RuntimeWarning, stacklevel=3)
    logger.warning(message)


def _check_calibration(settings: CalibrationSettings) -> None:
    low, high = settings.focal_length_range
    if not 0 < low < high:
        _warn(f"Calibration focal range {low}-{high} is inverted or non-positive.")
    low_px, high_px = settings.pixel_distance_range
    if not 0 < low_px < high_px:
        _warn(f"Calibration eye pixel range {low_px}-{high_px} is inverted or non-positive.")
    if settings.min_samples > settings.max_samples:
        _warn(
            f"Calibration min_samples={settings.min_samples} exceeds max_samples={settings.max_samples}; "
            "calibration can never complete."
        )
    if settings.stable_variance > settings.max_variance:
        _warn("Calibration stable_variance exceeds max_variance; stability gate is ineffective.")


def _check_solver(settings: SolverSettings) -> None:
    if settings.min_correspondences < 6:
        _warn(f"Solver min_correspondences={settings.min_correspondences} is below the 6 pairs a pose requires.")
    if settings.ransac_sample_size < 4:
        _warn(f"RANSAC sample size {settings.ransac_sample_size} cannot constrain a 6-DoF pose.")
    if not 0.0 < settings.ransac_early_stop_ratio <= 1.0:
        _warn(f"RANSAC early stop ratio {settings.ransac_early_stop_ratio} is outside (0, 1].")


def _check_stabilizer(settings: StabilizerSettings) -> None:
    if settings.jitter_window % 2 == 0:
        _warn(f"Jitter window {settings.jitter_window} is even; odd windows are expected.")
    if settings.jitter_window < settings.jitter_min_samples:
        _warn(
            f"Jitter window {settings.jitter_window} is smaller than jitter_min_samples "
            f"{settings.jitter_min_samples}; suppression never engages."
        )
    if not 0.0 <= settings.kalman_blend <= 1.0:
        _warn(f"Kalman blend {settings.kalman_blend} is outside [0, 1].")
    if not (0.0 < settings.des_alpha <= 1.0 and 0.0 <= settings.des_gamma <= 1.0):
        _warn(f"Double exponential alpha/gamma {settings.des_alpha}/{settings.des_gamma} are outside (0, 1].")


def _check_quality(settings: QualitySettings) -> None:
    total = float(sum(settings.metric_weights.values()))
    if not 0.99 <= total <= 1.01:
        _warn(f"Quality metric weights sum to {total:.2f} (expected ~1.0).")
    missing = set(DEFAULT_METRIC_WEIGHTS) - set(settings.metric_weights)
    if missing:
        _warn(f"Quality metric weights missing for: {', '.join(sorted(missing))}.")
    ladder = (
        settings.excellent_threshold,
        settings.good_threshold,
        settings.acceptable_threshold,
        settings.poor_threshold,
        settings.critical_threshold,
    )
    if any(upper <= lower for upper, lower in zip(ladder, ladder[1:])):
        _warn(f"Quality thresholds {ladder} are not strictly descending.")


def validate_config_values(config: Optional[TrackingConfig] = None) -> None:
    """Validate config values and emit warnings for suspicious settings."""
    config = config or DEFAULT_CONFIG
    _check_calibration(config.calibration)
    _check_solver(config.solver)
    _check_stabilizer(config.stabilizer)
    _check_quality(config.quality)


def print_config(config: Optional[TrackingConfig] = None) -> None:
    """Print configuration values for debugging purposes."""
    config = config or DEFAULT_CONFIG
    print("Head pose tracking configuration:")
    for section, values in config.as_dict().items():
        print(f"  [{section}]")
        for key, value in values.items():
            print(f"    {key}: {value}")


DEFAULT_CONFIG = _apply_env_overrides(TrackingConfig())

__all__ = [
    "TRACKING_LOGGER",
    "CalibrationSettings",
    "SolverSettings",
    "StabilizerSettings",
    "QualitySettings",
    "TrackingConfig",
    "DEFAULT_CONFIG",
    "DEFAULT_METRIC_WEIGHTS",
    "DEFAULT_METRIC_THRESHOLDS",
    "load_config_from_file",
    "validate_config_values",
    "print_config",
]

# Run validation at import to surface misconfigurations early.
validate_config_values()
