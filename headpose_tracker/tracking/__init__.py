"""Head pose tracking core for eyewear try-on.

Lazily imported so that configuration and storage tooling (profile
management, ``show-config``) does not pay for scipy and the solver stack.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "TrackingPipeline",
    "RecordedLandmarkSource",
    "FrameResult",
    "CanonicalFaceModel",
    "build_correspondences",
    "CameraCalibrator",
    "CalibrationService",
    "PoseSolver",
    "Stabilizer",
    "QualityMonitor",
    "QualityListener",
    "TrackingState",
    "RecoveryStrategy",
    "TrackingObservation",
    "TRACKING_LOGGER",
    "DEFAULT_CONFIG",
    "TrackingConfig",
    "load_config_from_file",
    "validate_config_values",
    "print_config",
]

_CONFIG_EXPORTS = {
    "TRACKING_LOGGER",
    "DEFAULT_CONFIG",
    "TrackingConfig",
    "load_config_from_file",
    "validate_config_values",
    "print_config",
}

_QUALITY_EXPORTS = {
    "QualityMonitor",
    "QualityListener",
    "TrackingState",
    "RecoveryStrategy",
    "TrackingObservation",
}

_PIPELINE_EXPORTS = {"TrackingPipeline", "RecordedLandmarkSource", "FrameResult"}


def __getattr__(name: str) -> Any:  # pragma: no cover - exercised indirectly
    if name in _CONFIG_EXPORTS:
        from . import config as _config

        return getattr(_config, name)
    if name in _QUALITY_EXPORTS:
        from . import quality as _quality

        return getattr(_quality, name)
    if name in _PIPELINE_EXPORTS:
        from . import pipeline as _pipeline

        return getattr(_pipeline, name)
    if name in {"CanonicalFaceModel", "build_correspondences"}:
        from . import face_model as _face_model

        return getattr(_face_model, name)
    if name in {"CameraCalibrator", "CalibrationService"}:
        from . import calibration as _calibration

        return getattr(_calibration, name)
    if name == "PoseSolver":
        from .pose_estimation import PoseSolver

        return PoseSolver
    if name == "Stabilizer":
        from .stabilization import Stabilizer

        return Stabilizer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:  # pragma: no cover - trivial
    return sorted(set(list(globals()) + __all__))
