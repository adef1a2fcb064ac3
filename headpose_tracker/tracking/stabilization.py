"""Pose stabilization cascade.

Per channel: jitter suppression -> One-Euro low-pass -> confidence-weighted
Kalman blend -> double exponential smoothing with latency prediction
(position only). Rotation channels are Euler angles unwrapped against the
previous frame; the final rotation is slerped toward the filtered target.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

from headpose_tracker.models import PoseMeasurement, StabilizedPose
from headpose_tracker.tracking.config import DEFAULT_CONFIG, TRACKING_LOGGER as logger, StabilizerSettings
from headpose_tracker.tracking.utils.filtering import (
    ConstantVelocityKalman,
    DoubleExponentialSmoother,
    JitterSuppressor,
    OneEuroFilter,
)


def slerp(start: np.ndarray, end: np.ndarray, fraction: float) -> np.ndarray:
    """Spherical interpolation between two (x, y, z, w) quaternions."""
    fraction = float(np.clip(fraction, 0.0, 1.0))
    if fraction <= 0.0:
        return np.asarray(start, dtype=float).copy()
    if fraction >= 1.0:
        return np.asarray(end, dtype=float).copy()
    keys = Rotation.from_quat(np.vstack([start, end]))
    return Slerp([0.0, 1.0], keys)([fraction]).as_quat()[0]


def unwrap_angles(angles: np.ndarray, reference: Optional[np.ndarray]) -> np.ndarray:
    """Shift each angle by a multiple of 2*pi to sit closest to ``reference``."""
    if reference is None:
        return angles
    return reference + np.angle(np.exp(1j * (angles - reference)))


class Stabilizer:
    """Turns noisy per-frame measurements into a temporally coherent pose.

    Owns all filter state for one tracked subject. ``update`` returns a
    snapshot; the internal pose is never handed out for mutation.
    """

    def __init__(self, settings: StabilizerSettings | None = None) -> None:
        self.settings = settings or DEFAULT_CONFIG.stabilizer
        self._build_filters()

    def _build_filters(self) -> None:
        s = self.settings
        position_cutoff = np.array(
            [s.position_min_cutoff, s.position_min_cutoff, s.position_min_cutoff * s.position_z_cutoff_factor]
        )
        self._position_jitter = JitterSuppressor(
            window=s.jitter_window, threshold=s.position_jitter_variance, min_samples=s.jitter_min_samples
        )
        self._rotation_jitter = JitterSuppressor(
            window=s.jitter_window, threshold=s.rotation_jitter_variance, min_samples=s.jitter_min_samples
        )
        self._scale_jitter = JitterSuppressor(
            window=s.jitter_window, threshold=s.scale_jitter_variance, min_samples=s.jitter_min_samples
        )
        self._position_euro = OneEuroFilter(
            min_cutoff=position_cutoff, beta=s.position_beta, derivative_cutoff=s.derivative_cutoff
        )
        self._rotation_euro = OneEuroFilter(
            min_cutoff=s.rotation_min_cutoff, beta=s.rotation_beta, derivative_cutoff=s.derivative_cutoff
        )
        self._scale_euro = OneEuroFilter(
            min_cutoff=s.scale_min_cutoff, beta=s.scale_beta, derivative_cutoff=s.derivative_cutoff
        )
        self._position_kalman = ConstantVelocityKalman(
            process_noise=s.kalman_process_noise, measurement_noise=s.kalman_measurement_noise
        )
        self._rotation_kalman = ConstantVelocityKalman(
            process_noise=s.kalman_process_noise, measurement_noise=s.kalman_measurement_noise
        )
        self._trend = DoubleExponentialSmoother(alpha=s.des_alpha, gamma=s.des_gamma)
        self._pose: Optional[StabilizedPose] = None
        self._euler_reference: Optional[np.ndarray] = None
        self._elapsed = s.default_frame_interval_s
        self._updates = 0

    @property
    def is_initialized(self) -> bool:
        return self._pose is not None

    @property
    def pose(self) -> Optional[StabilizedPose]:
        return None if self._pose is None else self._pose.copy()

    def update(self, measurement: PoseMeasurement) -> StabilizedPose:
        """Filter one measurement and return the stabilized pose snapshot."""
        s = self.settings
        position = np.asarray(measurement.position, dtype=float)
        quaternion = Rotation.from_quat(measurement.rotation).as_quat()
        scale = np.asarray(measurement.scale, dtype=float)
        confidence = float(np.clip(measurement.confidence, 0.0, 1.0)) if math.isfinite(measurement.confidence) else 0.0
        euler = unwrap_angles(Rotation.from_quat(quaternion).as_euler("xyz"), self._euler_reference)
        self._euler_reference = euler

        if self._pose is None:
            raw_quaternion = np.asarray(measurement.rotation, dtype=float)
            return self._snap(position, raw_quaternion, scale, measurement.timestamp)

        elapsed = float(measurement.timestamp) - self._pose.timestamp
        if not math.isfinite(elapsed) or elapsed <= 0.0:
            elapsed = s.default_frame_interval_s
        timestamp = self._pose.timestamp + elapsed
        self._elapsed = elapsed
        cutoff_scale = max(s.min_confidence_scale, confidence)

        position_raw = self._position_jitter.filter(position)
        euler_raw = self._rotation_jitter.filter(euler)
        scale_raw = self._scale_jitter.filter(scale)

        position_lp = self._position_euro.filter(position_raw, timestamp, cutoff_scale=cutoff_scale)
        euler_lp = self._rotation_euro.filter(euler_raw, timestamp, cutoff_scale=cutoff_scale)
        scale_lp = self._scale_euro.filter(scale_raw, timestamp, cutoff_scale=cutoff_scale)
        target = Rotation.from_euler("xyz", euler_lp).as_quat()

        if s.use_kalman:
            weight = confidence * s.kalman_blend
            position_kf = self._position_kalman.filter(position_raw, timestamp, confidence=confidence)
            euler_kf = self._rotation_kalman.filter(euler_raw, timestamp, confidence=confidence)
            position_lp = (1.0 - weight) * position_lp + weight * position_kf
            target = slerp(target, Rotation.from_euler("xyz", euler_kf).as_quat(), weight)

        level = self._trend.update(position_lp)
        trend = self._trend.trend
        output_position = self._trend.predict(s.prediction_fraction) if s.use_prediction else level
        rotation = slerp(self._pose.rotation, target, s.rotation_slerp_factor)

        self._pose = StabilizedPose(
            position=output_position,
            rotation=rotation,
            scale=scale_lp,
            velocity=trend / elapsed,
            timestamp=timestamp,
        )
        self._updates += 1
        return self._pose.copy()

    def _snap(self, position: np.ndarray, quaternion: np.ndarray, scale: np.ndarray, timestamp: float) -> StabilizedPose:
        """First measurement: seed every filter and return it unfiltered."""
        euler = self._euler_reference if self._euler_reference is not None else np.zeros(3)
        t = float(timestamp) if math.isfinite(timestamp) else 0.0
        self._position_jitter.filter(position)
        self._rotation_jitter.filter(euler)
        self._scale_jitter.filter(scale)
        self._position_euro.filter(position, t)
        self._rotation_euro.filter(euler, t)
        self._scale_euro.filter(scale, t)
        self._position_kalman.filter(position, t)
        self._rotation_kalman.filter(euler, t)
        self._trend.update(position)
        self._pose = StabilizedPose(
            position=position.copy(),
            rotation=quaternion.copy(),
            scale=scale.copy(),
            velocity=np.zeros(3),
            timestamp=t,
        )
        self._updates = 1
        logger.debug("Stabilizer initialised at position %s", np.round(position, 1).tolist())
        return self._pose.copy()

    def metrics(self) -> Dict[str, Any]:
        jitter = self._position_jitter.jitter_level()
        return {
            "updates": self._updates,
            "jitter_mm": jitter,
            "smoothness": 1.0 / (1.0 + jitter),
            "latency_compensation_ms": (
                self.settings.prediction_fraction * self._elapsed * 1000.0 if self.settings.use_prediction else 0.0
            ),
        }

    def reset(self) -> None:
        """Discard all filter state; the next update snaps to its measurement."""
        self._build_filters()
