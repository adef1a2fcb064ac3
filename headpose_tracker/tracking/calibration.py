"""Runtime focal length calibration from interpupillary distance.

Uses the average adult interpupillary distance as a metric reference: with
the subject at the assumed viewing distance, similar triangles give
``focal_px = eye_distance_px * viewing_distance_mm / ipd_mm``. Samples are
averaged with exponential time weighting and only accepted when their
spread is small.
"""

from __future__ import annotations

import math
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import numpy as np

from headpose_tracker.models import (
    CalibrationProfile,
    CameraIntrinsics,
    LandmarkSet,
    ValidationError,
)
from headpose_tracker.storage import ProfileStore, profile_key
from headpose_tracker.tracking.config import DEFAULT_CONFIG, TRACKING_LOGGER as logger, CalibrationSettings

Clock = Callable[[], float]


def _eye_centre(landmarks: LandmarkSet, corners: Tuple[int, int]) -> Optional[Tuple[float, float]]:
    points = [landmarks.get(index) for index in corners]
    if any(point is None or not point.is_finite() for point in points):
        return None
    xs = [float(point.x) for point in points]  # type: ignore[union-attr]
    ys = [float(point.y) for point in points]  # type: ignore[union-attr]
    return sum(xs) / len(xs), sum(ys) / len(ys)


class CameraCalibrator:
    """Collects focal length samples and produces a time-weighted stable estimate."""

    def __init__(self, settings: CalibrationSettings | None = None, *, clock: Clock = time.monotonic) -> None:
        self.settings = settings or DEFAULT_CONFIG.calibration
        self._clock = clock
        self._samples: Deque[Tuple[float, float]] = deque(maxlen=int(self.settings.max_samples))
        self._focal_length: float | None = None
        self._variance: float | None = None
        self._last_calibrated: float | None = None

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def focal_length(self) -> float | None:
        """Last accepted calibrated focal length, if any."""
        return self._focal_length

    def estimate_focal_length(
        self,
        landmarks: LandmarkSet | None,
        image_width: int,
        image_height: int | None = None,
    ) -> float | None:
        """Single-frame focal length candidate, or None when implausible."""
        if landmarks is None or landmarks.is_empty or image_width <= 0:
            return None
        right = _eye_centre(landmarks, self.settings.right_eye_corners)
        left = _eye_centre(landmarks, self.settings.left_eye_corners)
        if right is None or left is None:
            return None
        height = image_height if image_height and image_height > 0 else image_width
        dx = (left[0] - right[0]) * float(image_width)
        dy = (left[1] - right[1]) * float(height)
        pixel_distance = math.hypot(dx, dy)

        low_px, high_px = self.settings.pixel_distance_range
        if not math.isfinite(pixel_distance) or not low_px <= pixel_distance <= high_px:
            logger.debug("Eye distance %.1f px outside [%s, %s]; no focal sample", pixel_distance, low_px, high_px)
            return None

        focal = pixel_distance * self.settings.viewing_distance_mm / self.settings.interpupillary_distance_mm
        low_f, high_f = self.settings.focal_length_range
        if not low_f <= focal <= high_f:
            logger.debug("Focal candidate %.1f px outside [%s, %s]", focal, low_f, high_f)
            return None
        return focal

    def add_sample(self, focal_length: float) -> bool:
        """Append a timestamped sample; the oldest is evicted when the buffer is full."""
        low_f, high_f = self.settings.focal_length_range
        if not math.isfinite(focal_length) or not low_f <= focal_length <= high_f:
            return False
        self._samples.append((self._clock(), float(focal_length)))
        return True

    def _weighted_stats(self) -> Tuple[float, float]:
        now = self._clock()
        stamps = np.array([stamp for stamp, _ in self._samples], dtype=float)
        values = np.array([value for _, value in self._samples], dtype=float)
        ages = np.maximum(now - stamps, 0.0)
        weights = np.power(0.5, ages / max(self.settings.half_life_s, 1e-6))
        total = float(np.sum(weights))
        if total <= 0.0:
            weights = np.ones_like(values)
            total = float(values.size)
        mean = float(np.sum(weights * values) / total)
        variance = float(np.sum(weights * (values - mean) ** 2) / total)
        return mean, variance

    def calibrated_focal_length(self) -> float | None:
        """Time-weighted focal length over all buffered samples, or None if rejected."""
        if len(self._samples) < self.settings.min_samples:
            return None
        mean, variance = self._weighted_stats()
        low_f, high_f = self.settings.focal_length_range
        if not low_f <= mean <= high_f:
            logger.warning("Calibrated focal length %.1f px out of range; still calibrating", mean)
            return None
        if variance > self.settings.max_variance:
            logger.warning(
                "Calibration variance %.0f exceeds %.0f (subject moving?); still calibrating",
                variance,
                self.settings.max_variance,
            )
            return None
        self._focal_length = mean
        self._variance = variance
        self._last_calibrated = self._clock()
        logger.debug("Calibration accepted: %.1f px (variance %.1f, %d samples)", mean, variance, len(self._samples))
        return mean

    def is_stable(self) -> bool:
        if self._focal_length is None or self._variance is None or self._last_calibrated is None:
            return False
        if self._variance >= self.settings.stable_variance:
            return False
        return (self._clock() - self._last_calibrated) < self.settings.stability_window_s

    def status(self) -> Dict[str, Any]:
        return {
            "calibrated": self._focal_length is not None,
            "focal_length": self._focal_length,
            "variance": self._variance,
            "samples": len(self._samples),
            "min_samples": self.settings.min_samples,
            "stable": self.is_stable(),
        }

    def reset(self) -> None:
        self._samples.clear()
        self._focal_length = None
        self._variance = None
        self._last_calibrated = None


class CalibrationService:
    """
    Per-pipeline owner of camera intrinsics.

    Combines the runtime calibrator with an optional profile store: a stored
    profile for the current device and resolution is trusted immediately,
    otherwise intrinsics start from a size-based guess and are replaced only
    when the calibrator accepts a full re-average of its samples.
    """

    def __init__(
        self,
        width: int,
        height: int,
        *,
        store: ProfileStore | None = None,
        device_id: str = "default",
        settings: CalibrationSettings | None = None,
        clock: Clock = time.monotonic,
        wall_clock: Clock = time.time,
    ) -> None:
        self.settings = settings or DEFAULT_CONFIG.calibration
        self.store = store
        self.device_id = device_id
        self._clock = clock
        self._wall_clock = wall_clock
        self.calibrator = CameraCalibrator(self.settings, clock=clock)
        self._intrinsics = CameraIntrinsics.default_for(width, height)
        self._profile_loaded = False
        self._persisted_focal: float | None = None
        self._last_attempt: float | None = None

    @property
    def intrinsics(self) -> CameraIntrinsics:
        return self._intrinsics

    @property
    def device_key(self) -> str:
        return profile_key(self.device_id, self._intrinsics.image_width, self._intrinsics.image_height)

    @property
    def is_trusted(self) -> bool:
        return self._profile_loaded or self.calibrator.is_stable()

    @property
    def confidence_factor(self) -> float:
        return 1.0 if self.is_trusted else float(self.settings.untrusted_confidence_factor)

    def load_profile(self) -> bool:
        """Best-effort load of the stored profile for this device and resolution."""
        if self.store is None:
            return False
        key = self.device_key
        try:
            profile = self.store.load(key)
        except (OSError, ValueError) as exc:
            logger.warning("Could not load camera profile %s: %s", key, exc)
            return False
        if profile is None:
            logger.info("No stored camera profile for %s; calibrating at runtime", key)
            return False
        try:
            self._intrinsics = self._intrinsics.with_focal_length(profile.focal_length)
        except ValidationError as exc:
            logger.warning("Ignoring stored camera profile %s: %s", key, exc)
            return False
        self._profile_loaded = True
        self._persisted_focal = profile.focal_length
        logger.info("Loaded camera profile %s (focal %.1f px)", key, profile.focal_length)
        return True

    def observe(self, landmarks: LandmarkSet | None) -> CameraIntrinsics:
        """Feed one frame of landmarks and return the intrinsics to use for it."""
        width = self._intrinsics.image_width
        height = self._intrinsics.image_height
        candidate = self.calibrator.estimate_focal_length(landmarks, width, height)
        if candidate is not None:
            self.calibrator.add_sample(candidate)

        if self.calibrator.sample_count < self.settings.min_samples:
            return self._intrinsics
        now = self._clock()
        due = (
            self.calibrator.focal_length is None
            or self._last_attempt is None
            or (now - self._last_attempt) >= self.settings.recalibration_interval_s
        )
        if not due:
            return self._intrinsics
        self._last_attempt = now
        focal = self.calibrator.calibrated_focal_length()
        if focal is not None:
            self._accept(focal)
        return self._intrinsics

    def _accept(self, focal: float) -> None:
        try:
            self._intrinsics = self._intrinsics.with_focal_length(focal)
        except ValidationError as exc:
            logger.warning("Calibrated focal length rejected: %s", exc)
            return
        previous = self._persisted_focal
        changed = previous is None or abs(focal - previous) / previous > self.settings.profile_change_fraction
        if not changed:
            return
        logger.info("Camera calibrated for %s: focal %.1f px", self.device_key, focal)
        self._persist(focal)

    def _persist(self, focal: float) -> None:
        if self.store is None:
            self._persisted_focal = focal
            return
        profile = CalibrationProfile(
            device_key=self.device_key,
            focal_length=focal,
            sample_count=self.calibrator.sample_count,
            timestamp=self._wall_clock(),
            width=self._intrinsics.image_width,
            height=self._intrinsics.image_height,
        )
        try:
            self.store.save(profile)
        except (OSError, ValueError) as exc:
            logger.warning("Could not save camera profile %s: %s", profile.device_key, exc)
            return
        self._persisted_focal = focal

    def resize(self, width: int, height: int) -> CameraIntrinsics:
        """Switch resolution: calibration restarts and the matching profile is loaded."""
        if (width, height) == (self._intrinsics.image_width, self._intrinsics.image_height):
            return self._intrinsics
        self._intrinsics = CameraIntrinsics.default_for(width, height)
        self.reset()
        self.load_profile()
        return self._intrinsics

    def reset(self) -> None:
        self.calibrator.reset()
        self._profile_loaded = False
        self._persisted_focal = None
        self._last_attempt = None
        self._intrinsics = CameraIntrinsics.default_for(self._intrinsics.image_width, self._intrinsics.image_height)

    def status(self) -> Dict[str, Any]:
        payload = self.calibrator.status()
        payload.update(
            {
                "device_key": self.device_key,
                "focal_length_in_use": self._intrinsics.focal_length,
                "profile_loaded": self._profile_loaded,
                "trusted": self.is_trusted,
            }
        )
        return payload
