"""Per-frame head tracking driver for one subject."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from headpose_tracker.models import (
    LandmarkSet,
    PoseEstimate,
    PoseMeasurement,
    StabilizedPose,
    ValidationError,
)
from headpose_tracker.storage import ProfileStore
from headpose_tracker.tracking.calibration import CalibrationService
from headpose_tracker.tracking.config import DEFAULT_CONFIG, TRACKING_LOGGER as logger, TrackingConfig
from headpose_tracker.tracking.face_model import CanonicalFaceModel, build_correspondences
from headpose_tracker.tracking.pose_estimation.solver import PoseSolver
from headpose_tracker.tracking.quality import (
    QualityAssessment,
    QualityListener,
    QualityMonitor,
    RecoveryStrategy,
    TrackingObservation,
    TrackingState,
)
from headpose_tracker.tracking.stabilization import Stabilizer

# Landmarks reported with lower presence count as occluded.
OCCLUSION_PRESENCE_THRESHOLD = 0.5

Frame = Tuple[float, LandmarkSet]


class LandmarkSource(Protocol):
    """Anything that yields ``(timestamp_s, LandmarkSet)`` frames at a fixed resolution."""

    width: int
    height: int

    def __iter__(self) -> Iterator[Frame]: ...


class RecordedLandmarkSource:
    """Landmark frames replayed from a JSON recording."""

    def __init__(self, width: int, height: int, frames: Iterable[Frame]) -> None:
        if int(width) <= 0 or int(height) <= 0:
            raise ValidationError(f"Recording size must be positive; received {width}x{height}.")
        self.width = int(width)
        self.height = int(height)
        self.frames: List[Frame] = list(frames)

    @classmethod
    def from_payload(cls, payload: Any) -> "RecordedLandmarkSource":
        if not isinstance(payload, dict):
            raise ValidationError("Recording must be a JSON object.")
        try:
            width = int(payload["width"])
            height = int(payload["height"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("Recording needs integer 'width' and 'height'.") from exc
        raw_frames = payload.get("frames")
        if not isinstance(raw_frames, list):
            raise ValidationError("Recording needs a 'frames' list.")

        frames: List[Frame] = []
        for position, entry in enumerate(raw_frames):
            if not isinstance(entry, dict):
                raise ValidationError(f"Frame {position} must be an object.")
            try:
                timestamp = float(entry["timestamp_ms"]) / 1000.0
                confidence = float(entry.get("confidence", 1.0))
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError(f"Frame {position} needs a numeric 'timestamp_ms'.") from exc
            rows = entry.get("landmarks") or []
            if not isinstance(rows, list):
                raise ValidationError(f"Frame {position} landmarks must be a list.")
            landmarks = LandmarkSet.from_rows(rows, confidence) if rows else LandmarkSet.empty()
            frames.append((timestamp, landmarks))
        return cls(width, height, frames)

    @classmethod
    def from_file(cls, path: Path | str) -> "RecordedLandmarkSource":
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Could not parse recording {path}: {exc}") from exc
        return cls.from_payload(payload)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "frames": [
                {
                    "timestamp_ms": timestamp * 1000.0,
                    "confidence": landmarks.confidence,
                    "landmarks": landmarks.to_rows(),
                }
                for timestamp, landmarks in self.frames
            ],
        }

    def save(self, path: Path | str) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with NamedTemporaryFile("w", dir=path.parent, delete=False, encoding="utf-8") as tmp:
            json.dump(self.to_payload(), tmp)
            temp_path = Path(tmp.name)
        temp_path.replace(path)
        return path

    def __iter__(self) -> Iterator[Frame]:
        return iter(self.frames)

    def __len__(self) -> int:
        return len(self.frames)


@dataclass(frozen=True)
class FrameResult:
    """Everything produced for one frame; ``pose`` is the held pose when nothing was solved."""

    frame_index: int
    timestamp: float
    correspondences: int
    focal_length: float
    estimate: Optional[PoseEstimate]
    measurement: Optional[PoseMeasurement]
    pose: Optional[StabilizedPose]
    assessment: QualityAssessment

    @property
    def solved(self) -> bool:
        return self.estimate is not None

    def to_record(self) -> Dict[str, Any]:
        """Flat row for tabular export; angles in degrees, positions in mm."""
        record: Dict[str, Any] = {
            "frame": self.frame_index,
            "timestamp": self.timestamp,
            "solved": self.solved,
            "correspondences": self.correspondences,
            "focal_length": self.focal_length,
            "reprojection_error": math.nan,
            "confidence": math.nan,
            "inlier_ratio": math.nan,
            "quality": self.assessment.overall_quality,
            "state": self.assessment.tracking_state.value,
            "predicted_loss": self.assessment.predicted_loss,
            "strategy": self.assessment.recommended_strategy.value,
        }
        if self.estimate is not None:
            record["reprojection_error"] = self.estimate.reprojection_error
            record["confidence"] = self.estimate.confidence
            record["inlier_ratio"] = self.estimate.inlier_ratio
        raw_position: Any = [math.nan] * 3
        raw_euler: Any = [math.nan] * 3
        if self.measurement is not None:
            raw_position = self.measurement.position
            raw_euler = np.degrees(Rotation.from_quat(self.measurement.rotation).as_euler("xyz"))
        position: Any = [math.nan] * 3
        euler: Any = [math.nan] * 3
        if self.pose is not None:
            position = self.pose.position
            euler = np.degrees(self.pose.euler)
        for axis, raw, smooth in zip("xyz", raw_position, position):
            record[f"raw_{axis}"] = float(raw)
            record[axis] = float(smooth)
        for name, raw, smooth in zip(("pitch", "yaw", "roll"), raw_euler, euler):
            record[f"raw_{name}"] = float(raw)
            record[name] = float(smooth)
        return record


class TrackingPipeline:
    """
    Wires calibration, correspondence building, pose solving, stabilization
    and quality monitoring for one tracked subject.

    The pipeline is driven by frame timestamps: calibration weighting and
    recovery timing use the time of the frame being processed, so a replayed
    recording behaves exactly like the live session it came from.
    """

    def __init__(
        self,
        width: int,
        height: int,
        *,
        config: TrackingConfig | None = None,
        model: CanonicalFaceModel | None = None,
        store: ProfileStore | None = None,
        device_id: str = "default",
        listeners: Iterable[QualityListener] = (),
        seed: Optional[int] = None,
    ) -> None:
        self.config = config or DEFAULT_CONFIG
        self.model = model or CanonicalFaceModel()
        self._now = 0.0
        self.calibration = CalibrationService(
            width,
            height,
            store=store,
            device_id=device_id,
            settings=self.config.calibration,
            clock=self._frame_clock,
        )
        self.solver = PoseSolver(self.config.solver, seed=seed)
        self.stabilizer = Stabilizer(self.config.stabilizer)
        self.quality = QualityMonitor(self.config.quality, clock=self._frame_clock, listeners=listeners)
        self.frame_index = 0
        self.calibration.load_profile()

    def _frame_clock(self) -> float:
        return self._now

    @property
    def width(self) -> int:
        return self.calibration.intrinsics.image_width

    @property
    def height(self) -> int:
        return self.calibration.intrinsics.image_height

    def add_listener(self, listener: QualityListener) -> None:
        self.quality.add_listener(listener)

    def _visibility(self, landmarks: LandmarkSet) -> Tuple[float, float]:
        """On-screen ratio and occluded ratio over the model's mapped landmarks."""
        indices = self.model.landmark_indices
        if not indices:
            return 0.0, 1.0
        on_screen = 0
        occluded = 0
        for index in indices:
            point = landmarks.get(index)
            if point is None or not point.is_finite():
                occluded += 1
                continue
            if 0.0 <= point.x <= 1.0 and 0.0 <= point.y <= 1.0:
                on_screen += 1
            if not point.presence >= OCCLUSION_PRESENCE_THRESHOLD:
                occluded += 1
        return on_screen / len(indices), occluded / len(indices)

    def process_frame(self, landmarks: LandmarkSet | None, timestamp_s: float) -> FrameResult:
        """Run one frame through the whole chain and return what it produced."""
        self._now = float(timestamp_s)
        index = self.frame_index
        self.frame_index += 1
        intrinsics = self.calibration.observe(landmarks)

        if landmarks is None or landmarks.is_empty:
            assessment = self.quality.update(None, timestamp=self._now)
            return FrameResult(
                frame_index=index,
                timestamp=self._now,
                correspondences=0,
                focal_length=intrinsics.focal_length,
                estimate=None,
                measurement=None,
                pose=self.stabilizer.pose,
                assessment=assessment,
            )

        pairs = build_correspondences(landmarks, self.model, intrinsics.image_width, intrinsics.image_height)
        estimate = self.solver.solve(pairs, intrinsics, confidence_scale=self.calibration.confidence_factor)
        visibility, occlusion = self._visibility(landmarks)

        measurement: Optional[PoseMeasurement] = None
        pose = self.stabilizer.pose
        if estimate is not None:
            depth = float(estimate.translation[2])
            scale = self.config.calibration.viewing_distance_mm / depth if depth > 0 else 1.0
            detector_confidence = float(np.clip(landmarks.confidence, 0.0, 1.0)) if math.isfinite(landmarks.confidence) else 0.0
            measurement = PoseMeasurement.from_estimate(
                estimate,
                timestamp=self._now,
                scale=scale,
                confidence=estimate.confidence * detector_confidence,
            )
            pose = self.stabilizer.update(measurement)

        observation = TrackingObservation(
            landmark_confidence=landmarks.confidence,
            pose_stability=self.solver.stability_score() if estimate is not None else 0.0,
            reprojection_error=None if estimate is None else estimate.reprojection_error,
            face_visibility=visibility,
            occlusion_level=occlusion,
        )
        assessment = self.quality.update(observation, timestamp=self._now)
        return FrameResult(
            frame_index=index,
            timestamp=self._now,
            correspondences=len(pairs),
            focal_length=intrinsics.focal_length,
            estimate=estimate,
            measurement=measurement,
            pose=pose,
            assessment=assessment,
        )

    def apply_recovery(self, strategy: RecoveryStrategy) -> bool:
        """
        Perform the pipeline-side part of a recovery strategy.

        Returns True when the caller must also act (restart or degrade the
        landmark detector); False when the pipeline handled it alone.
        """
        logger.info("Applying recovery strategy %s", strategy.value)
        if strategy is RecoveryStrategy.RESET_FILTERS:
            self.stabilizer.reset()
            return False
        if strategy is RecoveryStrategy.ADJUST_THRESHOLDS:
            self.solver.relax_threshold()
            return False
        if strategy is RecoveryStrategy.REINITIALIZE:
            self.solver.reset()
            self.stabilizer.reset()
            return True
        if strategy is RecoveryStrategy.REDUCE_QUALITY:
            return True
        if strategy is RecoveryStrategy.FULL_RESET:
            self.reset()
            return True
        return False

    def resize(self, width: int, height: int) -> None:
        """Camera resolution changed: calibration, solver and filters start over."""
        if (width, height) == (self.width, self.height):
            return
        logger.info("Camera resolution changed to %dx%d", width, height)
        self.calibration.resize(width, height)
        self.solver.reset()
        self.stabilizer.reset()

    def reset(self) -> None:
        """Discard all per-subject state; a stored calibration profile is reloaded."""
        self.stabilizer.reset()
        self.solver.reset()
        self.quality.reset()
        self.calibration.reset()
        self.calibration.load_profile()

    def run(
        self,
        source: Iterable[Frame],
        *,
        auto_recover: bool = True,
        progress_callback: Callable[[int], None] | None = None,
    ) -> List[FrameResult]:
        """
        Process every frame of ``source`` in order.

        With ``auto_recover`` the pipeline applies the monitor's recovery
        attempts itself and reports the outcome on the following frame.
        """
        results: List[FrameResult] = []
        pending = False
        attempts_seen = self.quality.recovery_attempts
        for timestamp, landmarks in source:
            result = self.process_frame(landmarks, timestamp)
            results.append(result)
            if progress_callback is not None:
                progress_callback(result.frame_index)
            if not auto_recover:
                continue

            assessment = result.assessment
            if pending:
                self.quality.recovery_complete(assessment.is_tracking)
                pending = False
            if assessment.tracking_state is TrackingState.ERROR:
                self.apply_recovery(RecoveryStrategy.FULL_RESET)
                attempts_seen = 0
                continue
            if self.quality.recovery_in_progress and self.quality.recovery_attempts != attempts_seen:
                self.apply_recovery(self.quality.last_recovery_strategy or assessment.recommended_strategy)
                pending = self.quality.state is TrackingState.LOST
            attempts_seen = self.quality.recovery_attempts
        return results

    def status(self) -> Dict[str, Any]:
        return {
            "frames": self.frame_index,
            "state": self.quality.state.value,
            "quality": self.quality.overall_quality,
            "recommended_action": self.quality.recommended_action(),
            "calibration": self.calibration.status(),
            "stabilizer": self.stabilizer.metrics(),
            "ransac_threshold_px": self.solver.ransac.threshold_px,
        }
