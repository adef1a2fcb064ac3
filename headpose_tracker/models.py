from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

PROFILE_SCHEMA_VERSION = 1

# Device-plausible focal length range in pixels.
FOCAL_LENGTH_MIN = 500.0
FOCAL_LENGTH_MAX = 3000.0

# Camera frame (x right, y down, z forward) to renderer frame (y up, z toward viewer).
CAMERA_TO_RENDERER = np.diag([1.0, -1.0, -1.0])

Vector3 = Tuple[float, float, float]
Quaternion = Tuple[float, float, float, float]  # (x, y, z, w) scalar-last

__all__ = [
    "FOCAL_LENGTH_MIN",
    "FOCAL_LENGTH_MAX",
    "CAMERA_TO_RENDERER",
    "PROFILE_SCHEMA_VERSION",
    "ValidationError",
    "Landmark",
    "LandmarkSet",
    "CameraIntrinsics",
    "Correspondence",
    "PoseEstimate",
    "PoseMeasurement",
    "StabilizedPose",
    "CalibrationProfile",
    "is_plausible_focal_length",
]


class ValidationError(ValueError):
    """Raised when caller-supplied data cannot be normalised safely."""


def _finite(*values: float) -> bool:
    return all(math.isfinite(float(v)) for v in values)


def is_plausible_focal_length(value: float) -> bool:
    return _finite(value) and FOCAL_LENGTH_MIN <= float(value) <= FOCAL_LENGTH_MAX


@dataclass(frozen=True)
class Landmark:
    """One detector point: normalized image coordinates, relative depth and presence."""

    x: float
    y: float
    z: float = 0.0
    presence: float = 1.0

    def is_finite(self) -> bool:
        return _finite(self.x, self.y)

    def to_pixels(self, width: int, height: int) -> tuple[float, float]:
        return float(self.x) * float(width), float(self.y) * float(height)


@dataclass(frozen=True)
class LandmarkSet:
    """
    Landmarks for one frame plus the detector's overall confidence.

    An empty set is the detector's first-class "no subject detected" result.
    Missing points inside a populated set are stored as ``None``.
    """

    points: Tuple[Optional[Landmark], ...] = ()
    confidence: float = 0.0

    @classmethod
    def empty(cls) -> "LandmarkSet":
        return cls(points=(), confidence=0.0)

    @classmethod
    def from_rows(cls, rows: Iterable[Any], confidence: float = 1.0) -> "LandmarkSet":
        """Build a set from ``[x, y, z, presence]`` rows (``None`` for missing points)."""
        points: list[Optional[Landmark]] = []
        for position, row in enumerate(rows):
            if row is None:
                points.append(None)
                continue
            if isinstance(row, Landmark):
                points.append(row)
                continue
            if isinstance(row, Mapping):
                values = [row.get("x"), row.get("y"), row.get("z", 0.0), row.get("presence", 1.0)]
            else:
                values = list(row)
            if len(values) < 2:
                raise ValidationError(f"Landmark {position} needs at least x and y; received {row!r}.")
            try:
                x = float(values[0])
                y = float(values[1])
                z = float(values[2]) if len(values) > 2 and values[2] is not None else 0.0
                presence = float(values[3]) if len(values) > 3 and values[3] is not None else 1.0
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Landmark {position} is not numeric: {row!r}.") from exc
            points.append(Landmark(x=x, y=y, z=z, presence=presence))
        return cls(points=tuple(points), confidence=float(confidence))

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0

    def __len__(self) -> int:
        return len(self.points)

    def get(self, index: int) -> Optional[Landmark]:
        if 0 <= index < len(self.points):
            return self.points[index]
        return None

    def to_rows(self) -> list[Optional[list[float]]]:
        return [
            None if point is None else [point.x, point.y, point.z, point.presence]
            for point in self.points
        ]


@dataclass(frozen=True)
class CameraIntrinsics:
    focal_length: float
    principal_x: float
    principal_y: float
    image_width: int
    image_height: int

    def __post_init__(self) -> None:
        if int(self.image_width) <= 0 or int(self.image_height) <= 0:
            raise ValidationError(
                f"Image size must be positive; received {self.image_width}x{self.image_height}."
            )
        if not is_plausible_focal_length(self.focal_length):
            raise ValidationError(
                f"Focal length {self.focal_length} is outside [{FOCAL_LENGTH_MIN:.0f}, {FOCAL_LENGTH_MAX:.0f}] px."
            )

    @classmethod
    def default_for(cls, width: int, height: int) -> "CameraIntrinsics":
        """Uncalibrated guess: focal length ~ the larger image side, centred principal point."""
        if int(width) <= 0 or int(height) <= 0:
            raise ValidationError(f"Image size must be positive; received {width}x{height}.")
        focal = min(max(float(max(width, height)), FOCAL_LENGTH_MIN), FOCAL_LENGTH_MAX)
        return cls(
            focal_length=focal,
            principal_x=width / 2.0,
            principal_y=height / 2.0,
            image_width=int(width),
            image_height=int(height),
        )

    def with_focal_length(self, focal_length: float) -> "CameraIntrinsics":
        return replace(self, focal_length=float(focal_length))

    def matrix(self) -> np.ndarray:
        return np.array(
            [
                [self.focal_length, 0.0, self.principal_x],
                [0.0, self.focal_length, self.principal_y],
                [0.0, 0.0, 1.0],
            ],
            dtype=float,
        )


@dataclass(frozen=True)
class Correspondence:
    image_point: Tuple[float, float]
    model_point: Vector3
    landmark_index: int


@dataclass(frozen=True)
class PoseEstimate:
    """Camera-frame pose of the face model (model -> camera) for one solved frame."""

    rotation: Quaternion
    translation: Vector3
    reprojection_error: float
    confidence: float
    inlier_ratio: float
    inlier_indices: Tuple[int, ...] = ()

    @classmethod
    def from_matrix(
        cls,
        rotation_matrix: np.ndarray,
        translation: Sequence[float],
        *,
        reprojection_error: float,
        confidence: float,
        inlier_ratio: float,
        inlier_indices: Sequence[int] = (),
    ) -> "PoseEstimate":
        quat = Rotation.from_matrix(np.asarray(rotation_matrix, dtype=float)).as_quat()
        return cls(
            rotation=tuple(float(v) for v in quat),  # type: ignore[arg-type]
            translation=tuple(float(v) for v in translation),  # type: ignore[arg-type]
            reprojection_error=float(reprojection_error),
            confidence=float(confidence),
            inlier_ratio=float(inlier_ratio),
            inlier_indices=tuple(int(i) for i in inlier_indices),
        )

    @property
    def rotation_matrix(self) -> np.ndarray:
        return Rotation.from_quat(self.rotation).as_matrix()

    @property
    def rotation_vector(self) -> np.ndarray:
        """Axis-angle form (axis scaled by angle in radians)."""
        return Rotation.from_quat(self.rotation).as_rotvec()

    @property
    def euler(self) -> np.ndarray:
        """Extrinsic x-y-z Euler angles in radians."""
        return Rotation.from_quat(self.rotation).as_euler("xyz")


@dataclass(frozen=True)
class PoseMeasurement:
    """A pose expressed in the renderer frame, ready for the stabilizer."""

    position: Vector3
    rotation: Quaternion
    scale: Vector3 = (1.0, 1.0, 1.0)
    confidence: float = 1.0
    timestamp: float = 0.0

    @classmethod
    def from_estimate(
        cls,
        estimate: PoseEstimate,
        *,
        timestamp: float,
        scale: float | Sequence[float] = 1.0,
        confidence: float | None = None,
    ) -> "PoseMeasurement":
        """Map a camera-frame estimate into the renderer frame (right-handed, y up, mm)."""
        position = CAMERA_TO_RENDERER @ np.asarray(estimate.translation, dtype=float)
        rotation = CAMERA_TO_RENDERER @ estimate.rotation_matrix
        if isinstance(scale, (int, float)):
            scale_vec = (float(scale), float(scale), float(scale))
        else:
            scale_vec = tuple(float(v) for v in scale)  # type: ignore[assignment]
        return cls(
            position=tuple(float(v) for v in position),  # type: ignore[arg-type]
            rotation=tuple(float(v) for v in Rotation.from_matrix(rotation).as_quat()),  # type: ignore[arg-type]
            scale=scale_vec,  # type: ignore[arg-type]
            confidence=float(estimate.confidence if confidence is None else confidence),
            timestamp=float(timestamp),
        )


@dataclass
class StabilizedPose:
    """Renderer-facing pose state owned by a single stabilizer."""

    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0, 1.0]))
    scale: np.ndarray = field(default_factory=lambda: np.ones(3))
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    timestamp: float = 0.0

    @property
    def euler(self) -> np.ndarray:
        return Rotation.from_quat(self.rotation).as_euler("xyz")

    def copy(self) -> "StabilizedPose":
        return StabilizedPose(
            position=self.position.copy(),
            rotation=self.rotation.copy(),
            scale=self.scale.copy(),
            velocity=self.velocity.copy(),
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": [float(v) for v in self.position],
            "rotation": [float(v) for v in self.rotation],
            "scale": [float(v) for v in self.scale],
            "velocity": [float(v) for v in self.velocity],
            "timestamp": float(self.timestamp),
        }


@dataclass(frozen=True)
class CalibrationProfile:
    """Persisted focal length for one camera at one resolution."""

    device_key: str
    focal_length: float
    sample_count: int
    timestamp: float
    width: int = 0
    height: int = 0
    version: int = PROFILE_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_key": self.device_key,
            "focal_length": float(self.focal_length),
            "sample_count": int(self.sample_count),
            "timestamp": float(self.timestamp),
            "width": int(self.width),
            "height": int(self.height),
            "version": int(self.version),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CalibrationProfile":
        if not isinstance(payload, Mapping):
            raise ValidationError(f"Calibration profile must be a mapping; received {payload!r}.")
        try:
            profile = cls(
                device_key=str(payload["device_key"]),
                focal_length=float(payload["focal_length"]),
                sample_count=int(payload.get("sample_count", 0)),
                timestamp=float(payload["timestamp"]),
                width=int(payload.get("width", 0)),
                height=int(payload.get("height", 0)),
                version=int(payload.get("version", PROFILE_SCHEMA_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed calibration profile: {exc}") from exc
        if not is_plausible_focal_length(profile.focal_length):
            raise ValidationError(
                f"Profile {profile.device_key} focal length {profile.focal_length} is implausible."
            )
        return profile
