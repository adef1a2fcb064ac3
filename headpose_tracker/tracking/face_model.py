"""Canonical 3D face model and 2D-3D correspondence building.

Model frame: millimetres, origin at the sellion, x toward the subject's left
(viewer's right), y up, z out of the face toward the camera. Vertices are keyed
by 478-point face-mesh landmark indices.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Tuple

import numpy as np

from headpose_tracker.models import Correspondence, LandmarkSet, Vector3

# label -> (landmark index, (x, y, z) mm)
CANONICAL_VERTICES: Dict[str, Tuple[int, Vector3]] = {
    "sellion": (6, (0.0, 0.0, 0.0)),
    "nose_tip": (1, (0.0, -45.0, 20.0)),
    "chin": (152, (0.0, -110.0, -5.0)),
    "right_eye_outer": (33, (-46.0, -2.0, -14.0)),
    "right_eye_inner": (133, (-17.0, -3.0, -5.0)),
    "left_eye_inner": (362, (17.0, -3.0, -5.0)),
    "left_eye_outer": (263, (46.0, -2.0, -14.0)),
    "right_mouth_corner": (61, (-25.0, -72.0, -8.0)),
    "left_mouth_corner": (291, (25.0, -72.0, -8.0)),
    "right_brow_outer": (70, (-50.0, 15.0, -12.0)),
    "left_brow_outer": (300, (50.0, 15.0, -12.0)),
    "forehead": (10, (0.0, 45.0, -5.0)),
    "right_face_side": (234, (-72.0, -15.0, -60.0)),
    "left_face_side": (454, (72.0, -15.0, -60.0)),
    "right_nostril": (98, (-14.0, -40.0, 6.0)),
    "left_nostril": (327, (14.0, -40.0, 6.0)),
    "right_cheek": (50, (-45.0, -35.0, -15.0)),
    "left_cheek": (280, (45.0, -35.0, -15.0)),
    "right_jaw": (172, (-58.0, -85.0, -45.0)),
    "left_jaw": (397, (58.0, -85.0, -45.0)),
    "upper_lip": (13, (0.0, -65.0, 8.0)),
    "lower_lip": (14, (0.0, -78.0, 5.0)),
}


@dataclass(frozen=True)
class CanonicalFaceModel:
    """Immutable labelled vertices plus the landmark-index mapping onto them."""

    vertices: Mapping[str, Vector3] = field(
        default_factory=lambda: MappingProxyType({label: pos for label, (_, pos) in CANONICAL_VERTICES.items()})
    )
    landmark_map: Mapping[int, str] = field(
        default_factory=lambda: MappingProxyType({idx: label for label, (idx, _) in CANONICAL_VERTICES.items()})
    )

    def __post_init__(self) -> None:
        unknown = [label for label in self.landmark_map.values() if label not in self.vertices]
        if unknown:
            raise ValueError(f"Landmark map references unknown vertices: {', '.join(sorted(unknown))}")

    @property
    def landmark_indices(self) -> Tuple[int, ...]:
        return tuple(self.landmark_map.keys())

    def vertex_for(self, landmark_index: int) -> Vector3 | None:
        label = self.landmark_map.get(landmark_index)
        return None if label is None else self.vertices[label]

    def points(self) -> np.ndarray:
        """Model vertices in landmark-map order, shape (n, 3)."""
        return np.array([self.vertices[label] for label in self.landmark_map.values()], dtype=float)


def build_correspondences(
    landmarks: LandmarkSet | None,
    model: CanonicalFaceModel,
    image_width: int,
    image_height: int,
) -> List[Correspondence]:
    """Pair each mapped, present and finite landmark with its model vertex.

    Never raises: missing, malformed or non-finite landmarks are skipped so the
    caller can detect an insufficient set by its length.
    """
    if landmarks is None or landmarks.is_empty:
        return []
    try:
        width = float(image_width)
        height = float(image_height)
    except (TypeError, ValueError):
        return []
    if not (math.isfinite(width) and math.isfinite(height)) or width <= 0 or height <= 0:
        return []

    pairs: List[Correspondence] = []
    for index, label in model.landmark_map.items():
        point = landmarks.get(index)
        if point is None:
            continue
        try:
            if not point.is_finite():
                continue
            u, v = point.to_pixels(int(width), int(height))
        except (TypeError, ValueError):
            continue
        pairs.append(Correspondence(image_point=(u, v), model_point=model.vertices[label], landmark_index=index))
    return pairs


def correspondence_arrays(pairs: List[Correspondence]) -> Tuple[np.ndarray, np.ndarray]:
    """Stack correspondences into ``(image_points (n, 2), model_points (n, 3))``."""
    if not pairs:
        return np.zeros((0, 2)), np.zeros((0, 3))
    image = np.array([pair.image_point for pair in pairs], dtype=float)
    model = np.array([pair.model_point for pair in pairs], dtype=float)
    return image, model
