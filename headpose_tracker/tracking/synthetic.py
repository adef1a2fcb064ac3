"""Synthetic landmark streams rendered from known head poses.

Used for ground-truth checks of the solver and for demo recordings: the
canonical model is posed, projected through a pinhole camera and written
into a face-mesh sized landmark list.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from headpose_tracker.models import CAMERA_TO_RENDERER, CameraIntrinsics, Landmark, LandmarkSet
from headpose_tracker.tracking.face_model import CanonicalFaceModel

FACE_MESH_SIZE = 478

# Model frame (y up, z toward camera) seen head-on by the camera (y down, z forward).
FRONTAL_ROTATION = CAMERA_TO_RENDERER.copy()


def head_pose(
    *,
    yaw_deg: float = 0.0,
    pitch_deg: float = 0.0,
    roll_deg: float = 0.0,
    offset_mm: Sequence[float] = (0.0, 0.0),
    distance_mm: float = 600.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Camera-frame (rotation, translation) for a head turned by the given angles."""
    turn = Rotation.from_euler("xyz", [pitch_deg, yaw_deg, roll_deg], degrees=True).as_matrix()
    rotation = FRONTAL_ROTATION @ turn
    translation = np.array([float(offset_mm[0]), float(offset_mm[1]), float(distance_mm)])
    return rotation, translation


def render_landmarks(
    rotation: np.ndarray,
    translation: np.ndarray,
    intrinsics: CameraIntrinsics,
    model: CanonicalFaceModel | None = None,
    *,
    noise_px: float = 0.0,
    rng: Optional[np.random.Generator] = None,
    confidence: float = 0.95,
    presence: float = 1.0,
    displaced: Optional[Dict[int, Tuple[float, float]]] = None,
) -> LandmarkSet:
    """Project the model under a pose into normalized face-mesh landmarks.

    ``displaced`` maps landmark index to an extra pixel offset, for injecting
    outliers; unmapped face-mesh indices are left empty.
    """
    model = model or CanonicalFaceModel()
    rng = rng or np.random.default_rng(0)
    indices = list(model.landmark_indices)
    points = model.points()
    camera = points @ np.asarray(rotation, dtype=float).T + np.asarray(translation, dtype=float)
    u = intrinsics.focal_length * camera[:, 0] / camera[:, 2] + intrinsics.principal_x
    v = intrinsics.focal_length * camera[:, 1] / camera[:, 2] + intrinsics.principal_y
    if noise_px > 0:
        u = u + rng.normal(0.0, noise_px, size=u.shape)
        v = v + rng.normal(0.0, noise_px, size=v.shape)

    rows: List[Optional[Landmark]] = [None] * max(FACE_MESH_SIZE, max(indices) + 1)
    for position, index in enumerate(indices):
        du, dv = (displaced or {}).get(index, (0.0, 0.0))
        rows[index] = Landmark(
            x=(float(u[position]) + du) / intrinsics.image_width,
            y=(float(v[position]) + dv) / intrinsics.image_height,
            z=(float(camera[position, 2]) - float(translation[2])) / intrinsics.image_width,
            presence=presence,
        )
    return LandmarkSet(points=tuple(rows), confidence=confidence)


def synthesize_sequence(
    frames: int,
    *,
    width: int = 1280,
    height: int = 720,
    fps: float = 30.0,
    noise_px: float = 0.5,
    seed: int = 0,
    sway_deg: float = 12.0,
    distance_mm: float = 600.0,
    dropout: Iterable[int] = (),
    focal_length: float | None = None,
) -> List[Tuple[float, LandmarkSet]]:
    """A head gently swaying left/right; frames listed in ``dropout`` have no subject."""
    intrinsics = CameraIntrinsics.default_for(width, height)
    if focal_length is not None:
        intrinsics = intrinsics.with_focal_length(focal_length)
    rng = np.random.default_rng(seed)
    model = CanonicalFaceModel()
    missing = set(int(i) for i in dropout)
    sequence: List[Tuple[float, LandmarkSet]] = []
    for frame in range(int(frames)):
        timestamp = frame / float(fps)
        if frame in missing:
            sequence.append((timestamp, LandmarkSet.empty()))
            continue
        phase = 2.0 * math.pi * timestamp / 4.0
        rotation, translation = head_pose(
            yaw_deg=sway_deg * math.sin(phase),
            pitch_deg=0.3 * sway_deg * math.sin(2.0 * phase),
            offset_mm=(15.0 * math.sin(phase), 0.0),
            distance_mm=distance_mm,
        )
        sequence.append(
            (timestamp, render_landmarks(rotation, translation, intrinsics, model, noise_px=noise_px, rng=rng))
        )
    return sequence

