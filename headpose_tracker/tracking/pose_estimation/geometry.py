"""Small linear-algebra helpers for perspective projection and PnP.

All arrays are float64 numpy arrays: image points (n, 2) in pixels, model
points (n, 3) in mm, rotations as 3x3 matrices mapping model to camera frame.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from headpose_tracker.models import CameraIntrinsics

MIN_DEPTH_MM = 1e-3

Pose = Tuple[np.ndarray, np.ndarray]  # (rotation 3x3, translation (3,))


def project_points(model_points: np.ndarray, rotation: np.ndarray, translation: np.ndarray, intrinsics: CameraIntrinsics) -> np.ndarray:
    """Pinhole projection of model points under a pose; depth is clipped to stay positive."""
    camera = model_points @ rotation.T + translation
    depth = np.maximum(camera[:, 2], MIN_DEPTH_MM)
    u = intrinsics.focal_length * camera[:, 0] / depth + intrinsics.principal_x
    v = intrinsics.focal_length * camera[:, 1] / depth + intrinsics.principal_y
    return np.column_stack([u, v])


def reprojection_errors(
    image_points: np.ndarray,
    model_points: np.ndarray,
    rotation: np.ndarray,
    translation: np.ndarray,
    intrinsics: CameraIntrinsics,
) -> np.ndarray:
    """Per-point pixel distance between observations and projections."""
    projected = project_points(model_points, rotation, translation, intrinsics)
    return np.linalg.norm(projected - image_points, axis=1)


def triangle_area(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> float:
    return 0.5 * abs(float((b[0] - a[0]) * (c[1] - a[1]) - (c[0] - a[0]) * (b[1] - a[1])))


def min_triangle_area(points: np.ndarray) -> float:
    """Smallest triangle area over every triple of the given 2D points."""
    count = points.shape[0]
    smallest = float("inf")
    for i in range(count):
        for j in range(i + 1, count):
            for k in range(j + 1, count):
                smallest = min(smallest, triangle_area(points[i], points[j], points[k]))
    return smallest


def smallest_eigenvector(matrix: np.ndarray, iterations: int = 50) -> np.ndarray:
    """Eigenvector of the smallest eigenvalue of a symmetric PSD matrix.

    Shifted inverse power iteration; raises ``numpy.linalg.LinAlgError`` when
    the iteration collapses.
    """
    size = matrix.shape[0]
    shift = 1e-10 * max(float(np.trace(matrix)), 1e-12)
    shifted = matrix + shift * np.eye(size)
    vector = np.ones(size) / np.sqrt(size)
    for _ in range(max(1, int(iterations))):
        nxt = np.linalg.solve(shifted, vector)
        norm = float(np.linalg.norm(nxt))
        if not np.isfinite(norm) or norm < 1e-300:
            raise np.linalg.LinAlgError("Inverse power iteration collapsed")
        nxt /= norm
        converged = abs(abs(float(nxt @ vector)) - 1.0) < 1e-14
        vector = nxt
        if converged:
            break
    return vector


def gram_schmidt(block: np.ndarray) -> Optional[np.ndarray]:
    """Orthonormalize the rows of a 3x3 block into a proper rotation (det +1)."""
    first = block[0]
    norm_first = float(np.linalg.norm(first))
    if norm_first < 1e-10:
        return None
    r1 = first / norm_first
    second = block[1] - float(r1 @ block[1]) * r1
    norm_second = float(np.linalg.norm(second))
    if norm_second < 1e-10:
        return None
    r2 = second / norm_second
    r3 = np.cross(r1, r2)
    return np.vstack([r1, r2, r3])


def gauss_seidel(matrix: np.ndarray, rhs: np.ndarray, sweeps: int) -> np.ndarray:
    """Fixed number of Gauss-Seidel sweeps for ``matrix @ x = rhs``."""
    size = rhs.shape[0]
    solution = np.zeros(size)
    for _ in range(max(1, int(sweeps))):
        for row in range(size):
            diagonal = matrix[row, row]
            if abs(diagonal) < 1e-12:
                continue
            sigma = float(matrix[row] @ solution) - diagonal * solution[row]
            solution[row] = (rhs[row] - sigma) / diagonal
    return solution


def normalization_2d(points: np.ndarray) -> np.ndarray:
    """Similarity moving the centroid to the origin with mean distance sqrt(2)."""
    centroid = points.mean(axis=0)
    spread = float(np.mean(np.linalg.norm(points - centroid, axis=1)))
    scale = np.sqrt(2.0) / spread if spread > 1e-12 else 1.0
    return np.array(
        [
            [scale, 0.0, -scale * centroid[0]],
            [0.0, scale, -scale * centroid[1]],
            [0.0, 0.0, 1.0],
        ]
    )


def normalization_3d(points: np.ndarray) -> np.ndarray:
    """Similarity moving the centroid to the origin with mean distance sqrt(3)."""
    centroid = points.mean(axis=0)
    spread = float(np.mean(np.linalg.norm(points - centroid, axis=1)))
    scale = np.sqrt(3.0) / spread if spread > 1e-12 else 1.0
    transform = np.eye(4) * scale
    transform[3, 3] = 1.0
    transform[:3, 3] = -scale * centroid
    return transform
