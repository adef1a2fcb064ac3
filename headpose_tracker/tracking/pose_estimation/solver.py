"""Perspective-n-Point solver for the canonical face model.

Pipeline per frame:
1. Linear estimate: normalized DLT, smallest eigenvector by inverse power
   iteration, Gram-Schmidt orthonormalization of the rotation block.
2. RANSAC over 4-point samples; each hypothesis is the all-point linear
   estimate refined against the sample alone.
3. Gauss-Newton on the inliers with a numerical Jacobian; the normal
   equations are solved with Gauss-Seidel sweeps and a small damping term,
   and a step is kept only if it lowers the reprojection cost.

Rotation updates are applied about the model centroid so rotation and
translation steps stay decoupled.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, List, Optional, Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from headpose_tracker.models import CameraIntrinsics, Correspondence, PoseEstimate
from headpose_tracker.tracking.config import DEFAULT_CONFIG, TRACKING_LOGGER as logger, SolverSettings
from headpose_tracker.tracking.face_model import correspondence_arrays
from headpose_tracker.tracking.pose_estimation.geometry import (
    Pose,
    gauss_seidel,
    gram_schmidt,
    normalization_2d,
    normalization_3d,
    project_points,
    reprojection_errors,
    smallest_eigenvector,
)
from headpose_tracker.tracking.pose_estimation.ransac import RansacInlierSearch, RansacResult

_NUMERIC_ERRORS = (np.linalg.LinAlgError, FloatingPointError, ValueError)


def linear_pose(
    image_points: np.ndarray,
    model_points: np.ndarray,
    intrinsics: CameraIntrinsics,
    *,
    power_iterations: int = 50,
) -> Optional[Pose]:
    """Initial pose from the homogeneous DLT system, or None when degenerate."""
    count = image_points.shape[0]
    if count < 6:
        return None
    normalized = np.column_stack(
        [
            (image_points[:, 0] - intrinsics.principal_x) / intrinsics.focal_length,
            (image_points[:, 1] - intrinsics.principal_y) / intrinsics.focal_length,
        ]
    )
    t2 = normalization_2d(normalized)
    t3 = normalization_3d(model_points)
    img_h = (t2 @ np.column_stack([normalized, np.ones(count)]).T).T
    obj_h = (t3 @ np.column_stack([model_points, np.ones(count)]).T).T

    system = np.zeros((2 * count, 12))
    for row, (obj, img) in enumerate(zip(obj_h, img_h)):
        system[2 * row, 0:4] = obj
        system[2 * row, 8:12] = -img[0] * obj
        system[2 * row + 1, 4:8] = obj
        system[2 * row + 1, 8:12] = -img[1] * obj

    vector = smallest_eigenvector(system.T @ system, power_iterations)
    projection = np.linalg.inv(t2) @ vector.reshape(3, 4) @ t3
    block = projection[:, :3]
    column = projection[:, 3]

    centroid = model_points.mean(axis=0)
    if float(block[2] @ centroid + column[2]) < 0.0:
        block, column = -block, -column

    scale = float(np.mean(np.linalg.norm(block, axis=1)))
    if not np.isfinite(scale) or scale < 1e-10:
        return None
    rotation = gram_schmidt(block / scale)
    if rotation is None:
        return None
    translation = column / scale
    if float((rotation @ centroid + translation)[2]) <= 0.0:
        return None
    return rotation, translation


def refine_pose(
    pose: Pose,
    image_points: np.ndarray,
    model_points: np.ndarray,
    intrinsics: CameraIntrinsics,
    *,
    iterations: int = 20,
    tolerance: float = 1e-6,
    epsilon: float = 1e-6,
    sweeps: int = 100,
) -> Pose:
    """Gauss-Newton refinement of (rotation, translation) against pixel residuals."""
    rotation, translation = pose
    centroid = model_points.mean(axis=0)
    local = model_points - centroid
    anchor = rotation @ centroid + translation

    def residual(rot: np.ndarray, anc: np.ndarray) -> np.ndarray:
        return (project_points(local, rot, anc, intrinsics) - image_points).ravel()

    def step(rot: np.ndarray, anc: np.ndarray, delta: np.ndarray) -> Pose:
        return Rotation.from_rotvec(delta[:3]).as_matrix() @ rot, anc + delta[3:]

    current = residual(rotation, anchor)
    cost = float(current @ current)
    damping = 1e-3
    translation_step = epsilon * max(1.0, float(np.linalg.norm(anchor)))

    for _ in range(max(0, int(iterations))):
        if cost < 1e-18:
            break
        jacobian = np.zeros((current.size, 6))
        for k in range(6):
            h = epsilon if k < 3 else translation_step
            delta = np.zeros(6)
            delta[k] = h
            forward = residual(*step(rotation, anchor, delta))
            backward = residual(*step(rotation, anchor, -delta))
            jacobian[:, k] = (forward - backward) / (2.0 * h)

        normal = jacobian.T @ jacobian
        gradient = jacobian.T @ current
        diagonal = np.sqrt(np.diag(normal))
        diagonal[diagonal < 1e-12] = 1.0
        scaled = normal / np.outer(diagonal, diagonal)
        scaled[np.diag_indices(6)] += damping
        delta = -gauss_seidel(scaled, gradient / diagonal, sweeps) / diagonal
        if not np.all(np.isfinite(delta)):
            break

        candidate_rot, candidate_anchor = step(rotation, anchor, delta)
        candidate = residual(candidate_rot, candidate_anchor)
        candidate_cost = float(candidate @ candidate)
        if np.isfinite(candidate_cost) and candidate_cost < cost:
            rotation, anchor, current, cost = candidate_rot, candidate_anchor, candidate, candidate_cost
            damping = max(damping * 0.1, 1e-9)
            if float(np.linalg.norm(delta)) < tolerance:
                break
        else:
            damping *= 10.0
            if damping > 1e6:
                break

    return rotation, anchor - rotation @ centroid


class PoseSolver:
    """Solves the face pose from correspondences and keeps a short pose history."""

    def __init__(self, settings: SolverSettings | None = None, *, seed: Optional[int] = None) -> None:
        self.settings = settings or DEFAULT_CONFIG.solver
        self.ransac = RansacInlierSearch(self.settings, seed=seed)
        self.history: Deque[PoseEstimate] = deque(maxlen=int(self.settings.history_size))
        self.last_ransac: RansacResult | None = None

    def solve(
        self,
        correspondences: Sequence[Correspondence],
        intrinsics: CameraIntrinsics,
        *,
        confidence_scale: float = 1.0,
    ) -> Optional[PoseEstimate]:
        """Pose for one frame, or None when input is insufficient or degenerate."""
        if len(correspondences) < self.settings.min_correspondences:
            logger.debug(
                "Only %d correspondences (need %d); no pose this frame",
                len(correspondences),
                self.settings.min_correspondences,
            )
            return None
        image_points, model_points = correspondence_arrays(list(correspondences))
        try:
            with np.errstate(divide="raise", invalid="raise", over="raise"):
                result = self._solve_arrays(image_points, model_points, intrinsics)
        except _NUMERIC_ERRORS as exc:
            logger.debug("Pose solve degenerate: %s", exc)
            return None
        if result is None:
            return None

        rotation, translation, mask = result
        errors = reprojection_errors(image_points, model_points, rotation, translation, intrinsics)
        mean_error = float(np.mean(errors))
        if not np.isfinite(mean_error):
            return None
        confidence = max(0.0, 1.0 - mean_error / self.settings.confidence_zero_error_px)
        confidence = float(np.clip(confidence * confidence_scale, 0.0, 1.0))
        inlier_indices: List[int] = [pair.landmark_index for pair, keep in zip(correspondences, mask) if keep]
        estimate = PoseEstimate.from_matrix(
            rotation,
            translation,
            reprojection_error=mean_error,
            confidence=confidence,
            inlier_ratio=len(inlier_indices) / len(correspondences),
            inlier_indices=inlier_indices,
        )
        self.history.append(estimate)
        return estimate

    def _solve_arrays(
        self,
        image_points: np.ndarray,
        model_points: np.ndarray,
        intrinsics: CameraIntrinsics,
    ) -> Optional[tuple[np.ndarray, np.ndarray, np.ndarray]]:
        settings = self.settings
        initial = linear_pose(image_points, model_points, intrinsics, power_iterations=settings.power_iterations)
        if initial is None:
            logger.debug("Linear pose estimate degenerate; no pose this frame")
            return None

        mask = np.ones(image_points.shape[0], dtype=bool)
        if settings.use_ransac:
            self.last_ransac = self.ransac.find_inliers(
                image_points,
                lambda sample: self._fit_sample(initial, sample, image_points, model_points, intrinsics),
                lambda pose: reprojection_errors(image_points, model_points, pose[0], pose[1], intrinsics),
            )
            mask = self.last_ransac.inlier_mask

        pose = initial
        if not mask.all() and np.count_nonzero(mask) >= settings.min_correspondences:
            pose = (
                linear_pose(image_points[mask], model_points[mask], intrinsics, power_iterations=settings.power_iterations)
                or initial
            )
        if settings.refine:
            pose = refine_pose(
                pose,
                image_points[mask],
                model_points[mask],
                intrinsics,
                iterations=settings.refine_iterations,
                tolerance=settings.refine_tolerance,
                epsilon=settings.jacobian_epsilon,
                sweeps=settings.gauss_seidel_sweeps,
            )
        rotation, translation = pose
        if not (np.all(np.isfinite(rotation)) and np.all(np.isfinite(translation))):
            return None
        return rotation, translation, mask

    def _fit_sample(
        self,
        initial: Pose,
        sample: np.ndarray,
        image_points: np.ndarray,
        model_points: np.ndarray,
        intrinsics: CameraIntrinsics,
    ) -> Optional[Pose]:
        try:
            rotation, translation = refine_pose(
                initial,
                image_points[sample],
                model_points[sample],
                intrinsics,
                iterations=self.settings.ransac_hypothesis_iterations,
                tolerance=self.settings.refine_tolerance,
                epsilon=self.settings.jacobian_epsilon,
                sweeps=self.settings.gauss_seidel_sweeps,
            )
        except _NUMERIC_ERRORS:
            return None
        if not (np.all(np.isfinite(rotation)) and np.all(np.isfinite(translation))):
            return None
        return rotation, translation

    def stability_score(self) -> float:
        """1.0 for a still head, falling toward 0 as recent rotation change grows."""
        recent = list(self.history)[-(self.settings.stability_window + 1):]
        if len(recent) < 2:
            return 1.0
        motion = 0.0
        for previous, current in zip(recent, recent[1:]):
            delta = Rotation.from_quat(previous.rotation).inv() * Rotation.from_quat(current.rotation)
            motion += float(delta.magnitude())
        return max(0.0, 1.0 - motion / self.settings.stability_max_motion_rad)

    def relax_threshold(self, factor: float = 1.5) -> float:
        """Widen the RANSAC inlier threshold; returns the new value in pixels."""
        self.ransac.threshold_px *= float(factor)
        logger.info("RANSAC inlier threshold relaxed to %.1f px", self.ransac.threshold_px)
        return self.ransac.threshold_px

    def reset(self) -> None:
        self.history.clear()
        self.last_ransac = None
        self.ransac.reset()
