"""RANSAC inlier search over 2D-3D correspondences."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from headpose_tracker.tracking.config import DEFAULT_CONFIG, TRACKING_LOGGER as logger, SolverSettings
from headpose_tracker.tracking.pose_estimation.geometry import Pose, min_triangle_area


@dataclass
class RansacResult:
    """Outcome of one inlier search; counters help debug tuning."""

    inlier_mask: np.ndarray
    iterations: int = 0
    hypotheses: int = 0
    degenerate_samples: int = 0
    fallback: bool = False

    @property
    def inlier_count(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))


class RansacInlierSearch:
    """Minimal-sample consensus: fit a pose per sample, keep the largest inlier set."""

    def __init__(self, settings: SolverSettings | None = None, *, seed: Optional[int] = None) -> None:
        self.settings = settings or DEFAULT_CONFIG.solver
        self.threshold_px = float(self.settings.ransac_threshold_px)
        self._rng = np.random.default_rng(self.settings.ransac_seed if seed is None else seed)

    def find_inliers(
        self,
        image_points: np.ndarray,
        fit_sample: Callable[[np.ndarray], Optional[Pose]],
        point_errors: Callable[[Pose], np.ndarray],
    ) -> RansacResult:
        """Search for the best inlier mask.

        ``fit_sample`` receives sample indices and returns a hypothesis pose (or
        None); ``point_errors`` returns per-point pixel errors for a pose.
        """
        count = int(image_points.shape[0])
        sample_size = int(self.settings.ransac_sample_size)
        min_inliers = min(int(self.settings.min_correspondences), count)
        everything = np.ones(count, dtype=bool)
        if count <= sample_size:
            return RansacResult(inlier_mask=everything, fallback=True)

        early_stop = self.settings.ransac_early_stop_ratio * count
        best_mask: np.ndarray | None = None
        best_count = 0
        best_error = float("inf")
        result = RansacResult(inlier_mask=everything)

        for iteration in range(int(self.settings.ransac_iterations)):
            result.iterations = iteration + 1
            sample = self._rng.choice(count, size=sample_size, replace=False)
            if min_triangle_area(image_points[sample]) < self.settings.ransac_min_sample_area:
                result.degenerate_samples += 1
                continue
            hypothesis = fit_sample(sample)
            if hypothesis is None:
                result.degenerate_samples += 1
                continue
            result.hypotheses += 1
            errors = point_errors(hypothesis)
            mask = np.isfinite(errors) & (errors < self.threshold_px)
            inliers = int(np.count_nonzero(mask))
            mean_error = float(np.mean(errors[mask])) if inliers else float("inf")
            if inliers > best_count or (inliers == best_count and mean_error < best_error):
                best_mask, best_count, best_error = mask, inliers, mean_error
            if best_count >= early_stop:
                break

        if best_mask is None or best_count < min_inliers:
            logger.debug(
                "RANSAC found %d inliers of %d after %d iterations; using all points",
                best_count,
                count,
                result.iterations,
            )
            result.fallback = True
            return result

        result.inlier_mask = best_mask
        logger.debug("RANSAC kept %d/%d inliers after %d iterations", best_count, count, result.iterations)
        return result

    def reset(self) -> None:
        self.threshold_px = float(self.settings.ransac_threshold_px)
