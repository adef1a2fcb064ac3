"""Pose estimation components."""

from .ransac import RansacInlierSearch, RansacResult
from .solver import PoseSolver, linear_pose, refine_pose

__all__ = ["PoseSolver", "RansacInlierSearch", "RansacResult", "linear_pose", "refine_pose"]
