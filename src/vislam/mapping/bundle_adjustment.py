"""Stereo bundle adjustment using scipy.optimize.least_squares.

Bundle adjustment jointly optimizes keyframe poses and landmark positions
by minimizing the sum of squared stereo reprojection errors:

    minimize sum_i ||observed_i - project(pose_j, point_k)||^2

Each stereo observation contributes three residuals, (u_l, v_l, u_r):
on rectified images the right row equals the left row, so v_r carries no
extra information.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..frontend.calibration import StereoCalibration
from ..frontend.pose import SE3
from .keyframe import Keyframe

logger = logging.getLogger(__name__)

# Residuals per stereo observation
_RESIDUALS = 3


@dataclass
class BAResult:
    """Result of bundle adjustment optimization.

    Attributes:
        success: True if the optimization reduced the cost
        optimized_poses: keyframe id -> T_device_map
        optimized_points: landmark id -> position (3,)
        initial_cost: 0.5 * sum of squared residuals before optimization
        final_cost: 0.5 * sum of squared residuals after optimization
        iterations: Number of function evaluations
        message: Optimizer status message
    """

    success: bool
    optimized_poses: dict[int, SE3] = field(default_factory=dict)
    optimized_points: dict[int, np.ndarray] = field(default_factory=dict)
    initial_cost: float = 0.0
    final_cost: float = 0.0
    iterations: int = 0
    message: str = ""


@dataclass
class _Problem:
    """Flattened observations of one bundle adjustment window."""

    keyframe_idx: np.ndarray  # (K,) index into the window keyframes
    point_idx: np.ndarray  # (K,) index into the window points
    observed: np.ndarray  # (K, 3) u_l, v_l, u_r


class StereoBundleAdjustment:
    """Bundle adjustment with scipy's trust region reflective solver.

    Poses are parameterized as T_camera_map (Rodrigues vector + translation)
    and the first keyframe is held fixed to remove gauge freedom. The
    Jacobian sparsity pattern is supplied to the solver.
    """

    def __init__(
        self,
        calibration: StereoCalibration,
        max_iterations: int = 20,
        ftol: float = 1e-6,
        xtol: float = 1e-6,
        loss: str = "huber",  # or "linear", "soft_l1", "cauchy"
        loss_scale: float = 2.0,
        min_observations: int = 20,
    ) -> None:
        """Initialize bundle adjustment optimizer.

        Args:
            calibration: Stereo calibration
            max_iterations: Scales the function evaluation limit
            ftol: Function tolerance for convergence
            xtol: Parameter tolerance for convergence
            loss: Loss function of the final, robust solver stage
            loss_scale: Residual in pixels where the robust loss takes over
            min_observations: Windows with fewer observations are skipped
        """
        self._calibration = calibration
        self._max_iterations = max_iterations
        self._ftol = ftol
        self._xtol = xtol
        self._loss = loss
        self._loss_scale = loss_scale
        self._min_observations = min_observations

    def optimize(
        self,
        keyframes: list[Keyframe],
        landmarks: dict[int, np.ndarray],
    ) -> BAResult:
        """Run bundle adjustment over a window.

        Args:
            keyframes: Window keyframes; the first one is held fixed
            landmarks: landmark id -> position for every landmark to refine

        Returns:
            BAResult with optimized poses and points
        """
        if len(keyframes) < 2 or len(landmarks) == 0:
            return BAResult(success=False, message="Window too small")

        point_ids = sorted(landmarks)
        point_index = {lm_id: idx for idx, lm_id in enumerate(point_ids)}
        problem = self._collect_observations(keyframes, point_index)
        if len(problem.keyframe_idx) < self._min_observations:
            return BAResult(
                success=False,
                message=f"Too few observations: {len(problem.keyframe_idx)}",
            )

        T_camera_device = self._calibration.T_camera_device
        camera_poses = [T_camera_device.compose(kf.pose) for kf in keyframes]
        fixed_pose = camera_poses[0]
        points = np.array([landmarks[lm_id] for lm_id in point_ids], dtype=np.float64)

        x0 = self._pack_parameters(camera_poses[1:], points)
        n_poses = len(keyframes)

        initial_residuals = self._compute_residuals(x0, problem, n_poses, fixed_pose)
        initial_cost = 0.5 * float(np.sum(initial_residuals**2))

        sparsity = self._build_sparsity_matrix(problem, n_poses, len(points))
        # A robust loss converges slowly from far away, so it only polishes
        # the least-squares solution.
        stages = ["linear"] if self._loss == "linear" else ["linear", self._loss]
        x = x0
        nfev = 0
        try:
            for loss in stages:
                result = least_squares(
                    fun=self._compute_residuals,
                    x0=x,
                    jac_sparsity=sparsity,
                    args=(problem, n_poses, fixed_pose),
                    method="trf",
                    loss=loss,
                    f_scale=self._loss_scale,
                    x_scale="jac",
                    ftol=self._ftol,
                    xtol=self._xtol,
                    max_nfev=self._max_iterations * 10,
                    verbose=0,
                )
                x = result.x
                nfev += int(result.nfev)
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.warning("Bundle adjustment failed: %s", e)
            return BAResult(success=False, message=f"Optimization failed: {e}")

        final_residuals = self._compute_residuals(x, problem, n_poses, fixed_pose)
        final_cost = 0.5 * float(np.sum(final_residuals**2))
        if not np.isfinite(final_cost) or final_cost > initial_cost:
            return BAResult(
                success=False,
                message="Optimization diverged",
                initial_cost=initial_cost,
                final_cost=final_cost,
            )

        poses, optimized_points = self._unpack_parameters(x, n_poses, len(points))
        T_device_camera = self._calibration.T_device_camera
        optimized_poses = {keyframes[0].id: keyframes[0].pose.copy()}
        for kf, T_camera_map in zip(keyframes[1:], poses):
            optimized_poses[kf.id] = T_device_camera.compose(T_camera_map)

        return BAResult(
            success=True,
            optimized_poses=optimized_poses,
            optimized_points={
                lm_id: optimized_points[idx].copy() for idx, lm_id in enumerate(point_ids)
            },
            initial_cost=initial_cost,
            final_cost=final_cost,
            iterations=nfev,
            message=str(result.message),
        )

    def _collect_observations(
        self, keyframes: list[Keyframe], point_index: dict[int, int]
    ) -> _Problem:
        """Collect all stereo observations of window landmarks."""
        kf_idx, pt_idx, observed = [], [], []
        for idx, kf in enumerate(keyframes):
            for row, lm_id in enumerate(kf.landmark_ids):
                p = point_index.get(int(lm_id))
                if p is None:
                    continue
                kf_idx.append(idx)
                pt_idx.append(p)
                observed.append(
                    [
                        kf.keypoints_left[row, 0],
                        kf.keypoints_left[row, 1],
                        kf.keypoints_right[row, 0],
                    ]
                )
        return _Problem(
            keyframe_idx=np.array(kf_idx, dtype=np.int64),
            point_idx=np.array(pt_idx, dtype=np.int64),
            observed=np.array(observed, dtype=np.float64).reshape(-1, 3),
        )

    @staticmethod
    def _pack_parameters(camera_poses: list[SE3], points: np.ndarray) -> np.ndarray:
        """Pack [rvec_1, tvec_1, ..., point_0, point_1, ...] into one vector."""
        params = []
        for pose in camera_poses:
            rvec, tvec = pose.to_rvec_tvec()
            params.extend(rvec)
            params.extend(tvec)
        params.extend(points.ravel())
        return np.array(params, dtype=np.float64)

    @staticmethod
    def _unpack_parameters(
        params: np.ndarray, n_poses: int, n_points: int
    ) -> tuple[list[SE3], np.ndarray]:
        """Unpack free poses (T_camera_map) and points."""
        pose_params = 6 * (n_poses - 1)
        poses = [
            SE3.from_rvec_tvec(params[6 * i : 6 * i + 3], params[6 * i + 3 : 6 * i + 6])
            for i in range(n_poses - 1)
        ]
        points = params[pose_params:].reshape(n_points, 3)
        return poses, points

    def _compute_residuals(
        self,
        params: np.ndarray,
        problem: _Problem,
        n_poses: int,
        fixed_pose: SE3,
    ) -> np.ndarray:
        """Compute stereo reprojection residuals for all observations."""
        pose_params = 6 * (n_poses - 1)

        rotations = np.empty((n_poses, 3, 3))
        translations = np.empty((n_poses, 3))
        rotations[0] = fixed_pose.rotation
        translations[0] = fixed_pose.translation
        for i in range(1, n_poses):
            offset = 6 * (i - 1)
            rotations[i], _ = cv2.Rodrigues(params[offset : offset + 3])
            translations[i] = params[offset + 3 : offset + 6]

        points = params[pose_params:].reshape(-1, 3)[problem.point_idx]  # (K, 3)
        R = rotations[problem.keyframe_idx]  # (K, 3, 3)
        t = translations[problem.keyframe_idx]  # (K, 3)
        points_camera = np.einsum("kij,kj->ki", R, points) + t

        z = points_camera[:, 2]
        behind = z <= 1e-6
        z = np.where(behind, 1e-6, z)

        left = self._calibration.left
        right = self._calibration.right
        baseline = self._calibration.baseline_meters
        predicted = np.stack(
            [
                left.fx * points_camera[:, 0] / z + left.cx,
                left.fy * points_camera[:, 1] / z + left.cy,
                right.fx * (points_camera[:, 0] - baseline) / z + right.cx,
            ],
            axis=1,
        )
        residuals = problem.observed - predicted
        # Points behind the camera get a large constant penalty
        residuals[behind] = 1e3
        return residuals.ravel()

    @staticmethod
    def _build_sparsity_matrix(problem: _Problem, n_poses: int, n_points: int) -> lil_matrix:
        """Build sparse Jacobian structure for efficient optimization.

        Each observation only affects 6 pose parameters (unless its
        keyframe is the fixed one) and 3 point parameters.
        """
        pose_params = 6 * (n_poses - 1)
        n_params = pose_params + 3 * n_points
        n_residuals = len(problem.keyframe_idx) * _RESIDUALS

        sparsity = lil_matrix((n_residuals, n_params), dtype=int)
        for i, (kf_idx, pt_idx) in enumerate(zip(problem.keyframe_idx, problem.point_idx)):
            rows = slice(i * _RESIDUALS, (i + 1) * _RESIDUALS)
            if kf_idx > 0:
                pose_col = (kf_idx - 1) * 6
                sparsity[rows, pose_col : pose_col + 6] = 1
            point_col = pose_params + pt_idx * 3
            sparsity[rows, point_col : point_col + 3] = 1
        return sparsity
