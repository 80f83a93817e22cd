"""Camera pose from 2D-3D correspondences using PnP with RANSAC."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np
from scipy.optimize import least_squares

from ..frontend.pose import SE3

logger = logging.getLogger(__name__)


@dataclass
class PnPResult:
    """Result of PnP pose estimation.

    Attributes:
        success: True if pose estimation succeeded
        pose: Estimated T_camera_map (transforms map points into the
            camera frame). None if failed.
        inliers: Boolean mask indicating which correspondences are inliers
        num_inliers: Number of inlier correspondences
        reprojection_error: Mean reprojection error of inliers (pixels)
    """

    success: bool
    pose: SE3 | None
    inliers: np.ndarray  # (N,) bool
    num_inliers: int
    reprojection_error: float

    @classmethod
    def failure(cls, n_points: int, num_inliers: int = 0) -> PnPResult:
        return cls(
            success=False,
            pose=None,
            inliers=np.zeros(n_points, dtype=bool),
            num_inliers=num_inliers,
            reprojection_error=float("inf"),
        )


class MotionEstimator:
    """Estimates the camera pose using PnP with RANSAC.

    Given 2D-3D correspondences (known map points and their observed
    pixel positions in the current left image), estimates T_camera_map.
    RANSAC provides robustness to outlier correspondences. Inliers can be
    refined either with iterative PnP or, for accuracy, with a Huber-loss
    least-squares fit.
    """

    def __init__(
        self,
        reprojection_threshold: float = 3.0,
        ransac_confidence: float = 0.99,
        max_iterations: int = 100,
        min_inliers: int = 12,
        robust_refinement: bool = False,
    ) -> None:
        """Initialize motion estimator.

        Args:
            reprojection_threshold: RANSAC inlier threshold in pixels.
            ransac_confidence: Desired probability of finding a good model.
            max_iterations: Maximum RANSAC iterations.
            min_inliers: Minimum number of inliers for a valid pose.
            robust_refinement: Refine inliers with robust least squares
                instead of iterative PnP.
        """
        self._reprojection_threshold = reprojection_threshold
        self._ransac_confidence = ransac_confidence
        self._max_iterations = max_iterations
        self._min_inliers = min_inliers
        self._robust_refinement = robust_refinement

    def estimate_pose(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        camera_matrix: np.ndarray,
        initial_pose: SE3 | None = None,
        min_inliers: int | None = None,
    ) -> PnPResult:
        """Estimate T_camera_map from 2D-3D correspondences.

        Args:
            points_3d: Nx3 array of points in map frame
            points_2d: Nx2 array of corresponding pixel coordinates
            camera_matrix: 3x3 camera intrinsic matrix K
            initial_pose: Optional T_camera_map guess for RANSAC
            min_inliers: Override of the configured inlier minimum

        Returns:
            PnPResult with estimated pose and inlier information
        """
        n_points = len(points_3d)
        required = self._min_inliers if min_inliers is None else min_inliers

        # Need at least 4 points for PnP
        if n_points < max(4, required):
            return PnPResult.failure(n_points)

        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3)
        points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 1, 2)
        camera_matrix = np.asarray(camera_matrix, dtype=np.float64)

        use_extrinsic_guess = False
        rvec_init = None
        tvec_init = None
        if initial_pose is not None:
            rvec_init, tvec_init = initial_pose.to_rvec_tvec()
            rvec_init = rvec_init.reshape(3, 1)
            tvec_init = tvec_init.reshape(3, 1)
            use_extrinsic_guess = True

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                objectPoints=points_3d,
                imagePoints=points_2d,
                cameraMatrix=camera_matrix,
                distCoeffs=None,
                rvec=rvec_init,
                tvec=tvec_init,
                useExtrinsicGuess=use_extrinsic_guess,
                iterationsCount=self._max_iterations,
                reprojectionError=self._reprojection_threshold,
                confidence=self._ransac_confidence,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error as e:
            logger.debug("solvePnPRansac failed: %s", e)
            return PnPResult.failure(n_points)

        if not success or inliers is None or len(inliers) < required:
            return PnPResult.failure(n_points, 0 if inliers is None else len(inliers))

        inlier_mask = np.zeros(n_points, dtype=bool)
        inlier_mask[inliers.flatten()] = True

        if self._robust_refinement:
            rvec, tvec = self._refine_least_squares(
                points_3d[inlier_mask].reshape(-1, 3),
                points_2d[inlier_mask].reshape(-1, 2),
                rvec,
                tvec,
                camera_matrix,
            )
        else:
            try:
                success_refine, rvec_refined, tvec_refined = cv2.solvePnP(
                    objectPoints=points_3d[inlier_mask],
                    imagePoints=points_2d[inlier_mask],
                    cameraMatrix=camera_matrix,
                    distCoeffs=None,
                    rvec=rvec,
                    tvec=tvec,
                    useExtrinsicGuess=True,
                    flags=cv2.SOLVEPNP_ITERATIVE,
                )
                if success_refine:
                    rvec, tvec = rvec_refined, tvec_refined
            except cv2.error as e:
                logger.debug("PnP refinement failed, keeping RANSAC pose: %s", e)

        if not np.isfinite(rvec).all() or not np.isfinite(tvec).all():
            return PnPResult.failure(n_points)

        pose = SE3.from_rvec_tvec(rvec, tvec)
        reproj_error = self._compute_reprojection_error(
            points_3d[inlier_mask].reshape(-1, 3),
            points_2d[inlier_mask].reshape(-1, 2),
            rvec,
            tvec,
            camera_matrix,
        )

        return PnPResult(
            success=True,
            pose=pose,
            inliers=inlier_mask,
            num_inliers=int(np.sum(inlier_mask)),
            reprojection_error=reproj_error,
        )

    def _refine_least_squares(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        rvec: np.ndarray,
        tvec: np.ndarray,
        camera_matrix: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Huber-loss reprojection refinement of an (rvec, tvec) pose."""

        def residuals(params: np.ndarray) -> np.ndarray:
            projected, _ = cv2.projectPoints(
                points_3d.reshape(-1, 1, 3), params[:3], params[3:], camera_matrix, None
            )
            return (projected.reshape(-1, 2) - points_2d).ravel()

        x0 = np.concatenate([np.ravel(rvec), np.ravel(tvec)])
        result = least_squares(
            residuals,
            x0,
            loss="huber",
            f_scale=self._reprojection_threshold / 2.0,
            method="trf",
            max_nfev=50,
        )
        if not result.success:
            return rvec, tvec
        return result.x[:3].reshape(3, 1), result.x[3:].reshape(3, 1)

    @staticmethod
    def _compute_reprojection_error(
        points_3d: np.ndarray,
        points_2d: np.ndarray,
        rvec: np.ndarray,
        tvec: np.ndarray,
        camera_matrix: np.ndarray,
    ) -> float:
        """Compute mean reprojection error in pixels."""
        if len(points_3d) == 0:
            return 0.0

        projected, _ = cv2.projectPoints(
            points_3d.reshape(-1, 1, 3),
            rvec,
            tvec,
            camera_matrix,
            None,
        )
        errors = np.linalg.norm(projected.reshape(-1, 2) - points_2d, axis=1)
        return float(np.mean(errors))

    @property
    def reprojection_threshold(self) -> float:
        """Return RANSAC inlier threshold."""
        return self._reprojection_threshold

    @property
    def min_inliers(self) -> int:
        """Return minimum required inliers."""
        return self._min_inliers
