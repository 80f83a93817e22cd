"""Inertial-visual state estimator and the tracking state machine.

Inertial samples drive prediction; stereo observations drive correction.
The visual measurement is the device pose recovered by PnP + RANSAC,
fused into the error-state filter with a Joseph-form update.

    UNINITIALIZED ──► TRACKING ──► LOST ──► TRACKING ──► ...
"""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import TYPE_CHECKING

import cv2
import numpy as np

from ..config import EstimatorConfig
from ..frontend.calibration import StereoCalibration
from ..frontend.feature_tracker import ratio_test_match
from ..frontend.pose import SE3, exp_so3, log_so3, rotation_between
from ..frontend.triangulation import StereoObservation, stack_observations
from ..types import InertialSample
from .imu_integrator import BA, BG, POS, STATE_DIM, THETA, VEL, IMUIntegrator, IMUState
from .matching import associate
from .motion_estimator import MotionEstimator, PnPResult

if TYPE_CHECKING:
    from ..mapping.map_store import MapHandle

logger = logging.getLogger(__name__)

# Inertial samples kept for gravity and gyro bias estimation at start-up
_INIT_WINDOW = 400


class TrackingStatus(Enum):
    """Status of pose tracking."""

    UNINITIALIZED = "UNINITIALIZED"
    TRACKING = "TRACKING"
    LOST = "LOST"


def _initial_covariance() -> np.ndarray:
    sigmas = np.concatenate(
        [
            np.full(3, 0.01),  # rad
            np.full(3, 0.01),  # m
            np.full(3, 0.1),  # m/s
            np.full(3, 0.01),  # rad/s
            np.full(3, 0.1),  # m/s²
        ]
    )
    return np.diag(sigmas**2)


class StateEstimator:
    """Fuses inertial samples and stereo observations into a device pose.

    Poses returned to callers are ``T_device_map``; internally the filter
    keeps ``T_map_device`` plus velocity and sensor biases.

    Example:
        >>> estimator = StateEstimator(calibration)
        >>> estimator.predict(imu_sample)
        >>> pose, status = estimator.update(observations, map_handle, timestamp_ns)
    """

    def __init__(
        self,
        calibration: StereoCalibration,
        config: EstimatorConfig | None = None,
    ) -> None:
        """Initialize the estimator.

        Args:
            calibration: Stereo calibration (camera extrinsics, IMU noise)
            config: Filter, tracking and relocalization policy
        """
        self._calibration = calibration
        self._config = config or EstimatorConfig()
        cfg = self._config

        self._integrator = IMUIntegrator(
            gravity=np.array([0.0, 0.0, -cfg.gravity]),
            noise=calibration.imu,
            max_gap_s=cfg.max_imu_gap_s,
            rotation_random_walk=cfg.rotation_random_walk,
            velocity_random_walk=cfg.velocity_random_walk,
        )
        self._motion = MotionEstimator(
            reprojection_threshold=cfg.pnp_reprojection_threshold,
            ransac_confidence=cfg.pnp_confidence,
            max_iterations=cfg.pnp_iterations,
            min_inliers=cfg.min_inliers,
            robust_refinement=cfg.robust_refinement,
        )
        self._bf_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        self._measurement_noise = np.diag(
            np.concatenate(
                [
                    np.full(3, cfg.pose_rotation_sigma**2),
                    np.full(3, cfg.pose_position_sigma**2),
                ]
            )
        )
        self.reset()

    def reset(self) -> None:
        """Return to UNINITIALIZED and forget all motion state."""
        self._status = TrackingStatus.UNINITIALIZED
        self._nav: IMUState | None = None
        self._init_imu: deque[InertialSample] = deque(maxlen=_INIT_WINDOW)
        self._init_frames = 0
        self._init_samples = 0
        self._previous_track_ids: set[int] = set()
        self._reference: dict[int, np.ndarray] = {}  # track id -> map point
        self._failures = 0
        self._last_inliers = 0
        self._corrected = False

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(self, sample: InertialSample) -> None:
        """Propagate the motion state with one inertial sample.

        Before initialization, samples are buffered for gravity and gyro
        bias estimation. While LOST, propagation continues (dead reckoning).
        """
        self._init_samples += 1
        if self._nav is None:
            self._init_imu.append(sample)
            return
        self._nav = self._integrator.propagate(self._nav, sample)

    def _predicted_state(self, timestamp_ns: int) -> IMUState:
        """Bridge from the last propagated state to ``timestamp_ns``."""
        assert self._nav is not None
        return self._integrator.propagate_constant_velocity(self._nav, timestamp_ns)

    # ------------------------------------------------------------------
    # Correction
    # ------------------------------------------------------------------

    def update(
        self,
        observations: list[StereoObservation],
        map_handle: MapHandle | None = None,
        timestamp_ns: int | None = None,
    ) -> tuple[SE3 | None, TrackingStatus]:
        """Correct the state with one frame of stereo observations.

        Args:
            observations: Stereo observations of the current frame
            map_handle: Map to localize against; None for visual odometry
            timestamp_ns: Capture time of the stereo sample

        Returns:
            (T_device_map or None, status). The pose is None whenever the
            status is not TRACKING.
        """
        self._init_samples += 1
        self._corrected = False
        if timestamp_ns is None:
            timestamp_ns = self._nav.timestamp_ns if self._nav is not None else 0

        if self._status is TrackingStatus.UNINITIALIZED:
            return self._update_uninitialized(observations, map_handle, timestamp_ns)
        if self._status is TrackingStatus.TRACKING:
            return self._update_tracking(observations, map_handle, timestamp_ns)
        return self._update_lost(observations, map_handle, timestamp_ns)

    def _update_uninitialized(
        self,
        observations: list[StereoObservation],
        map_handle: MapHandle | None,
        timestamp_ns: int,
    ) -> tuple[SE3 | None, TrackingStatus]:
        cfg = self._config
        track_ids = {obs.track_id for obs in observations}

        consistent = len(observations) >= cfg.init_min_observations
        if consistent and self._init_frames > 0:
            continuity = len(track_ids & self._previous_track_ids) / len(track_ids)
            consistent = continuity >= cfg.init_min_track_ratio
        self._previous_track_ids = track_ids

        if not consistent:
            if self._init_frames > 0:
                logger.debug("Initialization streak broken after %d frames", self._init_frames)
            self._init_frames = 0
            self._init_samples = 0
            return None, self._status

        self._init_frames += 1
        if self._init_frames < cfg.init_min_frames or self._init_samples < cfg.init_min_samples:
            return None, self._status

        if map_handle is None or map_handle.is_empty:
            self._bootstrap(observations, timestamp_ns)
            return self.current_pose(), self._status

        if self._relocalize(observations, map_handle, timestamp_ns):
            return self.current_pose(), self._status
        return None, self._status

    def _bootstrap(self, observations: list[StereoObservation], timestamp_ns: int) -> None:
        """Start tracking at the map origin, aligned with gravity."""
        bias_gyro = np.zeros(3)
        rotation = np.eye(3)
        if self._init_imu:
            accel = np.mean([s.accel for s in self._init_imu], axis=0)
            bias_gyro = np.mean([s.gyro for s in self._init_imu], axis=0)
            # At rest the accelerometer measures the reaction to gravity (up)
            if np.linalg.norm(accel) > 1e-6:
                rotation = rotation_between(accel, np.array([0.0, 0.0, 1.0]))

        self._nav = IMUState(
            timestamp_ns=timestamp_ns,
            pose=SE3(rotation=rotation, translation=np.zeros(3)),
            velocity=np.zeros(3),
            bias_gyro=bias_gyro,
            bias_accel=np.zeros(3),
            covariance=_initial_covariance(),
        )
        self._set_tracking()
        self._store_reference(observations)
        logger.info(
            "Initialized at map origin after %d frames (%d observations)",
            self._init_frames,
            len(observations),
        )

    def _update_tracking(
        self,
        observations: list[StereoObservation],
        map_handle: MapHandle | None,
        timestamp_ns: int,
    ) -> tuple[SE3 | None, TrackingStatus]:
        predicted = self._predicted_state(timestamp_ns)
        self._nav = predicted

        result = self._correct(observations, map_handle, predicted)
        if result is not None:
            self._failures = 0
            self._corrected = True
            self._fuse(result)
            self._store_reference(observations)
            return self.current_pose(), self._status

        self._failures += 1
        self._store_reference(observations)
        if self._failures >= self._config.lost_after_frames:
            self._status = TrackingStatus.LOST
            logger.info(
                "Tracking lost after %d failed corrections (last inliers: %d)",
                self._failures,
                self._last_inliers,
            )
            return None, self._status
        return self.current_pose(), self._status

    def _update_lost(
        self,
        observations: list[StereoObservation],
        map_handle: MapHandle | None,
        timestamp_ns: int,
    ) -> tuple[SE3 | None, TrackingStatus]:
        self._nav = self._predicted_state(timestamp_ns)
        if map_handle is not None and not map_handle.is_empty:
            self._relocalize(observations, map_handle, timestamp_ns)
        if self._status is TrackingStatus.TRACKING:
            return self.current_pose(), self._status
        return None, self._status

    def _camera_pose_guess(self, state: IMUState) -> SE3:
        """T_camera_map for a navigation state."""
        return self._calibration.T_camera_device.compose(state.pose.inverse())

    def _correct(
        self,
        observations: list[StereoObservation],
        map_handle: MapHandle | None,
        predicted: IMUState,
    ) -> PnPResult | None:
        """Estimate T_camera_map from the current frame; None on failure."""
        cfg = self._config
        pixels, _, _, descriptors = stack_observations(observations)
        K = self._calibration.camera_matrix
        guess = self._camera_pose_guess(predicted)

        if map_handle is not None and not map_handle.is_empty:
            ids, positions, landmark_descriptors = map_handle.landmark_snapshot()
            id_to_row = {int(i): row for row, i in enumerate(ids)}
            result = None
            radius = cfg.search_radius
            for _ in range(max(1, cfg.refinement_passes)):
                matches = associate(
                    pixels,
                    descriptors,
                    ids,
                    positions,
                    landmark_descriptors,
                    guess,
                    self._calibration,
                    radius,
                    cfg.max_match_distance,
                )
                rows = [id_to_row[int(i)] for i in matches.landmark_ids]
                attempt = self._motion.estimate_pose(
                    positions[rows] if rows else np.empty((0, 3)),
                    pixels[matches.observation_indices],
                    K,
                    initial_pose=guess,
                )
                self._last_inliers = attempt.num_inliers
                if not attempt.success:
                    break
                result = attempt
                guess = attempt.pose
                radius = cfg.refine_radius
            return result

        # Visual odometry against the previous frame
        rows = [k for k, obs in enumerate(observations) if obs.track_id in self._reference]
        if not rows:
            self._last_inliers = 0
            return None
        points_map = np.array([self._reference[observations[k].track_id] for k in rows])
        result = self._motion.estimate_pose(points_map, pixels[rows], K, initial_pose=guess)
        self._last_inliers = result.num_inliers
        return result if result.success else None

    def _fuse(self, result: PnPResult) -> None:
        """Joseph-form EKF update with a 6-dof pose measurement."""
        assert self._nav is not None and result.pose is not None
        nav = self._nav
        T_map_device = self._calibration.T_device_camera.compose(result.pose).inverse()

        r = np.concatenate(
            [
                log_so3(nav.rotation.T @ T_map_device.rotation),
                T_map_device.translation - nav.position,
            ]
        )
        H = np.zeros((6, STATE_DIM))
        H[0:3, THETA] = np.eye(3)
        H[3:6, POS] = np.eye(3)

        P = nav.covariance
        S = H @ P @ H.T + self._measurement_noise
        K = np.linalg.solve(S, H @ P).T  # P Hᵀ S⁻¹ (S, P symmetric)
        dx = K @ r

        I_KH = np.eye(STATE_DIM) - K @ H
        P = I_KH @ P @ I_KH.T + K @ self._measurement_noise @ K.T

        self._nav = IMUState(
            timestamp_ns=nav.timestamp_ns,
            pose=SE3(
                rotation=nav.rotation @ exp_so3(dx[THETA]),
                translation=nav.position + dx[POS],
            ),
            velocity=nav.velocity + dx[VEL],
            bias_gyro=nav.bias_gyro + dx[BG],
            bias_accel=nav.bias_accel + dx[BA],
            covariance=0.5 * (P + P.T),
        )

    def _store_reference(self, observations: list[StereoObservation]) -> None:
        """Remember the current frame's points in map frame, by track id."""
        if self._nav is None or not observations:
            self._reference = {}
            return
        _, _, points_camera, _ = stack_observations(observations)
        T_map_camera = self._nav.pose.compose(self._calibration.T_device_camera)
        points_map = T_map_camera.transform_points(points_camera)
        self._reference = {
            obs.track_id: points_map[k] for k, obs in enumerate(observations)
        }

    # ------------------------------------------------------------------
    # Relocalization
    # ------------------------------------------------------------------

    def _relocalize(
        self,
        observations: list[StereoObservation],
        map_handle: MapHandle,
        timestamp_ns: int,
    ) -> bool:
        """Recover the pose from keyframe candidates of the map."""
        cfg = self._config
        if len(observations) < cfg.min_relocalization_inliers:
            return False

        pixels, _, _, descriptors = stack_observations(observations)
        candidates = map_handle.query_candidates(descriptors, cfg.relocalization_candidates)
        for keyframe in candidates:
            matches = ratio_test_match(
                self._bf_matcher,
                descriptors,
                keyframe.descriptors,
                cfg.relocalization_ratio,
                cfg.max_match_distance,
            )
            landmark_ids = keyframe.landmark_ids[matches.curr_indices]
            valid = landmark_ids >= 0
            if valid.sum() < cfg.min_relocalization_inliers:
                continue

            points_map = map_handle.landmark_positions(landmark_ids[valid])
            result = self._motion.estimate_pose(
                points_map,
                pixels[matches.prev_indices[valid]],
                self._calibration.camera_matrix,
                min_inliers=cfg.min_relocalization_inliers,
            )
            self._last_inliers = result.num_inliers
            if not result.success:
                continue

            T_map_device = self._calibration.T_device_camera.compose(result.pose).inverse()
            bias_gyro = self._nav.bias_gyro if self._nav is not None else np.zeros(3)
            bias_accel = self._nav.bias_accel if self._nav is not None else np.zeros(3)
            if self._nav is None and self._init_imu:
                bias_gyro = np.mean([s.gyro for s in self._init_imu], axis=0)
            self._nav = IMUState(
                timestamp_ns=timestamp_ns,
                pose=T_map_device,
                velocity=np.zeros(3),
                bias_gyro=bias_gyro,
                bias_accel=bias_accel,
                covariance=_initial_covariance(),
            )
            self._set_tracking()
            self._store_reference(observations)
            logger.info(
                "Relocalized against keyframe %d with %d inliers",
                keyframe.id,
                result.num_inliers,
            )
            return True
        return False

    def _set_tracking(self) -> None:
        self._status = TrackingStatus.TRACKING
        self._failures = 0
        self._corrected = True

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def current_pose(self) -> SE3 | None:
        """Return T_device_map, or None unless TRACKING."""
        if self._status is not TrackingStatus.TRACKING or self._nav is None:
            return None
        return self._nav.pose.inverse()

    @property
    def status(self) -> TrackingStatus:
        """Return the tracking status."""
        return self._status

    @property
    def state(self) -> IMUState | None:
        """Return a copy of the navigation state (None before init)."""
        return self._nav.copy() if self._nav is not None else None

    @property
    def last_inlier_count(self) -> int:
        """Return the inlier count of the most recent PnP attempt."""
        return self._last_inliers

    @property
    def last_update_corrected(self) -> bool:
        """Return True if the last update verified its pose against observations.

        False after a failed correction, even while the status is still
        TRACKING on the predicted pose.
        """
        return self._corrected

    @property
    def consecutive_failures(self) -> int:
        """Return the number of consecutive failed corrections."""
        return self._failures

    @property
    def config(self) -> EstimatorConfig:
        """Return the estimator configuration."""
        return self._config
