"""Tests for stereo bundle adjustment."""

import numpy as np
import pytest

from vislam.frontend import SE3
from vislam.mapping import Keyframe, StereoBundleAdjustment

from .conftest import SyntheticScene, device_pose


def _keyframe(kf_id: int, pose: SE3, scene: SyntheticScene) -> Keyframe:
    observations = scene.observe(pose)
    return Keyframe(
        id=kf_id,
        timestamp_ns=kf_id,
        pose=pose,
        keypoints_left=[[o.left.u, o.left.v] for o in observations],
        keypoints_right=[[o.right.u, o.right.v] for o in observations],
        descriptors=[o.descriptor for o in observations],
        landmark_ids=[o.track_id for o in observations],
        points_camera=[o.point_camera for o in observations],
    )


@pytest.fixture
def truth(scene: SyntheticScene) -> list[Keyframe]:
    poses = [SE3.identity(), device_pose(x=0.2), device_pose(x=0.4, y=0.05, yaw=0.05)]
    return [_keyframe(i, pose, scene) for i, pose in enumerate(poses)]


def _perturb(keyframes: list[Keyframe], scene: SyntheticScene, seed: int = 0):
    rng = np.random.default_rng(seed)
    window = [kf.copy() for kf in keyframes]
    for kf in window[1:]:
        kf.pose = SE3.exp(rng.normal(0.0, 0.01, 6)).compose(kf.pose)
    ids = sorted(set().union(*(kf.observed_landmark_ids() for kf in window)))
    landmarks = {i: scene.positions[i] + rng.normal(0.0, 0.02, 3) for i in ids}
    return window, landmarks


class TestStereoBundleAdjustment:
    """Test suite for StereoBundleAdjustment."""

    @pytest.mark.parametrize("loss", ["huber", "linear", "soft_l1"])
    def test_reduces_cost_and_recovers_truth(self, calibration, scene, truth, loss):
        """Test that perturbed poses and points move back toward the truth."""
        window, landmarks = _perturb(truth, scene)
        ba = StereoBundleAdjustment(calibration, max_iterations=50, loss=loss)

        result = ba.optimize(window, landmarks)

        assert result.success
        assert result.final_cost < result.initial_cost
        assert result.final_cost < 1e-3

        ids = sorted(landmarks)
        before = np.linalg.norm(np.array([landmarks[i] for i in ids]) - scene.positions[ids], axis=1)
        after = np.linalg.norm(
            np.array([result.optimized_points[i] for i in ids]) - scene.positions[ids], axis=1
        )
        assert after.mean() < 0.1 * before.mean()

        for kf in truth[1:]:
            translation, rotation = result.optimized_poses[kf.id].distance_to(kf.pose)
            assert translation < 1e-3
            assert rotation < 1e-3

    def test_first_keyframe_fixed(self, calibration, scene, truth):
        """Test that the first keyframe of the window never moves."""
        window, landmarks = _perturb(truth, scene, seed=1)
        window[0].pose = device_pose(x=0.01)

        result = StereoBundleAdjustment(calibration).optimize(window, landmarks)

        np.testing.assert_array_equal(
            result.optimized_poses[0].to_matrix(), window[0].pose.to_matrix()
        )

    def test_window_too_small(self, calibration, scene, truth):
        """Test that a single keyframe is not optimized."""
        landmarks = {i: scene.positions[i] for i in truth[0].observed_landmark_ids()}

        result = StereoBundleAdjustment(calibration).optimize(truth[:1], landmarks)

        assert not result.success
        assert result.message == "Window too small"

    def test_too_few_observations(self, calibration, scene, truth):
        """Test that a window with few shared observations is skipped."""
        ids = sorted(truth[0].observed_landmark_ids())[:5]
        landmarks = {i: scene.positions[i] for i in ids}

        result = StereoBundleAdjustment(calibration, min_observations=20).optimize(
            truth[:2], landmarks
        )

        assert not result.success
        assert result.message.startswith("Too few observations")
