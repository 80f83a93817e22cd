"""Tests for landmark association and PnP pose estimation."""

import numpy as np

from vislam.estimator import MotionEstimator, associate
from vislam.frontend import SE3, StereoCalibration

from .conftest import SyntheticScene, device_pose


def _associate(calibration, pixels, descriptors, ids, positions, landmark_descriptors, **kwargs):
    options = {"radius": 4.0, "max_distance": 50}
    options.update(kwargs)
    return associate(
        np.asarray(pixels, dtype=np.float64),
        np.asarray(descriptors, dtype=np.uint8),
        np.asarray(ids, dtype=np.int64),
        np.asarray(positions, dtype=np.float64),
        np.asarray(landmark_descriptors, dtype=np.uint8),
        SE3.identity(),
        calibration,
        **options,
    )


class TestAssociate:
    """Test suite for projection-guided association."""

    def test_exact_projections(self, calibration: StereoCalibration, scene: SyntheticScene):
        """Test that every observation of a noiseless scene finds its landmark."""
        observations = scene.observe(SE3.identity())
        pixels = np.array([[o.left.u, o.left.v] for o in observations])
        descriptors = np.array([o.descriptor for o in observations])
        ids = np.arange(len(scene.positions))

        matches = _associate(
            calibration, pixels, descriptors, ids, scene.positions, scene.descriptors
        )

        assert len(matches) == len(observations)
        expected = [o.track_id for o in observations]
        np.testing.assert_array_equal(matches.landmark_ids, expected)

    def test_one_to_one(self, calibration: StereoCalibration):
        """Test that the closer of two observations claims the landmark."""
        descriptor = np.zeros(32, dtype=np.uint8)
        position = np.array([[0.0, 0.0, 2.0]])  # projects to (320, 240)

        matches = _associate(
            calibration,
            [[321.0, 240.0], [320.5, 240.0]],
            [descriptor, descriptor],
            [7],
            position,
            [descriptor],
        )

        np.testing.assert_array_equal(matches.observation_indices, [1])
        np.testing.assert_array_equal(matches.landmark_ids, [7])

    def test_hamming_breaks_pixel_tie(self, calibration: StereoCalibration):
        """Test that equal pixel errors are resolved by descriptor distance."""
        descriptor = np.zeros(32, dtype=np.uint8)
        worse = descriptor.copy()
        worse[:2] = 0xFF  # 16 bits away
        positions = np.array([[0.0, 0.0, 2.0], [0.0, 0.0, 4.0]])  # same pixel

        matches = _associate(
            calibration, [[320.0, 240.0]], [descriptor], [3, 5], positions, [worse, descriptor]
        )

        np.testing.assert_array_equal(matches.landmark_ids, [5])

    def test_lowest_id_breaks_full_tie(self, calibration: StereoCalibration):
        """Test that identical candidates resolve to the lowest landmark id."""
        descriptor = np.zeros(32, dtype=np.uint8)
        positions = np.array([[0.0, 0.0, 4.0], [0.0, 0.0, 2.0]])

        matches = _associate(
            calibration,
            [[320.0, 240.0]],
            [descriptor],
            [9, 4],
            positions,
            [descriptor, descriptor],
        )

        np.testing.assert_array_equal(matches.landmark_ids, [4])

    def test_outside_radius(self, calibration: StereoCalibration):
        """Test that observations beyond the radius are not associated."""
        descriptor = np.zeros(32, dtype=np.uint8)
        matches = _associate(
            calibration,
            [[330.0, 240.0]],
            [descriptor],
            [0],
            [[0.0, 0.0, 2.0]],
            [descriptor],
        )
        assert len(matches) == 0

    def test_descriptor_gate(self, calibration: StereoCalibration):
        """Test that distant descriptors are not associated."""
        matches = _associate(
            calibration,
            [[320.0, 240.0]],
            [np.zeros(32, dtype=np.uint8)],
            [0],
            [[0.0, 0.0, 2.0]],
            [np.full(32, 0xFF, dtype=np.uint8)],
        )
        assert len(matches) == 0

    def test_behind_camera(self, calibration: StereoCalibration):
        """Test that landmarks behind the camera are never associated."""
        descriptor = np.zeros(32, dtype=np.uint8)
        matches = _associate(
            calibration,
            [[320.0, 240.0]],
            [descriptor],
            [0],
            [[0.0, 0.0, -2.0]],
            [descriptor],
        )
        assert len(matches) == 0

    def test_empty_inputs(self, calibration: StereoCalibration):
        """Test association with no landmarks."""
        matches = _associate(
            calibration,
            [[320.0, 240.0]],
            [np.zeros(32, dtype=np.uint8)],
            np.empty(0),
            np.empty((0, 3)),
            np.empty((0, 32)),
        )
        assert len(matches) == 0

    def test_large_cluttered_map(self, calibration: StereoCalibration, scene: SyntheticScene):
        """Test association against a map far larger than the frame."""
        rng = np.random.default_rng(5)
        n_clutter = 200_000
        clutter = np.column_stack(
            [
                rng.uniform(-6.0, 6.0, n_clutter),
                rng.uniform(-4.0, 4.0, n_clutter),
                rng.uniform(-10.0, 10.0, n_clutter),
            ]
        )
        positions = np.vstack([scene.positions, clutter])
        landmark_descriptors = np.vstack(
            [scene.descriptors, rng.integers(0, 256, (n_clutter, 32), dtype=np.uint8)]
        )
        ids = np.arange(len(positions))
        observations = scene.observe(SE3.identity())
        pixels = np.array([[o.left.u, o.left.v] for o in observations])
        descriptors = np.array([o.descriptor for o in observations])

        matches = _associate(
            calibration, pixels, descriptors, ids, positions, landmark_descriptors
        )

        np.testing.assert_array_equal(matches.landmark_ids, [o.track_id for o in observations])
        assert np.all(matches.pixel_errors < 1e-6)


class TestMotionEstimator:
    """Test suite for PnP with RANSAC."""

    def test_recovers_pose(self, calibration: StereoCalibration, scene: SyntheticScene):
        """Test that PnP recovers the camera pose of a noiseless view."""
        pose = device_pose(x=0.2, y=-0.1, yaw=0.05)
        observations = scene.observe(pose)
        ids = [o.track_id for o in observations]
        pixels = np.array([[o.left.u, o.left.v] for o in observations])

        result = MotionEstimator().estimate_pose(
            scene.positions[ids], pixels, calibration.camera_matrix
        )

        assert result.success
        assert result.num_inliers == len(observations)
        np.testing.assert_allclose(result.pose.to_matrix(), pose.to_matrix(), atol=1e-4)
        assert result.reprojection_error < 0.1

    def test_rejects_outliers(self, calibration: StereoCalibration, scene: SyntheticScene):
        """Test that gross outliers are excluded from the inliers."""
        observations = scene.observe(SE3.identity())
        ids = [o.track_id for o in observations]
        pixels = np.array([[o.left.u, o.left.v] for o in observations])
        pixels[:10] += 40.0

        result = MotionEstimator().estimate_pose(
            scene.positions[ids], pixels, calibration.camera_matrix
        )

        assert result.success
        assert not result.inliers[:10].any()
        np.testing.assert_allclose(result.pose.translation, 0.0, atol=1e-3)

    def test_robust_refinement(self, calibration: StereoCalibration, scene: SyntheticScene):
        """Test the least-squares refinement path."""
        pose = device_pose(x=-0.1, z=0.2)
        observations = scene.observe(pose)
        ids = [o.track_id for o in observations]
        pixels = np.array([[o.left.u, o.left.v] for o in observations])

        result = MotionEstimator(robust_refinement=True).estimate_pose(
            scene.positions[ids], pixels, calibration.camera_matrix, initial_pose=SE3.identity()
        )

        assert result.success
        np.testing.assert_allclose(result.pose.translation, pose.translation, atol=1e-3)

    def test_too_few_points(self, calibration: StereoCalibration):
        """Test that fewer points than the inlier minimum fail fast."""
        result = MotionEstimator(min_inliers=12).estimate_pose(
            np.zeros((5, 3)), np.zeros((5, 2)), calibration.camera_matrix
        )

        assert not result.success
        assert result.pose is None
        assert result.reprojection_error == float("inf")
