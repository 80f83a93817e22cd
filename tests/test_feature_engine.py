"""Tests for the feature engine: detection, stereo matching, triangulation."""

import numpy as np
import pytest

from vislam import init_feature_state, run_feature
from vislam.config import FeatureConfig
from vislam.frontend import (
    Feature2D,
    FeatureDetector,
    FeatureEngine,
    Features,
    FeatureState,
    StereoCalibration,
    StereoMatcher,
)
from vislam.frontend.feature_detector import hamming_distance_matrix, hamming_distances
from vislam.frontend.feature_tracker import FeatureTracker
from vislam.types import InertialSample, StereoSample

from .conftest import textured_pair


def _features(points: list[tuple[float, float]], descriptors: np.ndarray) -> Features:
    return Features.from_list(
        [Feature2D(u=u, v=v, descriptor=d) for (u, v), d in zip(points, descriptors)]
    )


class TestHamming:
    """Test suite for vectorised Hamming distances."""

    def test_distance_matrix(self):
        """Test pairwise distances against a bit count."""
        a = np.zeros((2, 32), dtype=np.uint8)
        b = np.zeros((3, 32), dtype=np.uint8)
        a[1, 0] = 0xFF
        b[2, :2] = 0x0F

        expected = np.array([[0, 0, 8], [8, 8, 8]])
        np.testing.assert_array_equal(hamming_distance_matrix(a, b), expected)

    def test_row_distances(self):
        """Test row-wise distances."""
        a = np.zeros((2, 32), dtype=np.uint8)
        b = np.full((2, 32), 0x01, dtype=np.uint8)
        np.testing.assert_array_equal(hamming_distances(a, b), [32, 32])

    def test_empty(self):
        """Test that empty inputs give empty outputs."""
        empty = np.empty((0, 32), dtype=np.uint8)
        assert hamming_distance_matrix(empty, np.zeros((4, 32), np.uint8)).shape == (0, 4)


class TestFeatureDetector:
    """Test suite for FeatureDetector."""

    def test_detects_textured_image(self):
        """Test that ORB finds features in a textured image."""
        left, _ = textured_pair()
        features = FeatureDetector(n_features=500).detect(left)

        assert 0 < len(features) <= 500
        assert features.descriptors.shape == (len(features), 32)
        assert features.descriptors.dtype == np.uint8
        assert np.all(features.track_ids == -1)

    def test_flat_image(self):
        """Test that a flat image has no features."""
        features = FeatureDetector().detect(np.full((480, 640), 128, dtype=np.uint8))
        assert len(features) == 0

    def test_none_image(self):
        """Test that a missing image yields no features."""
        assert len(FeatureDetector().detect(None)) == 0

    def test_deterministic(self):
        """Test that identical input gives identical features."""
        left, _ = textured_pair()
        detector = FeatureDetector()
        first, second = detector.detect(left), detector.detect(left)

        np.testing.assert_array_equal(first.points, second.points)
        np.testing.assert_array_equal(first.descriptors, second.descriptors)


class TestStereoMatcher:
    """Test suite for StereoMatcher."""

    def test_matches_along_scanline(self):
        """Test matching with a valid disparity on the same row."""
        rng = np.random.default_rng(0)
        descriptors = rng.integers(0, 256, (2, 32), dtype=np.uint8)
        left = _features([(100.0, 50.0), (300.0, 200.0)], descriptors)
        right = _features([(290.0, 200.5), (80.0, 50.0)], descriptors[::-1])

        matches = StereoMatcher().match(left, right)

        np.testing.assert_array_equal(matches.left_indices, [0, 1])
        np.testing.assert_array_equal(matches.right_indices, [1, 0])
        np.testing.assert_allclose(matches.disparities, [20.0, 10.0])

    def test_rejects_off_epipolar(self):
        """Test that a right feature on another row is not matched."""
        descriptors = np.zeros((1, 32), dtype=np.uint8)
        left = _features([(100.0, 50.0)], descriptors)
        right = _features([(80.0, 60.0)], descriptors)

        assert len(StereoMatcher().match(left, right)) == 0

    def test_rejects_negative_disparity(self):
        """Test that the right feature must lie left of the left feature."""
        descriptors = np.zeros((1, 32), dtype=np.uint8)
        left = _features([(100.0, 50.0)], descriptors)
        right = _features([(110.0, 50.0)], descriptors)

        assert len(StereoMatcher().match(left, right)) == 0

    def test_rejects_ambiguous(self):
        """Test that two equally good candidates are rejected."""
        descriptors = np.zeros((2, 32), dtype=np.uint8)
        left = _features([(100.0, 50.0)], descriptors[:1])
        right = _features([(80.0, 50.0), (90.0, 50.0)], descriptors)

        assert len(StereoMatcher().match(left, right)) == 0

    def test_right_feature_used_once(self):
        """Test one-to-one matching of right features."""
        rng = np.random.default_rng(1)
        descriptor = rng.integers(0, 256, (1, 32), dtype=np.uint8)
        near = descriptor.copy()
        near[0, 0] ^= 0x01  # one bit away
        left = _features([(100.0, 50.0), (120.0, 50.0)], np.vstack([descriptor, near]))
        right = _features([(80.0, 50.0)], descriptor)

        matches = StereoMatcher().match(left, right)
        np.testing.assert_array_equal(matches.left_indices, [0])


class TestFeatureTracker:
    """Test suite for track id assignment."""

    def test_same_frame_keeps_ids(self):
        """Test that re-observed features keep their track ids."""
        rng = np.random.default_rng(2)
        features = _features(
            [(10.0 * i, 5.0 * i) for i in range(20)],
            rng.integers(0, 256, (20, 32), dtype=np.uint8),
        )
        tracker = FeatureTracker()

        first = tracker.assign(features)
        second = tracker.assign(features)

        assert len(set(first.track_ids.tolist())) == 20
        np.testing.assert_array_equal(first.track_ids, second.track_ids)

    def test_reset_starts_new_tracks(self):
        """Test that reset issues fresh track ids."""
        rng = np.random.default_rng(3)
        features = _features(
            [(float(i), float(i)) for i in range(5)],
            rng.integers(0, 256, (5, 32), dtype=np.uint8),
        )
        tracker = FeatureTracker()
        first = tracker.assign(features)
        tracker.reset()
        second = tracker.assign(features)

        assert set(first.track_ids.tolist()).isdisjoint(second.track_ids.tolist())


class TestFeatureEngine:
    """Test suite for the full per-frame pipeline."""

    def test_fronto_parallel_depth(self, calibration: StereoCalibration):
        """Test that a plane at constant disparity triangulates at its depth."""
        left, right = textured_pair(disparity=20)
        engine = FeatureEngine(calibration)
        state = FeatureState()

        engine.process(StereoSample(1, left, right), state)

        assert state.timestamp_ns == 1
        assert len(state.observations) > 50
        depths = np.array([obs.depth for obs in state.observations])
        assert np.median(depths) == pytest.approx(400.0 * 0.1 / 20, abs=0.1)

    def test_observation_invariants(self, calibration: StereoCalibration):
        """Test row alignment, positive disparity and depth range."""
        left, right = textured_pair()
        config = FeatureConfig()
        state = FeatureEngine(calibration, config).process(
            StereoSample(1, left, right), FeatureState()
        )

        for obs in state.observations:
            assert abs(obs.left.v - obs.right.v) <= config.epipolar_threshold
            assert obs.left.u - obs.right.u >= config.min_disparity
            assert config.min_depth <= obs.depth <= config.max_depth
            assert obs.left.track_id == obs.right.track_id >= 0

    def test_deterministic(self, calibration: StereoCalibration):
        """Test that two engines produce identical observations."""
        left, right = textured_pair()
        a = FeatureEngine(calibration).process(StereoSample(1, left, right), FeatureState())
        b = FeatureEngine(calibration).process(StereoSample(1, left, right), FeatureState())

        assert len(a.observations) == len(b.observations)
        for obs_a, obs_b in zip(a.observations, b.observations):
            np.testing.assert_allclose(obs_a.point_camera, obs_b.point_camera)

    def test_tracks_persist_across_frames(self, calibration: StereoCalibration):
        """Test that a static scene keeps most track ids."""
        left, right = textured_pair()
        engine = FeatureEngine(calibration)
        state = FeatureState()

        engine.process(StereoSample(1, left, right), state)
        first_ids = set(state.left.track_ids.tolist())
        engine.process(StereoSample(2, left, right), state)
        second_ids = set(state.left.track_ids.tolist())

        assert len(first_ids & second_ids) >= 0.9 * len(second_ids)

    def test_missing_image_gives_empty_state(self, calibration: StereoCalibration):
        """Test that an invalid pair empties the state without raising."""
        left, right = textured_pair()
        engine = FeatureEngine(calibration)
        state = FeatureState()
        engine.process(StereoSample(1, left, right), state)

        engine.process(StereoSample(2, left, None), state)

        assert state.timestamp_ns == 2
        assert state.is_empty
        assert len(state.left) == 0

    def test_mismatched_sizes_give_empty_state(self, calibration: StereoCalibration):
        """Test that differently sized images are rejected."""
        left, _ = textured_pair()
        state = FeatureEngine(calibration).process(
            StereoSample(1, left, left[:100]), FeatureState()
        )
        assert state.is_empty

    def test_without_3d(self, calibration: StereoCalibration):
        """Test detection-only processing."""
        left, right = textured_pair()
        state = FeatureEngine(calibration).process(
            StereoSample(1, left, right), FeatureState(), with_3d=False
        )

        assert len(state.left) > 0
        assert len(state.right) > 0
        assert state.observations == []

    def test_engine_primitives(self, calibration: StereoCalibration):
        """Test detect, match and triangulate as separate steps."""
        left, right = textured_pair()
        engine = FeatureEngine(calibration)

        pairs = engine.match(engine.detect(left), engine.detect(right))
        observations = [obs for obs in map(engine.triangulate, pairs) if obs is not None]

        assert len(observations) > 50


class TestFeatureSession:
    """Test suite for the feature-only session API."""

    def test_run_feature(self, calibration_file):
        """Test a session created from a calibration file."""
        left, right = textured_pair()
        session = init_feature_state(calibration_file)

        assert run_feature(StereoSample(1, left, right), session)
        assert len(session.state.get_stereo_features()) > 50
        features_left, features_right = session.state.get_2d_features()
        assert len(features_left) > 0 and len(features_right) > 0

    def test_inertial_sample_ignored(self, calibration):
        """Test that run_feature ignores inertial samples."""
        session = init_feature_state(calibration)
        sample = InertialSample(1, accel=[0.0, 0.0, 9.81], gyro=[0.0, 0.0, 0.0])

        assert not run_feature(sample, session)
        assert session.state.timestamp_ns == -1
