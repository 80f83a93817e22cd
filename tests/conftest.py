"""Shared fixtures: a synthetic stereo rig, landmark scene and images."""

from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
import pytest

from vislam.config import EstimatorConfig, MaintenanceConfig, MapConfig, SystemConfig
from vislam.frontend import (
    CameraIntrinsics,
    Feature2D,
    Features,
    FeatureState,
    SE3,
    StereoCalibration,
    StereoObservation,
)
from vislam.mapping import VisualVocabulary
from vislam.types import StereoSample

WIDTH, HEIGHT = 640, 480
FX = 400.0
BASELINE = 0.1
FRAME_NS = 50_000_000  # 20 Hz


def make_calibration(baseline: float = BASELINE) -> StereoCalibration:
    return StereoCalibration(
        image_size=(WIDTH, HEIGHT),
        left=CameraIntrinsics(fx=FX, fy=FX, cx=320.0, cy=240.0),
        baseline=baseline,
    )


def device_pose(x: float = 0.0, y: float = 0.0, z: float = 0.0, yaw: float = 0.0) -> SE3:
    """T_device_map for a device at (x, y, z) rotated by yaw about the z-axis."""
    T_map_device = SE3.exp(np.array([0.0, 0.0, yaw, x, y, z]))
    return T_map_device.inverse()


class SyntheticScene:
    """Landmarks with random descriptors, observed by a noiseless stereo rig.

    The device frame coincides with the left camera, so with an identity
    pose the camera looks along +z of the map.
    """

    def __init__(self, calibration: StereoCalibration, n_landmarks: int = 150, seed: int = 7):
        rng = np.random.default_rng(seed)
        self.calibration = calibration
        self.positions = np.column_stack(
            [
                rng.uniform(-1.5, 1.5, n_landmarks),
                rng.uniform(-1.0, 1.0, n_landmarks),
                rng.uniform(2.0, 5.0, n_landmarks),
            ]
        )
        self.descriptors = rng.integers(0, 256, (n_landmarks, 32), dtype=np.uint8)

    def observe(self, pose: SE3) -> list[StereoObservation]:
        """Return the observations of all landmarks visible from ``pose``."""
        T_camera_map = self.calibration.T_camera_device.compose(pose)
        points = T_camera_map.transform_points(self.positions)
        left = self.calibration.project_left(points)
        right = self.calibration.project_right(points)
        visible = (
            (points[:, 2] > 0.5)
            & self.calibration.in_image(left)
            & self.calibration.in_image(right)
        )

        observations = []
        for k in np.flatnonzero(visible):
            descriptor = self.descriptors[k]
            observations.append(
                StereoObservation(
                    left=Feature2D(
                        u=float(left[k, 0]), v=float(left[k, 1]),
                        descriptor=descriptor, track_id=int(k),
                    ),
                    right=Feature2D(
                        u=float(right[k, 0]), v=float(right[k, 1]),
                        descriptor=descriptor, track_id=int(k),
                    ),
                    point_camera=points[k].copy(),
                )
            )
        return observations


class ScriptedFeatureEngine:
    """Feature engine double returning scene observations at scripted poses.

    Stereo samples whose timestamp has no pose (or a None pose) produce an
    empty feature state, like a frame with nothing matchable.
    """

    def __init__(self, scene: SyntheticScene) -> None:
        self.scene = scene
        self.poses: dict[int, SE3 | None] = {}

    def process(self, sample: StereoSample, state: FeatureState, with_3d: bool = True):
        if not sample.is_valid:
            state.clear(sample.timestamp_ns)
            return state
        pose = self.poses.get(sample.timestamp_ns)
        observations = [] if pose is None else self.scene.observe(pose)
        state.timestamp_ns = sample.timestamp_ns
        state.left = Features.from_list([obs.left for obs in observations])
        state.right = Features.from_list([obs.right for obs in observations])
        state.observations = observations if with_3d else []
        return state


def stereo_sample(timestamp_ns: int) -> StereoSample:
    """A valid placeholder stereo sample (content ignored by the scripted engine)."""
    image = np.zeros((4, 4), dtype=np.uint8)
    return StereoSample(timestamp_ns=timestamp_ns, left=image, right=image.copy())


def textured_pair(disparity: int = 20, seed: int = 3) -> tuple[np.ndarray, np.ndarray]:
    """Rectified stereo pair of a fronto-parallel textured plane.

    Every pixel has the same disparity, so every point lies at depth
    fx * baseline / disparity.
    """
    rng = np.random.default_rng(seed)
    # 4x4 pixel random blocks give strong, well separated corners
    blocks = rng.integers(0, 256, (HEIGHT // 4, (WIDTH + disparity) // 4), dtype=np.uint8)
    texture = cv2.resize(blocks, (WIDTH + disparity, HEIGHT), interpolation=cv2.INTER_NEAREST)
    texture = cv2.GaussianBlur(texture, (3, 3), 0)
    left = np.ascontiguousarray(texture[:, 0:WIDTH])
    right = np.ascontiguousarray(texture[:, disparity : disparity + WIDTH])
    return left, right


@pytest.fixture
def calibration() -> StereoCalibration:
    """640x480 rig, fx = fy = 400, baseline 10 cm."""
    return make_calibration()


@pytest.fixture
def scene(calibration: StereoCalibration) -> SyntheticScene:
    return SyntheticScene(calibration)


@pytest.fixture
def vocabulary() -> VisualVocabulary:
    rng = np.random.default_rng(11)
    return VisualVocabulary.from_words(rng.integers(0, 256, (16, 32)).astype(np.float32))


@pytest.fixture
def fast_config() -> SystemConfig:
    """Config with short initialization and loss windows for scripted runs."""
    return SystemConfig(
        estimator=EstimatorConfig(
            init_min_frames=3,
            init_min_samples=3,
            lost_after_frames=3,
            pose_rotation_sigma=1e-3,
            pose_position_sigma=1e-3,
        ),
        map=MapConfig(max_frames_without_integration=600),
        maintenance=MaintenanceConfig(background=False),
    )


@pytest.fixture
def calibration_file(tmp_path: Path, calibration: StereoCalibration) -> Path:
    import yaml

    path = tmp_path / "calibration.yaml"
    path.write_text(yaml.safe_dump(calibration.to_dict()))
    return path
