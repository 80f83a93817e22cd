"""Rectified stereo calibration: intrinsics, baseline and extrinsics.

Images are assumed rectified upstream, so the right camera is the left
camera translated by ``baseline`` meters along its x-axis. Calibration
files are YAML or JSON (JSON is a YAML subset):

    image_size: [752, 480]          # width, height
    left:  {fx: 435.2, fy: 435.2, cx: 367.2, cy: 252.2}
    right: {fx: 435.2, fy: 435.2, cx: 367.2, cy: 252.2}   # optional
    baseline: 0.110                 # meters
    T_device_camera: [16 floats]    # optional, row-major, default identity
    imu:                            # optional noise densities
      gyro_noise_density: 1.7e-4
      accel_noise_density: 2.0e-3
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import cv2
import numpy as np
import yaml

from ..errors import CalibrationError, MissingFileError
from .pose import SE3


@dataclass
class CameraIntrinsics:
    """Camera intrinsic parameters (pinhole model)."""

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)

    def to_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )


@dataclass
class IMUNoise:
    """Inertial sensor noise parameters.

    Attributes:
        gyro_noise_density: Gyroscope white noise (rad/s/√Hz)
        gyro_random_walk: Gyroscope bias random walk (rad/s²/√Hz)
        accel_noise_density: Accelerometer white noise (m/s²/√Hz)
        accel_random_walk: Accelerometer bias random walk (m/s³/√Hz)
    """

    gyro_noise_density: float = 1.7e-4
    gyro_random_walk: float = 1.9e-5
    accel_noise_density: float = 2.0e-3
    accel_random_walk: float = 3.0e-3


def _parse_intrinsics(data: Any, name: str, source: str) -> CameraIntrinsics:
    if not isinstance(data, dict):
        raise CalibrationError(f"Missing '{name}' intrinsics in {source}")
    try:
        intrinsics = CameraIntrinsics(
            fx=float(data["fx"]),
            fy=float(data["fy"]),
            cx=float(data["cx"]),
            cy=float(data["cy"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CalibrationError(f"Invalid '{name}' intrinsics in {source}: {e}") from e
    if intrinsics.fx <= 0 or intrinsics.fy <= 0:
        raise CalibrationError(f"Focal lengths must be positive in {source}")
    return intrinsics


class StereoCalibration:
    """Rectified stereo rig with projection and triangulation helpers.

    The device frame is the body frame the engine reports poses in; the
    left camera is related to it by ``T_device_camera``.
    """

    def __init__(
        self,
        image_size: tuple[int, int],
        left: CameraIntrinsics,
        baseline: float,
        right: CameraIntrinsics | None = None,
        T_device_camera: SE3 | None = None,
        imu: IMUNoise | None = None,
    ) -> None:
        """Initialize stereo calibration.

        Args:
            image_size: (width, height) of the rectified images
            left: Left camera intrinsics
            baseline: Distance between camera centers in meters (> 0)
            right: Right camera intrinsics (defaults to left)
            T_device_camera: Left camera pose in the device frame
            imu: Inertial noise parameters (defaults used if None)

        Raises:
            CalibrationError: If any parameter is out of range
        """
        if baseline <= 0:
            raise CalibrationError(f"Baseline must be positive, got {baseline}")
        if len(image_size) != 2 or min(image_size) <= 0:
            raise CalibrationError(f"Invalid image size: {image_size}")

        self._image_size = (int(image_size[0]), int(image_size[1]))
        self._left = left
        self._right = right if right is not None else left
        self._baseline = float(baseline)
        self._T_device_camera = T_device_camera or SE3.identity()
        self._T_camera_device = self._T_device_camera.inverse()
        self._imu = imu or IMUNoise()

        # Rectified projection matrices: right camera sits at +baseline on x
        K_left = self._left.to_matrix()
        K_right = self._right.to_matrix()
        self._P1 = K_left @ np.hstack([np.eye(3), np.zeros((3, 1))])
        self._P2 = K_right @ np.hstack(
            [np.eye(3), np.array([[-self._baseline], [0.0], [0.0]])]
        )

    @classmethod
    def from_file(cls, path: str | Path) -> StereoCalibration:
        """Load calibration from a YAML or JSON file.

        Raises:
            MissingFileError: If the file doesn't exist
            CalibrationError: If the file can't be parsed or is incomplete
        """
        path = Path(path)
        if not path.exists():
            raise MissingFileError(f"Calibration file not found: {path}")

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise CalibrationError(f"Cannot parse calibration file {path}: {e}") from e

        return cls.from_dict(data, source=str(path))

    @classmethod
    def from_dict(cls, data: Any, source: str = "<dict>") -> StereoCalibration:
        """Build calibration from a parsed mapping.

        Raises:
            CalibrationError: If required keys are missing or malformed
        """
        if not isinstance(data, dict):
            raise CalibrationError(f"Calibration must be a mapping: {source}")

        image_size = data.get("image_size")
        if not isinstance(image_size, (list, tuple)) or len(image_size) != 2:
            raise CalibrationError(f"Invalid image_size in {source}")

        left = _parse_intrinsics(data.get("left"), "left", source)
        right = (
            _parse_intrinsics(data["right"], "right", source)
            if data.get("right") is not None
            else None
        )

        try:
            baseline = float(data["baseline"])
        except (KeyError, TypeError, ValueError) as e:
            raise CalibrationError(f"Invalid baseline in {source}") from e

        T_device_camera = None
        if data.get("T_device_camera") is not None:
            values = data["T_device_camera"]
            if not isinstance(values, (list, tuple)) or len(values) != 16:
                raise CalibrationError(f"Invalid T_device_camera in {source}")
            T_device_camera = SE3.from_matrix(
                np.array(values, dtype=np.float64).reshape(4, 4)
            )

        imu = None
        if data.get("imu") is not None:
            try:
                imu = IMUNoise(**{k: float(v) for k, v in data["imu"].items()})
            except (AttributeError, TypeError, ValueError) as e:
                raise CalibrationError(f"Invalid imu block in {source}: {e}") from e

        return cls(
            image_size=(image_size[0], image_size[1]),
            left=left,
            right=right,
            baseline=baseline,
            T_device_camera=T_device_camera,
            imu=imu,
        )

    def to_dict(self) -> dict:
        """Return the calibration as a plain mapping (inverse of from_dict)."""
        return {
            "image_size": list(self._image_size),
            "left": asdict(self._left),
            "right": asdict(self._right),
            "baseline": self._baseline,
            "T_device_camera": self._T_device_camera.to_matrix().flatten().tolist(),
            "imu": asdict(self._imu),
        }

    def fingerprint(self) -> str:
        """Stable hash of the geometric parameters.

        Maps record the fingerprint of the calibration they were built
        with; loading them against a different rig is refused.
        """
        geometry = self.to_dict()
        geometry.pop("imu")
        encoded = json.dumps(geometry, sort_keys=True).encode("utf-8")
        return hashlib.sha1(encoded).hexdigest()

    def triangulate(self, pts_left: np.ndarray, pts_right: np.ndarray) -> np.ndarray:
        """Triangulate 3D points from matched rectified pixels.

        Args:
            pts_left: Nx2 pixels in the left image
            pts_right: Nx2 pixels in the right image

        Returns:
            Nx3 points in the left camera frame
        """
        if len(pts_left) == 0:
            return np.empty((0, 3), dtype=np.float64)

        points_4d = cv2.triangulatePoints(
            projMatr1=self._P1,
            projMatr2=self._P2,
            projPoints1=np.asarray(pts_left, dtype=np.float64).T,
            projPoints2=np.asarray(pts_right, dtype=np.float64).T,
        )
        # Homogeneous to Euclidean; w == 0 means a point at infinity
        w = points_4d[3:4, :]
        w = np.where(np.abs(w) < 1e-12, 1e-12, w)
        return (points_4d[:3, :] / w).T

    def project_left(self, points_camera: np.ndarray) -> np.ndarray:
        """Project Nx3 left-camera points into left-image pixels (Nx2)."""
        return self._project(points_camera, self._left, 0.0)

    def project_right(self, points_camera: np.ndarray) -> np.ndarray:
        """Project Nx3 left-camera points into right-image pixels (Nx2)."""
        return self._project(points_camera, self._right, self._baseline)

    @staticmethod
    def _project(
        points_camera: np.ndarray, intrinsics: CameraIntrinsics, offset_x: float
    ) -> np.ndarray:
        points = np.asarray(points_camera, dtype=np.float64).reshape(-1, 3)
        z = points[:, 2]
        z = np.where(np.abs(z) < 1e-12, 1e-12, z)
        u = intrinsics.fx * (points[:, 0] - offset_x) / z + intrinsics.cx
        v = intrinsics.fy * points[:, 1] / z + intrinsics.cy
        return np.stack([u, v], axis=1)

    def in_image(self, pixels: np.ndarray, margin: float = 0.0) -> np.ndarray:
        """Boolean mask of pixels inside the image bounds."""
        width, height = self._image_size
        return (
            (pixels[:, 0] >= margin)
            & (pixels[:, 0] < width - margin)
            & (pixels[:, 1] >= margin)
            & (pixels[:, 1] < height - margin)
        )

    @property
    def image_size(self) -> tuple[int, int]:
        """Return image size as (width, height)."""
        return self._image_size

    @property
    def left(self) -> CameraIntrinsics:
        """Return left camera intrinsics."""
        return self._left

    @property
    def right(self) -> CameraIntrinsics:
        """Return right camera intrinsics."""
        return self._right

    @property
    def camera_matrix(self) -> np.ndarray:
        """Return the left camera 3x3 intrinsic matrix."""
        return self._left.to_matrix()

    @property
    def baseline_meters(self) -> float:
        """Return baseline distance between cameras in meters."""
        return self._baseline

    @property
    def T_device_camera(self) -> SE3:
        """Return the left camera pose in the device frame."""
        return self._T_device_camera

    @property
    def T_camera_device(self) -> SE3:
        """Return the device pose in the left camera frame."""
        return self._T_camera_device

    @property
    def imu(self) -> IMUNoise:
        """Return inertial noise parameters."""
        return self._imu


def load_calibration(calibration: StereoCalibration | str | Path) -> StereoCalibration:
    """Accept either a loaded calibration or a path to one."""
    if isinstance(calibration, StereoCalibration):
        return calibration
    return StereoCalibration.from_file(calibration)
