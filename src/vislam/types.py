"""Timestamped sensor samples fed to the orchestrators.

Samples form a tagged variant: every sample carries a ``kind`` tag and
consumers dispatch on it rather than on the concrete class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np


class SampleKind(Enum):
    """Tag identifying the payload of a sample."""

    IMU = "imu"
    STEREO = "stereo"


@dataclass
class InertialSample:
    """Single accelerometer + gyroscope reading.

    Attributes:
        timestamp_ns: Capture timestamp in nanoseconds
        accel: Specific force (ax, ay, az) in m/s², device frame
        gyro: Angular velocity (wx, wy, wz) in rad/s, device frame
    """

    timestamp_ns: int
    accel: np.ndarray  # (3,) m/s²
    gyro: np.ndarray  # (3,) rad/s
    kind: SampleKind = field(default=SampleKind.IMU, init=False)

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape and type."""
        self.timestamp_ns = int(self.timestamp_ns)
        self.accel = np.asarray(self.accel, dtype=np.float64).flatten()
        self.gyro = np.asarray(self.gyro, dtype=np.float64).flatten()
        if self.accel.shape != (3,) or self.gyro.shape != (3,):
            raise ValueError("accel and gyro must both have 3 components")


@dataclass
class StereoSample:
    """Rectified stereo image pair captured at one instant.

    Either image may be None (for example a dropped frame from the
    device). Such samples are carried through the pipeline and rejected
    by the feature engine rather than at construction time.

    Attributes:
        timestamp_ns: Capture timestamp in nanoseconds
        left: Left rectified image (grayscale or BGR), or None
        right: Right rectified image (grayscale or BGR), or None
    """

    timestamp_ns: int
    left: np.ndarray | None
    right: np.ndarray | None
    kind: SampleKind = field(default=SampleKind.STEREO, init=False)

    def __post_init__(self) -> None:
        self.timestamp_ns = int(self.timestamp_ns)

    @property
    def is_valid(self) -> bool:
        """True when both images are present, non-empty and equally sized."""
        if self.left is None or self.right is None:
            return False
        if self.left.size == 0 or self.right.size == 0:
            return False
        return self.left.shape[:2] == self.right.shape[:2]


Sample = InertialSample | StereoSample
