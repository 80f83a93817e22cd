"""SE(3) rigid transforms and SO(3) helpers."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np


def skew(v: np.ndarray) -> np.ndarray:
    """Create skew-symmetric matrix [v]× from a 3-vector."""
    return np.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ]
    )


def exp_so3(omega: np.ndarray) -> np.ndarray:
    """Exponential map from so(3) to SO(3) (Rodrigues formula).

    Args:
        omega: Axis-angle vector (3,), angle = norm in radians

    Returns:
        3x3 rotation matrix
    """
    theta = np.linalg.norm(omega)
    if theta < 1e-10:
        # First-order approximation for small angles: R ≈ I + [omega]×
        return np.eye(3) + skew(omega)

    K = skew(omega / theta)
    return np.eye(3) + np.sin(theta) * K + (1 - np.cos(theta)) * (K @ K)


def log_so3(R: np.ndarray) -> np.ndarray:
    """Logarithm map from SO(3) to so(3).

    Args:
        R: 3x3 rotation matrix

    Returns:
        Axis-angle vector (3,)
    """
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return rvec.flatten()


def rotation_angle(R: np.ndarray) -> float:
    """Return the rotation angle of R in radians, in [0, pi].

    Uses the trace formula: trace(R) = 1 + 2*cos(theta)
    """
    cos_theta = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    return float(np.arccos(cos_theta))


def rotation_between(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Smallest rotation R such that R @ a is parallel to b.

    Args:
        a: Source direction (3,), need not be normalized
        b: Target direction (3,), need not be normalized

    Returns:
        3x3 rotation matrix
    """
    a = np.asarray(a, dtype=np.float64) / np.linalg.norm(a)
    b = np.asarray(b, dtype=np.float64) / np.linalg.norm(b)
    axis = np.cross(a, b)
    sin_angle = np.linalg.norm(axis)
    cos_angle = float(np.dot(a, b))
    if sin_angle < 1e-9:
        if cos_angle > 0:
            return np.eye(3)
        # Antiparallel: rotate pi around any axis orthogonal to a
        ortho = np.cross(a, [1.0, 0.0, 0.0])
        if np.linalg.norm(ortho) < 1e-6:
            ortho = np.cross(a, [0.0, 1.0, 0.0])
        return exp_so3(np.pi * ortho / np.linalg.norm(ortho))
    return exp_so3(axis / sin_angle * np.arctan2(sin_angle, cos_angle))


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation) in SE(3).

    ``T_a_b`` maps coordinates expressed in frame b into frame a:

        p_a = R @ p_b + t

    Device poses reported by the engine are ``T_device_map``: they take
    map coordinates to device coordinates.

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: 3D translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def identity(cls) -> SE3:
        """Create identity transformation."""
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> SE3:
        """Create SE3 from a 4x4 homogeneous matrix [[R, t], [0, 1]].

        Raises:
            ValueError: If T is not 4x4
        """
        T = np.asarray(T, dtype=np.float64)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(rotation=T[:3, :3], translation=T[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Create SE3 from an OpenCV Rodrigues vector and translation.

        cv2.solvePnP returns the transform taking object (map) points into
        the camera frame, i.e. ``T_camera_map``.
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).flatten())
        return cls(rotation=R, translation=np.asarray(tvec).flatten())

    @classmethod
    def exp(cls, xi: np.ndarray) -> SE3:
        """Build a transform from a (rotation, translation) 6-vector.

        Args:
            xi: (6,) [axis-angle rotation, translation]

        Returns:
            SE3 with rotation exp(xi[:3]) and translation xi[3:]
        """
        xi = np.asarray(xi, dtype=np.float64).flatten()
        return cls(rotation=exp_so3(xi[:3]), translation=xi[3:6])

    def to_matrix(self) -> np.ndarray:
        """Convert to 4x4 homogeneous transformation matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Convert to OpenCV Rodrigues vector and translation."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.translation.copy()

    def inverse(self) -> SE3:
        """Compute the inverse transformation [R^T, -R^T @ t]."""
        R_inv = self.rotation.T
        return SE3(rotation=R_inv, translation=-R_inv @ self.translation)

    def compose(self, other: SE3) -> SE3:
        """Compose transformations: ``T_a_b.compose(T_b_c)`` gives ``T_a_c``."""
        return SE3(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Apply the transform to an Nx3 array of points.

        Raises:
            ValueError: If points is not Nx3
        """
        points = np.asarray(points, dtype=np.float64)
        if points.ndim == 1:
            points = points.reshape(1, 3)
        if points.shape[1] != 3:
            raise ValueError(f"Points must be Nx3, got {points.shape}")
        return points @ self.rotation.T + self.translation

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Apply the transform to a single 3D point."""
        point = np.asarray(point, dtype=np.float64).flatten()
        return self.rotation @ point + self.translation

    def distance_to(self, other: SE3) -> tuple[float, float]:
        """Return (translation distance, rotation angle) between two poses.

        Both poses must map the same fixed frame into their moving frame
        (for example two ``T_device_map`` poses).
        """
        delta = self.compose(other.inverse())
        return float(np.linalg.norm(delta.translation)), rotation_angle(delta.rotation)

    @property
    def center(self) -> np.ndarray:
        """Origin of frame a expressed in frame b, for a pose ``T_a_b``.

        For ``T_device_map`` this is the device position in map coordinates.
        """
        return -self.rotation.T @ self.translation

    def copy(self) -> SE3:
        """Return a deep copy."""
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    def __repr__(self) -> str:
        """Return string representation."""
        t = self.translation
        return f"SE3(translation=[{t[0]:.3f}, {t[1]:.3f}, {t[2]:.3f}])"

    def __matmul__(self, other: SE3) -> SE3:
        """Matrix multiplication operator for composition (T1 @ T2)."""
        return self.compose(other)
