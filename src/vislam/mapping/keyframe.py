"""Keyframe data structure and retention policy.

A keyframe is a retained stereo frame: its pose, its features and the
landmarks they observe. Not every frame becomes a keyframe; only those
far enough from every existing keyframe, or that add many new landmarks.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..frontend.pose import SE3


@dataclass
class Keyframe:
    """A retained frame used for relocalization and bundle adjustment.

    Row k of every per-observation array describes the same stereo
    observation.

    Attributes:
        id: Unique keyframe identifier
        timestamp_ns: Capture timestamp
        pose: Device pose T_device_map
        keypoints_left: (N, 2) left-image pixels
        keypoints_right: (N, 2) right-image pixels
        descriptors: (N, 32) uint8 left descriptors
        landmark_ids: (N,) int64 observed landmark per row (-1 if none)
        points_camera: (N, 3) triangulated points in left camera frame
        bow: Bag-of-words vector of the descriptors
    """

    id: int
    timestamp_ns: int
    pose: SE3
    keypoints_left: np.ndarray
    keypoints_right: np.ndarray
    descriptors: np.ndarray
    landmark_ids: np.ndarray
    points_camera: np.ndarray
    bow: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float32))

    def __post_init__(self) -> None:
        """Normalize array dtypes."""
        self.keypoints_left = np.asarray(self.keypoints_left, dtype=np.float64).reshape(-1, 2)
        self.keypoints_right = np.asarray(self.keypoints_right, dtype=np.float64).reshape(-1, 2)
        self.descriptors = np.asarray(self.descriptors, dtype=np.uint8).reshape(-1, 32)
        self.landmark_ids = np.asarray(self.landmark_ids, dtype=np.int64).flatten()
        self.points_camera = np.asarray(self.points_camera, dtype=np.float64).reshape(-1, 3)
        self.bow = np.asarray(self.bow, dtype=np.float32)

    def observed_landmark_ids(self) -> set[int]:
        """Return the set of landmark ids observed by this keyframe."""
        return {int(i) for i in self.landmark_ids if i >= 0}

    def copy(self) -> Keyframe:
        """Return a deep copy."""
        return Keyframe(
            id=self.id,
            timestamp_ns=self.timestamp_ns,
            pose=self.pose.copy(),
            keypoints_left=self.keypoints_left.copy(),
            keypoints_right=self.keypoints_right.copy(),
            descriptors=self.descriptors.copy(),
            landmark_ids=self.landmark_ids.copy(),
            points_camera=self.points_camera.copy(),
            bow=self.bow.copy(),
        )

    @property
    def num_observations(self) -> int:
        """Return number of landmark observations."""
        return int(np.count_nonzero(self.landmark_ids >= 0))

    def __len__(self) -> int:
        """Return number of stored stereo observations."""
        return len(self.landmark_ids)


class KeyframePolicy:
    """Decides whether a frame is informative enough to retain.

    A frame becomes a keyframe when it has at least ``min_observations``
    observations and either:
    1. No keyframe exists yet
    2. The nearest keyframe is farther than the translation or rotation
       threshold
    3. The frame created at least ``min_new_landmarks`` new landmarks
    """

    def __init__(
        self,
        min_translation: float = 0.25,  # meters
        min_rotation: float = 10.0,  # degrees
        min_new_landmarks: int = 60,
        min_observations: int = 10,
    ) -> None:
        """Initialize keyframe policy.

        Args:
            min_translation: Minimum distance (m) to the nearest keyframe
            min_rotation: Minimum rotation (degrees) to the nearest keyframe
            min_new_landmarks: New landmarks that alone justify a keyframe
            min_observations: Frames with fewer observations are never kept
        """
        self._min_translation = min_translation
        self._min_rotation_rad = np.deg2rad(min_rotation)
        self._min_new_landmarks = min_new_landmarks
        self._min_observations = min_observations

    def should_create_keyframe(
        self,
        pose: SE3,
        keyframe_poses: list[SE3],
        num_observations: int,
        num_new_landmarks: int,
    ) -> bool:
        """Determine if a new keyframe should be created.

        Args:
            pose: Current T_device_map
            keyframe_poses: Poses of existing keyframes
            num_observations: Observations in the current frame
            num_new_landmarks: Landmarks the current frame created

        Returns:
            True if a new keyframe should be created
        """
        if num_observations < self._min_observations:
            return False

        # First frame is always a keyframe
        if not keyframe_poses:
            return True

        if num_new_landmarks >= self._min_new_landmarks:
            return True

        # Parallax relative to the nearest keyframe
        centers = np.array([p.center for p in keyframe_poses])
        nearest = int(np.argmin(np.linalg.norm(centers - pose.center, axis=1)))
        translation, rotation = pose.distance_to(keyframe_poses[nearest])
        return translation > self._min_translation or rotation > self._min_rotation_rad
