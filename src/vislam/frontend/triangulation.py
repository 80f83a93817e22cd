"""Stereo triangulation with depth and reprojection gating."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .calibration import StereoCalibration
from .feature_detector import Feature2D, Features
from .stereo_matcher import StereoMatches


@dataclass(frozen=True, eq=False)
class StereoObservation:
    """A stereo-matched feature pair and its triangulated point.

    Attributes:
        left: Feature in the left image
        right: Matching feature in the right image
        point_camera: (3,) triangulated point in the left camera frame
    """

    left: Feature2D
    right: Feature2D
    point_camera: np.ndarray = field(repr=False)

    @property
    def depth(self) -> float:
        """Return the point depth (z) in meters."""
        return float(self.point_camera[2])

    @property
    def descriptor(self) -> np.ndarray:
        """Return the left descriptor, used for association."""
        return self.left.descriptor

    @property
    def track_id(self) -> int:
        """Return the left feature's track id."""
        return self.left.track_id


def stack_observations(
    observations: list[StereoObservation],
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Stack observations into arrays.

    Returns:
        Tuple of (pixels_left (N,2), u_right (N,), points_camera (N,3),
        descriptors (N,32))
    """
    if not observations:
        return (
            np.empty((0, 2)),
            np.empty(0),
            np.empty((0, 3)),
            np.empty((0, 32), dtype=np.uint8),
        )
    pixels = np.array([[o.left.u, o.left.v] for o in observations], dtype=np.float64)
    u_right = np.array([o.right.u for o in observations], dtype=np.float64)
    points = np.array([o.point_camera for o in observations], dtype=np.float64)
    descriptors = np.array([o.descriptor for o in observations], dtype=np.uint8)
    return pixels, u_right, points, descriptors


class Triangulator:
    """Turns stereo matches into StereoObservations.

    A match is dropped (silently) when its depth falls outside
    [min_depth, max_depth] or when the triangulated point reprojects
    further than ``max_reprojection_error`` pixels from either keypoint.
    """

    def __init__(
        self,
        calibration: StereoCalibration,
        min_depth: float = 0.08,
        max_depth: float = 40.0,
        max_reprojection_error: float = 1.5,
    ) -> None:
        """Initialize triangulator.

        Args:
            calibration: Rectified stereo calibration
            min_depth: Minimum plausible depth in meters
            max_depth: Maximum plausible depth in meters
            max_reprojection_error: Pixel bound in both views
        """
        self._calibration = calibration
        self._min_depth = min_depth
        self._max_depth = max_depth
        self._max_reprojection_error = max_reprojection_error

    def _valid_mask(
        self, points: np.ndarray, pts_left: np.ndarray, pts_right: np.ndarray
    ) -> np.ndarray:
        depth = points[:, 2]
        in_range = (
            np.isfinite(points).all(axis=1)
            & (depth >= self._min_depth)
            & (depth <= self._max_depth)
        )
        err_left = np.linalg.norm(self._calibration.project_left(points) - pts_left, axis=1)
        err_right = np.linalg.norm(
            self._calibration.project_right(points) - pts_right, axis=1
        )
        return (
            in_range
            & (err_left <= self._max_reprojection_error)
            & (err_right <= self._max_reprojection_error)
        )

    def triangulate(self, pair: tuple[Feature2D, Feature2D]) -> StereoObservation | None:
        """Triangulate one matched pair.

        Args:
            pair: (left, right) matched features

        Returns:
            StereoObservation, or None if the pair is rejected
        """
        left, right = pair
        pts_left = np.array([[left.u, left.v]], dtype=np.float64)
        pts_right = np.array([[right.u, right.v]], dtype=np.float64)
        points = self._calibration.triangulate(pts_left, pts_right)
        if not self._valid_mask(points, pts_left, pts_right)[0]:
            return None
        return StereoObservation(left=left, right=right, point_camera=points[0])

    def triangulate_matches(
        self,
        features_left: Features,
        features_right: Features,
        matches: StereoMatches,
    ) -> list[StereoObservation]:
        """Vectorised triangulation of all matches of a frame.

        Returns:
            Accepted observations, in match order
        """
        if len(matches) == 0:
            return []

        pts_left = features_left.points[matches.left_indices].astype(np.float64)
        pts_right = features_right.points[matches.right_indices].astype(np.float64)
        points = self._calibration.triangulate(pts_left, pts_right)
        valid = self._valid_mask(points, pts_left, pts_right)

        pairs = matches.pairs(features_left, features_right)
        return [
            StereoObservation(left=left, right=right, point_camera=points[k])
            for k, (left, right) in enumerate(pairs)
            if valid[k]
        ]

    @property
    def max_reprojection_error(self) -> float:
        """Return the reprojection bound in pixels."""
        return self._max_reprojection_error

    @property
    def depth_range(self) -> tuple[float, float]:
        """Return (min_depth, max_depth) in meters."""
        return (self._min_depth, self._max_depth)
