"""OpenCV overlays: feature plots and a top-down trajectory view.

All drawers are read-only consumers of engine output and return new BGR
images; nothing here touches the map or the session state.
"""

from __future__ import annotations

from collections import deque

import cv2
import numpy as np

from ..frontend.feature_detector import Feature2D, to_grayscale
from ..frontend.pose import SE3
from ..frontend.triangulation import StereoObservation

# Depth range mapped onto the blue -> red colour ramp
NEAR_DEPTH = 0.08  # meters
FAR_DEPTH = 4.0  # meters


def _to_bgr(image: np.ndarray) -> np.ndarray:
    return cv2.cvtColor(to_grayscale(image), cv2.COLOR_GRAY2BGR)


def depth_color(depth: float) -> tuple[int, int, int]:
    """Map a depth in meters to a BGR colour (blue near, red far)."""
    t = float(np.clip((depth - NEAR_DEPTH) / (FAR_DEPTH - NEAR_DEPTH), 0.0, 1.0))
    return (int(round(255 * (1.0 - t))), 0, int(round(255 * t)))


def draw_2d_features(
    image: np.ndarray,
    features: list[Feature2D],
    color: tuple[int, int, int] = (0, 255, 0),
) -> np.ndarray:
    """Draw detected features as small circles.

    Args:
        image: Grayscale or BGR image the features were detected on
        features: Features to draw
        color: BGR colour

    Returns:
        BGR copy of the image with the overlay
    """
    canvas = _to_bgr(image)
    for feature in features:
        center = (int(round(feature.u)), int(round(feature.v)))
        cv2.circle(canvas, center, 3, color, 1)
    return canvas


def draw_stereo_features(
    left: np.ndarray,
    right: np.ndarray,
    observations: list[StereoObservation],
) -> np.ndarray:
    """Draw stereo observations side by side, coloured by depth.

    Args:
        left: Left image
        right: Right image
        observations: Triangulated observations of this pair

    Returns:
        BGR image of width left + right
    """
    canvas = np.hstack([_to_bgr(left), _to_bgr(right)])
    offset = left.shape[1]
    for obs in observations:
        color = depth_color(obs.depth)
        pt_left = (int(round(obs.left.u)), int(round(obs.left.v)))
        pt_right = (int(round(obs.right.u)) + offset, int(round(obs.right.v)))
        cv2.circle(canvas, pt_left, 3, color, -1)
        cv2.circle(canvas, pt_right, 3, color, -1)
    return canvas


class TrajectoryDrawer:
    """Top-down view of the device trajectory onto the map x-y plane.

    Only the most recent ``trail_seconds`` of positions are drawn; the
    view is centered on the latest position.
    """

    def __init__(
        self,
        size: int = 480,
        pixels_per_meter: float = 50.0,
        trail_seconds: float = 3.0,
    ) -> None:
        """Initialize the drawer.

        Args:
            size: Canvas width and height in pixels
            pixels_per_meter: Scale of the view
            trail_seconds: Length of the drawn trail
        """
        self._size = size
        self._scale = pixels_per_meter
        self._trail_ns = int(trail_seconds * 1e9)
        self._trail: deque[tuple[int, np.ndarray]] = deque()

    def add(self, timestamp_ns: int, pose: SE3) -> None:
        """Append a device pose (T_device_map) to the trail."""
        self._trail.append((timestamp_ns, pose.center))
        while self._trail and timestamp_ns - self._trail[0][0] > self._trail_ns:
            self._trail.popleft()

    def clear(self) -> None:
        """Forget the trail."""
        self._trail.clear()

    def _to_pixel(self, xy: np.ndarray, origin: np.ndarray) -> tuple[int, int]:
        half = self._size / 2
        # x to the right, y up
        u = half + (xy[0] - origin[0]) * self._scale
        v = half - (xy[1] - origin[1]) * self._scale
        return int(round(u)), int(round(v))

    def draw(self, points: np.ndarray | None = None) -> np.ndarray:
        """Render the trail, and optionally map points, on a black canvas.

        Args:
            points: Map points (N, 3) to draw as grey dots

        Returns:
            BGR image of shape (size, size, 3)
        """
        canvas = np.zeros((self._size, self._size, 3), dtype=np.uint8)
        if not self._trail:
            return canvas
        origin = self._trail[-1][1]

        if points is not None and len(points) > 0:
            for point in np.asarray(points)[:, :2]:
                cv2.circle(canvas, self._to_pixel(point, origin), 1, (128, 128, 128), -1)

        pixels = [self._to_pixel(center, origin) for _, center in self._trail]
        if len(pixels) > 1:
            cv2.polylines(
                canvas, [np.array(pixels, dtype=np.int32)], False, (0, 255, 255), 1
            )
        cv2.circle(canvas, pixels[-1], 4, (0, 0, 255), -1)
        return canvas

    def __len__(self) -> int:
        """Return number of positions in the trail."""
        return len(self._trail)
