"""Read-only visual consumers of engine output."""

from .drawers import TrajectoryDrawer, depth_color, draw_2d_features, draw_stereo_features
from .rerun_visualizer import RerunVisualizer

__all__ = [
    "RerunVisualizer",
    "TrajectoryDrawer",
    "depth_color",
    "draw_2d_features",
    "draw_stereo_features",
]
