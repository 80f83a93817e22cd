"""Rerun-based visualization for a SLAM or tracking session."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

from .drawers import FAR_DEPTH, NEAR_DEPTH

if TYPE_CHECKING:
    from ..frontend.feature_engine import FeatureState
    from ..frontend.pose import SE3
    from ..types import StereoSample


class RerunVisualizer:
    """Rerun logger for stereo features, device pose and the sparse map.

    Entity hierarchy:
        camera/
            left/
                image       - Left image
                features    - All detected features (green)
                stereo      - Triangulated features (coloured by depth)
            right/
                image       - Right image
                features    - All detected features (green)
        world/
            device          - Current device pose
            trajectory      - Device positions so far
            map             - Landmark positions (coloured by height)
    """

    def __init__(self, app_name: str = "vislam", spawn: bool = True) -> None:
        """Initialize Rerun visualization.

        Args:
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
        """
        rr.init(app_name, spawn=spawn)
        self._positions: list[np.ndarray] = []
        self._setup_coordinate_system()
        self._setup_layout()

    def _setup_coordinate_system(self) -> None:
        """Map frame is right-handed with z up (gravity along -z)."""
        rr.log("world", rr.ViewCoordinates.RIGHT_HAND_Z_UP, static=True)

    def _setup_layout(self) -> None:
        blueprint = rrb.Blueprint(
            rrb.Vertical(
                contents=[
                    rrb.Horizontal(
                        contents=[
                            rrb.Spatial2DView(name="Left Camera", origin="camera/left"),
                            rrb.Spatial2DView(name="Right Camera", origin="camera/right"),
                        ]
                    ),
                    rrb.Spatial3DView(name="Map", origin="world"),
                ]
            )
        )
        rr.send_blueprint(blueprint)

    def set_time(self, timestamp_ns: int) -> None:
        """Set the timeline cursor for subsequent logs."""
        rr.set_time("timestamp", duration=timestamp_ns / 1e9)

    def log_stereo(self, sample: StereoSample, state: FeatureState) -> None:
        """Log a stereo pair with its features.

        Args:
            sample: Stereo sample (invalid samples are skipped)
            state: Feature state produced from the sample
        """
        if not sample.is_valid:
            return
        self.set_time(sample.timestamp_ns)
        rr.log("camera/left/image", rr.Image(sample.left))
        rr.log("camera/right/image", rr.Image(sample.right))

        if len(state.left) > 0:
            rr.log(
                "camera/left/features",
                rr.Points2D(state.left.points, colors=[[0, 255, 0]], radii=3.0),
            )
        if len(state.right) > 0:
            rr.log(
                "camera/right/features",
                rr.Points2D(state.right.points, colors=[[0, 255, 0]], radii=3.0),
            )

        if state.observations:
            pixels = np.array([obs.left.pt for obs in state.observations])
            depths = np.array([obs.depth for obs in state.observations])
            t = np.clip((depths - NEAR_DEPTH) / (FAR_DEPTH - NEAR_DEPTH), 0, 1)
            colors = np.zeros((len(t), 3), dtype=np.uint8)
            colors[:, 0] = (t * 255).astype(np.uint8)  # red grows with depth
            colors[:, 2] = ((1 - t) * 255).astype(np.uint8)
            rr.log("camera/left/stereo", rr.Points2D(pixels, colors=colors, radii=4.0))

    def log_pose(self, timestamp_ns: int, pose: SE3) -> None:
        """Log the device pose and extend the trajectory.

        Args:
            timestamp_ns: Pose timestamp
            pose: Device pose T_device_map
        """
        self.set_time(timestamp_ns)
        T_map_device = pose.inverse()
        rr.log(
            "world/device",
            rr.Transform3D(
                translation=T_map_device.translation,
                mat3x3=T_map_device.rotation,
            ),
        )
        self._positions.append(T_map_device.translation.copy())
        self.log_trajectory(np.array(self._positions))

    def log_trajectory(
        self,
        positions: np.ndarray,
        entity_path: str = "world/trajectory",
    ) -> None:
        """Log device trajectory as a 3D line strip.

        Args:
            positions: Nx3 array of device positions in the map frame
            entity_path: Rerun entity path for the trajectory
        """
        if len(positions) < 2:
            return

        rr.log(
            entity_path,
            rr.LineStrips3D([positions], colors=[[255, 255, 0]], radii=0.01),
        )
        rr.log(
            f"{entity_path}/current",
            rr.Points3D([positions[-1]], colors=[[0, 255, 255]], radii=0.05),
        )

    def log_map_points(
        self,
        positions: np.ndarray,
        entity_path: str = "world/map",
    ) -> None:
        """Log sparse map points, coloured by height.

        Args:
            positions: Nx3 array of landmark positions
            entity_path: Rerun entity path for the map
        """
        if len(positions) == 0:
            return

        valid_positions = positions[np.isfinite(positions).all(axis=1)]
        if len(valid_positions) == 0:
            return

        heights = valid_positions[:, 2]
        h_min, h_max = np.percentile(heights, [5, 95])
        h_range = max(h_max - h_min, 0.1)
        normalized = np.clip((heights - h_min) / h_range, 0, 1)

        # Purple to white gradient
        colors = np.zeros((len(valid_positions), 3), dtype=np.uint8)
        colors[:, 0] = (128 + normalized * 127).astype(np.uint8)
        colors[:, 1] = (normalized * 255).astype(np.uint8)
        colors[:, 2] = (255 - normalized * 127).astype(np.uint8)

        rr.log(entity_path, rr.Points3D(valid_positions, colors=colors, radii=0.03))
