"""Tunable policy constants grouped into per-component configs.

Two processing profiles exist. ``SlamConfig.ONLINE`` prefers speed and
is meant for live devices; ``SlamConfig.OFFLINE`` prefers accuracy and
runs extra refinement plus background bundle adjustment, which is only
appropriate for recorded sequences.

A YAML file can override any field:

    profile: offline
    feature:
      n_features: 1500
    estimator:
      lost_after_frames: 10
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


class SlamConfig(Enum):
    """Processing profile."""

    ONLINE = "online"  # prefer speed
    OFFLINE = "offline"  # prefer accuracy


@dataclass
class FeatureConfig:
    """Detection, stereo matching and triangulation thresholds."""

    n_features: int = 1000
    scale_factor: float = 1.2
    n_levels: int = 8
    edge_threshold: int = 31
    fast_threshold: int = 20
    max_hamming_distance: int = 50
    ratio_threshold: float = 0.8  # best must be < ratio * second best
    epipolar_threshold: float = 2.0  # pixels
    min_disparity: float = 1.0  # pixels
    max_disparity: float = 200.0  # pixels
    min_depth: float = 0.08  # meters
    max_depth: float = 40.0  # meters
    max_reprojection_error: float = 1.5  # pixels, both views
    track_ratio_threshold: float = 0.75
    track_max_hamming_distance: int = 50


@dataclass
class EstimatorConfig:
    """Filter noise, tracking and relocalization policy."""

    # Initialization
    init_min_frames: int = 10
    init_min_samples: int = 150
    init_min_observations: int = 20
    init_min_track_ratio: float = 0.5

    # Correction
    min_inliers: int = 12
    lost_after_frames: int = 5
    search_radius: float = 15.0  # pixels, projection-guided matching
    refine_radius: float = 4.0  # pixels, re-matching after a refinement pass
    max_match_distance: int = 60
    pnp_reprojection_threshold: float = 3.0
    pnp_iterations: int = 100
    pnp_confidence: float = 0.99
    refinement_passes: int = 1
    robust_refinement: bool = False

    # Relocalization
    min_relocalization_inliers: int = 15
    relocalization_candidates: int = 3
    relocalization_ratio: float = 0.8

    # Inertial gap handling (noise densities come from the calibration)
    gravity: float = 9.81
    max_imu_gap_s: float = 0.1

    # Constant-velocity propagation when no inertial data is flowing
    rotation_random_walk: float = 0.05  # rad/√s
    velocity_random_walk: float = 0.5  # m/s/√s

    # Visual pose measurement noise
    pose_rotation_sigma: float = 0.01  # rad
    pose_position_sigma: float = 0.02  # m


@dataclass
class MapConfig:
    """Landmark association and keyframe retention policy."""

    association_radius: float = 4.0  # pixels
    association_max_distance: int = 50
    keyframe_min_translation: float = 0.25  # meters
    keyframe_min_rotation_deg: float = 10.0
    keyframe_min_new_landmarks: int = 60
    keyframe_min_observations: int = 10
    max_frames_without_integration: int = 600
    candidate_min_score: float = 0.0


@dataclass
class MaintenanceConfig:
    """Bundle adjustment over the covisibility window of a keyframe."""

    background: bool = False
    window_size: int = 5
    min_shared_points: int = 15
    max_iterations: int = 20
    loss: str = "huber"
    loss_scale: float = 2.0  # pixels
    min_observations: int = 20


@dataclass
class SystemConfig:
    """All component configs for one processing session."""

    profile: SlamConfig = SlamConfig.ONLINE
    feature: FeatureConfig = field(default_factory=FeatureConfig)
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    map: MapConfig = field(default_factory=MapConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)

    @classmethod
    def for_profile(cls, profile: SlamConfig | str) -> SystemConfig:
        """Return the default config for a processing profile.

        Args:
            profile: SlamConfig member or its string value

        Returns:
            SystemConfig tuned for speed (ONLINE) or accuracy (OFFLINE)
        """
        profile = SlamConfig(profile)
        config = cls(profile=profile)
        if profile is SlamConfig.OFFLINE:
            config.feature.n_features = 1500
            config.estimator.pnp_iterations = 300
            config.estimator.refinement_passes = 3
            config.estimator.robust_refinement = True
            config.maintenance.background = True
            config.maintenance.window_size = 15
            config.maintenance.max_iterations = 50
        return config


_SECTIONS = ("feature", "estimator", "map", "maintenance")


def _apply_overrides(section: Any, overrides: dict, name: str) -> None:
    known = {f.name for f in dataclasses.fields(section)}
    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown {name} option: '{key}'")
        setattr(section, key, value)


def load_config(
    path: str | Path | None = None,
    profile: SlamConfig | str | None = None,
) -> SystemConfig:
    """Build a SystemConfig from a profile plus optional YAML overrides.

    Args:
        path: YAML file with per-section overrides (optional)
        profile: Profile to start from; overrides the file's ``profile`` key

    Returns:
        Resolved SystemConfig

    Raises:
        FileNotFoundError: If path is given but doesn't exist
        ValueError: If the file contains unknown sections or options
    """
    data: dict = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")

    if profile is None:
        profile = data.get("profile", SlamConfig.ONLINE.value)
    config = SystemConfig.for_profile(profile)

    for key, overrides in data.items():
        if key == "profile":
            continue
        if key not in _SECTIONS:
            raise ValueError(f"Unknown config section: '{key}'")
        if not isinstance(overrides, dict):
            raise ValueError(f"Config section '{key}' must be a mapping")
        _apply_overrides(getattr(config, key), overrides, key)

    return config
