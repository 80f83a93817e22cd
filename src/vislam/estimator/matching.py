"""Projection-guided association of observations with map landmarks."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial import KDTree

from ..frontend.calibration import StereoCalibration
from ..frontend.feature_detector import hamming_distances
from ..frontend.pose import SE3

# Points closer than this to the camera plane are never projected
_MIN_PROJECTION_DEPTH = 1e-3


@dataclass
class Correspondences:
    """One-to-one observation/landmark pairs.

    Attributes:
        observation_indices: (K,) indices into the observation arrays
        landmark_ids: (K,) associated landmark ids
        pixel_errors: (K,) distance between observation and projection
        distances: (K,) Hamming distance between descriptors
    """

    observation_indices: np.ndarray
    landmark_ids: np.ndarray
    pixel_errors: np.ndarray
    distances: np.ndarray

    @classmethod
    def empty(cls) -> Correspondences:
        return cls(
            observation_indices=np.empty(0, dtype=np.int64),
            landmark_ids=np.empty(0, dtype=np.int64),
            pixel_errors=np.empty(0, dtype=np.float64),
            distances=np.empty(0, dtype=np.int32),
        )

    def __len__(self) -> int:
        """Return number of correspondences."""
        return len(self.observation_indices)


def associate(
    pixels: np.ndarray,
    descriptors: np.ndarray,
    landmark_ids: np.ndarray,
    landmark_positions: np.ndarray,
    landmark_descriptors: np.ndarray,
    T_camera_map: SE3,
    calibration: StereoCalibration,
    radius: float,
    max_distance: int,
) -> Correspondences:
    """Match observations to landmarks projected with a pose guess.

    A pair is a candidate when the landmark projects in front of the left
    camera within ``radius`` pixels of the observation and their
    descriptors are within ``max_distance`` bits. Candidates are accepted
    greedily, in order of lowest pixel error, then lowest Hamming
    distance, then lowest landmark id, so that each observation and each
    landmark appear at most once.

    Args:
        pixels: (N, 2) observed left-image pixels
        descriptors: (N, 32) observation descriptors
        landmark_ids: (M,) landmark ids
        landmark_positions: (M, 3) landmark positions in map frame
        landmark_descriptors: (M, 32) landmark descriptors
        T_camera_map: Pose guess of the left camera
        calibration: Stereo calibration
        radius: Search radius in pixels
        max_distance: Maximum Hamming distance

    Returns:
        Correspondences sorted by observation index
    """
    if len(pixels) == 0 or len(landmark_ids) == 0:
        return Correspondences.empty()

    points_camera = T_camera_map.transform_points(landmark_positions)
    in_front = points_camera[:, 2] > _MIN_PROJECTION_DEPTH
    projected = calibration.project_left(points_camera)
    visible = np.flatnonzero(in_front & calibration.in_image(projected, margin=-radius))
    if len(visible) == 0:
        return Correspondences.empty()

    # Radius search over the visible projections, one query per observation
    tree = KDTree(projected[visible])
    neighbours = tree.query_ball_point(pixels, r=radius)
    counts = np.array([len(n) for n in neighbours], dtype=np.int64)
    if counts.sum() == 0:
        return Correspondences.empty()
    obs_idx = np.repeat(np.arange(len(pixels)), counts)
    vis_idx = np.concatenate([np.asarray(n, dtype=np.int64) for n in neighbours])

    lm_idx = visible[vis_idx]
    errors = np.linalg.norm(pixels[obs_idx] - projected[lm_idx], axis=1)
    hamming = hamming_distances(descriptors[obs_idx], landmark_descriptors[lm_idx])
    keep = hamming <= max_distance
    obs_idx, lm_idx, errors, hamming = obs_idx[keep], lm_idx[keep], errors[keep], hamming[keep]
    if len(obs_idx) == 0:
        return Correspondences.empty()

    ids = np.asarray(landmark_ids, dtype=np.int64)[lm_idx]
    # Primary key last: error, then Hamming, then landmark id, then observation
    order = np.lexsort((obs_idx, ids, hamming, errors))

    used_obs: set[int] = set()
    used_lm: set[int] = set()
    accepted = []
    for k in order:
        o, lm = int(obs_idx[k]), int(ids[k])
        if o in used_obs or lm in used_lm:
            continue
        used_obs.add(o)
        used_lm.add(lm)
        accepted.append(k)

    accepted = np.array(accepted, dtype=np.int64)
    accepted = accepted[np.argsort(obs_idx[accepted], kind="stable")]
    return Correspondences(
        observation_indices=obs_idx[accepted].astype(np.int64),
        landmark_ids=ids[accepted],
        pixel_errors=errors[accepted].astype(np.float64),
        distances=hamming[accepted].astype(np.int32),
    )
