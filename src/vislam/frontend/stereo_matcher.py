"""Sparse stereo matching of ORB features along rectified scanlines."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .feature_detector import Feature2D, Features, hamming_distance_matrix

# Distance assigned to geometrically impossible pairs (> any Hamming distance)
_INVALID = np.iinfo(np.int32).max


@dataclass
class StereoMatches:
    """Container for stereo feature matches.

    Attributes:
        left_indices: (N,) indices into the left features
        right_indices: (N,) indices into the right features
        disparities: (N,) disparity values (u_left - u_right)
        match_distances: (N,) descriptor distances (Hamming)
    """

    left_indices: np.ndarray
    right_indices: np.ndarray
    disparities: np.ndarray
    match_distances: np.ndarray

    @classmethod
    def empty(cls) -> StereoMatches:
        return cls(
            left_indices=np.empty(0, dtype=np.int64),
            right_indices=np.empty(0, dtype=np.int64),
            disparities=np.empty(0, dtype=np.float32),
            match_distances=np.empty(0, dtype=np.int32),
        )

    def pairs(
        self, features_left: Features, features_right: Features
    ) -> list[tuple[Feature2D, Feature2D]]:
        """Return matched (left, right) features; the right inherits the track id."""
        result = []
        for i, j in zip(self.left_indices, self.right_indices):
            left = features_left[int(i)]
            right = features_right[int(j)]
            result.append(
                (
                    left,
                    Feature2D(
                        u=right.u,
                        v=right.v,
                        descriptor=right.descriptor,
                        track_id=left.track_id,
                        response=right.response,
                        octave=right.octave,
                    ),
                )
            )
        return result

    def __len__(self) -> int:
        """Return number of matches."""
        return len(self.left_indices)


class StereoMatcher:
    """Sparse stereo matcher using ORB binary descriptors.

    Candidates are restricted to the epipolar band of rectified images and
    to a plausible disparity window before descriptors are compared, so
    the best match is the best geometrically valid one. Ambiguous matches
    (second best too close to the best) are rejected, and each right
    feature is used by at most one left feature.
    """

    def __init__(
        self,
        max_hamming_distance: int = 50,
        ratio_threshold: float = 0.8,
        epipolar_threshold: float = 2.0,
        min_disparity: float = 1.0,
        max_disparity: float = 200.0,
    ) -> None:
        """Initialize stereo matcher.

        Args:
            max_hamming_distance: Maximum Hamming distance for valid match.
                ORB descriptors are 256 bits, so max distance is 256.
            ratio_threshold: A match is ambiguous unless
                best < ratio_threshold * second_best.
            epipolar_threshold: Maximum row difference (pixels) between
                left and right keypoints.
            min_disparity: Minimum valid disparity in pixels.
                Filters out matches at infinity (where u_left ≈ u_right).
            max_disparity: Maximum valid disparity in pixels.
                Filters out matches too close to the camera.
        """
        self._max_distance = max_hamming_distance
        self._ratio_threshold = ratio_threshold
        self._epipolar_threshold = epipolar_threshold
        self._min_disparity = min_disparity
        self._max_disparity = max_disparity

    def match(self, features_left: Features, features_right: Features) -> StereoMatches:
        """Match features between rectified stereo images.

        Stages:
        1. Geometric gate: epipolar band and disparity window
        2. Best and second best candidate by Hamming distance
        3. Distance threshold and ambiguity (ratio) rejection
        4. One-to-one: a right feature keeps only its closest left feature

        Args:
            features_left: Features from rectified left image
            features_right: Features from rectified right image

        Returns:
            StereoMatches sorted by left index
        """
        if len(features_left) == 0 or len(features_right) == 0:
            return StereoMatches.empty()

        pts_left = features_left.points.astype(np.float64)
        pts_right = features_right.points.astype(np.float64)

        # Stage 1: geometric gate
        row_diff = np.abs(pts_left[:, 1:2] - pts_right[np.newaxis, :, 1])
        disparity = pts_left[:, 0:1] - pts_right[np.newaxis, :, 0]
        valid = (
            (row_diff <= self._epipolar_threshold)
            & (disparity >= self._min_disparity)
            & (disparity <= self._max_disparity)
        )
        if not valid.any():
            return StereoMatches.empty()

        # Stage 2: best and second best among valid candidates
        distances = hamming_distance_matrix(
            features_left.descriptors, features_right.descriptors
        )
        distances = np.where(valid, distances, _INVALID)

        best_j = np.argmin(distances, axis=1)
        rows = np.arange(len(best_j))
        best = distances[rows, best_j]
        if distances.shape[1] >= 2:
            second = np.partition(distances, 1, axis=1)[:, 1]
        else:
            second = np.full(len(best), _INVALID, dtype=distances.dtype)

        # Stage 3: threshold and ambiguity
        unambiguous = (second == _INVALID) | (
            best < self._ratio_threshold * second.astype(np.float64)
        )
        accepted = (best != _INVALID) & (best <= self._max_distance) & unambiguous
        left_idx = rows[accepted]
        right_idx = best_j[accepted]
        match_dist = best[accepted]

        # Stage 4: one-to-one on the right side, lowest distance then lowest left index
        order = np.lexsort((left_idx, match_dist))
        seen: set[int] = set()
        keep = []
        for k in order:
            j = int(right_idx[k])
            if j in seen:
                continue
            seen.add(j)
            keep.append(k)
        keep = np.sort(np.array(keep, dtype=np.int64))
        if len(keep) == 0:
            return StereoMatches.empty()

        left_idx = left_idx[keep]
        right_idx = right_idx[keep]
        return StereoMatches(
            left_indices=left_idx.astype(np.int64),
            right_indices=right_idx.astype(np.int64),
            disparities=disparity[left_idx, right_idx].astype(np.float32),
            match_distances=match_dist[keep].astype(np.int32),
        )
