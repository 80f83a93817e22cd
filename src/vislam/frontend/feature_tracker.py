"""Frame-to-frame feature association and stable track identifiers."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .feature_detector import Features


@dataclass
class TemporalMatches:
    """Feature matches between consecutive frames.

    Attributes:
        prev_indices: Indices into previous frame's features
        curr_indices: Indices into current frame's features
        distances: Hamming distances between matched descriptors
    """

    prev_indices: np.ndarray  # (N,) int
    curr_indices: np.ndarray  # (N,) int
    distances: np.ndarray  # (N,) float32

    @classmethod
    def empty(cls) -> TemporalMatches:
        return cls(
            prev_indices=np.empty(0, dtype=np.int32),
            curr_indices=np.empty(0, dtype=np.int32),
            distances=np.empty(0, dtype=np.float32),
        )

    def __len__(self) -> int:
        """Return number of matches."""
        return len(self.prev_indices)


def ratio_test_match(
    matcher: cv2.BFMatcher,
    query: np.ndarray,
    train: np.ndarray,
    ratio_threshold: float,
    max_distance: int,
) -> TemporalMatches:
    """Brute-force Hamming matching with Lowe's ratio test.

    A match is kept only if its distance is below ``max_distance`` and
    ``best < ratio * second_best``. Each train descriptor is claimed by at
    most one query descriptor (the closest).

    Args:
        matcher: BFMatcher configured with NORM_HAMMING, crossCheck=False
        query: (N, 32) uint8 descriptors
        train: (M, 32) uint8 descriptors
        ratio_threshold: Lowe ratio
        max_distance: Maximum accepted Hamming distance

    Returns:
        TemporalMatches with prev=query indices, curr=train indices
    """
    if len(query) == 0 or len(train) == 0:
        return TemporalMatches.empty()

    knn_matches = matcher.knnMatch(query, train, k=2)

    # train_idx -> (distance, query_idx)
    best_for_train: dict[int, tuple[float, int]] = {}
    for match_pair in knn_matches:
        if len(match_pair) == 0:
            continue
        best = match_pair[0]
        if best.distance > max_distance:
            continue
        if len(match_pair) >= 2 and best.distance >= ratio_threshold * match_pair[1].distance:
            continue
        current = best_for_train.get(best.trainIdx)
        if current is None or (best.distance, best.queryIdx) < current:
            best_for_train[best.trainIdx] = (best.distance, best.queryIdx)

    if not best_for_train:
        return TemporalMatches.empty()

    train_indices = np.array(sorted(best_for_train), dtype=np.int32)
    query_indices = np.array(
        [best_for_train[t][1] for t in train_indices], dtype=np.int32
    )
    distances = np.array([best_for_train[t][0] for t in train_indices], dtype=np.float32)
    return TemporalMatches(
        prev_indices=query_indices, curr_indices=train_indices, distances=distances
    )


class FeatureTracker:
    """Assigns stable track identifiers to left-image features.

    Each new frame is matched against the previous one; matched features
    inherit the previous track id, unmatched ones start a new track.
    """

    def __init__(
        self,
        ratio_threshold: float = 0.75,
        max_hamming_distance: int = 50,
    ) -> None:
        """Initialize feature tracker.

        Args:
            ratio_threshold: Lowe's ratio test threshold. Typical range: 0.7-0.8
            max_hamming_distance: Maximum Hamming distance for valid match
        """
        # knnMatch with k=2 for ratio test (can't use crossCheck with knn)
        self._bf_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        self._ratio_threshold = ratio_threshold
        self._max_distance = max_hamming_distance
        self._previous: Features | None = None
        self._next_track_id = 0

    def assign(self, features: Features) -> Features:
        """Return ``features`` with track ids assigned.

        Args:
            features: Features detected in the current frame

        Returns:
            Copy of features carrying track ids
        """
        track_ids = np.full(len(features), -1, dtype=np.int64)

        if self._previous is not None and len(self._previous) > 0:
            matches = ratio_test_match(
                self._bf_matcher,
                self._previous.descriptors,
                features.descriptors,
                self._ratio_threshold,
                self._max_distance,
            )
            track_ids[matches.curr_indices] = self._previous.track_ids[
                matches.prev_indices
            ]

        for i in np.flatnonzero(track_ids < 0):
            track_ids[i] = self._next_track_id
            self._next_track_id += 1

        tracked = features.with_track_ids(track_ids)
        self._previous = tracked
        return tracked

    def reset(self) -> None:
        """Forget the previous frame; the next frame starts fresh tracks."""
        self._previous = None

    @property
    def ratio_threshold(self) -> float:
        """Return the ratio test threshold."""
        return self._ratio_threshold
