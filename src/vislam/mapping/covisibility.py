"""Covisibility graph for tracking shared landmarks between keyframes.

The covisibility graph is a weighted undirected graph where:
- Nodes are keyframes
- Edges connect keyframes that observe the same landmarks
- Edge weights are the number of shared landmarks

It selects which keyframes are refined together by bundle adjustment.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .keyframe import Keyframe


class CovisibilityGraph:
    """Graph tracking which keyframes share landmark observations."""

    def __init__(self, min_shared_points: int = 15) -> None:
        """Initialize covisibility graph.

        Args:
            min_shared_points: Minimum shared landmarks to create an edge
        """
        self._min_shared = min_shared_points

        # Adjacency list: kf_id -> {other_kf_id: weight}
        self._adjacency: dict[int, dict[int, int]] = defaultdict(dict)

        # Inverted index: landmark_id -> set of kf_ids observing it
        self._landmark_to_keyframes: dict[int, set[int]] = defaultdict(set)

        # kf_id -> set of observed landmark ids
        self._keyframe_observations: dict[int, set[int]] = {}

    def add_keyframe(self, keyframe: Keyframe) -> None:
        """Add a keyframe, connecting it to keyframes it shares landmarks with."""
        kf_id = keyframe.id
        observed = keyframe.observed_landmark_ids()
        self._keyframe_observations[kf_id] = observed

        shared_counts: dict[int, int] = defaultdict(int)
        for lm_id in observed:
            for other_kf_id in self._landmark_to_keyframes[lm_id]:
                if other_kf_id != kf_id:
                    shared_counts[other_kf_id] += 1
            self._landmark_to_keyframes[lm_id].add(kf_id)

        for other_kf_id, count in shared_counts.items():
            if count >= self._min_shared:
                self._adjacency[kf_id][other_kf_id] = count
                self._adjacency[other_kf_id][kf_id] = count

    def get_connected_keyframes(
        self,
        kf_id: int,
        min_shared: int | None = None,
    ) -> list[tuple[int, int]]:
        """Get keyframes connected to a given keyframe.

        Returns:
            List of (kf_id, weight) tuples, by weight descending then id
        """
        min_shared = min_shared if min_shared is not None else self._min_shared
        connections = [
            (other_id, weight)
            for other_id, weight in self._adjacency.get(kf_id, {}).items()
            if weight >= min_shared
        ]
        return sorted(connections, key=lambda x: (-x[1], x[0]))

    def get_local_keyframes(self, kf_id: int, n: int = 10) -> list[int]:
        """Get up to n keyframes for a local window, kf_id first."""
        connected = self.get_connected_keyframes(kf_id)
        return [kf_id] + [other_id for other_id, _ in connected[: n - 1]]

    def get_keyframes_observing(self, landmark_id: int) -> set[int]:
        """Get all keyframes observing a landmark."""
        return self._landmark_to_keyframes.get(landmark_id, set()).copy()

    def get_covisibility_weight(self, kf1_id: int, kf2_id: int) -> int:
        """Return number of shared landmarks (0 if not connected)."""
        return self._adjacency.get(kf1_id, {}).get(kf2_id, 0)

    @property
    def num_keyframes(self) -> int:
        """Return number of keyframes in the graph."""
        return len(self._keyframe_observations)

    @property
    def num_edges(self) -> int:
        """Return number of edges in the graph."""
        # Each edge is counted twice in adjacency list
        return sum(len(adj) for adj in self._adjacency.values()) // 2
