"""Landmark: a persistent 3D point of the sparse map."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass
class Landmark:
    """A 3D point in map coordinates.

    Landmarks are owned by the MapStore; keyframes refer to them by id.

    Attributes:
        id: Unique landmark identifier (never reused)
        position: Position in map frame (3,)
        descriptor: Representative ORB descriptor (32,) uint8
        observation_count: Number of frames that observed this landmark
    """

    id: int
    position: np.ndarray  # (3,) map frame
    descriptor: np.ndarray  # (32,) uint8
    observation_count: int = 1

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape and type."""
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        self.descriptor = np.asarray(self.descriptor, dtype=np.uint8).flatten()
        if self.position.shape != (3,):
            raise ValueError(f"Landmark position must be (3,), got {self.position.shape}")

    def copy(self) -> Landmark:
        """Return a deep copy."""
        return Landmark(
            id=self.id,
            position=self.position.copy(),
            descriptor=self.descriptor.copy(),
            observation_count=self.observation_count,
        )
