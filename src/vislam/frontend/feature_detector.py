"""ORB feature detection and binary descriptor utilities."""

from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np

DESCRIPTOR_BYTES = 32

# Number of set bits for every byte value, for vectorised Hamming distances
_POPCOUNT = np.array([bin(i).count("1") for i in range(256)], dtype=np.uint8)


def hamming_distance_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pairwise Hamming distances between two descriptor sets.

    Args:
        a: (N, 32) uint8 descriptors
        b: (M, 32) uint8 descriptors

    Returns:
        (N, M) int32 distance matrix
    """
    if len(a) == 0 or len(b) == 0:
        return np.zeros((len(a), len(b)), dtype=np.int32)
    xor = np.bitwise_xor(a[:, np.newaxis, :], b[np.newaxis, :, :])
    return _POPCOUNT[xor].sum(axis=2, dtype=np.int32)


def hamming_distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Row-wise Hamming distances between two equally sized descriptor sets."""
    if len(a) == 0:
        return np.zeros(0, dtype=np.int32)
    return _POPCOUNT[np.bitwise_xor(a, b)].sum(axis=1, dtype=np.int32)


@dataclass(frozen=True, eq=False)
class Feature2D:
    """A keypoint in one image plane.

    Attributes:
        u: Pixel column
        v: Pixel row
        descriptor: (32,) uint8 ORB descriptor
        track_id: Identifier shared by observations of the same physical
            point across frames (-1 if unassigned)
        response: Detector response (corner strength)
        octave: Pyramid level the keypoint was detected at
    """

    u: float
    v: float
    descriptor: np.ndarray = field(repr=False)
    track_id: int = -1
    response: float = 0.0
    octave: int = 0

    @property
    def pt(self) -> tuple[float, float]:
        """Return (u, v) pixel coordinate."""
        return (self.u, self.v)


@dataclass
class Features:
    """Container for the features detected in one image.

    Attributes:
        points: (N, 2) float32 keypoint (u, v) coordinates
        descriptors: (N, 32) uint8 ORB descriptors
        track_ids: (N,) int64 track identifiers (-1 when unassigned)
        responses: (N,) float32 detector responses
        octaves: (N,) int32 pyramid levels
    """

    points: np.ndarray
    descriptors: np.ndarray
    track_ids: np.ndarray
    responses: np.ndarray
    octaves: np.ndarray

    @classmethod
    def empty(cls) -> Features:
        """Create an empty feature set."""
        return cls(
            points=np.empty((0, 2), dtype=np.float32),
            descriptors=np.empty((0, DESCRIPTOR_BYTES), dtype=np.uint8),
            track_ids=np.empty(0, dtype=np.int64),
            responses=np.empty(0, dtype=np.float32),
            octaves=np.empty(0, dtype=np.int32),
        )

    @classmethod
    def from_keypoints(
        cls, keypoints: tuple[cv2.KeyPoint, ...], descriptors: np.ndarray | None
    ) -> Features:
        """Build from OpenCV keypoints and descriptors."""
        if not keypoints or descriptors is None:
            return cls.empty()
        return cls(
            points=np.array([kp.pt for kp in keypoints], dtype=np.float32),
            descriptors=np.ascontiguousarray(descriptors, dtype=np.uint8),
            track_ids=np.full(len(keypoints), -1, dtype=np.int64),
            responses=np.array([kp.response for kp in keypoints], dtype=np.float32),
            octaves=np.array([kp.octave for kp in keypoints], dtype=np.int32),
        )

    @classmethod
    def from_list(cls, features: list[Feature2D]) -> Features:
        """Build from a list of Feature2D values."""
        if not features:
            return cls.empty()
        return cls(
            points=np.array([f.pt for f in features], dtype=np.float32),
            descriptors=np.array([f.descriptor for f in features], dtype=np.uint8),
            track_ids=np.array([f.track_id for f in features], dtype=np.int64),
            responses=np.array([f.response for f in features], dtype=np.float32),
            octaves=np.array([f.octave for f in features], dtype=np.int32),
        )

    def with_track_ids(self, track_ids: np.ndarray) -> Features:
        """Return a copy carrying the given track identifiers."""
        return Features(
            points=self.points,
            descriptors=self.descriptors,
            track_ids=np.asarray(track_ids, dtype=np.int64),
            responses=self.responses,
            octaves=self.octaves,
        )

    def __getitem__(self, index: int) -> Feature2D:
        """Return feature ``index`` as a Feature2D."""
        return Feature2D(
            u=float(self.points[index, 0]),
            v=float(self.points[index, 1]),
            descriptor=self.descriptors[index].copy(),
            track_id=int(self.track_ids[index]),
            response=float(self.responses[index]),
            octave=int(self.octaves[index]),
        )

    def to_list(self) -> list[Feature2D]:
        """Return all features as Feature2D values."""
        return [self[i] for i in range(len(self))]

    def __len__(self) -> int:
        """Return number of detected features."""
        return len(self.points)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Return a uint8 single-channel view of an image."""
    if image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    elif image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    elif image.ndim == 3:
        image = image[:, :, 0]
    if image.dtype != np.uint8:
        image = cv2.normalize(image, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return image


class FeatureDetector:
    """ORB feature detector for sparse feature extraction.

    ORB keypoint selection is deterministic for identical pixel input and
    parameters, which makes detection reproducible across runs.
    """

    def __init__(
        self,
        n_features: int = 1000,
        scale_factor: float = 1.2,
        n_levels: int = 8,
        edge_threshold: int = 31,
        fast_threshold: int = 20,
    ) -> None:
        """Initialize ORB detector with configurable parameters.

        Args:
            n_features: Maximum number of features to retain (sorted by score)
            scale_factor: Pyramid decimation ratio (>1.0)
            n_levels: Number of pyramid levels for multi-scale detection
            edge_threshold: Border margin (pixels) where features are not detected
            fast_threshold: Threshold for FAST corner detection
        """
        self._orb = cv2.ORB_create(
            nfeatures=n_features,
            scaleFactor=scale_factor,
            nlevels=n_levels,
            edgeThreshold=edge_threshold,
            fastThreshold=fast_threshold,
        )
        self._n_features = n_features

    def detect(self, image: np.ndarray | None, mask: np.ndarray | None = None) -> Features:
        """Detect ORB features in an image.

        Args:
            image: Grayscale or color image; None or empty yields no features
            mask: Optional binary mask where 255 = detect, 0 = ignore

        Returns:
            Features object containing keypoints and descriptors
        """
        if image is None or image.size == 0:
            return Features.empty()

        keypoints, descriptors = self._orb.detectAndCompute(to_grayscale(image), mask)
        return Features.from_keypoints(tuple(keypoints or ()), descriptors)

    @property
    def n_features(self) -> int:
        """Return maximum number of features to detect."""
        return self._n_features
