"""Per-frame feature pipeline: detect, stereo match, triangulate."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..config import FeatureConfig
from ..types import StereoSample
from .calibration import StereoCalibration
from .feature_detector import Feature2D, FeatureDetector, Features
from .feature_tracker import FeatureTracker
from .stereo_matcher import StereoMatcher
from .triangulation import StereoObservation, Triangulator

logger = logging.getLogger(__name__)


@dataclass
class FeatureState:
    """Most recent features of a processing session.

    Overwritten in place on every stereo sample and never persisted.

    Attributes:
        timestamp_ns: Timestamp of the stereo sample that produced it
            (-1 before the first sample)
        left: Features detected in the left image
        right: Features detected in the right image
        observations: Accepted stereo observations
    """

    timestamp_ns: int = -1
    left: Features = field(default_factory=Features.empty)
    right: Features = field(default_factory=Features.empty)
    observations: list[StereoObservation] = field(default_factory=list)

    def get_2d_features(self) -> tuple[list[Feature2D], list[Feature2D]]:
        """Return (left, right) detected features."""
        return self.left.to_list(), self.right.to_list()

    def get_stereo_features(self) -> list[StereoObservation]:
        """Return a copy of the stereo observation list."""
        return list(self.observations)

    def clear(self, timestamp_ns: int = -1) -> None:
        """Reset to the empty state."""
        self.timestamp_ns = timestamp_ns
        self.left = Features.empty()
        self.right = Features.empty()
        self.observations = []

    @property
    def is_empty(self) -> bool:
        """True when the last sample produced no stereo observations."""
        return len(self.observations) == 0

    def __len__(self) -> int:
        """Return number of stereo observations."""
        return len(self.observations)


class FeatureEngine:
    """Detection, stereo matching and triangulation for one stereo rig.

    The engine mutates only the FeatureState it is handed. Bad input
    (missing or mismatched images, no matches) produces an empty state,
    never an exception.
    """

    def __init__(
        self,
        calibration: StereoCalibration,
        config: FeatureConfig | None = None,
    ) -> None:
        """Initialize the feature engine.

        Args:
            calibration: Rectified stereo calibration
            config: Detection and matching thresholds (defaults if None)
        """
        config = config or FeatureConfig()
        self._calibration = calibration
        self._config = config

        self._detector = FeatureDetector(
            n_features=config.n_features,
            scale_factor=config.scale_factor,
            n_levels=config.n_levels,
            edge_threshold=config.edge_threshold,
            fast_threshold=config.fast_threshold,
        )
        self._matcher = StereoMatcher(
            max_hamming_distance=config.max_hamming_distance,
            ratio_threshold=config.ratio_threshold,
            epipolar_threshold=config.epipolar_threshold,
            min_disparity=config.min_disparity,
            max_disparity=config.max_disparity,
        )
        self._triangulator = Triangulator(
            calibration,
            min_depth=config.min_depth,
            max_depth=config.max_depth,
            max_reprojection_error=config.max_reprojection_error,
        )
        self._tracker = FeatureTracker(
            ratio_threshold=config.track_ratio_threshold,
            max_hamming_distance=config.track_max_hamming_distance,
        )

    def detect(self, image) -> list[Feature2D]:
        """Detect features in a single image."""
        return self._detector.detect(image).to_list()

    def match(
        self, features_left: list[Feature2D], features_right: list[Feature2D]
    ) -> list[tuple[Feature2D, Feature2D]]:
        """Stereo-match two feature lists into (left, right) pairs."""
        left = Features.from_list(features_left)
        right = Features.from_list(features_right)
        return self._matcher.match(left, right).pairs(left, right)

    def triangulate(self, pair: tuple[Feature2D, Feature2D]) -> StereoObservation | None:
        """Triangulate one matched pair; None when rejected."""
        return self._triangulator.triangulate(pair)

    def process(
        self, sample: StereoSample, state: FeatureState, with_3d: bool = True
    ) -> FeatureState:
        """Run the pipeline on a stereo sample, updating ``state`` in place.

        Args:
            sample: Stereo sample to process
            state: Session feature state to overwrite
            with_3d: If False, only detect (no matching or triangulation)

        Returns:
            The updated ``state``
        """
        if not sample.is_valid:
            logger.debug("Rejected stereo sample at %d: invalid image pair", sample.timestamp_ns)
            state.clear(sample.timestamp_ns)
            return state

        left = self._tracker.assign(self._detector.detect(sample.left))
        right = self._detector.detect(sample.right)

        state.timestamp_ns = sample.timestamp_ns
        state.left = left
        state.right = right
        state.observations = []
        if not with_3d:
            return state

        matches = self._matcher.match(left, right)
        state.observations = self._triangulator.triangulate_matches(left, right, matches)
        logger.debug(
            "Frame %d: %d/%d features, %d matches, %d observations",
            sample.timestamp_ns,
            len(left),
            len(right),
            len(matches),
            len(state.observations),
        )
        return state

    def reset_tracks(self) -> None:
        """Start fresh track ids on the next frame."""
        self._tracker.reset()

    @property
    def calibration(self) -> StereoCalibration:
        """Return the stereo calibration."""
        return self._calibration

    @property
    def config(self) -> FeatureConfig:
        """Return the feature configuration."""
        return self._config

