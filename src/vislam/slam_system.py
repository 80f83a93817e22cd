"""Session orchestration: SLAM (map building) and tracking (frozen map).

A caller owns one SlamState per processing session and feeds it samples
one at a time, in non-decreasing timestamp order:

    calibration = load_calibration("calib.yaml")
    map_handle = init_map(calibration, "vocabulary.npz", SlamConfig.OFFLINE)
    state = init_state(calibration, SlamConfig.OFFLINE)
    for sample in SequenceReader(path):
        if not run_slam(sample, map_handle, state):
            break
    save_map("map.json", map_handle)

Inertial samples drive prediction; stereo samples flow through the
feature engine, correct the pose and (SLAM only) grow the map.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .config import SlamConfig, SystemConfig
from .errors import MapIntegrationFailure
from .estimator import StateEstimator, TrackingStatus
from .frontend import FeatureEngine, FeatureState, SE3, StereoCalibration, load_calibration
from .mapping import MapHandle, VisualVocabulary, create_empty
from .mapping import load_map as _load_map
from .mapping import save_map as _save_map
from .types import Sample, SampleKind

logger = logging.getLogger(__name__)


@dataclass
class SessionStats:
    """Counters for one processing session."""

    num_inertial: int = 0
    num_stereo: int = 0
    num_rejected_stereo: int = 0
    num_tracked: int = 0
    num_integrated: int = 0
    num_keyframes: int = 0


@dataclass
class FeatureSession:
    """Feature engine plus the state it overwrites, for feature-only use.

    Attributes:
        engine: Feature engine (carries the track id assigner)
        state: Latest features of the session
    """

    engine: FeatureEngine
    state: FeatureState = field(default_factory=FeatureState)


def init_feature_state(
    calibration: StereoCalibration | str | Path,
    config: SystemConfig | None = None,
) -> FeatureSession:
    """Create a feature-only session for a stereo rig."""
    calibration = load_calibration(calibration)
    config = config or SystemConfig()
    return FeatureSession(engine=FeatureEngine(calibration, config.feature))


def run_feature(sample: Sample, session: FeatureSession, with_3d: bool = True) -> bool:
    """Run the feature engine on a sample.

    Args:
        sample: Any sample; only stereo samples are processed
        session: Feature session to update
        with_3d: If False, only detect (no stereo matching)

    Returns:
        True if the feature state was updated
    """
    if sample.kind is not SampleKind.STEREO:
        return False
    session.engine.process(sample, session.state, with_3d=with_3d)
    return True


class SlamState:
    """Per-session engine state: feature engine, estimator and status.

    A SlamState is the writer identity for the map it builds: ``run_slam``
    claims the map's writer role on its behalf, ``close()`` releases it.
    """

    def __init__(
        self,
        calibration: StereoCalibration,
        config: SystemConfig | None = None,
        feature_engine: FeatureEngine | None = None,
        estimator: StateEstimator | None = None,
    ) -> None:
        """Initialize session state.

        Args:
            calibration: Stereo calibration
            config: Component configs (ONLINE defaults if None)
            feature_engine: Override the feature engine (e.g. for testing)
            estimator: Override the state estimator
        """
        self._calibration = calibration
        self._config = config or SystemConfig()
        self.feature_engine = feature_engine or FeatureEngine(calibration, self._config.feature)
        self.estimator = estimator or StateEstimator(calibration, self._config.estimator)
        self.feature_state = FeatureState()

        self.stats = SessionStats()
        self.trajectory: list[tuple[int, SE3]] = []
        self._frames_without_integration = 0
        self._initialized_once = False
        self._failure: MapIntegrationFailure | None = None
        self._claimed: list[MapHandle] = []

    def get_pose(self) -> SE3 | None:
        """Return the current T_device_map, or None unless TRACKING."""
        return self.estimator.current_pose()

    def _claim(self, map_handle: MapHandle) -> None:
        map_handle.claim_writer(self)
        if not any(h is map_handle for h in self._claimed):
            self._claimed.append(map_handle)

    def _record_pose(self, timestamp_ns: int, pose: SE3 | None) -> None:
        if pose is None:
            return
        self._initialized_once = True
        self.stats.num_tracked += 1
        self.trajectory.append((timestamp_ns, pose))

    @property
    def status(self) -> TrackingStatus:
        """Return the tracking status."""
        return self.estimator.status

    @property
    def failure(self) -> MapIntegrationFailure | None:
        """Return the failure that ended the session, if any."""
        return self._failure

    @property
    def failed(self) -> bool:
        """True once ``run_slam`` has reported failure."""
        return self._failure is not None

    @property
    def frames_without_integration(self) -> int:
        """Return consecutive stereo frames that did not grow the map."""
        return self._frames_without_integration

    @property
    def config(self) -> SystemConfig:
        """Return the session configuration."""
        return self._config

    @property
    def calibration(self) -> StereoCalibration:
        """Return the stereo calibration."""
        return self._calibration

    def close(self) -> None:
        """Release the writer role on every map this session wrote to."""
        for handle in self._claimed:
            handle.release_writer(self)
        self._claimed = []

    def __enter__(self) -> SlamState:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def init_state(
    calibration: StereoCalibration | str | Path,
    profile: SlamConfig | str = SlamConfig.ONLINE,
    config: SystemConfig | None = None,
) -> SlamState:
    """Create session state for a profile (or an explicit config)."""
    calibration = load_calibration(calibration)
    return SlamState(calibration, config or SystemConfig.for_profile(profile))


def init_map(
    calibration: StereoCalibration | str | Path,
    vocabulary: VisualVocabulary | str | Path,
    profile: SlamConfig | str = SlamConfig.ONLINE,
    config: SystemConfig | None = None,
) -> MapHandle:
    """Create an empty, writable map.

    Raises:
        InitializationError: If calibration or vocabulary can't be loaded
    """
    calibration = load_calibration(calibration)
    if not isinstance(vocabulary, VisualVocabulary):
        vocabulary = VisualVocabulary.load(vocabulary)
    config = config or SystemConfig.for_profile(profile)
    return create_empty(calibration, vocabulary, config.map, config.maintenance)


def load_map(
    path: str | Path,
    calibration: StereoCalibration | str | Path,
    frozen: bool = True,
) -> MapHandle:
    """Load a saved map; frozen (read-only) by default."""
    return _load_map(path, load_calibration(calibration), frozen=frozen)


def save_map(path: str | Path, map_handle: MapHandle) -> None:
    """Persist a map, replacing any file at ``path``."""
    _save_map(path, map_handle)


def run_slam(sample: Sample, map_handle: MapHandle, state: SlamState) -> bool:
    """Process one sample in SLAM mode.

    Inertial samples go to prediction. Stereo samples are processed by the
    feature engine, corrected against the map and integrated into it
    whenever the correction succeeded. Frames tracked only on the
    predicted pose are not integrated. LOST is reported through
    ``state.status`` and does not stop the session.

    Args:
        sample: Next sample of the stream
        map_handle: Writable map
        state: Session state (the map's writer)

    Returns:
        False once the map could not be grown for
        ``max_frames_without_integration`` consecutive stereo frames after
        initialization (see ``state.failure``); True otherwise.

    Raises:
        MapAccessError: If the map is frozen or held by another writer
    """
    if state.failed:
        return False
    state._claim(map_handle)

    if sample.kind is SampleKind.IMU:
        state.stats.num_inertial += 1
        state.estimator.predict(sample)
        return True

    state.stats.num_stereo += 1
    state.feature_engine.process(sample, state.feature_state)
    integrated = False

    if not sample.is_valid:
        state.stats.num_rejected_stereo += 1
    else:
        observations = state.feature_state.observations
        pose, _ = state.estimator.update(observations, map_handle, sample.timestamp_ns)
        state._record_pose(sample.timestamp_ns, pose)
        if pose is not None and observations and state.estimator.last_update_corrected:
            result = map_handle.integrate(observations, pose, state, sample.timestamp_ns)
            integrated = result.num_integrated > 0
            state.stats.num_integrated += result.num_integrated
            if result.keyframe_id is not None:
                state.stats.num_keyframes += 1

    if integrated:
        state._frames_without_integration = 0
    elif state._initialized_once:
        state._frames_without_integration += 1

    limit = state.config.map.max_frames_without_integration
    if state._frames_without_integration >= limit:
        state._failure = MapIntegrationFailure(
            f"No observation integrated for {state._frames_without_integration} "
            "consecutive stereo frames",
            state._frames_without_integration,
        )
        logger.error("SLAM session failed: %s", state._failure)
        return False
    return True


def run_tracking(sample: Sample, map_handle: MapHandle, state: SlamState) -> None:
    """Process one sample in tracking mode.

    Same data flow as ``run_slam`` but the map is never written and the
    session never fails; read ``state.status`` and ``state.get_pose()``.
    """
    if sample.kind is SampleKind.IMU:
        state.stats.num_inertial += 1
        state.estimator.predict(sample)
        return

    state.stats.num_stereo += 1
    state.feature_engine.process(sample, state.feature_state)
    if not sample.is_valid:
        state.stats.num_rejected_stereo += 1
        return

    pose, _ = state.estimator.update(
        state.feature_state.observations, map_handle, sample.timestamp_ns
    )
    state._record_pose(sample.timestamp_ns, pose)
