"""Python VISLAM - stereo visual-inertial SLAM and tracking."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import (
    EstimatorConfig,
    FeatureConfig,
    MaintenanceConfig,
    MapConfig,
    SlamConfig,
    SystemConfig,
    load_config,
)
from .errors import (
    CalibrationError,
    CorruptMapError,
    InitializationError,
    MapAccessError,
    MapIntegrationFailure,
    MapWriteError,
    MissingFileError,
    PersistenceError,
    VislamError,
    VocabularyError,
)
from .types import InertialSample, Sample, SampleKind, StereoSample
from .frontend import (
    SE3,
    Feature2D,
    FeatureEngine,
    FeatureState,
    StereoCalibration,
    StereoObservation,
    load_calibration,
)
from .estimator import StateEstimator, TrackingStatus
from .mapping import MapHandle, VisualVocabulary, create_empty
from .io import SequenceReader
from .slam_system import (
    FeatureSession,
    SessionStats,
    SlamState,
    init_feature_state,
    init_map,
    init_state,
    load_map,
    run_feature,
    run_slam,
    run_tracking,
    save_map,
)
from .visualization import RerunVisualizer, TrajectoryDrawer

__all__ = [
    "__version__",
    # Sessions
    "SlamState",
    "SessionStats",
    "FeatureSession",
    "init_state",
    "init_map",
    "init_feature_state",
    "run_slam",
    "run_tracking",
    "run_feature",
    "load_map",
    "save_map",
    "create_empty",
    # Samples
    "Sample",
    "SampleKind",
    "InertialSample",
    "StereoSample",
    # Config
    "SlamConfig",
    "SystemConfig",
    "FeatureConfig",
    "EstimatorConfig",
    "MapConfig",
    "MaintenanceConfig",
    "load_config",
    # Frontend
    "SE3",
    "StereoCalibration",
    "load_calibration",
    "Feature2D",
    "FeatureEngine",
    "FeatureState",
    "StereoObservation",
    # Estimation / map
    "StateEstimator",
    "TrackingStatus",
    "MapHandle",
    "VisualVocabulary",
    # I/O and visualization
    "SequenceReader",
    "RerunVisualizer",
    "TrajectoryDrawer",
    # Errors
    "VislamError",
    "InitializationError",
    "CalibrationError",
    "VocabularyError",
    "MissingFileError",
    "CorruptMapError",
    "PersistenceError",
    "MapWriteError",
    "MapAccessError",
    "MapIntegrationFailure",
]
