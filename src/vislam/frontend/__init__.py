"""Frontend: geometry, calibration and the per-frame feature pipeline."""

from .calibration import CameraIntrinsics, IMUNoise, StereoCalibration, load_calibration
from .feature_detector import Feature2D, FeatureDetector, Features
from .feature_engine import FeatureEngine, FeatureState
from .feature_tracker import FeatureTracker
from .pose import SE3
from .stereo_matcher import StereoMatcher, StereoMatches
from .triangulation import StereoObservation, Triangulator

__all__ = [
    "CameraIntrinsics",
    "Feature2D",
    "FeatureDetector",
    "FeatureEngine",
    "FeatureState",
    "FeatureTracker",
    "Features",
    "IMUNoise",
    "SE3",
    "StereoCalibration",
    "StereoMatcher",
    "StereoMatches",
    "StereoObservation",
    "Triangulator",
    "load_calibration",
]
