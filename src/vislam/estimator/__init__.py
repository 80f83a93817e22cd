"""Inertial-visual state estimation and the tracking state machine."""

from .estimator import StateEstimator, TrackingStatus
from .imu_integrator import IMUIntegrator, IMUState
from .matching import Correspondences, associate
from .motion_estimator import MotionEstimator, PnPResult

__all__ = [
    "Correspondences",
    "IMUIntegrator",
    "IMUState",
    "MotionEstimator",
    "PnPResult",
    "StateEstimator",
    "TrackingStatus",
    "associate",
]
