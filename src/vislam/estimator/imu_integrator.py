"""Inertial propagation of the navigation state and its error covariance.

The nominal state is integrated with mid-point integration. Uncertainty
is carried by a 15-dimensional error state

    [dθ (3), dp (3), dv (3), b_g (3), b_a (3)]

where the orientation error is a right perturbation, R = R_nom @ exp(dθ).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from ..frontend.calibration import IMUNoise
from ..frontend.pose import SE3, exp_so3, skew
from ..types import InertialSample

logger = logging.getLogger(__name__)

STATE_DIM = 15

# Error-state block offsets
THETA = slice(0, 3)
POS = slice(3, 6)
VEL = slice(6, 9)
BG = slice(9, 12)
BA = slice(12, 15)


@dataclass
class IMUState:
    """Navigation state at a given time.

    Attributes:
        timestamp_ns: State timestamp in nanoseconds
        pose: Device pose in the map, T_map_device
        velocity: Linear velocity in map frame (3,)
        bias_gyro: Gyroscope bias (3,) in rad/s
        bias_accel: Accelerometer bias (3,) in m/s²
        covariance: (15, 15) error-state covariance
    """

    timestamp_ns: int
    pose: SE3
    velocity: np.ndarray  # (3,) map frame
    bias_gyro: np.ndarray  # (3,)
    bias_accel: np.ndarray  # (3,)
    covariance: np.ndarray = field(default_factory=lambda: np.eye(STATE_DIM) * 1e-6)

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape and type."""
        self.velocity = np.asarray(self.velocity, dtype=np.float64).flatten()
        self.bias_gyro = np.asarray(self.bias_gyro, dtype=np.float64).flatten()
        self.bias_accel = np.asarray(self.bias_accel, dtype=np.float64).flatten()
        self.covariance = np.asarray(self.covariance, dtype=np.float64)
        if self.covariance.shape != (STATE_DIM, STATE_DIM):
            raise ValueError(f"Covariance must be 15x15, got {self.covariance.shape}")

    @property
    def position(self) -> np.ndarray:
        """Return position in map frame."""
        return self.pose.translation

    @property
    def rotation(self) -> np.ndarray:
        """Return R_map_device."""
        return self.pose.rotation

    def copy(self) -> IMUState:
        """Return a deep copy."""
        return IMUState(
            timestamp_ns=self.timestamp_ns,
            pose=self.pose.copy(),
            velocity=self.velocity.copy(),
            bias_gyro=self.bias_gyro.copy(),
            bias_accel=self.bias_accel.copy(),
            covariance=self.covariance.copy(),
        )


class IMUIntegrator:
    """Propagates IMUState through inertial samples.

    Uses mid-point integration for the nominal state:
    - Rotation: Integrate gyroscope using exponential map
    - Velocity: Integrate accelerometer in map frame (with gravity compensation)
    - Position: Integrate velocity

    The covariance follows the linearized error dynamics, P' = Φ P Φᵀ + Q_d,
    with Q_d = G Q_c Gᵀ dt built from the sensor noise densities.
    """

    def __init__(
        self,
        gravity: np.ndarray | None = None,
        noise: IMUNoise | None = None,
        max_gap_s: float = 0.1,
        rotation_random_walk: float = 0.05,
        velocity_random_walk: float = 0.5,
    ) -> None:
        """Initialize IMU integrator.

        Args:
            gravity: Gravity vector in map frame (default: [0, 0, -9.81])
            noise: Sensor noise densities
            max_gap_s: Sample gaps longer than this are not integrated
            rotation_random_walk: Rotation noise (rad/√s) for propagation
                without inertial data
            velocity_random_walk: Velocity noise (m/s/√s) for propagation
                without inertial data
        """
        self._gravity = (
            np.array([0.0, 0.0, -9.81], dtype=np.float64)
            if gravity is None
            else np.asarray(gravity, dtype=np.float64)
        )
        self._noise = noise or IMUNoise()
        self._max_gap_s = max_gap_s
        self._rotation_rw = rotation_random_walk
        self._velocity_rw = velocity_random_walk

        # Continuous noise covariance for [n_g, n_a, n_bg, n_ba]
        self._Qc = np.diag(
            np.concatenate(
                [
                    np.full(3, self._noise.gyro_noise_density**2),
                    np.full(3, self._noise.accel_noise_density**2),
                    np.full(3, self._noise.gyro_random_walk**2),
                    np.full(3, self._noise.accel_random_walk**2),
                ]
            )
        )

    def integrate(self, samples: list[InertialSample], initial_state: IMUState) -> IMUState:
        """Integrate a sequence of inertial samples.

        Args:
            samples: Samples in chronological order
            initial_state: Starting state

        Returns:
            Final state after integrating all samples
        """
        state = initial_state
        for sample in samples:
            state = self.propagate(state, sample)
        return state

    def propagate(self, state: IMUState, sample: InertialSample) -> IMUState:
        """Advance ``state`` to the sample timestamp.

        Out-of-order samples (dt <= 0) leave the state unchanged. Gaps longer
        than ``max_gap_s`` are bridged by constant-velocity propagation,
        which advances the timestamp and inflates the covariance.
        """
        dt = (sample.timestamp_ns - state.timestamp_ns) * 1e-9
        if dt <= 0:
            return state
        if dt > self._max_gap_s:
            logger.debug("Inertial gap of %.3f s not integrated", dt)
            return self.propagate_constant_velocity(state, sample.timestamp_ns)
        return self.integrate_single(state, sample, dt)

    def integrate_single(
        self,
        prev_state: IMUState,
        sample: InertialSample,
        dt: float,
    ) -> IMUState:
        """Integrate a single inertial sample using mid-point integration.

        Args:
            prev_state: State at previous timestep
            sample: Current inertial sample
            dt: Time step in seconds

        Returns:
            Updated state at sample timestamp
        """
        # Remove biases from measurements
        omega = sample.gyro - prev_state.bias_gyro  # rad/s
        accel = sample.accel - prev_state.bias_accel  # m/s²

        R_prev = prev_state.rotation
        delta_angle = omega * dt
        R_delta = exp_so3(delta_angle)
        R_new = R_prev @ R_delta

        # Mid-point rotation maps acceleration into the map frame
        R_mid = R_prev @ exp_so3(delta_angle / 2)
        accel_map = R_mid @ accel + self._gravity

        v_new = prev_state.velocity + accel_map * dt
        p_new = prev_state.position + prev_state.velocity * dt + 0.5 * accel_map * dt**2

        # Error-state transition
        Phi = np.eye(STATE_DIM)
        Phi[THETA, THETA] = R_delta.T
        Phi[THETA, BG] = -np.eye(3) * dt
        Phi[POS, VEL] = np.eye(3) * dt
        Phi[POS, THETA] = -0.5 * R_mid @ skew(accel) * dt**2
        Phi[POS, BA] = -0.5 * R_mid * dt**2
        Phi[VEL, THETA] = -R_mid @ skew(accel) * dt
        Phi[VEL, BA] = -R_mid * dt

        # Noise input: [n_g, n_a, n_bg, n_ba]
        G = np.zeros((STATE_DIM, 12))
        G[THETA, 0:3] = -np.eye(3)
        G[VEL, 3:6] = -R_mid
        G[BG, 6:9] = np.eye(3)
        G[BA, 9:12] = np.eye(3)
        Qd = G @ self._Qc @ G.T * dt

        covariance = Phi @ prev_state.covariance @ Phi.T + Qd

        return IMUState(
            timestamp_ns=sample.timestamp_ns,
            pose=SE3(rotation=R_new, translation=p_new),
            velocity=v_new,
            bias_gyro=prev_state.bias_gyro.copy(),
            bias_accel=prev_state.bias_accel.copy(),
            covariance=0.5 * (covariance + covariance.T),
        )

    def propagate_constant_velocity(self, state: IMUState, timestamp_ns: int) -> IMUState:
        """Advance ``state`` assuming constant velocity and orientation.

        Random-walk noise on rotation and velocity grows the covariance
        with elapsed time.

        Args:
            state: Current state
            timestamp_ns: Target timestamp

        Returns:
            Propagated state (unchanged if timestamp is not in the future)
        """
        dt = (timestamp_ns - state.timestamp_ns) * 1e-9
        if dt <= 0:
            return state

        Phi = np.eye(STATE_DIM)
        Phi[POS, VEL] = np.eye(3) * dt

        Q = np.zeros((STATE_DIM, STATE_DIM))
        Q[THETA, THETA] = np.eye(3) * self._rotation_rw**2 * dt
        Q[VEL, VEL] = np.eye(3) * self._velocity_rw**2 * dt
        Q[BG, BG] = np.eye(3) * self._noise.gyro_random_walk**2 * dt
        Q[BA, BA] = np.eye(3) * self._noise.accel_random_walk**2 * dt

        covariance = Phi @ state.covariance @ Phi.T + Q
        return IMUState(
            timestamp_ns=timestamp_ns,
            pose=SE3(
                rotation=state.rotation.copy(),
                translation=state.position + state.velocity * dt,
            ),
            velocity=state.velocity.copy(),
            bias_gyro=state.bias_gyro.copy(),
            bias_accel=state.bias_accel.copy(),
            covariance=0.5 * (covariance + covariance.T),
        )

    @property
    def gravity(self) -> np.ndarray:
        """Return gravity vector in map frame."""
        return self._gravity.copy()

    @property
    def max_gap_s(self) -> float:
        """Return the longest inertial gap that is integrated."""
        return self._max_gap_s
