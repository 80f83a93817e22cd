"""Tests for inertial propagation."""

import numpy as np
import pytest

from vislam.estimator import IMUIntegrator, IMUState
from vislam.frontend import SE3
from vislam.frontend.pose import rotation_angle
from vislam.types import InertialSample

DT_NS = 5_000_000  # 200 Hz


def _rest_state(timestamp_ns: int = 0) -> IMUState:
    return IMUState(
        timestamp_ns=timestamp_ns,
        pose=SE3.identity(),
        velocity=np.zeros(3),
        bias_gyro=np.zeros(3),
        bias_accel=np.zeros(3),
    )


def _samples(n: int, accel, gyro=(0.0, 0.0, 0.0), start_ns: int = 0) -> list[InertialSample]:
    return [
        InertialSample(start_ns + (k + 1) * DT_NS, accel=list(accel), gyro=list(gyro))
        for k in range(n)
    ]


class TestIMUIntegrator:
    """Test suite for IMUIntegrator."""

    def test_at_rest(self):
        """Test that the gravity reaction leaves a level device at rest."""
        integrator = IMUIntegrator()
        state = integrator.integrate(_samples(200, (0.0, 0.0, 9.81)), _rest_state())

        np.testing.assert_allclose(state.position, 0.0, atol=1e-9)
        np.testing.assert_allclose(state.velocity, 0.0, atol=1e-9)
        assert state.timestamp_ns == 200 * DT_NS

    def test_constant_acceleration(self):
        """Test p = a t² / 2 and v = a t after one second."""
        integrator = IMUIntegrator()
        state = integrator.integrate(_samples(200, (1.0, 0.0, 9.81)), _rest_state())

        np.testing.assert_allclose(state.velocity, [1.0, 0.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(state.position, [0.5, 0.0, 0.0], atol=1e-9)

    def test_constant_rotation_rate(self):
        """Test that integrating the gyro rotates about the measured axis."""
        integrator = IMUIntegrator()
        state = integrator.integrate(
            _samples(200, (0.0, 0.0, 9.81), gyro=(0.0, 0.0, 0.5)), _rest_state()
        )

        assert rotation_angle(state.rotation) == pytest.approx(0.5, abs=1e-6)
        np.testing.assert_allclose(state.position, 0.0, atol=1e-9)

    def test_gyro_bias_removed(self):
        """Test that the gyro bias is subtracted from measurements."""
        integrator = IMUIntegrator()
        initial = _rest_state()
        initial.bias_gyro = np.array([0.0, 0.0, 0.5])
        state = integrator.integrate(
            _samples(200, (0.0, 0.0, 9.81), gyro=(0.0, 0.0, 0.5)), initial
        )

        assert rotation_angle(state.rotation) == pytest.approx(0.0, abs=1e-9)

    def test_out_of_order_sample_ignored(self):
        """Test that a sample older than the state does nothing."""
        integrator = IMUIntegrator()
        state = _rest_state(timestamp_ns=10 * DT_NS)
        late = InertialSample(5 * DT_NS, accel=[5.0, 0.0, 9.81], gyro=[0.0, 0.0, 0.0])

        assert integrator.propagate(state, late) is state

    def test_gap_uses_constant_velocity(self):
        """Test that a long gap is bridged without integrating the sample."""
        integrator = IMUIntegrator(max_gap_s=0.1)
        state = _rest_state()
        state.velocity = np.array([1.0, 0.0, 0.0])
        sample = InertialSample(500_000_000, accel=[100.0, 0.0, 9.81], gyro=[0.0, 0.0, 0.0])

        propagated = integrator.propagate(state, sample)

        assert propagated.timestamp_ns == 500_000_000
        np.testing.assert_allclose(propagated.position, [0.5, 0.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(propagated.velocity, [1.0, 0.0, 0.0])

    def test_covariance_grows(self):
        """Test that propagation inflates uncertainty and keeps it symmetric."""
        integrator = IMUIntegrator()
        initial = _rest_state()
        state = integrator.integrate(_samples(100, (0.0, 0.0, 9.81)), initial)

        assert np.trace(state.covariance) > np.trace(initial.covariance)
        np.testing.assert_allclose(state.covariance, state.covariance.T)

    def test_constant_velocity_covariance_grows_with_time(self):
        """Test that a longer bridge is more uncertain."""
        integrator = IMUIntegrator()
        state = _rest_state()

        short = integrator.propagate_constant_velocity(state, 100_000_000)
        long = integrator.propagate_constant_velocity(state, 1_000_000_000)

        assert np.trace(long.covariance) > np.trace(short.covariance)

    def test_state_rejects_bad_covariance(self):
        """Test covariance shape validation."""
        with pytest.raises(ValueError, match="Covariance must be 15x15"):
            IMUState(
                timestamp_ns=0,
                pose=SE3.identity(),
                velocity=np.zeros(3),
                bias_gyro=np.zeros(3),
                bias_accel=np.zeros(3),
                covariance=np.eye(6),
            )

    def test_inertial_sample_validation(self):
        """Test that samples need three-axis readings."""
        with pytest.raises(ValueError, match="3 components"):
            InertialSample(0, accel=[0.0, 9.81], gyro=[0.0, 0.0, 0.0])
