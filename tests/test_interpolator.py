"""Tests for odejax.sampling.StepInterpolator."""

import jax.numpy as jnp
import pytest

from odejax.exceptions import InterpolationRangeError
from odejax.integrators import RK4, StepController
from odejax.sampling import StepInterpolator


def _harmonic_oscillator(t, x):
    """State [q, dq/dt]; solution [cos(t), -sin(t)] from [1, 0]."""
    return jnp.array([x[1], -x[0]])


def _accepted_step(method, t0, y0, h):
    controller = StepController(method)
    attempt = controller.attempt_step(
        _harmonic_oscillator, t0, y0, _harmonic_oscillator(t0, y0), h
    )
    assert attempt.accepted
    return attempt, StepInterpolator.from_stages(
        attempt.t0,
        attempt.y0,
        attempt.t1,
        attempt.y1,
        attempt.stages,
        controller.tableau.dense_matrix(),
    )


def _exact(t):
    return jnp.array([jnp.cos(t), -jnp.sin(t)])


# ──────────────────────────────────────────────
# Dense output accuracy
# ──────────────────────────────────────────────

class TestDenseOutput:
    def test_endpoints_exact(self):
        """Endpoint queries return the step states unchanged."""
        attempt, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        assert jnp.array_equal(interp.state_at(0.0), attempt.y0)
        assert jnp.array_equal(interp.state_at(attempt.t1), attempt.y1)

    def test_polynomial_reaches_end_state(self):
        """The polynomial itself (not only the endpoint shortcut) ends at y1."""
        attempt, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        assert jnp.allclose(interp._interpolate(attempt.t1), attempt.y1, atol=1e-13)

    def test_dp54_midpoint_accuracy(self):
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        for t in (0.05, 0.1, 0.15):
            assert jnp.allclose(interp.state_at(t), _exact(t), atol=1e-6)

    def test_rkf45_hermite_accuracy(self):
        """Schemes without a dedicated extension use cubic Hermite output."""
        _, interp = _accepted_step("rkf45", 0.0, jnp.array([1.0, 0.0]), 0.1)
        for t in (0.025, 0.05, 0.075):
            assert jnp.allclose(interp.state_at(t), _exact(t), atol=1e-6)

    def test_bs32_accuracy(self):
        _, interp = _accepted_step("bs32", 0.0, jnp.array([1.0, 0.0]), 0.01)
        assert jnp.allclose(interp.state_at(0.005), _exact(0.005), atol=1e-6)

    def test_derivative_matches_endpoints(self):
        """The polynomial slope is f(t0, y0) at the start and f(t1, y1) at the end."""
        attempt, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        assert jnp.allclose(interp.derivative_at(0.0), attempt.stages[0], atol=1e-12)
        assert jnp.allclose(
            interp.derivative_at(attempt.t1),
            _harmonic_oscillator(attempt.t1, attempt.y1),
            atol=1e-9,
        )

    def test_linear_state_exact(self):
        """Constant derivative gives a straight line through the step."""
        stages = jnp.ones((5, 1))
        interp = StepInterpolator.from_stages(
            1.0, jnp.array([1.0]), 3.0, jnp.array([3.0]), stages, RK4.dense_matrix()
        )
        assert jnp.allclose(interp.state_at(2.5), jnp.array([2.5]), atol=1e-14)
        assert jnp.allclose(interp.derivative_at(1.7), jnp.array([1.0]), atol=1e-14)

    def test_backward_step(self):
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), -0.2)
        assert not interp.is_forward
        assert interp.h == pytest.approx(-0.2)
        assert jnp.allclose(interp.state_at(-0.1), _exact(-0.1), atol=1e-6)


# ──────────────────────────────────────────────
# Valid domain
# ──────────────────────────────────────────────

class TestDomain:
    def test_properties(self):
        _, interp = _accepted_step("dp54", 1.0, jnp.array([1.0, 0.0]), 0.2)
        assert interp.previous_time == 1.0
        assert interp.current_time == pytest.approx(1.2)
        assert interp.global_previous_time == 1.0
        assert interp.is_forward

    def test_out_of_range(self):
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        with pytest.raises(InterpolationRangeError):
            interp.state_at(0.3)
        with pytest.raises(InterpolationRangeError):
            interp.derivative_at(-0.1)

    def test_truncate(self):
        """Truncation narrows the domain but keeps the polynomial."""
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        truncated = interp.truncate(0.1)
        assert truncated.current_time == 0.1
        assert truncated.global_current_time == interp.global_current_time
        assert jnp.array_equal(truncated.state_at(0.05), interp.state_at(0.05))
        with pytest.raises(InterpolationRangeError):
            truncated.state_at(0.15)

    def test_truncate_outside_domain(self):
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        with pytest.raises(InterpolationRangeError):
            interp.truncate(0.5)

    def test_restrict(self):
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        restricted = interp.restrict(0.1)
        assert restricted.previous_time == 0.1
        assert restricted.global_previous_time == 0.0
        with pytest.raises(InterpolationRangeError):
            restricted.state_at(0.05)

    def test_backward_truncate(self):
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), -0.2)
        truncated = interp.truncate(-0.1)
        assert truncated.contains(-0.05)
        assert not truncated.contains(-0.15)

    def test_rounding_slack(self):
        """Queries a few ulps past the end are tolerated."""
        _, interp = _accepted_step("dp54", 0.0, jnp.array([1.0, 0.0]), 0.2)
        assert interp.contains(interp.t1 + 1e-17)
        assert not interp.contains(interp.t1 + 1e-10)
