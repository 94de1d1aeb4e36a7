"""Tests for the odejax.integrators module.

Tests cover:
- Butcher tableau consistency (row sums, dense-output end conditions)
- AdaptiveConfig validation
- Error norm, step-size update and initial step selection
- Stage kernel exactness (RK4 is exact for degree <= 3 polynomials)
- Step acceptance, rejection, clipping and failure modes of StepController
- JIT compatibility
"""

import math

import jax.numpy as jnp
import pytest

from odejax.exceptions import (
    DimensionMismatchError,
    MaxEvaluationsExceededError,
    StepSizeUnderflowError,
)
from odejax.integrators import (
    BS32,
    DP54,
    RK4,
    RKF45,
    AdaptiveConfig,
    EvaluationCounter,
    StepAttempt,
    StepController,
    compute_error_norm,
    compute_next_step_size,
    get_tableau,
    hermite_dense_matrix,
    initial_step_size,
    rk_stages,
)

_ALL_TABLEAUS = (DP54, RKF45, BS32, RK4)


# ──────────────────────────────────────────────
# Helper dynamics functions
# ──────────────────────────────────────────────

def _exponential_decay(t, x):
    """dx/dt = -x. Solution: x(t) = x0 * exp(-t)."""
    return -x


def _harmonic_oscillator(t, x):
    """d^2q/dt^2 = -q. State: [q, dq/dt]. Solution: [cos(t), -sin(t)]."""
    return jnp.array([x[1], -x[0]])


def _cubic_dynamics(t, x):
    """dx/dt = 3t^2. Solution: x(t) = x0 + t^3."""
    return 3.0 * t**2 * jnp.ones_like(x)


def _stiff_decay(t, x):
    """dx/dt = -50x, unstable for explicit steps of 0.1."""
    return -50.0 * x


# ──────────────────────────────────────────────
# Butcher tableaux
# ──────────────────────────────────────────────

class TestTableaus:
    @pytest.mark.parametrize("tableau", _ALL_TABLEAUS, ids=lambda t: t.name)
    def test_weights_sum_to_one(self, tableau):
        """Propagated and embedded weights are consistent."""
        assert sum(tableau.b) == pytest.approx(1.0, abs=1e-14)
        if tableau.b_low is not None:
            assert sum(tableau.b_low) == pytest.approx(1.0, abs=1e-14)

    @pytest.mark.parametrize("tableau", _ALL_TABLEAUS, ids=lambda t: t.name)
    def test_row_sums_match_nodes(self, tableau):
        """Each coupling row sums to its node."""
        assert tableau.c[0] == 0.0
        for i, row in enumerate(tableau.a):
            assert len(row) == i + 1
            assert sum(row) == pytest.approx(tableau.c[i + 1], abs=1e-13)

    @pytest.mark.parametrize("tableau", _ALL_TABLEAUS, ids=lambda t: t.name)
    def test_dense_output_reaches_step_end(self, tableau):
        """Dense-output rows sum to the weights, so theta=1 gives y1."""
        dense = tableau.dense_matrix()
        assert len(dense) == tableau.n_dense_stages
        weights = tuple(tableau.b) + (0.0,) * (tableau.n_dense_stages - tableau.n_stages)
        for row, b_i in zip(dense, weights):
            assert sum(row) == pytest.approx(b_i, abs=1e-12)

    @pytest.mark.parametrize("tableau", _ALL_TABLEAUS, ids=lambda t: t.name)
    def test_dense_derivative_at_end_is_last_stage(self, tableau):
        """The derivative of the dense output at theta=1 is f(t1, y1)."""
        dense = tableau.dense_matrix()
        last = len(dense) - 1
        for i, row in enumerate(dense):
            slope = sum((j + 1) * p for j, p in enumerate(row))
            assert slope == pytest.approx(1.0 if i == last else 0.0, abs=1e-9)

    @pytest.mark.parametrize("tableau", _ALL_TABLEAUS, ids=lambda t: t.name)
    def test_dense_derivative_at_start_is_first_stage(self, tableau):
        for i, row in enumerate(tableau.dense_matrix()):
            assert row[0] == (1.0 if i == 0 else 0.0)

    def test_hermite_matrix_non_fsal_adds_row(self):
        b = (0.25, 0.75)
        assert len(hermite_dense_matrix(b, fsal=True)) == 2
        assert len(hermite_dense_matrix(b, fsal=False)) == 3

    def test_get_tableau(self):
        assert get_tableau("dp54") is DP54
        assert get_tableau("RKF45") is RKF45
        assert get_tableau(BS32) is BS32

    def test_get_tableau_unknown(self):
        with pytest.raises(ValueError, match="Unknown integration method"):
            get_tableau("euler")

    def test_fixed_step_properties(self):
        assert not RK4.is_adaptive
        assert all(w == 0.0 for w in RK4.error_weights)
        assert DP54.is_adaptive
        assert DP54.fsal and not RKF45.fsal


# ──────────────────────────────────────────────
# StepAttempt and AdaptiveConfig tests
# ──────────────────────────────────────────────

class TestTypes:
    def test_step_attempt_fields(self):
        """StepAttempt has the expected fields."""
        attempt = StepAttempt(
            accepted=True,
            t0=0.0,
            t1=0.1,
            y0=jnp.array([1.0]),
            y1=jnp.array([0.9]),
            stages=jnp.zeros((7, 1)),
            error=0.5,
            h=0.1,
            h_next=0.2,
        )
        assert attempt.accepted
        assert attempt.stages.shape == (7, 1)
        assert attempt.h_next == pytest.approx(0.2)

    def test_adaptive_config_defaults(self):
        """AdaptiveConfig has reasonable defaults."""
        config = AdaptiveConfig()
        assert config.abs_tol == 1e-6
        assert config.rel_tol == 1e-6
        assert config.safety_factor == 0.9
        assert config.min_scale_factor == 0.2
        assert config.max_scale_factor == 5.0
        assert config.min_step == 1e-12
        assert config.max_step == math.inf
        assert config.initial_step is None
        assert config.max_evaluations is None

    def test_adaptive_config_custom(self):
        """AdaptiveConfig accepts custom values."""
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-8)
        assert config.abs_tol == 1e-10
        assert config.rel_tol == 1e-8

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"abs_tol": -1.0},
            {"rel_tol": [1e-6, -1e-6]},
            {"safety_factor": 1.5},
            {"min_scale_factor": 1.2},
            {"max_scale_factor": 0.5},
            {"min_step": 1.0, "max_step": 1.0},
            {"initial_step": 0.0},
            {"max_evaluations": 0},
        ],
    )
    def test_adaptive_config_invalid(self, kwargs):
        with pytest.raises(ValueError):
            AdaptiveConfig(**kwargs)

    def test_per_component_tolerance_dimension(self):
        config = AdaptiveConfig(abs_tol=[1e-6, 1e-8])
        config.check_dimension(2)
        with pytest.raises(DimensionMismatchError):
            config.check_dimension(3)

    def test_scalar_tolerance_any_dimension(self):
        AdaptiveConfig().check_dimension(42)

    def test_evaluation_counter(self):
        counter = EvaluationCounter(10)
        counter.increment(6)
        assert counter.count == 6
        with pytest.raises(MaxEvaluationsExceededError):
            counter.increment(6, time=2.0)
        counter.reset()
        assert counter.count == 0

    def test_unbounded_counter(self):
        counter = EvaluationCounter()
        counter.increment(10**9)
        assert counter.count == 10**9


# ──────────────────────────────────────────────
# Adaptive helpers
# ──────────────────────────────────────────────

class TestAdaptiveHelpers:
    def test_error_norm_at_tolerance(self):
        err = compute_error_norm(jnp.array([1e-6]), jnp.array([1.0]), jnp.array([1.0]), 1e-6, 0.0)
        assert err == pytest.approx(1.0)

    def test_error_norm_relative(self):
        """Relative tolerance uses the larger of the two states."""
        err = compute_error_norm(jnp.array([1e-3]), jnp.array([2.0]), jnp.array([1.0]), 0.0, 1e-3)
        assert err == pytest.approx(0.5)

    def test_error_norm_per_component(self):
        err = compute_error_norm(
            jnp.array([1e-6, 1e-3]),
            jnp.zeros(2),
            jnp.zeros(2),
            jnp.array([1e-6, 1e-2]),
            0.0,
        )
        assert err == pytest.approx(1.0)

    def test_next_step_grows_on_zero_error(self):
        h = compute_next_step_size(0.0, 0.1, 4, 0.9, 0.2, 5.0, math.inf)
        assert h == pytest.approx(0.5)

    def test_next_step_shrink_floor(self):
        h = compute_next_step_size(1e10, 0.1, 4, 0.9, 0.2, 5.0, math.inf)
        assert h == pytest.approx(0.02)

    def test_next_step_power_law(self):
        h = compute_next_step_size(1.0, 0.1, 4, 0.9, 0.2, 5.0, math.inf)
        assert h == pytest.approx(0.09)

    def test_next_step_backward(self):
        h = compute_next_step_size(0.0, -0.1, 4, 0.9, 0.2, 5.0, math.inf)
        assert h == pytest.approx(-0.5)

    def test_next_step_max_step(self):
        h = compute_next_step_size(0.0, 1.0, 4, 0.9, 0.2, 5.0, 2.0)
        assert h == pytest.approx(2.0)

    def test_next_step_nan_error_shrinks(self):
        h = compute_next_step_size(math.nan, 0.1, 4, 0.9, 0.2, 5.0, math.inf)
        assert h == pytest.approx(0.02)

    def test_initial_step_direction(self):
        y0 = jnp.array([1.0, 0.0])
        f0 = _harmonic_oscillator(0.0, y0)
        h_fwd = initial_step_size(_harmonic_oscillator, 0.0, y0, f0, 10.0, 5, 1e-8, 1e-8, 1e-12, math.inf)
        h_bwd = initial_step_size(_harmonic_oscillator, 0.0, y0, f0, -10.0, 5, 1e-8, 1e-8, 1e-12, math.inf)
        assert 0.0 < h_fwd <= 10.0
        assert -10.0 <= h_bwd < 0.0

    def test_initial_step_bounded_by_span(self):
        y0 = jnp.array([1.0, 0.0])
        f0 = _harmonic_oscillator(0.0, y0)
        h = initial_step_size(_harmonic_oscillator, 0.0, y0, f0, 1e-3, 5, 1e-3, 1e-3, 1e-12, math.inf)
        assert 0.0 < h <= 1e-3

    def test_initial_step_bounded_by_max_step(self):
        y0 = jnp.array([1.0])
        f0 = jnp.array([0.0])
        h = initial_step_size(lambda t, y: jnp.zeros_like(y), 0.0, y0, f0, 100.0, 5, 1e-6, 1e-6, 1e-12, 0.5)
        assert h <= 0.5


# ──────────────────────────────────────────────
# Stage kernel
# ──────────────────────────────────────────────

class TestRKStages:
    def test_rk4_cubic_exactness(self):
        """RK4 is exact for cubic dynamics (dx/dt = 3t^2)."""
        x0 = jnp.array([0.0])
        k0 = _cubic_dynamics(0.0, x0)
        stages, x1, err = rk_stages(_cubic_dynamics, RK4, 0.0, x0, k0, 1.0)
        assert stages.shape == (4, 1)
        assert jnp.allclose(x1, jnp.array([1.0]), atol=1e-14)
        assert jnp.all(err == 0.0)

    def test_dp54_stage_count(self):
        x0 = jnp.array([1.0, 0.0])
        k0 = _harmonic_oscillator(0.0, x0)
        stages, _, _ = rk_stages(_harmonic_oscillator, DP54, 0.0, x0, k0, 0.1)
        assert stages.shape == (7, 2)

    def test_dp54_fsal_stage(self):
        """The last DP54 stage is the derivative at the new state."""
        x0 = jnp.array([1.0])
        k0 = _exponential_decay(0.0, x0)
        stages, x1, _ = rk_stages(_exponential_decay, DP54, 0.0, x0, k0, 0.1)
        assert jnp.allclose(stages[-1], -x1, atol=1e-15)


# ──────────────────────────────────────────────
# Step controller
# ──────────────────────────────────────────────

class TestStepController:
    def test_dp54_accepted_step(self):
        """DP54 approximates exponential decay accurately."""
        controller = StepController("dp54")
        x0 = jnp.array([1.0])
        attempt = controller.attempt_step(_exponential_decay, 0.0, x0, -x0, 0.1)
        assert attempt.accepted
        assert attempt.t1 == pytest.approx(0.1)
        assert jnp.allclose(attempt.y1, jnp.exp(-0.1), atol=1e-8)
        assert attempt.stages.shape == (7, 1)
        assert abs(attempt.h_next) > 0.0

    def test_rkf45_appends_end_derivative(self):
        """Non-FSAL schemes evaluate f(t1, y1) for the dense output."""
        controller = StepController("rkf45")
        x0 = jnp.array([1.0, 0.0])
        attempt = controller.attempt_step(
            _harmonic_oscillator, 0.0, x0, _harmonic_oscillator(0.0, x0), 0.1
        )
        assert attempt.accepted
        assert attempt.stages.shape == (7, 2)
        assert jnp.allclose(attempt.stages[-1], _harmonic_oscillator(0.1, attempt.y1))
        assert controller.counter.count == 6

    def test_evaluation_count_dp54(self):
        controller = StepController("dp54")
        x0 = jnp.array([1.0])
        controller.attempt_step(_exponential_decay, 0.0, x0, -x0, 0.1)
        assert controller.counter.count == 6

    def test_rejection_and_retry(self):
        """A step far too large for the tolerance is rejected and retried."""
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        controller = StepController("dp54", config)
        x0 = jnp.array([1.0, 0.0])
        attempt = controller.step(
            _harmonic_oscillator, 0.0, x0, _harmonic_oscillator(0.0, x0), 2.0, 10.0
        )
        assert attempt.accepted
        assert attempt.error <= 1.0
        assert 0.0 < attempt.h < 2.0
        assert controller.n_rejected >= 1

    def test_rejected_attempt_has_no_side_effects(self):
        config = AdaptiveConfig(abs_tol=1e-12, rel_tol=1e-12)
        controller = StepController("dp54", config)
        x0 = jnp.array([1.0, 0.0])
        attempt = controller.attempt_step(
            _harmonic_oscillator, 0.0, x0, _harmonic_oscillator(0.0, x0), 2.0
        )
        assert not attempt.accepted
        assert attempt.error > 1.0
        assert abs(attempt.h_next) < 2.0
        assert jnp.array_equal(attempt.y0, x0)

    def test_last_step_clipped_to_end(self):
        controller = StepController("dp54", AdaptiveConfig(abs_tol=1e-3, rel_tol=1e-3))
        x0 = jnp.array([1.0])
        attempt = controller.step(_exponential_decay, 0.0, x0, -x0, 10.0, 0.5)
        assert attempt.t1 == 0.5
        assert attempt.h == pytest.approx(0.5)

    def test_max_step_respected(self):
        controller = StepController("dp54", AdaptiveConfig(max_step=0.05))
        x0 = jnp.array([1.0])
        attempt = controller.step(_exponential_decay, 0.0, x0, -x0, 1.0, 10.0)
        assert attempt.h == pytest.approx(0.05)

    def test_backward_step(self):
        controller = StepController("dp54")
        x0 = jnp.array([1.0])
        attempt = controller.step(_exponential_decay, 0.0, x0, -x0, 0.1, -1.0)
        assert attempt.h == pytest.approx(-0.1)
        assert jnp.allclose(attempt.y1, jnp.exp(0.1), atol=1e-8)

    def test_step_size_underflow(self):
        """Needing a step below min_step is fatal."""
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10, min_step=0.1)
        controller = StepController("dp54", config)
        x0 = jnp.array([1.0])
        with pytest.raises(StepSizeUnderflowError) as exc_info:
            controller.step(_stiff_decay, 0.0, x0, _stiff_decay(0.0, x0), 0.1, 10.0)
        assert exc_info.value.time == 0.0
        assert jnp.array_equal(exc_info.value.state, x0)

    def test_max_evaluations(self):
        controller = StepController("dp54", AdaptiveConfig(max_evaluations=5))
        x0 = jnp.array([1.0])
        with pytest.raises(MaxEvaluationsExceededError):
            controller.attempt_step(_exponential_decay, 0.0, x0, -x0, 0.1)

    def test_fixed_step_requires_initial_step(self):
        with pytest.raises(ValueError, match="initial_step"):
            StepController("rk4")

    def test_fixed_step_always_accepted(self):
        controller = StepController("rk4", AdaptiveConfig(initial_step=0.5))
        x0 = jnp.array([1.0, 0.0])
        attempt = controller.attempt_step(
            _harmonic_oscillator, 0.0, x0, _harmonic_oscillator(0.0, x0), 0.5
        )
        assert attempt.accepted
        assert attempt.error == 0.0
        assert attempt.h_next == 0.5
        assert attempt.stages.shape == (5, 2)

    def test_jit_matches_eager(self):
        """The jitted stage kernel gives the same step as the eager one."""
        x0 = jnp.array([1.0, 0.0])
        k0 = _harmonic_oscillator(0.0, x0)
        eager = StepController("dp54").attempt_step(_harmonic_oscillator, 0.0, x0, k0, 0.3)
        jitted = StepController("dp54", jit=True).attempt_step(
            _harmonic_oscillator, 0.0, x0, k0, 0.3
        )
        assert jitted.accepted == eager.accepted
        assert jnp.allclose(jitted.y1, eager.y1, atol=1e-12)
        assert jnp.allclose(jitted.stages, eager.stages, atol=1e-12)
