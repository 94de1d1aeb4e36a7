"""Adaptive step-size control utilities for embedded Runge-Kutta methods.

Provides the error-norm computation, step-size adjustment and initial
step-size selection used by :class:`~odejax.integrators.StepController`.
The algorithms follow the standard embedded Runge-Kutta error control
approach:

1. Compute a normalized error using mixed absolute/relative tolerances.
2. Accept the step if the normalized error is <= 1.0.
3. Predict the next step size using the error and the method order.
"""

from __future__ import annotations

import math
from collections.abc import Callable

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype


def compute_error_norm(
    error_vec: ArrayLike,
    state_new: ArrayLike,
    state_old: ArrayLike,
    abs_tol: ArrayLike,
    rel_tol: ArrayLike,
) -> float:
    """Compute the normalized error norm for adaptive step-size control.

    Uses a mixed absolute/relative tolerance per component with the infinity
    norm (maximum over components). The step is accepted when the returned
    value is <= 1.0.

    The per-component tolerance is:

    .. math::

        \\text{tol}_i = \\text{abs\\_tol}_i + \\text{rel\\_tol}_i
            \\cdot \\max(|y^{\\text{new}}_i|, |y^{\\text{old}}_i|)

    Args:
        error_vec: Difference between high-order and low-order solutions.
        state_new: High-order solution (candidate state).
        state_old: State at the beginning of the step.
        abs_tol: Absolute error tolerance, scalar or per component.
        rel_tol: Relative error tolerance, scalar or per component.

    Returns:
        float: Normalized error. Step is accepted if <= 1.0.
    """
    dtype = get_dtype()
    error_vec = jnp.asarray(error_vec, dtype=dtype)
    state_new = jnp.asarray(state_new, dtype=dtype)
    state_old = jnp.asarray(state_old, dtype=dtype)

    scale = jnp.asarray(abs_tol, dtype=dtype) + jnp.asarray(rel_tol, dtype=dtype) * jnp.maximum(
        jnp.abs(state_new), jnp.abs(state_old)
    )
    if error_vec.size == 0:
        return 0.0
    return float(jnp.max(jnp.abs(error_vec) / scale))


def compute_next_step_size(
    error: float,
    h: float,
    order: float,
    safety_factor: float,
    min_scale_factor: float,
    max_scale_factor: float,
    max_step: float,
) -> float:
    """Compute the next step size based on the current error estimate.

    Uses the standard optimal step-size formula:

    .. math::

        h_{\\text{next}} = |h| \\cdot S \\cdot
            \\left(\\frac{1}{\\text{error}}\\right)^{1/(p+1)}

    where *S* is the safety factor and *p* is the order of the error
    estimator. The scale is clamped to
    ``[min_scale_factor, max_scale_factor]`` and the result to
    ``max_step``; the sign of ``h`` is preserved for backward integration.

    The lower step bound is deliberately *not* applied here: falling below
    it is a fatal condition the caller has to detect.

    Args:
        error: Normalized error from :func:`compute_error_norm`.
        h: Current step size (may be negative for backward integration).
        order: Order of the error estimator (e.g. 4 for DP54).
        safety_factor: Multiplicative safety factor (typically 0.9).
        min_scale_factor: Minimum allowed ratio ``|h_next| / |h|``.
        max_scale_factor: Maximum allowed ratio ``|h_next| / |h|``.
        max_step: Absolute maximum step size.

    Returns:
        float: Suggested next step size with same sign as ``h``.
    """
    exponent = 1.0 / (order + 1.0)
    if not math.isfinite(error):
        scale = min_scale_factor
    elif error > 0.0:
        scale = safety_factor * (1.0 / error) ** exponent
    else:
        scale = max_scale_factor
    scale = min(max(scale, min_scale_factor), max_scale_factor)
    abs_h_next = min(abs(h) * scale, max_step)
    return math.copysign(abs_h_next, h)


def _rms(x: Array) -> float:
    return float(jnp.sqrt(jnp.mean(x * x)))


def initial_step_size(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t0: float,
    y0: Array,
    f0: Array,
    t_end: float,
    order: int,
    abs_tol: ArrayLike,
    rel_tol: ArrayLike,
    min_step: float,
    max_step: float,
) -> float:
    """Select a first trial step from the local behaviour of the solution.

    Follows Hairer, Norsett & Wanner (Solving ODEs I, II.4): a first guess
    ``0.01 * ||y0|| / ||f0||`` is refined with a finite-difference
    estimate of the second derivative, which costs one extra derivative
    evaluation.

    Args:
        dynamics: ODE right-hand side ``f(t, y) -> dy/dt``.
        t0: Initial time.
        y0: Initial state.
        f0: ``dynamics(t0, y0)``.
        t_end: Target time (only its direction and distance are used).
        order: Order of the propagated solution.
        abs_tol: Absolute tolerance, scalar or per component.
        rel_tol: Relative tolerance, scalar or per component.
        min_step: Lower bound on the returned magnitude.
        max_step: Upper bound on the returned magnitude.

    Returns:
        float: Signed initial step size pointing toward ``t_end``.
    """
    direction = 1.0 if t_end >= t0 else -1.0
    span = abs(t_end - t0)
    if y0.size == 0:
        return direction * min(span, max_step)
    scale = abs_tol + rel_tol * jnp.abs(y0)
    d0 = _rms(y0 / scale)
    d1 = _rms(f0 / scale)
    if d0 < 1e-5 or d1 < 1e-5:
        h0 = 1e-6
    else:
        h0 = 0.01 * d0 / d1
    h0 = min(h0, span)

    y1 = y0 + direction * h0 * f0
    f1 = dynamics(t0 + direction * h0, y1)
    d2 = _rms((f1 - f0) / scale) / h0

    if d1 <= 1e-15 and d2 <= 1e-15:
        h1 = max(1e-6, h0 * 1e-3)
    else:
        h1 = (0.01 / max(d1, d2)) ** (1.0 / (order + 1.0))

    h = min(100.0 * h0, h1, span, max_step)
    return direction * max(h, min(min_step, span))
