"""Generic embedded Runge-Kutta step controller.

A single :class:`StepController` drives every scheme listed in
:mod:`odejax.integrators._tableaus`; the scheme only enters through its
:class:`~odejax.integrators.ButcherTableau`.  One step attempt evaluates
the stages with :func:`rk_stages`, forms the high-order solution and the
embedded error estimate, and scales the step size from the normalized
error.  Rejected attempts are retried from the same ``(t, y)`` by
:meth:`StepController.step` until the tolerance is met or the step size
collapses below ``min_step``.

The controller never commits state: it hands back a
:class:`~odejax.integrators.StepAttempt` and leaves interpolation, event
handling and bookkeeping to the orchestrator.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable

import jax
import jax.numpy as jnp
import numpy as np
from jax import Array
from jax.typing import ArrayLike

from odejax.exceptions import StepSizeUnderflowError
from odejax.integrators._adaptive import compute_error_norm, compute_next_step_size
from odejax.integrators._tableaus import ButcherTableau, get_tableau
from odejax.integrators._types import AdaptiveConfig, EvaluationCounter, StepAttempt

logger = logging.getLogger(__name__)


def rk_stages(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    tableau: ButcherTableau,
    t: ArrayLike,
    y: Array,
    k0: Array,
    h: ArrayLike,
) -> tuple[Array, Array, Array]:
    """Evaluate the stages of one explicit Runge-Kutta step.

    Pure function of its inputs; zero coefficients are skipped at trace
    time, so jitting it with ``dynamics`` and ``tableau`` static yields the
    same unrolled arithmetic as a hand-written scheme.

    Args:
        dynamics: ODE right-hand side ``f(t, y) -> dy/dt``.
        tableau: Coefficient table of the scheme.
        t: Time at the start of the step.
        y: State at the start of the step.
        k0: ``dynamics(t, y)``, supplied by the caller (FSAL reuse).
        h: Signed step size.

    Returns:
        tuple: ``(stages, y_high, error_vec)`` where ``stages`` has shape
        ``(n_stages, n)``, ``y_high`` is the propagated solution at
        ``t + h`` and ``error_vec`` is ``y_high - y_low`` (zeros for
        schemes without an embedded estimate).
    """
    stages = [k0]
    for i in range(1, tableau.n_stages):
        incr = jnp.zeros_like(y)
        for a_ij, k_j in zip(tableau.a[i - 1], stages):
            if a_ij != 0.0:
                incr = incr + a_ij * k_j
        stages.append(dynamics(t + tableau.c[i] * h, y + h * incr))

    y_high = jnp.zeros_like(y)
    error_vec = jnp.zeros_like(y)
    for b_i, e_i, k_i in zip(tableau.b, tableau.error_weights, stages):
        if b_i != 0.0:
            y_high = y_high + b_i * k_i
        if e_i != 0.0:
            error_vec = error_vec + e_i * k_i

    return jnp.stack(stages), y + h * y_high, h * error_vec


_rk_stages_jit = jax.jit(rk_stages, static_argnums=(0, 1))


class StepController:
    """Attempt, accept or reject steps of an embedded Runge-Kutta scheme.

    Args:
        method: Scheme name (``"dp54"``, ``"rkf45"``, ``"bs32"``,
            ``"rk4"``) or a :class:`~odejax.integrators.ButcherTableau`.
        config: Tolerances and step-size bounds. Uses default
            :class:`AdaptiveConfig` if ``None``.
        counter: Derivative-evaluation counter shared with the caller.
            A fresh one bounded by ``config.max_evaluations`` is created
            if ``None``.
        jit: Compile the stage kernel with ``jax.jit``. The dynamics
            callable must then be traceable and hashable.

    Raises:
        ValueError: If a fixed-step scheme is configured without
            ``initial_step``.
    """

    def __init__(
        self,
        method: str | ButcherTableau = "dp54",
        config: AdaptiveConfig | None = None,
        counter: EvaluationCounter | None = None,
        jit: bool = False,
    ):
        self.tableau = get_tableau(method)
        self.config = config if config is not None else AdaptiveConfig()
        if not self.tableau.is_adaptive and self.config.initial_step is None:
            raise ValueError(
                f"fixed-step method '{self.tableau.name}' requires config.initial_step"
            )
        self.counter = counter if counter is not None else EvaluationCounter(
            self.config.max_evaluations
        )
        self.jit = jit
        self._kernel = _rk_stages_jit if jit else rk_stages
        self.n_rejected = 0

    def attempt_step(
        self,
        dynamics: Callable[[ArrayLike, ArrayLike], Array],
        t: float,
        y: Array,
        k0: Array,
        h: float,
        t1: float | None = None,
    ) -> StepAttempt:
        """Compute one trial step without retrying.

        Args:
            dynamics: ODE right-hand side ``f(t, y) -> dy/dt``.
            t: Start time.
            y: Start state.
            k0: ``dynamics(t, y)``.
            h: Signed trial step size.
            t1: End time to report instead of ``t + h`` (used to land
                exactly on the target time).

        Returns:
            StepAttempt: The candidate step. For an accepted step of a
            non-FSAL scheme the end-point derivative has been evaluated
            and appended to ``stages``.
        """
        tableau = self.tableau
        config = self.config
        t1 = t + h if t1 is None else t1

        self.counter.increment(tableau.n_stages - 1, time=t, state=y)
        stages, y1, error_vec = self._kernel(dynamics, tableau, t, y, k0, h)

        if tableau.is_adaptive:
            error = compute_error_norm(error_vec, y1, y, config.abs_tol, config.rel_tol)
            accepted = error <= 1.0
            h_next = compute_next_step_size(
                error,
                h,
                tableau.error_order,
                config.safety_factor,
                config.min_scale_factor,
                config.max_scale_factor,
                config.max_step,
            )
        else:
            error = 0.0
            accepted = True
            h_next = math.copysign(config.initial_step, h)

        if accepted and not tableau.fsal:
            self.counter.increment(1, time=t, state=y)
            f1 = dynamics(t1, y1)
            stages = jnp.concatenate([stages, f1[None, :]], axis=0)

        return StepAttempt(
            accepted=accepted,
            t0=t,
            t1=t1,
            y0=y,
            y1=y1,
            stages=stages,
            error=error,
            h=h,
            h_next=h_next,
        )

    def step(
        self,
        dynamics: Callable[[ArrayLike, ArrayLike], Array],
        t: float,
        y: Array,
        k0: Array,
        h: float,
        t_end: float,
    ) -> StepAttempt:
        """Advance from ``(t, y)`` toward ``t_end`` with error control.

        The trial step is clipped so that it never passes ``t_end``; the
        last step lands on ``t_end`` exactly.  Rejected attempts shrink the
        step and retry from the same state.  Only the final step toward
        ``t_end`` may be shorter than ``min_step``.

        Returns:
            StepAttempt: The accepted step.

        Raises:
            StepSizeUnderflowError: If the step size needed to meet the
                tolerance falls below ``min_step`` (or no longer changes
                ``t``).
            MaxEvaluationsExceededError: If the evaluation budget runs out.
        """
        min_step = self.config.min_step
        remaining = t_end - t
        h = math.copysign(min(abs(h), self.config.max_step), remaining)

        while True:
            t1 = None
            if abs(h) >= abs(remaining) - 4.0 * np.spacing(abs(t_end)):
                h = remaining
                t1 = t_end
            elif abs(h) < min_step or t + h == t:
                raise StepSizeUnderflowError(
                    f"minimal step size ({min_step:.3e}) reached, integration needs {abs(h):.3e}",
                    time=t,
                    state=y,
                )

            attempt = self.attempt_step(dynamics, t, y, k0, h, t1)
            if attempt.accepted:
                return attempt

            self.n_rejected += 1
            logger.debug(
                "Rejected step at t=%.16g: h=%.6e error=%.3f, retrying with h=%.6e",
                t,
                h,
                attempt.error,
                attempt.h_next,
            )
            h = attempt.h_next
