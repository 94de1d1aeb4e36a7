"""Type definitions for the step controller.

Provides the core data types used across the integration engine:

- :class:`AdaptiveConfig`: Tolerances and step-size bounds for adaptive
  step-size control.
- :class:`StepAttempt`: Output of a single step attempt, containing the
  candidate end state, stage derivatives, normalized error and suggested
  next step size.
- :class:`EvaluationCounter`: Bounded counter of derivative evaluations.

:class:`StepAttempt` is a :class:`~typing.NamedTuple`, which JAX treats as
a pytree automatically.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import NamedTuple

import jax.numpy as jnp
from jax import Array

from odejax.exceptions import DimensionMismatchError, MaxEvaluationsExceededError


@dataclass(frozen=True)
class AdaptiveConfig:
    """Configuration for adaptive step-size control.

    The normalized local error of a step is

    .. math::

        E = \\max_i \\frac{|y^{\\text{high}}_i - y^{\\text{low}}_i|}
            {\\text{abs\\_tol}_i + \\text{rel\\_tol}_i
            \\cdot \\max(|y^0_i|, |y^1_i|)}

    and the step is accepted when ``E <= 1``.

    Args:
        abs_tol: Absolute error tolerance, scalar or one value per state
            component.
        rel_tol: Relative error tolerance, scalar or one value per state
            component.
        safety_factor: Multiplicative safety factor applied to step-size
            predictions. Values < 1.0 produce conservative step sizes.
        min_scale_factor: Minimum allowed ratio ``h_next / h``.
        max_scale_factor: Maximum allowed ratio ``h_next / h``.
        min_step: Smallest step magnitude the controller may use. A step
            rejected at this size aborts the propagation with
            :class:`~odejax.exceptions.StepSizeUnderflowError`.
        max_step: Largest step magnitude the controller may use.
        initial_step: Magnitude of the first trial step. ``None`` selects
            it automatically. Mandatory for fixed-step schemes, where it
            is the step size.
        max_evaluations: Cap on derivative evaluations per propagation,
            ``None`` for no cap.

    Examples:
        ```python
        from odejax.integrators import AdaptiveConfig
        config = AdaptiveConfig(abs_tol=1e-10, rel_tol=1e-10, max_step=60.0)
        ```
    """

    abs_tol: float | Sequence[float] = 1e-6
    rel_tol: float | Sequence[float] = 1e-6
    safety_factor: float = 0.9
    min_scale_factor: float = 0.2
    max_scale_factor: float = 5.0
    min_step: float = 1e-12
    max_step: float = math.inf
    initial_step: float | None = None
    max_evaluations: int | None = None

    def __post_init__(self) -> None:
        if jnp.any(jnp.asarray(self.abs_tol) < 0.0) or jnp.any(jnp.asarray(self.rel_tol) < 0.0):
            raise ValueError("abs_tol and rel_tol must be non-negative")
        if not 0.0 < self.safety_factor <= 1.0:
            raise ValueError(f"safety_factor must be in (0, 1], got {self.safety_factor}")
        if not 0.0 < self.min_scale_factor < 1.0 < self.max_scale_factor:
            raise ValueError(
                "scale factors must satisfy 0 < min_scale_factor < 1 < max_scale_factor, "
                f"got {self.min_scale_factor} and {self.max_scale_factor}"
            )
        if self.min_step < 0.0 or self.max_step <= self.min_step:
            raise ValueError(
                f"step bounds must satisfy 0 <= min_step < max_step, "
                f"got {self.min_step} and {self.max_step}"
            )
        if self.initial_step is not None and self.initial_step <= 0.0:
            raise ValueError(f"initial_step must be positive, got {self.initial_step}")
        if self.max_evaluations is not None and self.max_evaluations <= 0:
            raise ValueError(f"max_evaluations must be positive, got {self.max_evaluations}")

    def check_dimension(self, dimension: int) -> None:
        """Verify that per-component tolerances match a state dimension.

        Raises:
            DimensionMismatchError: If a tolerance array has the wrong length.
        """
        for name, tol in (("abs_tol", self.abs_tol), ("rel_tol", self.rel_tol)):
            size = jnp.size(jnp.asarray(tol))
            if jnp.ndim(jnp.asarray(tol)) > 0 and size != dimension:
                raise DimensionMismatchError(dimension, size, what=name)


class StepAttempt(NamedTuple):
    """Result of one step attempt of the embedded scheme.

    The controller never commits state: an accepted attempt is turned into
    a :class:`~odejax.sampling.StepInterpolator` by the orchestrator.

    Attributes:
        accepted: Whether the normalized error met the tolerance.
        t0: Start time of the attempt.
        t1: End time ``t0 + h``.
        y0: State at ``t0``.
        y1: High-order candidate state at ``t1``.
        stages: Stage derivatives, shape ``(n_dense_stages, n)`` for an
            accepted step (the last row is ``f(t1, y1)``) and
            ``(n_stages, n)`` for a rejected one.
        error: Normalized local error (0.0 for fixed-step schemes).
        h: Signed step size that was attempted.
        h_next: Suggested signed step size for the next attempt.
    """

    accepted: bool
    t0: float
    t1: float
    y0: Array
    y1: Array
    stages: Array
    error: float
    h: float
    h_next: float


class EvaluationCounter:
    """Count derivative evaluations against an optional cap.

    Args:
        max_count: Maximum number of evaluations, ``None`` for unbounded.
    """

    def __init__(self, max_count: int | None = None):
        self.max_count = max_count
        self.count = 0

    def reset(self) -> None:
        self.count = 0

    def increment(self, n: int = 1, time: float | None = None, state=None) -> None:
        """Account for *n* upcoming evaluations.

        Raises:
            MaxEvaluationsExceededError: If the cap would be exceeded.
        """
        if self.max_count is not None and self.count + n > self.max_count:
            raise MaxEvaluationsExceededError(
                f"maximal count ({self.max_count}) of derivative evaluations exceeded",
                time=time,
                state=state,
            )
        self.count += n
