"""Dense output over one accepted step.

A :class:`StepInterpolator` is an immutable value built from the stage
derivatives of an accepted step.  Over ``[t0, t1]`` with ``h = t1 - t0``
and ``theta = (t - t0) / h`` it evaluates

.. math::

    y(\\theta) = y_0 + h \\sum_{j=1}^{m} \\theta^j Q_j,
    \\qquad Q = P^T K

where ``K`` stacks the stage derivatives and ``P`` is the dense-output
matrix of the scheme.  No derivative evaluation is needed after
construction, which makes the interpolator cheap to query during event
localization.

The *valid* domain starts as the whole step and narrows when the
orchestrator restricts it to the part already processed (:meth:`restrict`)
or truncates it at an event (:meth:`truncate`).  The polynomial itself is
never altered.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import NamedTuple

import jax.numpy as jnp
import numpy as np
from jax import Array

from odejax.config import get_dtype
from odejax.exceptions import InterpolationRangeError

# Number of ulps by which a query may overshoot the valid domain.
_DOMAIN_SLACK_ULPS = 4.0


class StepInterpolator(NamedTuple):
    """Polynomial reconstruction of the state over one step.

    Attributes:
        t0: Start time of the step.
        t1: End time of the step.
        y0: State at ``t0``.
        y1: State at ``t1``.
        coefficients: Matrix ``Q`` of shape ``(m, n)``; row ``j`` multiplies
            ``theta^(j+1)``.
        valid_start: Start of the valid domain (``t0`` unless restricted).
        valid_end: End of the valid domain (``t1`` unless truncated).
    """

    t0: float
    t1: float
    y0: Array
    y1: Array
    coefficients: Array
    valid_start: float
    valid_end: float

    @classmethod
    def from_stages(
        cls,
        t0: float,
        y0: Array,
        t1: float,
        y1: Array,
        stages: Array,
        dense_matrix: Sequence[Sequence[float]],
    ) -> StepInterpolator:
        """Build the interpolator of an accepted step.

        Args:
            t0: Start time.
            y0: State at ``t0``.
            t1: End time.
            y1: State at ``t1``.
            stages: Extended stage derivatives, shape ``(s, n)``.
            dense_matrix: Dense-output matrix ``P``, shape ``(s, m)``.
        """
        dtype = get_dtype()
        p = jnp.asarray(dense_matrix, dtype=dtype)
        q = p.T @ jnp.asarray(stages, dtype=dtype)
        return cls(t0, t1, y0, y1, q, t0, t1)

    @property
    def h(self) -> float:
        return self.t1 - self.t0

    @property
    def is_forward(self) -> bool:
        return self.t1 >= self.t0

    @property
    def previous_time(self) -> float:
        """Start of the valid (soft) domain."""
        return self.valid_start

    @property
    def current_time(self) -> float:
        """End of the valid (soft) domain."""
        return self.valid_end

    @property
    def global_previous_time(self) -> float:
        return self.t0

    @property
    def global_current_time(self) -> float:
        return self.t1

    def contains(self, t: float) -> bool:
        """Whether *t* lies in the valid domain (with a few ulps of slack)."""
        lo = min(self.valid_start, self.valid_end)
        hi = max(self.valid_start, self.valid_end)
        slack = _DOMAIN_SLACK_ULPS * float(np.spacing(max(abs(lo), abs(hi))))
        return lo - slack <= t <= hi + slack

    def state_at(self, t: float) -> Array:
        """Return the interpolated state at time *t*.

        The endpoint states are returned unchanged at ``t0`` and ``t1``.

        Raises:
            InterpolationRangeError: If *t* lies outside the valid domain.
        """
        self._check(t)
        if t == self.t0:
            return self.y0
        if t == self.t1:
            return self.y1
        return self._interpolate(t)

    def derivative_at(self, t: float) -> Array:
        """Return the time derivative of the interpolating polynomial at *t*.

        Raises:
            InterpolationRangeError: If *t* lies outside the valid domain.
        """
        self._check(t)
        q = self.coefficients
        if self.h == 0.0:
            return q[0]
        theta = (t - self.t0) / self.h
        acc = jnp.zeros_like(q[0])
        for j in range(q.shape[0] - 1, -1, -1):
            acc = acc * theta + (j + 1) * q[j]
        return acc

    def truncate(self, t_event: float) -> StepInterpolator:
        """Narrow the valid domain so that it ends at *t_event*.

        Raises:
            InterpolationRangeError: If *t_event* is outside the valid domain.
        """
        self._check(t_event)
        return self._replace(valid_end=t_event)

    def restrict(self, t_start: float) -> StepInterpolator:
        """Narrow the valid domain so that it starts at *t_start*.

        Raises:
            InterpolationRangeError: If *t_start* is outside the valid domain.
        """
        self._check(t_start)
        return self._replace(valid_start=t_start)

    def _check(self, t: float) -> None:
        if not self.contains(t):
            raise InterpolationRangeError(
                f"time {t!r} outside interpolation domain "
                f"[{self.valid_start!r}, {self.valid_end!r}]"
            )

    def _interpolate(self, t: float) -> Array:
        # unchecked evaluation, Horner form in theta
        q = self.coefficients
        if self.h == 0.0:
            return self.y0
        theta = (t - self.t0) / self.h
        acc = jnp.zeros_like(self.y0)
        for j in range(q.shape[0] - 1, -1, -1):
            acc = (acc + q[j]) * theta
        return self.y0 + self.h * acc
