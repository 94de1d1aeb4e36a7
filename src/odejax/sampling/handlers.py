"""Step handlers: passive observers of accepted steps.

The orchestrator calls ``handle_step(interpolator, is_last)`` once per
accepted (possibly truncated) step, and ``init(t0, y0, t_end)`` once at the
start of a propagation when the handler defines it.  Handlers only read
the interpolator; nothing they do feeds back into the integration.
"""

from __future__ import annotations

import bisect
from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

import jax.numpy as jnp
from jax import Array

from odejax.exceptions import InterpolationRangeError
from odejax.sampling.interpolator import StepInterpolator


@runtime_checkable
class StepHandler(Protocol):
    """Observer of accepted steps.

    An optional ``init(t0, y0, t_end)`` method is called before the first
    step of each propagation.
    """

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None: ...


class _CallableHandler:
    def __init__(self, fn: Callable[[StepInterpolator, bool], None]):
        self.fn = fn

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        self.fn(interpolator, is_last)


def as_step_handler(handler) -> StepHandler:
    """Accept a :class:`StepHandler` or a plain ``(interpolator, is_last)`` callable.

    Raises:
        TypeError: If *handler* is neither.
    """
    if isinstance(handler, StepHandler):
        return handler
    if callable(handler):
        return _CallableHandler(handler)
    raise TypeError(f"step handler must define handle_step or be callable, got {handler!r}")


class DenseTrajectory:
    """Keep every step of a propagation for later queries.

    Steps of zero length (an event right at a step start) are not stored.
    At a time shared by two steps, e.g. a state reset, the earlier step
    answers.

    Examples:
        ```python
        trajectory = DenseTrajectory()
        propagate(f, 0.0, y0, 10.0, handlers=[trajectory])
        trajectory.state_at(3.7)
        ```
    """

    def __init__(self):
        self._steps: list[StepInterpolator] = []
        self._ends: list[float] = []
        self._sign = 1.0

    def init(self, t0: float, y0: Array, t_end: float) -> None:
        self._steps = []
        self._ends = []
        self._sign = 1.0 if t_end >= t0 else -1.0

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        if interpolator.previous_time == interpolator.current_time:
            return
        self._steps.append(interpolator)
        self._ends.append(self._sign * interpolator.current_time)

    @property
    def steps(self) -> tuple[StepInterpolator, ...]:
        return tuple(self._steps)

    @property
    def initial_time(self) -> float:
        if not self._steps:
            raise InterpolationRangeError("empty trajectory")
        return self._steps[0].previous_time

    @property
    def final_time(self) -> float:
        if not self._steps:
            raise InterpolationRangeError("empty trajectory")
        return self._steps[-1].current_time

    def state_at(self, t: float) -> Array:
        """Interpolated state at *t*.

        Raises:
            InterpolationRangeError: If *t* is outside the recorded span.
        """
        if not self._steps:
            raise InterpolationRangeError("empty trajectory")
        index = bisect.bisect_left(self._ends, self._sign * t)
        index = min(index, len(self._steps) - 1)
        return self._steps[index].state_at(t)

    def sample(self, times: Sequence[float]) -> Array:
        """States at each of *times*, stacked along the first axis."""
        return jnp.stack([self.state_at(float(t)) for t in times])


class FixedStepSampler:
    """Report states on a regular time grid.

    The grid starts at the initial time and advances by *step* in the
    propagation direction; the final time is always reported as well.

    Args:
        step: Grid spacing (positive).
        callback: Called with ``(t, y, is_last)`` at each grid point. When
            ``None`` the samples are kept in :attr:`times` and
            :attr:`states`.
    """

    def __init__(
        self,
        step: float,
        callback: Callable[[float, Array, bool], None] | None = None,
    ):
        if not step > 0.0:
            raise ValueError(f"sampling step must be positive, got {step}")
        self.step = step
        self.callback = callback
        self.times: list[float] = []
        self.states: list[Array] = []
        self._t0 = 0.0
        self._count = 0
        self._sign = 1.0
        self._next = 0.0

    def init(self, t0: float, y0: Array, t_end: float) -> None:
        self.times = []
        self.states = []
        self._t0 = t0
        self._count = 0
        self._sign = 1.0 if t_end >= t0 else -1.0
        self._next = t0

    def _emit(self, t: float, y: Array, is_last: bool) -> None:
        if self.callback is not None:
            self.callback(t, y, is_last)
        else:
            self.times.append(t)
            self.states.append(y)

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        end = interpolator.current_time
        while self._sign * (end - self._next) >= 0.0:
            t = self._next
            self._count += 1
            self._next = self._t0 + self._sign * self._count * self.step
            self._emit(t, interpolator.state_at(t), is_last and t == end)
            if t == end:
                return
        if is_last:
            self._emit(end, interpolator.state_at(end), True)


class StepRecorder:
    """Record ``(t_start, t_end, is_last)`` for every step seen."""

    def __init__(self):
        self.steps: list[tuple[float, float, bool]] = []

    def init(self, t0: float, y0: Array, t_end: float) -> None:
        self.steps = []

    def handle_step(self, interpolator: StepInterpolator, is_last: bool) -> None:
        self.steps.append((interpolator.previous_time, interpolator.current_time, is_last))
