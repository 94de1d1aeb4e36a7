"""Propagation driver: step control, event handling and step handlers.

:class:`Integrator` advances a state from ``t0`` to ``t_end`` (forward or
backward).  Each step is produced by the
:class:`~odejax.integrators.StepController`, wrapped in a
:class:`~odejax.sampling.StepInterpolator` and handed to every active
:class:`~odejax.events.EventState`.  When detectors report events inside
the step, the earliest one (ties go to the detector registered first) is
handled:

1. the interpolator is truncated at the event time and passed to the step
   handlers,
2. the detector's action is resolved,
3. ``STOP`` ends the propagation, ``RESET_STATE`` and
   ``RESET_DERIVATIVES`` end the step at the event and the integration
   restarts from the (possibly modified) state with freshly evaluated
   derivatives, ``CONTINUE`` moves on to the rest of the step.

At most one event fires per processed interval, and no step ever
straddles an event that changed the state or the dynamics.

Examples:
    ```python
    import jax.numpy as jnp
    from odejax import propagate, threshold_detector
    result = propagate(
        lambda t, y: -y, 0.0, jnp.array([1.0]), 5.0,
        detectors=[threshold_detector(0, 0.5)],
    )
    result.time  # ~ln(2)
    ```
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from typing import NamedTuple

import jax.numpy as jnp
import numpy as np
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype
from odejax.equations import ExpandableEquations
from odejax.events import EventDetector, EventRecord, EventState
from odejax.exceptions import DimensionMismatchError
from odejax.integrators import (
    AdaptiveConfig,
    ButcherTableau,
    EvaluationCounter,
    StepController,
    get_tableau,
    initial_step_size,
)
from odejax.sampling import StepHandler, StepInterpolator, as_step_handler

logger = logging.getLogger(__name__)

# Integration intervals shorter than this many ulps are rejected.
_MIN_INTERVAL_ULPS = 1000.0

Equations = ExpandableEquations | Callable[[ArrayLike, Array], Array]


class PropagationResult(NamedTuple):
    """Outcome of :meth:`Integrator.integrate`.

    Attributes:
        time: Final time (``t_end`` unless an event stopped the run).
        state: State at ``time``.
        events: Events that fired, in chronological order.
        n_steps: Number of accepted steps.
        n_rejected: Number of rejected step attempts.
        n_evaluations: Number of derivative evaluations.
        stopped: Whether an event action stopped the propagation early.
    """

    time: float
    state: Array
    events: tuple[EventRecord, ...]
    n_steps: int
    n_rejected: int
    n_evaluations: int
    stopped: bool


class _StepOutcome(NamedTuple):
    time: float
    state: Array
    stop: bool
    reset: bool


class Integrator:
    """Adaptive ODE integrator with dense output and event detection.

    Args:
        method: Scheme name or :class:`~odejax.integrators.ButcherTableau`.
        config: Tolerances and step bounds; default
            :class:`~odejax.integrators.AdaptiveConfig` if ``None``.
        jit: Compile the stage kernel with ``jax.jit``.
        name: Label used in logs.

    An instance may be reused for several propagations, but not by
    concurrent callers.
    """

    def __init__(
        self,
        method: str | ButcherTableau = "dp54",
        config: AdaptiveConfig | None = None,
        jit: bool = False,
        name: str | None = None,
    ):
        self.tableau = get_tableau(method)
        self.config = config if config is not None else AdaptiveConfig()
        self.jit = jit
        self.name = name if name is not None else self.tableau.name
        self._counter = EvaluationCounter(self.config.max_evaluations)
        self._controller = StepController(self.tableau, self.config, self._counter, jit=jit)
        self._dense_matrix = self.tableau.dense_matrix()
        self._handlers: list[StepHandler] = []
        self._detectors: list[EventDetector] = []
        self._states: list[EventState] = []
        self._events: list[EventRecord] = []
        self._handle_last_step = True
        self._states_initialized = False
        self.current_step_start = math.nan
        self.current_signed_step_size = math.nan

    def __repr__(self) -> str:
        return (
            f"Integrator(method={self.tableau.name!r}, detectors={len(self._detectors)}, "
            f"handlers={len(self._handlers)})"
        )

    # ── Registration ────────────────────────────────────────────────

    def add_step_handler(self, handler) -> None:
        """Register a :class:`~odejax.sampling.StepHandler` or ``(interp, is_last)`` callable."""
        self._handlers.append(as_step_handler(handler))

    @property
    def step_handlers(self) -> tuple[StepHandler, ...]:
        return tuple(self._handlers)

    def clear_step_handlers(self) -> None:
        self._handlers.clear()

    def add_event_detector(self, detector: EventDetector) -> None:
        if not isinstance(detector, EventDetector):
            raise TypeError(f"expected an EventDetector, got {detector!r}")
        self._detectors.append(detector)

    @property
    def event_detectors(self) -> tuple[EventDetector, ...]:
        return tuple(self._detectors)

    def clear_event_detectors(self) -> None:
        self._detectors.clear()

    def handle_last_step(self, flag: bool) -> None:
        """Choose whether handlers see ``is_last=True`` on the final step."""
        self._handle_last_step = flag

    @property
    def evaluations(self) -> int:
        """Derivative evaluations of the current (or last) propagation."""
        return self._counter.count

    # ── Propagation ─────────────────────────────────────────────────

    def integrate(
        self,
        equations: Equations,
        t0: float,
        y0: ArrayLike,
        t_end: float,
    ) -> PropagationResult:
        """Propagate ``y0`` from ``t0`` to ``t_end``.

        Args:
            equations: :class:`~odejax.equations.ExpandableEquations`, or a
                plain ``f(t, y) -> dy/dt`` callable.
            t0: Initial time.
            y0: Initial state (1-D).
            t_end: Target time; may precede ``t0``.

        Returns:
            PropagationResult: Final time and state plus statistics.

        Raises:
            ValueError: If ``t_end`` is too close to ``t0``.
            DimensionMismatchError: If ``y0`` or a tolerance array does not
                match the equations' dimension.
            StepSizeUnderflowError: If the step size collapses.
            MaxEvaluationsExceededError: If the evaluation budget runs out.
            RootLocalizationError: If an event cannot be localized.
        """
        t0 = float(t0)
        t_end = float(t_end)
        y = jnp.asarray(y0, dtype=get_dtype())
        if y.ndim != 1:
            raise ValueError(f"state must be a 1-D array, got shape {y.shape}")
        if not isinstance(equations, ExpandableEquations):
            equations = ExpandableEquations(equations, y.shape[0])
        self._check_dimension(equations, y)
        self._sanity_checks(t0, t_end)

        config = self.config
        forward = t_end > t0
        self._counter.reset()
        self._controller.n_rejected = 0
        self._events = []
        self._states = [EventState(d, i) for i, d in enumerate(self._detectors)]
        self._states_initialized = False

        for handler in self._handlers:
            init = getattr(handler, "init", None)
            if init is not None:
                init(t0, y, t_end)

        logger.info(
            "Integrator '%s': propagating from t=%.16g to t=%.16g (n=%d, %d detectors)",
            self.name,
            t0,
            t_end,
            y.shape[0],
            len(self._states),
        )

        dynamics = equations.derivatives_function()
        k0 = self._evaluate(dynamics, t0, y)

        if config.initial_step is not None:
            h = config.initial_step if forward else -config.initial_step
        else:
            self._counter.increment(1, time=t0, state=y)
            h = initial_step_size(
                dynamics,
                t0,
                y,
                k0,
                t_end,
                self.tableau.order,
                jnp.asarray(config.abs_tol, dtype=y.dtype),
                jnp.asarray(config.rel_tol, dtype=y.dtype),
                config.min_step,
                config.max_step,
            )

        t = t0
        n_steps = 0
        stopped = False
        while True:
            self.current_step_start = t
            attempt = self._controller.step(dynamics, t, y, k0, h, t_end)
            self.current_signed_step_size = attempt.h
            n_steps += 1

            interpolator = StepInterpolator.from_stages(
                attempt.t0,
                attempt.y0,
                attempt.t1,
                attempt.y1,
                attempt.stages,
                self._dense_matrix,
            )
            outcome = self._accept_step(interpolator, t_end)
            t, y = outcome.time, outcome.state
            h = attempt.h_next

            if outcome.stop:
                stopped = t != t_end
                break
            if t == t_end:
                break

            if outcome.reset:
                dynamics = equations.derivatives_function()
                self._check_dimension(equations, y)
                k0 = self._evaluate(dynamics, t, y)
            else:
                k0 = attempt.stages[-1]

        logger.info(
            "Integrator '%s': %s at t=%.16g after %d steps (%d rejected, %d evaluations, %d events)",
            self.name,
            "stopped" if stopped else "reached target",
            t,
            n_steps,
            self._controller.n_rejected,
            self._counter.count,
            len(self._events),
        )
        return PropagationResult(
            time=t,
            state=y,
            events=tuple(self._events),
            n_steps=n_steps,
            n_rejected=self._controller.n_rejected,
            n_evaluations=self._counter.count,
            stopped=stopped,
        )

    def _evaluate(self, dynamics, t: float, y: Array) -> Array:
        self._counter.increment(1, time=t, state=y)
        return dynamics(t, y)

    def _check_dimension(self, equations: ExpandableEquations, y: Array) -> None:
        if y.shape[0] != equations.dimension:
            raise DimensionMismatchError(equations.dimension, y.shape[0])
        self.config.check_dimension(y.shape[0])

    @staticmethod
    def _sanity_checks(t0: float, t_end: float) -> None:
        threshold = _MIN_INTERVAL_ULPS * float(np.spacing(max(abs(t0), abs(t_end))))
        if abs(t_end - t0) <= threshold:
            raise ValueError(
                f"too small integration interval: length = {abs(t_end - t0):.3e}, "
                f"minimum = {threshold:.3e}"
            )

    def _active_states(self) -> list[EventState]:
        return [s for s in self._states if s.active]

    def _notify(self, interpolator: StepInterpolator, is_last: bool) -> None:
        is_last = is_last and self._handle_last_step
        for handler in self._handlers:
            handler.handle_step(interpolator, is_last)

    def _record(self, state: EventState, t: float, y: Array) -> None:
        self._events.append(
            EventRecord(
                time=t,
                state=y,
                detector_index=state.index,
                detector=state.detector,
                action=state.next_action,
                increasing=state.increasing,
            )
        )

    def _remove(self, state: EventState) -> None:
        state.disable()
        logger.debug("Detector '%s' removed after its event", state.detector.label)

    def _accept_step(self, interpolator: StepInterpolator, t_end: float) -> _StepOutcome:
        """Process the events of one accepted step and notify the handlers."""
        previous_t = interpolator.global_previous_time
        current_t = interpolator.global_current_time

        if not self._states_initialized:
            for state in self._active_states():
                state.reinitialize_begin(interpolator)
            self._states_initialized = True

        sign = 1.0 if interpolator.is_forward else -1.0
        occurring = [s for s in self._active_states() if s.evaluate_step(interpolator)]

        while occurring:
            current = min(occurring, key=lambda s: (sign * s.event_time, s.index))
            occurring.remove(current)

            t_event = current.event_time
            truncated = interpolator.restrict(previous_t).truncate(t_event)
            y_event = truncated.state_at(t_event)

            is_last = t_event == t_end
            if not is_last:
                current.step_accepted(t_event, y_event)
                self._record(current, t_event, y_event)
                is_last = current.stop()
            remove = current.should_remove

            self._notify(truncated, is_last)

            if is_last:
                if remove:
                    self._remove(current)
                return _StepOutcome(t_event, y_event, True, False)

            y_reset = current.reset(t_event, y_event)
            if y_reset is not None:
                if remove:
                    self._remove(current)
                return self._reset(current, t_event, y_reset)

            previous_t = t_event
            if remove:
                self._remove(current)
            elif current.evaluate_step(interpolator.restrict(t_event)):
                occurring.append(current)

        y1 = interpolator.y1
        for state in self._active_states():
            state.step_accepted(current_t, y1)

        self._notify(interpolator.restrict(previous_t), current_t == t_end)
        return _StepOutcome(current_t, y1, False, False)

    def _reset(self, current: EventState, t: float, y: Array) -> _StepOutcome:
        """Restart from a reset state, firing detectors the reset itself triggers."""
        y = jnp.asarray(y, dtype=get_dtype())
        logger.debug(
            "State reset by detector '%s' at t=%.16g", current.detector.label, t
        )

        for state in self._active_states():
            if state is current or not state.evaluate_point(t, y):
                continue
            state.step_accepted(t, y)
            self._record(state, t, y)
            y_new = state.reset(t, y)
            if y_new is not None:
                y = jnp.asarray(y_new, dtype=get_dtype())
            if state.should_remove:
                self._remove(state)
            if state.stop():
                return _StepOutcome(t, y, True, False)

        for state in self._active_states():
            state.store_state(t, y)
        return _StepOutcome(t, y, False, True)


def propagate(
    dynamics: Equations,
    t0: float,
    y0: ArrayLike,
    t_end: float,
    *,
    method: str | ButcherTableau = "dp54",
    config: AdaptiveConfig | None = None,
    detectors: Iterable[EventDetector] = (),
    handlers: Sequence = (),
    jit: bool = False,
) -> PropagationResult:
    """Propagate a state in one call.

    Builds an :class:`Integrator`, registers *detectors* and *handlers* and
    runs :meth:`Integrator.integrate`.

    Args:
        dynamics: ``f(t, y) -> dy/dt`` or
            :class:`~odejax.equations.ExpandableEquations`.
        t0: Initial time.
        y0: Initial state.
        t_end: Target time; may precede ``t0``.
        method: Integration scheme (default ``"dp54"``).
        config: Tolerances and step bounds.
        detectors: Event detectors, in priority order for simultaneous
            events.
        handlers: Step handlers or ``(interpolator, is_last)`` callables.
        jit: Compile the stage kernel with ``jax.jit``.

    Returns:
        PropagationResult: Final time and state plus statistics.
    """
    integrator = Integrator(method=method, config=config, jit=jit)
    for detector in detectors:
        integrator.add_event_detector(detector)
    for handler in handlers:
        integrator.add_step_handler(handler)
    return integrator.integrate(dynamics, t0, y0, t_end)
