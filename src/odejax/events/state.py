"""Per-detector event tracking over successive steps.

An :class:`EventState` wraps one :class:`~odejax.events.EventDetector` for
the duration of a propagation.  It remembers the sign of the switching
function at the last confirmed time and, for every step handed to it,
looks for a sign change by sampling ``g`` at most ``max_check_interval``
apart, then localizes the crossing on the step's dense output.

The sign history is held in ``g0`` as ``+inf`` or ``-inf``.  A value of
exactly ``0.0`` only occurs when ``g`` vanishes at the very start of the
propagation; such an event fires on the first step.  After an event the
sign is forced to its value just past the root, and the event time is
remembered so the same root is not reported twice.

Two crossings closer than ``max_check_interval`` that leave ``g`` with the
same sign at both sample points go unnoticed.  This is an accepted
limitation of sampling at bounded frequency; callers control it through
``max_check_interval``.
"""

from __future__ import annotations

import logging
import math

from jax import Array

from odejax.events._solver import find_root
from odejax.events._types import Action, EventDetector, EventStatus
from odejax.exceptions import RootLocalizationError
from odejax.sampling.interpolator import StepInterpolator

logger = logging.getLogger(__name__)

# Below this width a step is checked at its end point only.
_MIN_SEARCH_INTERVAL = 1e-14


def _saturate(value: float, fallback: float) -> float:
    if value > 0.0:
        return math.inf
    if value < 0.0:
        return -math.inf
    return fallback


class EventState:
    """Sign history and root search for one detector.

    Args:
        detector: The detector to track.
        index: Registration index, used to order simultaneous events.

    Attributes:
        status: Current :class:`EventStatus`.
        t0: Time of the last confirmed sign.
        g0: Sign of ``g`` at ``t0`` (``+inf``, ``-inf``, or ``0.0`` at the
            initial time).
        forward: Direction of the last evaluated step.
        increasing: Whether ``g`` increases along the propagation direction
            across the pending (or last) event.
        previous_event_time: Time of the last event that fired, or NaN.
        next_action: Action decided at the last accepted step.
    """

    def __init__(self, detector: EventDetector, index: int = 0):
        self.detector = detector
        self.index = index
        self.convergence = detector.convergence
        self.status = EventStatus.ARMED
        self.t0 = math.nan
        self.g0 = math.nan
        self.initial_time = math.nan
        self.forward = True
        self.increasing = True
        self.pending_event = False
        self.pending_event_time = math.nan
        self.previous_event_time = math.nan
        self.next_action = Action.CONTINUE
        self._step_convergence = self.convergence
        self._g_end = math.nan
        self._g_end_time = math.nan

    def __repr__(self) -> str:
        return (
            f"EventState(detector={self.detector.label!r}, index={self.index}, "
            f"status={self.status.name}, t0={self.t0!r})"
        )

    @property
    def active(self) -> bool:
        return self.status is not EventStatus.DISABLED

    @property
    def event_time(self) -> float:
        """Time of the pending event, or +/-inf (per direction) if none."""
        if self.pending_event:
            return self.pending_event_time
        return math.inf if self.forward else -math.inf

    @property
    def is_pending_reset(self) -> bool:
        return self.next_action in (Action.RESET_STATE, Action.RESET_DERIVATIVES)

    @property
    def should_remove(self) -> bool:
        """Whether the detector has fired and asked to be removed."""
        return self.detector.remove_after_event and self.previous_event_time == self.t0

    def g(self, t: float, y: Array) -> float:
        return float(self.detector.g(t, y))

    def reinitialize_begin(self, interpolator: StepInterpolator) -> None:
        """Record the sign of ``g`` at the start of the first step."""
        self.t0 = interpolator.previous_time
        self.g0 = _saturate(self.g(self.t0, interpolator.state_at(self.t0)), 0.0)
        self.initial_time = self.t0
        self.forward = interpolator.is_forward
        self.pending_event = False
        self.pending_event_time = math.nan
        self.previous_event_time = math.nan
        self.next_action = Action.CONTINUE
        self.status = EventStatus.ARMED

    def stop(self) -> bool:
        return self.next_action is Action.STOP

    def disable(self) -> None:
        self.status = EventStatus.DISABLED
        self.pending_event = False
        self.pending_event_time = math.nan

    def _slope_selected(self, increasing: bool) -> bool:
        direction = self.detector.direction
        if direction == 0:
            return True
        return (increasing == self.forward) == (direction > 0)

    def _set_pending(self, t: float) -> None:
        self.pending_event = True
        self.pending_event_time = t
        self.status = EventStatus.FIRED

    def _clear_pending(self) -> None:
        self.pending_event = False
        self.pending_event_time = math.nan
        if self.status is not EventStatus.DISABLED:
            self.status = EventStatus.ARMED

    def evaluate_step(self, interpolator: StepInterpolator) -> bool:
        """Look for the first event between ``t0`` and the end of the step.

        Args:
            interpolator: Dense output of the step; its valid domain must
                cover ``[t0, interpolator.current_time]``.

        Returns:
            bool: True if an event is pending in the step; its time is then
            available as :attr:`event_time`.

        The committed sign ``g0`` is left untouched; crossings rejected by
        the direction filter are only committed by :meth:`step_accepted`.

        Raises:
            RootLocalizationError: If the root search does not converge.
        """
        self.forward = interpolator.is_forward
        t1 = interpolator.current_time
        dt = t1 - self.t0
        absdt = abs(dt)
        self._step_convergence = min(absdt, self.convergence)

        def g_at(t: float) -> float:
            return self.g(t, interpolator.state_at(t))

        if absdt < _MIN_SEARCH_INTERVAL:
            gb = g_at(t1)
            self._g_end, self._g_end_time = gb, t1
            sign_change = (self.g0 >= 0.0 and gb < 0.0) or (self.g0 <= 0.0 and gb > 0.0)
            if absdt > 0.0 and sign_change:
                self.increasing = gb >= self.g0
                self._set_pending(self.t0)
                return True
            self._clear_pending()
            return False

        n = max(1, math.ceil(absdt / self.detector.max_check_interval))
        h = dt / n
        conv = self._step_convergence

        t00 = self.t0
        ta, ga = t00, self.g0
        i = 0
        while i < n:
            tb = t1 if i == n - 1 else t00 + (i + 1) * h
            gb = g_at(tb)

            at_start = self.g0 == 0.0 and t00 == self.initial_time and ta == t00
            if ((ga >= 0.0) != (gb >= 0.0)) or at_start:
                self.increasing = gb >= ga
                if self._slope_selected(self.increasing):
                    root = ta
                    ga_actual = g_at(ta)
                    if (ga_actual >= 0.0) != (gb >= 0.0):
                        root = self._locate(interpolator, g_at, ta, ga_actual, tb, gb)

                    if (
                        not math.isnan(self.previous_event_time)
                        and abs(root - ta) <= conv
                        and abs(root - self.previous_event_time) <= conv
                    ):
                        # root already handled, search again past it
                        ta = ta + conv if self.forward else ta - conv
                        if (ta >= tb) if self.forward else (ta <= tb):
                            ta, ga = tb, gb
                            i += 1
                        else:
                            ga = g_at(ta)
                        continue

                    if (
                        math.isnan(self.previous_event_time)
                        or abs(self.previous_event_time - root) > conv
                    ):
                        self._set_pending(root)
                        return True
            ta, ga = tb, gb
            i += 1

        self._g_end, self._g_end_time = ga, t1
        self._clear_pending()
        return False

    def _locate(
        self, interpolator: StepInterpolator, g_at, ta: float, ga: float, tb: float, gb: float
    ) -> float:
        self.status = EventStatus.LOCALIZING
        try:
            return find_root(
                g_at, ta, ga, tb, gb, self._step_convergence, self.detector.max_iterations
            )
        except RootLocalizationError as exc:
            exc.time = self.t0
            exc.state = interpolator.state_at(self.t0)
            exc.detector = self.detector
            logger.warning(
                "Event localization failed for detector '%s' near t=%.16g",
                self.detector.label,
                ta,
            )
            raise
        finally:
            if self.status is EventStatus.LOCALIZING:
                self.status = EventStatus.ARMED

    def evaluate_point(self, t: float, y: Array) -> bool:
        """Check for a sign change caused by a state reset at time *t*.

        Returns:
            bool: True if an event is pending at *t*.
        """
        gb = self.g(t, y)
        if self.previous_event_time == t:
            return self.pending_event
        if (self.g0 >= 0.0) != (gb >= 0.0):
            self.increasing = gb >= self.g0
            if self._slope_selected(self.increasing):
                self._step_convergence = self.convergence
                self._set_pending(t)
                return True
            self.g0 = math.inf if gb >= 0.0 else -math.inf
        self._clear_pending()
        return False

    def step_accepted(self, t: float, y: Array) -> None:
        """Acknowledge that the step (or its part up to *t*) is committed.

        If the pending event is at *t*, the detector's action is resolved
        and the sign is forced to its post-event value.
        """
        self.t0 = t

        if self.pending_event and abs(self.pending_event_time - t) <= self._step_convergence:
            self.previous_event_time = t
            self.next_action = self.detector.event_occurred(t, y, self.forward, self.increasing)
            self.g0 = math.inf if self.increasing else -math.inf
            logger.debug(
                "Event '%s' fired at t=%.16g (increasing=%s), action %s",
                self.detector.label,
                t,
                self.increasing,
                self.next_action.name,
            )
            if self.next_action is Action.STOP:
                self.status = EventStatus.DISABLED
        else:
            self.next_action = Action.CONTINUE
            if t == self._g_end_time:
                self.g0 = _saturate(self._g_end, self.g0)

    def reset(self, t: float, y: Array) -> Array | None:
        """Apply the reset requested by the event at *t*, if any.

        Returns:
            The state to restart from when the action was
            :attr:`Action.RESET_STATE` or :attr:`Action.RESET_DERIVATIVES`,
            otherwise ``None``.
        """
        if not (self.pending_event and abs(self.pending_event_time - t) <= self._step_convergence):
            return None

        if self.next_action is Action.RESET_STATE:
            y = self.detector.reset(t, y)
        self.pending_event = False
        self.pending_event_time = math.nan
        if self.status is EventStatus.FIRED:
            self.status = EventStatus.ARMED

        if self.is_pending_reset:
            return y
        return None

    def store_state(self, t: float, y: Array) -> None:
        """Restart the sign history from ``(t, y)`` after a state reset."""
        self.t0 = t
        self.g0 = _saturate(self.g(t, y), self.g0)
        self.pending_event = False
        self.pending_event_time = math.nan
        self._g_end_time = math.nan
        if self.status is not EventStatus.DISABLED:
            self.status = EventStatus.ARMED
