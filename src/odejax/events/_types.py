"""Type definitions for discrete-event detection.

- :class:`Action`: What the propagation does once an event has fired.
- :class:`EventStatus`: Lifecycle of one detector during a propagation.
- :class:`EventDetector`: Immutable record holding a switching function
  ``g(t, y)`` and the policy applied at its zero crossings.
- :class:`EventRecord`: Log entry of an event that fired.

Detectors are plain data: there is no detector class hierarchy, every
detector is processed uniformly by :class:`~odejax.events.EventState` and
the orchestrator.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple

from jax import Array

from odejax.config import get_default_event_threshold


class Action(Enum):
    """Action requested by a detector when its event fires.

    Attributes:
        CONTINUE: Keep integrating with the unmodified state.
        STOP: End the propagation at the event time.
        RESET_STATE: Replace the state with ``reset_state(t, y)`` and
            restart the step from the event time.
        RESET_DERIVATIVES: Keep the state but recompute the derivatives
            (the dynamics changed) and restart from the event time.
    """

    CONTINUE = "continue"
    STOP = "stop"
    RESET_STATE = "reset_state"
    RESET_DERIVATIVES = "reset_derivatives"


class EventStatus(Enum):
    """Lifecycle state of an :class:`~odejax.events.EventState`."""

    ARMED = "armed"
    LOCALIZING = "localizing"
    FIRED = "fired"
    DISABLED = "disabled"


ActionPolicy = Action | Callable[[float, Array, bool, bool], Action]


@dataclass(frozen=True)
class EventDetector:
    """Switching function and event policy.

    The event occurs where ``g(t, y)`` crosses zero.  Within one step the
    sign of ``g`` is sampled every ``max_check_interval``; two crossings
    closer than that may be missed.

    Args:
        g: Switching function ``g(t, y) -> float``.
        max_check_interval: Maximal time between two samples of ``g``.
        threshold: Convergence threshold on the event time. ``None`` uses
            :func:`~odejax.config.get_default_event_threshold`.
        max_iterations: Iteration budget of the root search.
        direction: ``0`` reports every crossing, ``+1`` only crossings where
            ``g`` increases with time, ``-1`` only decreasing ones.
        action: An :class:`Action`, or a callable
            ``(t, y, forward, increasing) -> Action`` deciding at each event.
            ``increasing`` refers to the propagation direction.
        reset_state: Callable ``(t, y) -> y_new`` applied when the action
            is :attr:`Action.RESET_STATE`. ``None`` keeps the state.
        remove_after_event: Disable the detector once it has fired.
        name: Label used in logs and error messages.

    Examples:
        ```python
        from odejax.events import Action, EventDetector
        apogee = EventDetector(
            g=lambda t, y: y[3] * y[0] + y[4] * y[1] + y[5] * y[2],
            max_check_interval=60.0,
            direction=-1,
            action=Action.CONTINUE,
        )
        ```
    """

    g: Callable[[float, Array], Any]
    max_check_interval: float = 600.0
    threshold: float | None = None
    max_iterations: int = 100
    direction: int = 0
    action: ActionPolicy = Action.STOP
    reset_state: Callable[[float, Array], Array] | None = None
    remove_after_event: bool = False
    name: str | None = None

    def __post_init__(self) -> None:
        if not callable(self.g):
            raise ValueError("g must be callable")
        if not self.max_check_interval > 0.0 or math.isnan(self.max_check_interval):
            raise ValueError(
                f"max_check_interval must be positive, got {self.max_check_interval}"
            )
        if self.threshold is not None and not self.threshold > 0.0:
            raise ValueError(f"threshold must be positive, got {self.threshold}")
        if self.max_iterations <= 0:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.direction not in (-1, 0, 1):
            raise ValueError(f"direction must be -1, 0 or +1, got {self.direction}")
        if not isinstance(self.action, Action) and not callable(self.action):
            raise ValueError(f"action must be an Action or a callable, got {self.action!r}")

    @property
    def label(self) -> str:
        if self.name is not None:
            return self.name
        return getattr(self.g, "__name__", "event")

    @property
    def convergence(self) -> float:
        """Effective convergence threshold on the event time."""
        if self.threshold is not None:
            return self.threshold
        return get_default_event_threshold()

    def event_occurred(self, t: float, y: Array, forward: bool, increasing: bool) -> Action:
        """Resolve the action to take for an event at ``(t, y)``."""
        if isinstance(self.action, Action):
            return self.action
        action = self.action(t, y, forward, increasing)
        if not isinstance(action, Action):
            raise TypeError(
                f"action callback of detector '{self.label}' returned {action!r}, "
                f"expected an Action"
            )
        return action

    def reset(self, t: float, y: Array) -> Array:
        """Return the state to restart from after a :attr:`Action.RESET_STATE`."""
        if self.reset_state is None:
            return y
        return self.reset_state(t, y)


class EventRecord(NamedTuple):
    """An event that fired during a propagation.

    Attributes:
        time: Event time.
        state: State at the event time, before any reset.
        detector_index: Registration index of the detector.
        detector: The detector itself.
        action: Action that was applied.
        increasing: Whether ``g`` increased along the propagation direction.
    """

    time: float
    state: Array
    detector_index: int
    detector: EventDetector
    action: Action
    increasing: bool
