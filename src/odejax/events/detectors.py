"""Ready-made event detectors.

Small factories for the switching functions needed most often.  Each
returns a plain :class:`~odejax.events.EventDetector`; every keyword not
listed below is forwarded to it unchanged.
"""

from __future__ import annotations

from typing import Any

from jax import Array

from odejax.events._types import Action, EventDetector


def date_detector(t_event: float, *, action: Any = Action.STOP, **kwargs: Any) -> EventDetector:
    """Detector firing when the integration variable reaches *t_event*.

    Args:
        t_event: Event time.
        action: Action at the event (default :attr:`Action.STOP`).
        **kwargs: Further :class:`EventDetector` fields.

    Returns:
        EventDetector: Detector with ``g(t, y) = t - t_event``.
    """

    def g(t: float, y: Array) -> float:
        return t - t_event

    kwargs.setdefault("name", f"date({t_event!r})")
    return EventDetector(g=g, action=action, **kwargs)


def threshold_detector(
    index: int,
    value: float,
    *,
    direction: int = 0,
    action: Any = Action.STOP,
    **kwargs: Any,
) -> EventDetector:
    """Detector firing when state component *index* crosses *value*.

    Args:
        index: Component of the state vector to watch.
        value: Threshold.
        direction: ``+1`` upward crossings only, ``-1`` downward only,
            ``0`` both.
        action: Action at the event (default :attr:`Action.STOP`).
        **kwargs: Further :class:`EventDetector` fields.

    Returns:
        EventDetector: Detector with ``g(t, y) = y[index] - value``.

    Examples:
        ```python
        from odejax.events import threshold_detector
        half_life = threshold_detector(0, 0.5, direction=-1)
        ```
    """

    def g(t: float, y: Array) -> float:
        return y[index] - value

    kwargs.setdefault("name", f"y[{index}] = {value!r}")
    return EventDetector(g=g, direction=direction, action=action, **kwargs)
