"""Discrete-event detection on dense output.

- :class:`EventDetector` -- switching function ``g(t, y)`` plus policy
- :class:`Action` -- what happens when an event fires
- :class:`EventState` -- sign history and root search for one detector
- :func:`date_detector`, :func:`threshold_detector` -- common detectors
"""

from odejax.events._solver import find_root
from odejax.events._types import Action, EventDetector, EventRecord, EventStatus
from odejax.events.detectors import date_detector, threshold_detector
from odejax.events.state import EventState

__all__ = [
    "Action",
    "EventStatus",
    "EventDetector",
    "EventRecord",
    "EventState",
    "find_root",
    "date_detector",
    "threshold_detector",
]
