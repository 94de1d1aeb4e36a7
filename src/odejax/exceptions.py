"""Exception hierarchy for odejax.

Fatal propagation failures derive from :class:`IntegrationError` and carry
the last valid time and state (and the offending event detector, when one
is involved) so callers can diagnose a failure without re-running it.
Nothing raised here is retried by the engine; retrying with adjusted
tolerances is left to the caller.
"""

from __future__ import annotations

from typing import Any


class OdeJaxError(Exception):
    """Base class for every error raised by odejax."""


class IntegrationError(OdeJaxError):
    """A propagation could not be completed.

    Args:
        message: Human-readable description.
        time: Last time at which the state was valid.
        state: State vector at *time*.
        detector: Event detector involved in the failure, if any.
    """

    def __init__(
        self,
        message: str,
        time: float | None = None,
        state: Any = None,
        detector: Any = None,
    ):
        super().__init__(message)
        self.time = time
        self.state = state
        self.detector = detector

    def __str__(self) -> str:
        msg = super().__str__()
        if self.time is not None:
            msg = f"{msg} (t = {self.time!r})"
        return msg


class StepSizeUnderflowError(IntegrationError):
    """The step size collapsed below ``min_step`` without meeting the tolerance."""


class MaxEvaluationsExceededError(IntegrationError):
    """The derivative-evaluation budget was exhausted."""


class RootLocalizationError(IntegrationError):
    """An event bracket could not be narrowed below its convergence threshold."""


class DimensionMismatchError(OdeJaxError, ValueError):
    """Two arrays that must share a dimension do not.

    Args:
        expected: Required dimension.
        actual: Dimension that was supplied.
        what: Short description of the offending array.
    """

    def __init__(self, expected: int, actual: int, what: str = "state"):
        super().__init__(f"{what} dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class InterpolationRangeError(OdeJaxError, ValueError):
    """A dense-output query fell outside the interpolator's valid domain."""
