"""Dense output and step handlers.

- :class:`StepInterpolator` -- polynomial state reconstruction over one step
- :class:`StepHandler` -- protocol for step observers
- :class:`DenseTrajectory` -- continuous output over a whole propagation
- :class:`FixedStepSampler` -- states on a regular time grid
- :class:`StepRecorder` -- step boundaries, for diagnostics
"""

from odejax.sampling.handlers import (
    DenseTrajectory,
    FixedStepSampler,
    StepHandler,
    StepRecorder,
    as_step_handler,
)
from odejax.sampling.interpolator import StepInterpolator

__all__ = [
    "StepInterpolator",
    "StepHandler",
    "as_step_handler",
    "DenseTrajectory",
    "FixedStepSampler",
    "StepRecorder",
]
