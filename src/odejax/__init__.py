"""
odejax is an adaptive ODE propagation engine with dense output and event detection, implemented in JAX.
"""

from .config import set_dtype, get_dtype, get_default_event_threshold

from .exceptions import (
    OdeJaxError,
    IntegrationError,
    StepSizeUnderflowError,
    MaxEvaluationsExceededError,
    RootLocalizationError,
    DimensionMismatchError,
    InterpolationRangeError,
)

from .equations import ExpandableEquations, StateMapper

from .integrators import (
    AdaptiveConfig,
    ButcherTableau,
    StepAttempt,
    StepController,
    DP54,
    RKF45,
    BS32,
    RK4,
    get_tableau,
)

from .sampling import (
    StepInterpolator,
    StepHandler,
    DenseTrajectory,
    FixedStepSampler,
    StepRecorder,
)

from .events import (
    Action,
    EventDetector,
    EventRecord,
    EventState,
    EventStatus,
    date_detector,
    threshold_detector,
)

from .propagator import Integrator, PropagationResult, propagate

__all__ = [
    # Config
    "set_dtype",
    "get_dtype",
    "get_default_event_threshold",
    # Exceptions
    "OdeJaxError",
    "IntegrationError",
    "StepSizeUnderflowError",
    "MaxEvaluationsExceededError",
    "RootLocalizationError",
    "DimensionMismatchError",
    "InterpolationRangeError",
    # Equations
    "ExpandableEquations",
    "StateMapper",
    # Integrators
    "AdaptiveConfig",
    "ButcherTableau",
    "StepAttempt",
    "StepController",
    "DP54",
    "RKF45",
    "BS32",
    "RK4",
    "get_tableau",
    # Sampling
    "StepInterpolator",
    "StepHandler",
    "DenseTrajectory",
    "FixedStepSampler",
    "StepRecorder",
    # Events
    "Action",
    "EventDetector",
    "EventRecord",
    "EventState",
    "EventStatus",
    "date_detector",
    "threshold_detector",
    # Propagation
    "Integrator",
    "PropagationResult",
    "propagate",
]
