"""Embedded Runge-Kutta step control.

A single generic :class:`StepController` drives every scheme; schemes are
plain coefficient tables (:class:`ButcherTableau`), not subclasses.

Available schemes:

- :data:`DP54` -- Dormand-Prince 5(4), FSAL, 4th-order dense output
- :data:`RKF45` -- Runge-Kutta-Fehlberg 4(5)
- :data:`BS32` -- Bogacki-Shampine 3(2), FSAL
- :data:`RK4` -- Classic 4th-order Runge-Kutta (fixed step)

One attempt is made with::

    attempt = controller.attempt_step(dynamics, t, y, k0, h)

where ``dynamics(t, y) -> dy`` defines the ODE right-hand side and ``k0``
is its value at ``(t, y)``; the result is a :class:`StepAttempt`.
"""

from odejax.integrators._adaptive import (
    compute_error_norm,
    compute_next_step_size,
    initial_step_size,
)
from odejax.integrators._controller import StepController, rk_stages
from odejax.integrators._tableaus import (
    BS32,
    DP54,
    RK4,
    RKF45,
    ButcherTableau,
    get_tableau,
    hermite_dense_matrix,
)
from odejax.integrators._types import AdaptiveConfig, EvaluationCounter, StepAttempt

__all__ = [
    "AdaptiveConfig",
    "StepAttempt",
    "EvaluationCounter",
    "ButcherTableau",
    "DP54",
    "RKF45",
    "BS32",
    "RK4",
    "get_tableau",
    "hermite_dense_matrix",
    "StepController",
    "rk_stages",
    "compute_error_norm",
    "compute_next_step_size",
    "initial_step_size",
]
