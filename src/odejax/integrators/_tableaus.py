"""Butcher tableaux driving the generic embedded Runge-Kutta step.

Every explicit scheme supported by odejax is described by a single
:class:`ButcherTableau` value: nodes, coupling coefficients, the weights of
the propagated solution, the (optional) weights of the embedded error
estimator and the dense-output matrix.  The step controller and the step
interpolator are written once against this table; there is no subclass per
scheme.

Coefficients are stored as Python tuples (cast at call time) so that a
tableau is hashable and can be passed to ``jax.jit`` as a static argument.

Dense output
------------
Over a step ``[t0, t0 + h]`` the continuous extension is

.. math::

    y(t_0 + \\theta h) = y_0 + h \\sum_{j=1}^{m} \\theta^j
        \\sum_{i} P_{i,j} k_i

where ``k_i`` are the stage derivatives extended, for non-FSAL schemes, by
the end-point derivative ``f(t0 + h, y1)``.  When a tableau has no
dedicated continuous extension, ``P`` is the cubic Hermite matrix derived
from the weights ``b`` (value and derivative matched at both ends).
"""

from __future__ import annotations

from typing import NamedTuple


class ButcherTableau(NamedTuple):
    """Coefficient table of an explicit (embedded) Runge-Kutta scheme.

    Attributes:
        name: Short identifier, e.g. ``"dp54"``.
        c: Stage nodes, in units of the step size. ``c[0]`` is always 0.
        a: Lower-triangular coupling rows; ``a[i-1]`` holds the ``i``
            coefficients of stage ``i``.
        b: Weights of the propagated (high-order) solution.
        b_low: Weights of the embedded (low-order) solution, or ``None``
            for a fixed-step scheme without error estimate.
        order: Order of the propagated solution.
        error_order: Order of the embedded solution; the step-size
            exponent is ``1 / (error_order + 1)``.
        fsal: First-Same-As-Last: the last stage is evaluated at
            ``(t + h, y1)`` and doubles as the next step's first stage.
        dense: Dense-output matrix rows (one per extended stage), or
            ``None`` to use the cubic Hermite extension.
        dense_order: Order of the continuous extension.
    """

    name: str
    c: tuple[float, ...]
    a: tuple[tuple[float, ...], ...]
    b: tuple[float, ...]
    b_low: tuple[float, ...] | None
    order: int
    error_order: int
    fsal: bool
    dense: tuple[tuple[float, ...], ...] | None = None
    dense_order: int = 3

    @property
    def n_stages(self) -> int:
        """Number of stages evaluated by one step attempt (including ``k0``)."""
        return len(self.c)

    @property
    def n_dense_stages(self) -> int:
        """Number of stage derivatives consumed by the dense output."""
        return self.n_stages if self.fsal else self.n_stages + 1

    @property
    def is_adaptive(self) -> bool:
        """Whether the scheme carries an embedded error estimator."""
        return self.b_low is not None

    @property
    def error_weights(self) -> tuple[float, ...]:
        """Weights ``b - b_low`` of the local error estimate."""
        if self.b_low is None:
            return tuple(0.0 for _ in self.b)
        return tuple(bh - bl for bh, bl in zip(self.b, self.b_low))

    def dense_matrix(self) -> tuple[tuple[float, ...], ...]:
        """Return the dense-output matrix, deriving the Hermite one if needed."""
        if self.dense is not None:
            return self.dense
        return hermite_dense_matrix(self.b, self.fsal)


def hermite_dense_matrix(
    b: tuple[float, ...], fsal: bool
) -> tuple[tuple[float, ...], ...]:
    """Build the cubic Hermite dense-output matrix for weights *b*.

    The resulting polynomial reproduces ``y0`` and ``f0`` at ``theta = 0``
    and ``y1 = y0 + h * sum(b_i k_i)`` and ``f1`` at ``theta = 1``, where
    ``f1`` is the last extended stage.

    Args:
        b: Weights of the propagated solution.
        fsal: Whether the last stage of *b* already is ``f1``.  When False
            an extra row is appended for the end-point derivative.

    Returns:
        Tuple of rows ``(P_i1, P_i2, P_i3)``, one per extended stage.
    """
    weights = tuple(b) if fsal else tuple(b) + (0.0,)
    last = len(weights) - 1
    rows = []
    for i, bi in enumerate(weights):
        e0 = 1.0 if i == 0 else 0.0
        e1 = 1.0 if i == last else 0.0
        rows.append((e0, 3.0 * bi - 2.0 * e0 - e1, -2.0 * bi + e0 + e1))
    return tuple(rows)


# Dormand-Prince 5(4), FSAL, with Shampine's 4th-order continuous extension.
DP54 = ButcherTableau(
    name="dp54",
    c=(0.0, 1.0 / 5.0, 3.0 / 10.0, 4.0 / 5.0, 8.0 / 9.0, 1.0, 1.0),
    a=(
        (1.0 / 5.0,),
        (3.0 / 40.0, 9.0 / 40.0),
        (44.0 / 45.0, -56.0 / 15.0, 32.0 / 9.0),
        (19372.0 / 6561.0, -25360.0 / 2187.0, 64448.0 / 6561.0, -212.0 / 729.0),
        (9017.0 / 3168.0, -355.0 / 33.0, 46732.0 / 5247.0, 49.0 / 176.0, -5103.0 / 18656.0),
        (35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0, -2187.0 / 6784.0, 11.0 / 84.0),
    ),
    b=(35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0, -2187.0 / 6784.0, 11.0 / 84.0, 0.0),
    b_low=(
        5179.0 / 57600.0,
        0.0,
        7571.0 / 16695.0,
        393.0 / 640.0,
        -92097.0 / 339200.0,
        187.0 / 2100.0,
        1.0 / 40.0,
    ),
    order=5,
    error_order=4,
    fsal=True,
    dense=(
        (
            1.0,
            -8048581381.0 / 2820520608.0,
            8663915743.0 / 2820520608.0,
            -12715105075.0 / 11282082432.0,
        ),
        (0.0, 0.0, 0.0, 0.0),
        (
            0.0,
            131558114200.0 / 32700410799.0,
            -68118460800.0 / 10900136933.0,
            87487479700.0 / 32700410799.0,
        ),
        (
            0.0,
            -1754552775.0 / 470086768.0,
            14199869525.0 / 1410260304.0,
            -10690763975.0 / 1880347072.0,
        ),
        (
            0.0,
            127303824393.0 / 49829197408.0,
            -318862633887.0 / 49829197408.0,
            701980252875.0 / 199316789632.0,
        ),
        (
            0.0,
            -282668133.0 / 205662961.0,
            2019193451.0 / 616988883.0,
            -1453857185.0 / 822651844.0,
        ),
        (
            0.0,
            40617522.0 / 29380423.0,
            -110615467.0 / 29380423.0,
            69997945.0 / 29380423.0,
        ),
    ),
    dense_order=4,
)

# Runge-Kutta-Fehlberg 4(5), propagated with the 5th-order weights.
RKF45 = ButcherTableau(
    name="rkf45",
    c=(0.0, 1.0 / 4.0, 3.0 / 8.0, 12.0 / 13.0, 1.0, 1.0 / 2.0),
    a=(
        (1.0 / 4.0,),
        (3.0 / 32.0, 9.0 / 32.0),
        (1932.0 / 2197.0, -7200.0 / 2197.0, 7296.0 / 2197.0),
        (439.0 / 216.0, -8.0, 3680.0 / 513.0, -845.0 / 4104.0),
        (-8.0 / 27.0, 2.0, -3544.0 / 2565.0, 1859.0 / 4104.0, -11.0 / 40.0),
    ),
    b=(16.0 / 135.0, 0.0, 6656.0 / 12825.0, 28561.0 / 56430.0, -9.0 / 50.0, 2.0 / 55.0),
    b_low=(25.0 / 216.0, 0.0, 1408.0 / 2565.0, 2197.0 / 4104.0, -1.0 / 5.0, 0.0),
    order=5,
    error_order=4,
    fsal=False,
)

# Bogacki-Shampine 3(2), FSAL.
BS32 = ButcherTableau(
    name="bs32",
    c=(0.0, 1.0 / 2.0, 3.0 / 4.0, 1.0),
    a=(
        (1.0 / 2.0,),
        (0.0, 3.0 / 4.0),
        (2.0 / 9.0, 1.0 / 3.0, 4.0 / 9.0),
    ),
    b=(2.0 / 9.0, 1.0 / 3.0, 4.0 / 9.0, 0.0),
    b_low=(7.0 / 24.0, 1.0 / 4.0, 1.0 / 3.0, 1.0 / 8.0),
    order=3,
    error_order=2,
    fsal=True,
)

# Classical fixed-step Runge-Kutta.
RK4 = ButcherTableau(
    name="rk4",
    c=(0.0, 0.5, 0.5, 1.0),
    a=(
        (0.5,),
        (0.0, 0.5),
        (0.0, 0.0, 1.0),
    ),
    b=(1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0),
    b_low=None,
    order=4,
    error_order=4,
    fsal=False,
)

_TABLEAUS = {t.name: t for t in (DP54, RKF45, BS32, RK4)}


def get_tableau(method: str | ButcherTableau) -> ButcherTableau:
    """Resolve a scheme name (or pass through a tableau).

    Args:
        method: ``"dp54"``, ``"rkf45"``, ``"bs32"``, ``"rk4"`` (case
            insensitive) or a :class:`ButcherTableau`.

    Returns:
        ButcherTableau: The matching coefficient table.

    Raises:
        ValueError: If *method* names no known scheme.
    """
    if isinstance(method, ButcherTableau):
        return method
    try:
        return _TABLEAUS[method.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown integration method '{method}'. "
            f"Must be one of: {', '.join(sorted(_TABLEAUS))}"
        ) from None
