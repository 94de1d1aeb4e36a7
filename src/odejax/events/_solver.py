"""Bracketed root search used to localize events.

The search works on the dense output of a step, so every function
evaluation is an interpolator query and never a derivative evaluation.

It combines the Illinois variant of regula falsi with bisection: a secant
probe is tried first, and a bisection follows whenever an iteration failed
to halve the bracket.  Probes are kept half a tolerance away from the
bracket ends so that the bracket also shrinks from the side of the root
that the secant converges toward.

The returned point always lies on the *far* side of the root (the side of
the second bracket end), within ``tol`` of it.  Evaluating the switching
function there gives the sign it has just after the event, which is what
the event state needs to avoid detecting the same root twice.
"""

from __future__ import annotations

import math
from collections.abc import Callable

from odejax.exceptions import RootLocalizationError


def find_root(
    f: Callable[[float], float],
    ta: float,
    ga: float,
    tb: float,
    gb: float,
    tol: float,
    max_iterations: int,
) -> float:
    """Locate a sign change of *f* between *ta* and *tb*.

    The ends may be given in either order; *tb* marks the side on which the
    solution is returned.

    Args:
        f: Scalar function of time.
        ta: Bracket end on the near side.
        ga: ``f(ta)``.
        tb: Bracket end on the far side.
        gb: ``f(tb)``.
        tol: Absolute tolerance on the bracket width.
        max_iterations: Maximal number of function evaluations.

    Returns:
        float: A time ``t`` with ``f(t) == 0`` or with ``f(t)`` of the sign
        of ``gb`` and ``|t - root| <= tol``.

    Raises:
        ValueError: If ``ga`` and ``gb`` do not bracket a root.
        RootLocalizationError: If the bracket is still wider than *tol*
            after *max_iterations* evaluations.
    """
    if ga == 0.0:
        return ta
    if gb == 0.0:
        return tb
    if (ga > 0.0) == (gb > 0.0):
        raise ValueError(f"no sign change between f({ta!r}) = {ga!r} and f({tb!r}) = {gb!r}")

    a, fa = ta, ga
    b, fb = tb, gb
    retained = 0
    bisect = False
    for _ in range(max_iterations):
        width = abs(b - a)
        if width <= tol:
            return b

        if bisect:
            x = a + 0.5 * (b - a)
        else:
            x = b - fb * (b - a) / (fb - fa)
            if not min(a, b) < x < max(a, b):
                x = a + 0.5 * (b - a)
            margin = 0.5 * tol
            if abs(x - a) < margin:
                x = a + math.copysign(margin, b - a)
            elif abs(x - b) < margin:
                x = b - math.copysign(margin, b - a)

        fx = f(x)
        if fx == 0.0:
            return x

        if (fx > 0.0) == (fb > 0.0):
            b, fb = x, fx
            if retained == -1:
                fa *= 0.5
            retained = -1
        else:
            a, fa = x, fx
            if retained == 1:
                fb *= 0.5
            retained = 1

        bisect = abs(b - a) > 0.5 * width

    if abs(b - a) <= tol:
        return b
    raise RootLocalizationError(
        f"event localization did not converge within {max_iterations} iterations, "
        f"bracket [{min(a, b)!r}, {max(a, b)!r}] still wider than {tol!r}",
        time=ta,
    )
