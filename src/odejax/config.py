"""Module-wide floating-point precision configuration.

Provides ``set_dtype`` and ``get_dtype`` to control the float dtype used
for state vectors, stage derivatives and dense-output coefficients.  The
default is ``jnp.float64``: step-size control at tolerances below ``1e-7``
is meaningless in single precision, so 64-bit mode is enabled when this
module is imported.

Switching to a narrower dtype is allowed (e.g. for quick GPU experiments),
but the integration tolerances must then be loosened accordingly, otherwise
the step controller will shrink the step until it hits ``min_step`` and
raise :class:`~odejax.exceptions.StepSizeUnderflowError`.

Call ``set_dtype`` **before** any JIT compilation.  Under JIT,
``get_dtype()`` runs during tracing and its result is baked into the
compiled program.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

_VALID_DTYPES = (jnp.float16, jnp.bfloat16, jnp.float32, jnp.float64)

jax.config.update("jax_enable_x64", True)

_dtype = jnp.float64


def set_dtype(dtype) -> None:
    """Set the module-wide float dtype for odejax.

    If *dtype* is ``jnp.float64``, JAX's 64-bit mode is (re-)enabled via
    ``jax.config.update("jax_enable_x64", True)``.

    Args:
        dtype: One of ``jnp.float16``, ``jnp.bfloat16``, ``jnp.float32``,
            or ``jnp.float64``.

    Raises:
        ValueError: If *dtype* is not a supported float type.
    """
    global _dtype
    if dtype not in _VALID_DTYPES:
        raise ValueError(
            f"Unsupported dtype {dtype}. Must be one of: "
            f"jnp.float16, jnp.bfloat16, jnp.float32, jnp.float64"
        )
    if dtype == jnp.float64:
        jax.config.update("jax_enable_x64", True)
    _dtype = dtype


def get_dtype():
    """Return the current module-wide float dtype.

    Returns:
        The active float dtype (default ``jnp.float64``).
    """
    return _dtype


def get_default_event_threshold() -> float:
    """Return the dtype-adaptive default convergence threshold for events.

    Event times are located to this absolute time tolerance unless the
    detector specifies its own:

    - ``float64``:  1e-9
    - ``float32``:  1e-4
    - ``float16`` / ``bfloat16``: 1e-2

    Returns:
        float: Time tolerance in the units of the integration variable.
    """
    if _dtype == jnp.float64:
        return 1e-9
    if _dtype == jnp.float32:
        return 1e-4
    return 1e-2
