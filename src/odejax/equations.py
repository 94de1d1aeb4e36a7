"""Equations with a primary block and optional additional blocks.

The state vector is laid out as the primary state followed by each
additional block in the order the blocks were added.  A block's
derivative may depend on the primary state and on the block itself::

    block_dot = derivatives(t, y_primary, y_block)

Blocks can be added or removed between propagation segments, typically by
an event action that switches a maneuver on and returns a state of the
new dimension.  :meth:`ExpandableEquations.derivatives_function` builds a
fresh right-hand side for the current layout each time it is called.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import NamedTuple

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.exceptions import DimensionMismatchError

PRIMARY = "primary"


class StateMapper(NamedTuple):
    """Location of one named block inside the full state vector.

    Attributes:
        name: Block name.
        start: Index of the first component.
        dimension: Number of components.
    """

    name: str
    start: int
    dimension: int

    @property
    def stop(self) -> int:
        return self.start + self.dimension

    def extract(self, y: ArrayLike) -> Array:
        return jnp.asarray(y)[self.start : self.stop]

    def insert(self, y: ArrayLike, values: ArrayLike) -> Array:
        values = jnp.asarray(values)
        if values.shape != (self.dimension,):
            raise DimensionMismatchError(self.dimension, values.size, what=f"block '{self.name}'")
        return jnp.asarray(y).at[self.start : self.stop].set(values)


def _checked(value: ArrayLike, dimension: int, what: str) -> Array:
    value = jnp.asarray(value)
    if value.shape != (dimension,):
        raise DimensionMismatchError(dimension, value.size, what=what)
    return value


class ExpandableEquations:
    """Primary equations plus named additional blocks.

    Args:
        primary: Derivative function ``f(t, y_primary) -> dy_primary``.
        dimension: Dimension of the primary state.

    Examples:
        ```python
        equations = ExpandableEquations(two_body, 6)
        mass = equations.add_equations("mass", lambda t, y, m: -mdot, 1)
        y = jnp.concatenate([rv, jnp.array([m0])])
        ```
    """

    def __init__(self, primary: Callable[[ArrayLike, Array], Array], dimension: int):
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self._primary = primary
        self._primary_mapper = StateMapper(PRIMARY, 0, dimension)
        self._blocks: dict[str, tuple[StateMapper, Callable]] = {}

    @property
    def primary(self) -> Callable[[ArrayLike, Array], Array]:
        return self._primary

    @property
    def primary_mapper(self) -> StateMapper:
        return self._primary_mapper

    @property
    def names(self) -> tuple[str, ...]:
        """Names of the additional blocks, in state order."""
        return tuple(self._blocks)

    @property
    def dimension(self) -> int:
        """Dimension of the full state vector."""
        return self._primary_mapper.dimension + sum(m.dimension for m, _ in self._blocks.values())

    def add_equations(
        self,
        name: str,
        derivatives: Callable[[ArrayLike, Array, Array], Array],
        dimension: int,
    ) -> StateMapper:
        """Append an additional block at the end of the state vector.

        Args:
            name: Unique block name.
            derivatives: ``(t, y_primary, y_block) -> block_dot``.
            dimension: Block dimension.

        Returns:
            StateMapper: Location of the new block.

        Raises:
            ValueError: If *name* is taken or *dimension* is not positive.
        """
        if name == PRIMARY or name in self._blocks:
            raise ValueError(f"equations '{name}' already registered")
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        mapper = StateMapper(name, self.dimension, dimension)
        self._blocks[name] = (mapper, derivatives)
        return mapper

    def remove_equations(self, name: str) -> None:
        """Remove a block; the blocks after it shift down.

        Raises:
            KeyError: If no block is registered under *name*.
        """
        if name not in self._blocks:
            raise KeyError(f"no equations named '{name}'")
        del self._blocks[name]
        start = self._primary_mapper.dimension
        blocks = {}
        for block_name, (mapper, fn) in self._blocks.items():
            blocks[block_name] = (mapper._replace(start=start), fn)
            start += mapper.dimension
        self._blocks = blocks

    def mapper(self, name: str) -> StateMapper:
        """Return the mapper of block *name* (``"primary"`` for the primary state)."""
        if name == PRIMARY:
            return self._primary_mapper
        try:
            return self._blocks[name][0]
        except KeyError:
            raise KeyError(f"no equations named '{name}'") from None

    def extract(self, name: str, y: ArrayLike) -> Array:
        return self.mapper(name).extract(y)

    def insert(self, name: str, y: ArrayLike, values: ArrayLike) -> Array:
        return self.mapper(name).insert(y, values)

    def derivatives_function(self) -> Callable[[ArrayLike, Array], Array]:
        """Build the right-hand side ``f(t, y)`` for the current layout.

        The returned closure captures the layout at call time; adding or
        removing blocks afterwards does not affect it.
        """
        primary = self._primary
        primary_mapper = self._primary_mapper
        blocks = tuple(self._blocks.values())
        dimension = self.dimension

        def derivatives(t: ArrayLike, y: Array) -> Array:
            if y.shape != (dimension,):
                raise DimensionMismatchError(dimension, y.size)
            y_primary = primary_mapper.extract(y)
            parts = [_checked(primary(t, y_primary), primary_mapper.dimension, "derivative")]
            for mapper, fn in blocks:
                parts.append(
                    _checked(
                        fn(t, y_primary, mapper.extract(y)),
                        mapper.dimension,
                        f"'{mapper.name}' derivative",
                    )
                )
            if len(parts) == 1:
                return parts[0]
            return jnp.concatenate(parts)

        return derivatives
