# /// script
# requires-python = ">=3.10"
# dependencies = ["typer>=0.9.0", "odejax"]
#
# [tool.uv.sources]
# odejax = { path = ".." }
# ///
"""Propagate a bouncing ball with event-driven state resets.

The ball falls under constant gravity.  Each impact with the ground is a
zero crossing of the height, localized on the dense output of the step and
handled by a RESET_STATE action that reverses the vertical velocity scaled
by the coefficient of restitution.  The action callback stops the run
instead once the rebound speed would drop below a floor.  Heights are
reported on a fixed output grid.

Requires odejax to be installed (``uv pip install -e .`` from the repo root).

Usage:
    uv run examples/bouncing_ball.py [OPTIONS]

Examples:
    # Default drop from 10 m
    uv run examples/bouncing_ball.py

    # Softer ball, coarse output grid
    uv run examples/bouncing_ball.py --restitution 0.5 --output-step 0.5

    # Tight tolerances and compiled stage kernel
    uv run examples/bouncing_ball.py --tolerance 1e-12 --jit
"""

import time
from typing import Annotated

import jax.numpy as jnp
import typer

from odejax import (
    Action,
    AdaptiveConfig,
    EventDetector,
    FixedStepSampler,
    propagate,
    set_dtype,
)

set_dtype(jnp.float64)

GRAVITY = 9.80665  # m/s^2


def falling(t, y):
    """State [height, vertical velocity]."""
    return jnp.array([y[1], -GRAVITY])


def main(
    height: Annotated[float, typer.Option(help="Initial height in metres")] = 10.0,
    restitution: Annotated[float, typer.Option(help="Coefficient of restitution")] = 0.8,
    min_speed: Annotated[float, typer.Option(help="Stop once rebounds are slower (m/s)")] = 1.0,
    duration: Annotated[float, typer.Option(help="Maximal simulated time in seconds")] = 30.0,
    output_step: Annotated[float, typer.Option(help="Output grid spacing in seconds")] = 0.25,
    tolerance: Annotated[float, typer.Option(help="Absolute and relative tolerance")] = 1e-10,
    jit: Annotated[bool, typer.Option(help="Compile the stage kernel")] = False,
):
    def bounce(t, y):
        return jnp.array([0.0, -restitution * y[1]])

    def on_impact(t, y, forward, increasing):
        if restitution * abs(float(y[1])) < min_speed:
            return Action.STOP
        return Action.RESET_STATE

    impact = EventDetector(
        g=lambda t, y: y[0],
        max_check_interval=0.1,
        direction=-1,
        action=on_impact,
        reset_state=bounce,
        name="impact",
    )

    sampler = FixedStepSampler(output_step)
    config = AdaptiveConfig(abs_tol=tolerance, rel_tol=tolerance)

    print(f"── Dropping from {height} m (e = {restitution}) ──")
    t0 = time.perf_counter()
    result = propagate(
        falling,
        0.0,
        jnp.array([height, 0.0]),
        duration,
        config=config,
        detectors=[impact],
        handlers=[sampler],
        jit=jit,
    )
    elapsed = time.perf_counter() - t0

    print("\n── Impacts ──")
    for record in result.events:
        print(
            f"  t = {record.time:10.6f} s   v = {float(record.state[1]):8.4f} m/s"
            f"   {record.action.name}"
        )

    print("\n── Trajectory ──")
    for t, y in zip(sampler.times, sampler.states):
        bar = "#" * int(max(float(y[0]), 0.0) / height * 50)
        print(f"  {t:7.2f} s  {float(y[0]):8.4f} m  {bar}")

    print("\n── Statistics ──")
    print(f"  Final time: {result.time:.6f} s ({'stopped' if result.stopped else 'completed'})")
    print(f"  Accepted steps: {result.n_steps}, rejected: {result.n_rejected}")
    print(f"  Derivative evaluations: {result.n_evaluations}")
    print(f"  Wall time: {elapsed:.2f} s")


if __name__ == "__main__":
    typer.run(main)
